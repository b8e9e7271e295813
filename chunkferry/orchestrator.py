"""Chunk transfer state machine for ChunkFerry.

Each chunk moves through::

    PENDING -> STAGING_FROM_SOURCE -> STAGING_TO_DEST -> DONE
                      |                     |
                      +------> FAILED <-----+

Chunks are processed strictly in ascending index order, one at a time, with
only one volume connected at any moment.  A chunk that exhausts its retries
aborts the run: it stays PENDING on disk (no done marker) and the next
invocation starts again from it.  Skipping a failed chunk would leave a gap
in the done markers, which resumption relies on being contiguous.

Run counters live in an explicit :class:`RunState` rebuilt from the ledger at
the start of every run.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable

from chunkferry.console import SUCCESS
from chunkferry.errors import ChunkTransferError, TransferError
from chunkferry.ledger import Chunk, ProgressLedger
from chunkferry.planner import ChunkPlanner
from chunkferry.transfer import CopyOptions, FileTransferEngine
from chunkferry.utils.path_helpers import format_duration, human_readable_size
from chunkferry.volumes import MountedVolume, RemovableVolumeService

logger = logging.getLogger(__name__)

StateChangeCallback = Callable[[int, "ChunkState"], None]

PHASE_FROM_SOURCE = "staging from source"
PHASE_TO_DEST = "staging to destination"

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


class ChunkState(Enum):
    """Lifecycle state of one chunk within a run."""

    PENDING = auto()
    STAGING_FROM_SOURCE = auto()
    STAGING_TO_DEST = auto()
    DONE = auto()
    FAILED = auto()


@dataclass
class RunState:
    """Counters for one invocation, derived from the ledger on start-up."""

    current_chunk_index: int = 0
    chunk_count: int = 0
    chunks_generated: bool = False
    start_time: float = 0.0
    chunks_transferred: int = 0
    chunks_skipped: int = 0

    @classmethod
    def from_ledger(cls, ledger: ProgressLedger, now: float) -> "RunState":
        count = ledger.chunk_count()
        return cls(chunk_count=count, chunks_generated=count > 0, start_time=now)

    def eta_seconds(self, now: float) -> float | None:
        """Estimate the time left from the average of chunks transferred so far.

        Skipped chunks cost no time and are not part of the average.
        """
        if self.chunks_transferred <= 0:
            return None
        elapsed = now - self.start_time
        remaining = max(0, self.chunk_count - self.current_chunk_index - 1)
        return elapsed / self.chunks_transferred * remaining


@dataclass
class OrchestratorSettings:
    """Tunables for a run, usually taken from :class:`ConfigManager`."""

    budget_bytes: int
    max_retries: int = 2
    retry_delay: float = 2.0
    mount_timeout: float = 30.0
    source_label: str = "USB stick"
    dest_label: str = "SSD"
    copy_options: CopyOptions = field(default_factory=CopyOptions)


@dataclass
class RunReport:
    """Outcome of a run that was not aborted."""

    chunk_count: int
    skipped: int
    transferred: int
    elapsed: float
    complete: bool
    warnings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# TransferOrchestrator
# ---------------------------------------------------------------------------


class TransferOrchestrator:
    """Drives planning and the two-phase transfer of every pending chunk."""

    def __init__(
        self,
        ledger: ProgressLedger,
        planner: ChunkPlanner,
        volumes: RemovableVolumeService,
        engine: FileTransferEngine,
        settings: OrchestratorSettings,
        on_state_change: StateChangeCallback | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialise the orchestrator.

        Args:
            ledger: Durable chunk records and done markers.
            planner: Produces the plan on the first source mount.
            volumes: Operator prompts, mount detection and ejection.
            engine: Performs the actual copies.
            settings: Retry budget, timeouts and device labels.
            on_state_change: Called with ``(index, state)`` on every transition.
            sleep: Delay function used between retries.
            clock: Monotonic clock used for the time estimate.
        """
        self._ledger = ledger
        self._planner = planner
        self._volumes = volumes
        self._engine = engine
        self._settings = settings
        self.on_state_change = on_state_change
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self) -> RunReport:
        """Transfer every chunk that has no done marker yet.

        Raises:
            PlanningError: if the source cannot be enumerated.
            MountTimeoutError: if a volume is not detected in time.
            ChunkTransferError: if a phase exhausts its retries.
            LedgerError: if a chunk record cannot be read.
        """
        state = RunState.from_ledger(self._ledger, self._clock())
        held_source: MountedVolume | None = None

        if state.chunks_generated:
            self._planner.resume()
        else:
            # Planning needs the source; keep it mounted for chunk 0
            held_source = self._volumes.mount(self._settings.source_label, self._settings.mount_timeout)
            self._planner.plan(held_source.path, self._settings.budget_bytes)
            state.chunks_generated = True
            state.chunk_count = self._ledger.chunk_count()

        while self._ledger.has_chunk(state.current_chunk_index):
            index = state.current_chunk_index
            if self._ledger.is_done(index):
                logger.info("Skipping chunk #%d (already done)", index + 1)
                state.chunks_skipped += 1
                self._set_state(index, ChunkState.DONE)
            else:
                chunk = self._ledger.load_chunk(index)
                self._transfer_chunk(chunk, state, held_source)
                held_source = None
            state.current_chunk_index += 1

        if held_source is not None:
            self._volumes.release(held_source)

        return self._finish(state)

    # ------------------------------------------------------------------
    # Per-chunk protocol
    # ------------------------------------------------------------------

    def _transfer_chunk(self, chunk: Chunk, state: RunState, held_source: MountedVolume | None) -> None:
        """Run both phases for *chunk* and record it as done."""
        index = chunk.index
        self._set_state(index, ChunkState.PENDING)
        staging = self._ledger.fresh_staging(index)
        logger.info(
            "Starting chunk #%d of %d: %d file(s), %s (staging in %s)",
            index + 1,
            state.chunk_count,
            len(chunk.members),
            human_readable_size(chunk.cumulative_size),
            staging,
        )

        if chunk.is_empty:
            logger.info("Chunk #%d is empty; nothing to copy", index + 1)
            if held_source is not None:
                self._volumes.release(held_source)
        else:
            options = self._settings.copy_options
            self._set_state(index, ChunkState.STAGING_FROM_SOURCE)
            self._run_phase(
                index,
                PHASE_FROM_SOURCE,
                self._settings.source_label,
                held_source,
                lambda volume: self._engine.copy(volume.path, staging, chunk.members, options),
                on_retry=lambda: self._ledger.fresh_staging(index),
            )
            self._set_state(index, ChunkState.STAGING_TO_DEST)
            self._run_phase(
                index,
                PHASE_TO_DEST,
                self._settings.dest_label,
                None,
                lambda volume: self._engine.copy(staging, volume.path, None, options),
            )

        self._ledger.mark_done(index)
        self._ledger.discard_staging(index)
        state.chunks_transferred += 1
        self._set_state(index, ChunkState.DONE)
        logger.log(SUCCESS, "Chunk #%d of %d done", index + 1, state.chunk_count)

        eta = state.eta_seconds(self._clock())
        if eta is not None:
            logger.info("Estimated time remaining: %s", format_duration(eta))

    def _run_phase(
        self,
        index: int,
        phase: str,
        label: str,
        volume: MountedVolume | None,
        action: Callable[[MountedVolume], None],
        on_retry: Callable[[], object] | None = None,
    ) -> None:
        """Mount *label*, run *action* with retries, then release the volume.

        The mounted volume is reused across attempts while its mount point
        still exists; if it disappeared the operator is asked to insert it
        again.  A mount timeout is not retried.
        """
        attempts = 1 + max(0, self._settings.max_retries)
        direction = "from" if phase == PHASE_FROM_SOURCE else "to"
        last_error: TransferError | None = None

        for attempt in range(1, attempts + 1):
            if volume is None or not volume.is_present:
                volume = self._volumes.mount(label, self._settings.mount_timeout)

            logger.info("Attempt %d/%d: copying chunk #%d %s the %s...", attempt, attempts, index + 1, direction, label)
            try:
                action(volume)
            except TransferError as exc:
                last_error = exc
                logger.warning("Copy %s the %s failed on attempt %d: %s", direction, label, attempt, exc)
                if attempt < attempts:
                    if on_retry is not None:
                        on_retry()
                    self._sleep(self._settings.retry_delay)
                continue

            logger.log(SUCCESS, "Chunk #%d copied %s the %s", index + 1, direction, label)
            self._volumes.release(volume)
            return

        self._set_state(index, ChunkState.FAILED)
        logger.error("Failed to copy chunk #%d %s the %s after %d attempt(s)", index + 1, direction, label, attempts)
        raise ChunkTransferError(index, phase, attempts, last_error)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _finish(self, state: RunState) -> RunReport:
        """Report completion and any ledger inconsistencies."""
        complete = state.current_chunk_index == state.chunk_count
        if complete:
            logger.log(SUCCESS, "All %d chunk(s) have been transferred", state.chunk_count)
        else:
            logger.warning(
                "Expected %d chunk(s), but chunk record #%d is missing; "
                "a chunk record may have been deleted or renamed",
                state.chunk_count,
                state.current_chunk_index + 1,
            )

        warnings = self._ledger.check_consistency()
        for problem in warnings:
            logger.warning("Ledger inconsistency: %s", problem)

        return RunReport(
            chunk_count=state.chunk_count,
            skipped=state.chunks_skipped,
            transferred=state.chunks_transferred,
            elapsed=self._clock() - state.start_time,
            complete=complete,
            warnings=warnings,
        )

    def _set_state(self, index: int, new_state: ChunkState) -> None:
        logger.debug("Chunk %d -> %s", index, new_state.name)
        if self.on_state_change:
            try:
                self.on_state_change(index, new_state)
            except Exception:
                logger.exception("Exception in on_state_change callback")
