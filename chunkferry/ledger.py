"""Durable progress ledger for ChunkFerry.

The ledger is the only place run progress lives; the process itself keeps no
state between invocations.  Layout under the work directory::

    state/chunk_<i>.json     one sealed chunk record per index
    done/chunk_<i>.done      zero-byte marker, present once chunk i is transferred
    staging/chunk_<i>/       files of the chunk currently in flight

Every write goes to a temporary name first and is renamed into place, so a
record or marker is never observed half-written.  Concurrent processes
sharing one work directory are not supported.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from chunkferry.errors import LedgerError

logger = logging.getLogger(__name__)

STATE_DIRNAME = "state"
DONE_DIRNAME = "done"
STAGING_DIRNAME = "staging"

_CHUNK_RE = re.compile(r"^chunk_(\d+)\.json$")
_DONE_RE = re.compile(r"^chunk_(\d+)\.done$")

# ---------------------------------------------------------------------------
# Chunk record
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Chunk:
    """A sealed, size-bounded group of source files with a stable index."""

    index: int
    members: tuple[str, ...] = field(default_factory=tuple)
    cumulative_size: int = 0

    @property
    def is_empty(self) -> bool:
        """True when the chunk has no files to copy."""
        return not self.members

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "cumulative_size": self.cumulative_size,
            "members": list(self.members),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Chunk":
        return cls(
            index=int(data["index"]),
            members=tuple(str(m) for m in data["members"]),
            cumulative_size=int(data["cumulative_size"]),
        )


def chunk_name(index: int) -> str:
    """Return the stem shared by a chunk record and its done marker."""
    return f"chunk_{index}"


# ---------------------------------------------------------------------------
# ProgressLedger
# ---------------------------------------------------------------------------


class ProgressLedger:
    """Persists chunk records, done markers and the staging area."""

    def __init__(self, base_dir: Path) -> None:
        """Initialise against *base_dir*, creating the ledger directories."""
        self._base = base_dir
        self.state_dir = base_dir / STATE_DIRNAME
        self.done_dir = base_dir / DONE_DIRNAME
        self.staging_dir = base_dir / STAGING_DIRNAME
        self._ensure_dirs()

    def _ensure_dirs(self) -> None:
        for directory in (self.state_dir, self.done_dir, self.staging_dir):
            directory.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Chunk records
    # ------------------------------------------------------------------

    def _chunk_path(self, index: int) -> Path:
        return self.state_dir / f"{chunk_name(index)}.json"

    def _marker_path(self, index: int) -> Path:
        return self.done_dir / f"{chunk_name(index)}.done"

    def has_plan(self) -> bool:
        """Return True if any chunk record exists (the plan is frozen)."""
        return bool(self.list_chunk_indices())

    def list_chunk_indices(self) -> list[int]:
        """Return the indices of all persisted chunk records, ascending."""
        if not self.state_dir.is_dir():
            return []
        indices = []
        for entry in self.state_dir.iterdir():
            match = _CHUNK_RE.match(entry.name)
            if match and entry.is_file():
                indices.append(int(match.group(1)))
        return sorted(indices)

    def chunk_count(self) -> int:
        """Return the number of chunk records on disk."""
        return len(self.list_chunk_indices())

    def has_chunk(self, index: int) -> bool:
        return self._chunk_path(index).is_file()

    def load_chunk(self, index: int) -> Chunk:
        """Read back chunk record *index*.

        Raises:
            LedgerError: if the record is missing or unreadable.
        """
        path = self._chunk_path(index)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            chunk = Chunk.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise LedgerError(f"Cannot read chunk record {path}: {exc}") from exc
        if chunk.index != index:
            raise LedgerError(
                f"Chunk record {path} claims index {chunk.index}, expected {index}"
            )
        return chunk

    def list_chunks(self) -> list[Chunk]:
        """Return every persisted chunk, ordered by index."""
        return [self.load_chunk(i) for i in self.list_chunk_indices()]

    def save_plan(self, chunks: Sequence[Chunk]) -> None:
        """Persist *chunks* as the frozen plan.

        Records are written into a sibling temporary directory which is then
        renamed over an empty ``state/``, so either the whole plan is visible
        or none of it is.

        Raises:
            LedgerError: if a plan already exists.
        """
        if self.has_plan():
            raise LedgerError(f"A plan already exists in {self.state_dir}")

        tmp_dir = self._base / f"{STATE_DIRNAME}.partial"
        if tmp_dir.exists():
            shutil.rmtree(tmp_dir)
        tmp_dir.mkdir(parents=True)

        for chunk in chunks:
            target = tmp_dir / f"{chunk_name(chunk.index)}.json"
            with open(target, "w", encoding="utf-8") as fh:
                json.dump(chunk.to_dict(), fh)
                fh.flush()
                os.fsync(fh.fileno())

        # state/ is known to hold no chunk records; anything else in it is stale
        if self.state_dir.exists():
            shutil.rmtree(self.state_dir)
        tmp_dir.replace(self.state_dir)
        logger.debug("Persisted %d chunk record(s) in %s", len(chunks), self.state_dir)

    # ------------------------------------------------------------------
    # Done markers
    # ------------------------------------------------------------------

    def is_done(self, index: int) -> bool:
        """Return True if chunk *index* has been fully transferred."""
        return self._marker_path(index).is_file()

    def mark_done(self, index: int) -> None:
        """Durably record that chunk *index* has been fully transferred.

        Must only be called once both transfer phases have succeeded.
        """
        marker = self._marker_path(index)
        tmp = marker.with_suffix(".tmp")
        self.done_dir.mkdir(parents=True, exist_ok=True)
        with open(tmp, "wb") as fh:
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, marker)
        logger.debug("Done marker written: %s", marker)

    def done_indices(self) -> list[int]:
        """Return the indices of all done markers, ascending."""
        if not self.done_dir.is_dir():
            return []
        indices = []
        for entry in self.done_dir.iterdir():
            match = _DONE_RE.match(entry.name)
            if match:
                indices.append(int(match.group(1)))
        return sorted(indices)

    # ------------------------------------------------------------------
    # Staging area
    # ------------------------------------------------------------------

    def staging_path(self, index: int) -> Path:
        return self.staging_dir / chunk_name(index)

    def fresh_staging(self, index: int) -> Path:
        """Return an empty staging directory for chunk *index*.

        Leftovers from an aborted attempt are removed first so deliveries
        from different attempts never mix.
        """
        path = self.staging_path(index)
        if path.exists():
            logger.debug("Clearing stale staging directory %s", path)
            shutil.rmtree(path)
        path.mkdir(parents=True)
        return path

    def discard_staging(self, index: int) -> None:
        """Delete the staging directory of chunk *index* if present."""
        shutil.rmtree(self.staging_path(index), ignore_errors=True)

    # ------------------------------------------------------------------
    # Reset and consistency
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Delete every chunk record, done marker and the staging area."""
        for directory in (
            self.state_dir,
            self.done_dir,
            self.staging_dir,
            self._base / f"{STATE_DIRNAME}.partial",
        ):
            if directory.exists():
                shutil.rmtree(directory)
        self._ensure_dirs()
        logger.info("Ledger reset: removed chunk records, done markers and staging area")

    def check_consistency(self) -> list[str]:
        """Return human-readable descriptions of ledger inconsistencies.

        Nothing is repaired; the caller decides how loudly to report.
        """
        problems: list[str] = []
        chunks = self.list_chunk_indices()
        chunk_set = set(chunks)
        done = self.done_indices()

        for index in done:
            if index not in chunk_set:
                problems.append(f"Done marker for chunk {index} has no chunk record")

        if chunks:
            expected = set(range(chunks[-1] + 1))
            for index in sorted(expected - chunk_set):
                problems.append(f"Chunk record {index} is missing")

        done_set = set(done)
        if done:
            for index in range(done[-1]):
                if index not in done_set and index in chunk_set:
                    problems.append(
                        f"Chunk {index} is not done although chunk {done[-1]} is"
                    )
        return problems
