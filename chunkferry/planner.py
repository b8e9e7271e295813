"""Chunk planning for ChunkFerry.

Scans the source tree once and partitions its regular files into chunks
bounded by a byte budget.  Files are visited in ascending size order (ties
broken by path), which packs many small files together and leaves very large
files in chunks of their own.  A file larger than the budget on its own
becomes a single-member chunk.

The plan is frozen once persisted: later calls return the stored chunks and
never rescan the source.
"""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from chunkferry.console import SUCCESS
from chunkferry.errors import PlanningError
from chunkferry.ledger import Chunk, ProgressLedger
from chunkferry.utils.path_helpers import human_readable_size, relative_posix

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileEntry:
    """One regular file of the source tree."""

    path: str  # relative to the source root, POSIX separators
    size: int


def scan(source_root: Path) -> list[FileEntry]:
    """Enumerate every regular file under *source_root*, sorted by (size, path).

    Symlinks and special files are not chunk members.

    Raises:
        PlanningError: if the root is missing or any directory is unreadable.
    """
    if not source_root.is_dir():
        raise PlanningError(f"Source root {source_root} does not exist or is not a directory")

    def _raise(exc: OSError) -> None:
        raise exc

    entries: list[FileEntry] = []
    try:
        for dirpath, _dirnames, filenames in os.walk(source_root, onerror=_raise):
            base = Path(dirpath)
            for name in filenames:
                full = base / name
                st = full.lstat()
                if not stat.S_ISREG(st.st_mode):
                    continue
                entries.append(FileEntry(path=relative_posix(full, source_root), size=st.st_size))
    except OSError as exc:
        raise PlanningError(f"Failed to enumerate {source_root}: {exc}") from exc

    entries.sort(key=lambda e: (e.size, e.path))
    logger.debug("Scanned %d file(s) under %s", len(entries), source_root)
    return entries


def partition(entries: Iterable[FileEntry], budget_bytes: int) -> list[Chunk]:
    """Greedily split *entries* into chunks of at most *budget_bytes*.

    Entries are consumed in the order given.  A chunk is closed as soon as
    the next file would push it over budget, even if it is not full.  An
    empty input still yields one empty chunk.
    """
    if not isinstance(budget_bytes, int) or budget_bytes <= 0:
        raise ValueError(f"budget_bytes must be a positive integer, got {budget_bytes!r}")

    chunks: list[Chunk] = []
    members: list[str] = []
    running = 0

    for entry in entries:
        if members and running + entry.size > budget_bytes:
            chunks.append(Chunk(index=len(chunks), members=tuple(members), cumulative_size=running))
            members = []
            running = 0
        members.append(entry.path)
        running += entry.size

    chunks.append(Chunk(index=len(chunks), members=tuple(members), cumulative_size=running))
    return chunks


class ChunkPlanner:
    """Produces (once) and returns the frozen chunk plan held by a ledger."""

    def __init__(self, ledger: ProgressLedger) -> None:
        self._ledger = ledger

    def resume(self) -> list[Chunk]:
        """Return the existing plan and warn that it will not be refreshed."""
        chunks = self._ledger.list_chunks()
        logger.info("Resuming previous run (%d chunk(s) in %s)", len(chunks), self._ledger.state_dir)
        logger.warning(
            "Files added or changed on the source after the original listing "
            "will NOT be transferred"
        )
        return chunks

    def plan(self, source_root: Path, budget_bytes: int) -> list[Chunk]:
        """Partition *source_root* into chunks and persist them.

        If a plan already exists it is returned unchanged and the source is
        not scanned.

        Raises:
            PlanningError: if the source tree cannot be enumerated; nothing
                is persisted in that case.
        """
        if self._ledger.has_plan():
            return self.resume()

        logger.info("Splitting source files into chunks of at most %s...", human_readable_size(budget_bytes))
        entries = scan(source_root)
        chunks = partition(entries, budget_bytes)
        self._ledger.save_plan(chunks)

        total = sum(c.cumulative_size for c in chunks)
        oversized = sum(1 for c in chunks if c.cumulative_size > budget_bytes)
        logger.log(
            SUCCESS,
            "Created %d chunk(s) for %d file(s), %s in total",
            len(chunks),
            len(entries),
            human_readable_size(total),
        )
        if oversized:
            logger.info("%d file(s) exceed the chunk budget and travel alone", oversized)
        return chunks
