"""File transfer engines for ChunkFerry.

An engine copies files from one directory tree into another, preserving
relative structure.  The orchestrator only decides *when* and *what* to copy;
overwrite-safety of an engine is assumed, since a failed chunk is retried in
full including files already copied.

- :class:`RsyncTransferEngine` shells out to ``rsync`` (preferred).
- :class:`LocalCopyEngine` uses :mod:`shutil` when rsync is unavailable.
"""

from __future__ import annotations

import abc
import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeRemainingColumn

from chunkferry.console import console
from chunkferry.errors import TransferError
from chunkferry.utils.path_helpers import is_safe_relative

logger = logging.getLogger(__name__)

_STDERR_TAIL = 5  # lines of rsync stderr carried into the error message


@dataclass(frozen=True)
class CopyOptions:
    """How a copy is performed and reported."""

    preserve_attributes: bool = True
    show_progress: bool = True
    verbose: bool = False


# ---------------------------------------------------------------------------
# FileTransferEngine
# ---------------------------------------------------------------------------


class FileTransferEngine(abc.ABC):
    """Bulk copy of a file set between two directory trees."""

    name = "abstract"

    @abc.abstractmethod
    def copy(
        self,
        source_root: Path,
        destination_root: Path,
        paths: Sequence[str] | None = None,
        options: CopyOptions = CopyOptions(),
    ) -> None:
        """Copy *paths* (relative to *source_root*) into *destination_root*.

        ``paths=None`` copies the whole tree under *source_root*.

        Raises:
            TransferError: if the copy did not complete.
        """

    @staticmethod
    def _check_paths(paths: Sequence[str]) -> None:
        for path in paths:
            if not is_safe_relative(path):
                raise TransferError(f"Refusing to copy unsafe path {path!r}")


# ---------------------------------------------------------------------------
# rsync
# ---------------------------------------------------------------------------


class RsyncTransferEngine(FileTransferEngine):
    """Copies with ``rsync``, feeding member lists through ``--files-from``."""

    name = "rsync"

    def __init__(self, binary: str = "rsync") -> None:
        self._binary = binary

    def build_command(
        self,
        source_root: Path,
        destination_root: Path,
        options: CopyOptions,
        files_from: Path | None = None,
    ) -> list[str]:
        """Return the rsync argv for one invocation."""
        cmd = [self._binary, "-a" if options.preserve_attributes else "-rt"]
        if options.verbose:
            cmd += ["-v", "--progress"]
        elif options.show_progress:
            cmd += ["-h", "--info=progress2"]
        if files_from is not None:
            cmd += ["--from0", f"--files-from={files_from}"]
        # Trailing slashes: copy the contents, not the directory itself
        cmd += [f"{source_root}/", f"{destination_root}/"]
        return cmd

    def copy(
        self,
        source_root: Path,
        destination_root: Path,
        paths: Sequence[str] | None = None,
        options: CopyOptions = CopyOptions(),
    ) -> None:
        destination_root.mkdir(parents=True, exist_ok=True)
        if paths is None:
            self._invoke(self.build_command(source_root, destination_root, options), options)
            return

        self._check_paths(paths)
        if not paths:
            logger.debug("Nothing to copy from %s", source_root)
            return

        fd, list_path = tempfile.mkstemp(prefix="chunkferry-", suffix=".files")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(b"\0".join(p.encode("utf-8", "surrogateescape") for p in paths))
            cmd = self.build_command(source_root, destination_root, options, Path(list_path))
            self._invoke(cmd, options)
        finally:
            try:
                os.remove(list_path)
            except OSError:
                pass

    def _invoke(self, cmd: list[str], options: CopyOptions) -> None:
        logger.debug("Running %s", " ".join(cmd))
        capture = not (options.show_progress or options.verbose)
        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.PIPE if capture else None,
                stderr=subprocess.PIPE if capture else None,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise TransferError(f"Could not run {cmd[0]}: {exc}") from exc

        if result.returncode != 0:
            detail = ""
            if capture and result.stderr:
                detail = ": " + " | ".join(result.stderr.strip().splitlines()[-_STDERR_TAIL:])
            raise TransferError(f"rsync exited with code {result.returncode}{detail}")


# ---------------------------------------------------------------------------
# Local copy
# ---------------------------------------------------------------------------


class LocalCopyEngine(FileTransferEngine):
    """Copies with :mod:`shutil`; used when rsync is not installed."""

    name = "local"

    def copy(
        self,
        source_root: Path,
        destination_root: Path,
        paths: Sequence[str] | None = None,
        options: CopyOptions = CopyOptions(),
    ) -> None:
        if paths is None:
            paths = self._walk(source_root)
        else:
            self._check_paths(paths)

        copy_fn = shutil.copy2 if options.preserve_attributes else shutil.copyfile
        destination_root.mkdir(parents=True, exist_ok=True)

        progress = None
        task = None
        if options.show_progress and not options.verbose and paths:
            progress = Progress(
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeRemainingColumn(),
                console=console,
                transient=True,
            )
            progress.start()
            task = progress.add_task(f"Copying to {destination_root}", total=len(paths))

        try:
            for rel in paths:
                src = source_root / rel
                dst = destination_root / rel
                if not src.exists() and not src.is_symlink():
                    raise TransferError(f"Source file vanished: {src}")
                try:
                    dst.parent.mkdir(parents=True, exist_ok=True)
                    # Replace rather than overwrite: a copy left by an earlier
                    # attempt may be read-only
                    if dst.is_symlink() or (dst.exists() and not dst.is_dir()):
                        dst.unlink()
                    if src.is_symlink():
                        os.symlink(os.readlink(src), dst)
                    else:
                        copy_fn(src, dst)
                except OSError as exc:
                    raise TransferError(f"Failed to copy {src} -> {dst}: {exc}") from exc
                if options.verbose:
                    logger.info("%s", rel)
                if progress is not None:
                    progress.advance(task)
        finally:
            if progress is not None:
                progress.stop()

        logger.debug("Local copy complete: %d file(s) %s -> %s", len(paths), source_root, destination_root)

    @staticmethod
    def _walk(root: Path) -> list[str]:
        """Return every file and symlink under *root*, relative, sorted."""
        results: list[str] = []

        def _raise(exc: OSError) -> None:
            raise exc

        try:
            for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
                base = Path(dirpath)
                # Directory symlinks are copied as links, not followed
                for name in list(dirnames):
                    if (base / name).is_symlink():
                        dirnames.remove(name)
                        filenames.append(name)
                for name in filenames:
                    results.append((base / name).relative_to(root).as_posix())
        except OSError as exc:
            raise TransferError(f"Failed to list {root}: {exc}") from exc
        return sorted(results)


def default_engine(name: str = "auto") -> FileTransferEngine:
    """Return the engine called *name*; ``auto`` prefers rsync when installed."""
    if name == "local":
        return LocalCopyEngine()
    if name == "rsync":
        return RsyncTransferEngine()
    if shutil.which("rsync"):
        return RsyncTransferEngine()
    logger.warning("rsync not found; falling back to the built-in copy engine")
    return LocalCopyEngine()
