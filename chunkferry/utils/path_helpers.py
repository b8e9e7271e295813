"""Path normalisation and human-readable formatting utilities."""

from __future__ import annotations

from pathlib import Path, PurePosixPath


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB").

    Uses 1024-based units (KiB/MiB/GiB) but labels them KB/MB/GB for
    familiarity with everyday usage.
    """
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def format_duration(seconds: float) -> str:
    """Format *seconds* as ``HH:MM:SS`` (hours are not wrapped at 24)."""
    total = max(0, int(round(seconds)))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def relative_posix(path: Path, root: Path) -> str:
    """Return *path* relative to *root* using forward slashes.

    Chunk records always store POSIX-style relative paths so they stay valid
    regardless of where the volume is mounted.
    """
    return PurePosixPath(*path.relative_to(root).parts).as_posix()


def is_safe_relative(path: str) -> bool:
    """Return True if *path* is relative and cannot escape its root.

    Rejects absolute paths, null bytes and ``..`` segments.
    """
    if not path or "\x00" in path:
        return False
    pure = PurePosixPath(path)
    if pure.is_absolute():
        return False
    return ".." not in pure.parts
