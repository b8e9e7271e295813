"""Exception hierarchy for ChunkFerry.

Every error that should abort a run derives from :class:`FerryError` so the
CLI can map it to a non-zero exit code.  State on disk is left exactly as it
was last durably written, which is what makes a re-run resume correctly.
"""

from __future__ import annotations


class FerryError(Exception):
    """Base class for fatal, run-aborting errors."""


class PlanningError(FerryError):
    """Raised when the source tree cannot be enumerated."""


class LedgerError(FerryError):
    """Raised when a persisted chunk record cannot be read back."""


class MountTimeoutError(FerryError):
    """Raised when no new volume appears within the mount-detection timeout."""

    def __init__(self, label: str, timeout: float) -> None:
        """Initialise with the device *label* and the *timeout* that expired."""
        super().__init__(
            f"No newly mounted volume detected for the {label} within {timeout:g}s"
        )
        self.label = label
        self.timeout = timeout


class TransferError(FerryError):
    """Raised by a transfer engine when a single copy invocation fails."""


class ChunkTransferError(FerryError):
    """Raised when a chunk phase exhausts its retry budget."""

    def __init__(self, index: int, phase: str, attempts: int, cause: Exception | None = None) -> None:
        """Initialise with the chunk *index*, *phase* name and *attempts* made."""
        message = f"Chunk {index} failed during {phase} after {attempts} attempt(s)"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.index = index
        self.phase = phase
        self.attempts = attempts
        self.cause = cause


class ConfigError(FerryError):
    """Raised when a configuration value is unusable."""
