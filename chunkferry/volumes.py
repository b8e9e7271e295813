"""Removable volume handling for ChunkFerry.

A new volume is detected by diffing the listing of the media root (e.g.
``/media/<user>``) taken before the operator plugs the device in against
listings taken afterwards.  Detection polls with a bounded timeout; operator
confirmation has none.

:class:`UdisksVolumeService` is the Linux implementation: it prompts on the
terminal and powers devices off through ``udisksctl``.  Eject failures are
logged and ignored since the operator unplugs the device regardless.
"""

from __future__ import annotations

import abc
import logging
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from chunkferry.console import SUCCESS, prompt
from chunkferry.errors import MountTimeoutError

logger = logging.getLogger(__name__)

_DEFAULT_POLL_INTERVAL = 1.0  # seconds between media-root listings
_COMMAND_TIMEOUT = 30  # seconds allowed for each findmnt/lsblk/udisksctl call


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MountedVolume:
    """A removable volume that appeared under the media root."""

    label: str  # operator-facing device label, e.g. "USB stick"
    name: str  # entry name under the media root
    path: Path

    @property
    def is_present(self) -> bool:
        """True while the mount point still exists."""
        return self.path.is_dir()


# ---------------------------------------------------------------------------
# VolumeWaiter
# ---------------------------------------------------------------------------


class VolumeWaiter:
    """Detects a newly mounted volume by diffing media-root listings."""

    def __init__(self, media_root: Path, poll_interval: float = _DEFAULT_POLL_INTERVAL) -> None:
        self.media_root = media_root
        self.poll_interval = poll_interval

    def snapshot(self) -> frozenset[str]:
        """Return the entry names currently under the media root.

        A missing media root is an empty snapshot: it is created by the
        automounter on first insertion.
        """
        try:
            return frozenset(entry.name for entry in self.media_root.iterdir())
        except FileNotFoundError:
            return frozenset()
        except OSError as exc:
            logger.debug("Could not list %s: %s", self.media_root, exc)
            return frozenset()

    def detect_new_mount(self, prior: frozenset[str], timeout: float, label: str = "device") -> MountedVolume:
        """Wait for an entry that is not in *prior* to appear.

        When several new entries appear together the first in sorted order
        wins.

        Raises:
            MountTimeoutError: if nothing new appears within *timeout* seconds.
        """
        deadline = time.monotonic() + timeout
        while True:
            new = sorted(self.snapshot() - prior)
            if new:
                name = new[0]
                if len(new) > 1:
                    logger.warning("Several new volumes appeared (%s); using %s", ", ".join(new), name)
                return MountedVolume(label=label, name=name, path=self.media_root / name)
            if time.monotonic() >= deadline:
                raise MountTimeoutError(label, timeout)
            time.sleep(self.poll_interval)


# ---------------------------------------------------------------------------
# RemovableVolumeService
# ---------------------------------------------------------------------------


class RemovableVolumeService(abc.ABC):
    """Operator-driven insertion, mount detection and ejection of volumes."""

    @abc.abstractmethod
    def snapshot(self) -> frozenset[str]:
        """Return the current mount listing used as the detection baseline."""

    @abc.abstractmethod
    def await_insertion(self, label: str) -> None:
        """Ask the operator to plug in *label*; block until confirmed."""

    @abc.abstractmethod
    def detect_new_mount(self, prior: frozenset[str], timeout: float, label: str) -> MountedVolume:
        """Return the volume that appeared since *prior*, or raise on timeout."""

    @abc.abstractmethod
    def safe_eject(self, volume: MountedVolume) -> None:
        """Unmount and power off *volume*.  Best effort; never raises."""

    @abc.abstractmethod
    def await_removal(self, label: str) -> None:
        """Ask the operator to unplug *label*; block until confirmed."""

    def mount(self, label: str, timeout: float) -> MountedVolume:
        """Prompt for *label* and return it once it is mounted.

        Raises:
            MountTimeoutError: if the volume is not detected in time.
        """
        prior = self.snapshot()
        self.await_insertion(label)
        volume = self.detect_new_mount(prior, timeout, label)
        logger.log(SUCCESS, "%s mounted as %s", label, volume.path)
        return volume

    def release(self, volume: MountedVolume) -> None:
        """Eject *volume* and wait for the operator to unplug it."""
        self.safe_eject(volume)
        self.await_removal(volume.label)


class UdisksVolumeService(RemovableVolumeService):
    """Linux implementation backed by the desktop automounter and udisks2."""

    def __init__(
        self,
        waiter: VolumeWaiter,
        eject_settle_delay: float = 1.0,
        unplug_settle_delay: float = 2.0,
    ) -> None:
        self._waiter = waiter
        self._eject_settle_delay = eject_settle_delay
        self._unplug_settle_delay = unplug_settle_delay

    def snapshot(self) -> frozenset[str]:
        return self._waiter.snapshot()

    def await_insertion(self, label: str) -> None:
        prompt(f"Please plug in the {label} and press Enter to continue.")

    def detect_new_mount(self, prior: frozenset[str], timeout: float, label: str) -> MountedVolume:
        return self._waiter.detect_new_mount(prior, timeout, label)

    def await_removal(self, label: str) -> None:
        prompt(f"Please unplug the {label} and press Enter to continue.")
        time.sleep(self._unplug_settle_delay)

    def safe_eject(self, volume: MountedVolume) -> None:
        """Unmount the filesystem, then power off its parent disk."""
        time.sleep(self._eject_settle_delay)
        if shutil.which("udisksctl") is None:
            logger.warning("udisksctl not found; unmount %s manually before unplugging", volume.path)
            return

        source = self._run("findmnt", "-no", "SOURCE", str(volume.path))
        if not source:
            logger.warning("Could not resolve the block device for %s", volume.path)
            return
        disk = self._run("lsblk", "-no", "PKNAME", source)

        if self._run("udisksctl", "unmount", "-b", source) is None:
            logger.warning("Unmounting %s failed", source)
            return
        if disk and self._run("udisksctl", "power-off", "-b", f"/dev/{disk}") is None:
            logger.warning("Powering off /dev/%s failed", disk)
        logger.log(SUCCESS, "%s unmounted. It is now safe to unplug it.", volume.label)

    def _run(self, *cmd: str) -> str | None:
        """Run *cmd*; return stripped stdout, or None if it failed."""
        try:
            result = subprocess.run(
                list(cmd),
                capture_output=True,
                text=True,
                timeout=_COMMAND_TIMEOUT,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.debug("%s failed: %s", cmd[0], exc)
            return None
        if result.returncode != 0:
            logger.debug("%s exited with %d: %s", " ".join(cmd), result.returncode, result.stderr.strip())
            return None
        return result.stdout.strip().splitlines()[0] if result.stdout.strip() else ""
