"""Post-run comparison of source and destination volumes.

The two volumes are never connected together, so each side is reduced to a
manifest of ``{relative path: size}`` while it is mounted, and the manifests
are compared afterwards.  Only sizes are compared; differences are reported,
never treated as failures.
"""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path

from chunkferry.console import SUCCESS
from chunkferry.utils.path_helpers import relative_posix
from chunkferry.volumes import RemovableVolumeService

logger = logging.getLogger(__name__)

_MAX_LISTED = 20  # differences logged individually before summarising


@dataclass
class VerifyReport:
    """Differences found between the source and destination manifests."""

    checked: int = 0
    missing: list[str] = field(default_factory=list)
    mismatched: list[tuple[str, int, int]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing and not self.mismatched


def build_manifest(root: Path) -> dict[str, int]:
    """Return the size of every regular file under *root*, keyed by relative path.

    Unreadable directories are logged and skipped.
    """
    manifest: dict[str, int] = {}

    def _warn(exc: OSError) -> None:
        logger.warning("Could not list %s: %s", exc.filename, exc.strerror)

    for dirpath, _dirnames, filenames in os.walk(root, onerror=_warn):
        base = Path(dirpath)
        for name in filenames:
            full = base / name
            try:
                st = full.lstat()
            except OSError as exc:
                logger.warning("Could not stat %s: %s", full, exc)
                continue
            if stat.S_ISREG(st.st_mode):
                manifest[relative_posix(full, root)] = st.st_size
    return manifest


def compare_manifests(source: dict[str, int], destination: dict[str, int]) -> VerifyReport:
    """Compare *source* against *destination*; extra destination files are ignored."""
    report = VerifyReport(checked=len(source))
    for path in sorted(source):
        if path not in destination:
            report.missing.append(path)
        elif destination[path] != source[path]:
            report.mismatched.append((path, source[path], destination[path]))
    return report


class Verifier:
    """Mounts each volume in turn and compares their contents."""

    def __init__(
        self,
        volumes: RemovableVolumeService,
        source_label: str,
        dest_label: str,
        mount_timeout: float,
    ) -> None:
        self._volumes = volumes
        self._source_label = source_label
        self._dest_label = dest_label
        self._mount_timeout = mount_timeout

    def _manifest_of(self, label: str) -> dict[str, int]:
        volume = self._volumes.mount(label, self._mount_timeout)
        try:
            logger.info("Listing files on the %s...", label)
            manifest = build_manifest(volume.path)
        finally:
            self._volumes.release(volume)
        logger.info("%d file(s) found on the %s", len(manifest), label)
        return manifest

    def run(self) -> VerifyReport:
        """Compare the source volume against the destination volume.

        Raises:
            MountTimeoutError: if either volume is not detected in time.
        """
        logger.info("Verifying: comparing the %s with the %s", self._source_label, self._dest_label)
        source = self._manifest_of(self._source_label)
        destination = self._manifest_of(self._dest_label)
        report = compare_manifests(source, destination)
        self._log_report(report)
        return report

    def _log_report(self, report: VerifyReport) -> None:
        if report.ok:
            logger.log(SUCCESS, "Verification passed: all %d file(s) present with matching sizes", report.checked)
            return

        for path in report.missing[:_MAX_LISTED]:
            logger.warning("Missing on %s: %s", self._dest_label, path)
        for path, src_size, dst_size in report.mismatched[:_MAX_LISTED]:
            logger.warning("Size differs: %s (%d != %d bytes)", path, src_size, dst_size)
        shown = min(len(report.missing), _MAX_LISTED) + min(len(report.mismatched), _MAX_LISTED)
        total = len(report.missing) + len(report.mismatched)
        if total > shown:
            logger.warning("... and %d more difference(s)", total - shown)
        logger.warning(
            "Verification found %d missing and %d mismatched file(s) out of %d",
            len(report.missing),
            len(report.mismatched),
            report.checked,
        )
