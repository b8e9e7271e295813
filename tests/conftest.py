"""Shared fakes for the volume service and transfer engine.

The fake volume service maps device labels to plain directories and records
every operator interaction, so tests can assert exactly which devices were
requested and in what order.
"""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

import pytest

from chunkferry.errors import MountTimeoutError, TransferError
from chunkferry.transfer import CopyOptions, FileTransferEngine, LocalCopyEngine
from chunkferry.volumes import MountedVolume, RemovableVolumeService

SOURCE_LABEL = "USB stick"
DEST_LABEL = "SSD"


class FakeVolumes(RemovableVolumeService):
    """Volume service whose devices are directories under ``tmp_path``."""

    def __init__(self, devices: dict[str, Path]) -> None:
        self.devices = devices
        self.events: list[tuple[str, str]] = []
        self.timeout_labels: set[str] = set()

    def snapshot(self) -> frozenset[str]:
        return frozenset()

    def await_insertion(self, label: str) -> None:
        self.events.append(("insert", label))

    def detect_new_mount(self, prior: frozenset[str], timeout: float, label: str) -> MountedVolume:
        if label in self.timeout_labels:
            raise MountTimeoutError(label, timeout)
        path = self.devices[label]
        return MountedVolume(label=label, name=path.name, path=path)

    def safe_eject(self, volume: MountedVolume) -> None:
        self.events.append(("eject", volume.label))

    def await_removal(self, label: str) -> None:
        self.events.append(("remove", label))

    def mounts(self, label: str | None = None) -> int:
        return sum(1 for kind, lbl in self.events if kind == "insert" and (label is None or lbl == label))


class FakeEngine(FileTransferEngine):
    """Local copy engine that can be told to fail a number of times."""

    name = "fake"

    def __init__(self, fail_times: int = 0, fail_when=None) -> None:
        self._inner = LocalCopyEngine()
        self.fail_times = fail_times
        self.fail_when = fail_when
        self.calls: list[tuple[Path, Path, tuple[str, ...] | None]] = []

    def copy(
        self,
        source_root: Path,
        destination_root: Path,
        paths: Sequence[str] | None = None,
        options: CopyOptions = CopyOptions(),
    ) -> None:
        self.calls.append((source_root, destination_root, tuple(paths) if paths is not None else None))
        should_fail = self.fail_when(source_root, destination_root) if self.fail_when else True
        if self.fail_times > 0 and should_fail:
            self.fail_times -= 1
            # Leave debris behind the way an interrupted copy would
            if destination_root.is_dir():
                (destination_root / "partial.debris").write_bytes(b"x")
            raise TransferError("simulated copy failure")
        self._inner.copy(source_root, destination_root, paths, options)


def write_files(root: Path, sizes: dict[str, int]) -> None:
    for rel, size in sizes.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\0" * size)


@pytest.fixture()
def source_dir(tmp_path: Path) -> Path:
    path = tmp_path / "usb"
    path.mkdir()
    return path


@pytest.fixture()
def dest_dir(tmp_path: Path) -> Path:
    path = tmp_path / "ssd"
    path.mkdir()
    return path


@pytest.fixture()
def work_dir(tmp_path: Path) -> Path:
    return tmp_path / "work"


@pytest.fixture()
def volumes(source_dir: Path, dest_dir: Path) -> FakeVolumes:
    return FakeVolumes({SOURCE_LABEL: source_dir, DEST_LABEL: dest_dir})
