"""Shared fixtures: temporary work directories and a fake mount table."""

from pathlib import Path

import pytest

from autoiso.lib.env import BuildPaths
from autoiso.lib.mounts import MountPoint
from autoiso.state_store import StateStore


class FakeMountTable:
    """Mutable stand-in for /proc/self/mounts."""

    def __init__(self, *paths: str) -> None:
        self.mounted = set(paths)

    def __call__(self):
        entries = [MountPoint(path="/", source_device="/dev/sda1", fstype="ext4", is_root=True)]
        for p in sorted(self.mounted):
            entries.append(MountPoint(path=p, source_device="none", fstype="tmpfs", is_root=False))
        return entries


@pytest.fixture
def paths(tmp_path: Path) -> BuildPaths:
    return BuildPaths(work_dir=tmp_path / "autoiso-build")


@pytest.fixture
def store(paths: BuildPaths) -> StateStore:
    return StateStore.for_work_dir(paths.work_dir)


@pytest.fixture
def mount_table() -> FakeMountTable:
    return FakeMountTable()
