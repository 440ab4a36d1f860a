from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable

from .build_config import BuildConfig
from .cleanup import CleanupCoordinator
from .lib.env import BuildPaths
from .lib.mounts import MountPoint, list_mount_points
from .lib.tool_runner import ToolRunner


@dataclass(frozen=True)
class BuildCtx:
    """Everything a stage needs besides the BuildState itself."""

    cfg: BuildConfig
    paths: BuildPaths
    coordinator: CleanupCoordinator
    tools: ToolRunner
    mount_table: Callable[[], Iterable[MountPoint]] = field(default=list_mount_points)

    @property
    def extract_dir(self) -> str:
        return str(self.paths.extract_dir)
