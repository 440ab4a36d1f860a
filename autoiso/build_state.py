from __future__ import annotations

import os
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

INITIAL_STAGES = ("init", "workspace_prepared")
TERMINAL_STAGE = "complete"


class Stage(Enum):
    """Pipeline stages, in execution order."""

    SYSTEM_COPY = "system_copy"
    POST_COPY_CLEANUP = "post_copy_cleanup"
    CHROOT_CONFIGURE = "chroot_configure"
    SQUASHFS = "squashfs"
    BOOTLOADER = "bootloader"
    ISO_CREATION = "iso_creation"

    @property
    def start_marker(self) -> str:
        return f"{self.value}_start"

    @property
    def complete_marker(self) -> str:
        return f"{self.value}_complete"

    @property
    def successor(self) -> Optional["Stage"]:
        return _SUCCESSORS[self]

    @property
    def predecessor(self) -> Optional["Stage"]:
        return _PREDECESSORS[self]


_SUCCESSORS = {
    Stage.SYSTEM_COPY: Stage.POST_COPY_CLEANUP,
    Stage.POST_COPY_CLEANUP: Stage.CHROOT_CONFIGURE,
    Stage.CHROOT_CONFIGURE: Stage.SQUASHFS,
    Stage.SQUASHFS: Stage.BOOTLOADER,
    Stage.BOOTLOADER: Stage.ISO_CREATION,
    Stage.ISO_CREATION: None,
}
_PREDECESSORS = {nxt: cur for cur, nxt in _SUCCESSORS.items() if nxt is not None}
_PREDECESSORS[Stage.SYSTEM_COPY] = None

FIRST_STAGE = Stage.SYSTEM_COPY


def stage_chain(start: Optional[Stage] = FIRST_STAGE) -> list[Stage]:
    """Return ``start`` and every stage after it."""

    out: list[Stage] = []
    cur = start
    while cur is not None:
        out.append(cur)
        cur = cur.successor
    return out


def is_known_stage_name(name: str) -> bool:
    if name in INITIAL_STAGES or name == TERMINAL_STAGE:
        return True
    return any(name in (s.start_marker, s.complete_marker) for s in Stage)


def resume_point(stage_name: str) -> Optional[Stage]:
    """Map a persisted stage name to the stage that must run next.

    Returns None when nothing is left to run.
    """

    if stage_name in INITIAL_STAGES:
        return FIRST_STAGE
    if stage_name == TERMINAL_STAGE:
        return None
    for stage in Stage:
        if stage_name == stage.start_marker:
            return stage
        if stage_name == stage.complete_marker:
            return stage.successor
    raise ValueError(f"Unknown pipeline stage: {stage_name!r}")


@dataclass(frozen=True)
class BuildState:
    stage: str
    work_dir: str
    cleanup_required: bool = False
    mounts_active: bool = False
    start_time: int = 0
    distribution: str = ""
    pid: int = 0
    source_estimate: int = 0
    timestamp: int = 0

    def __post_init__(self) -> None:
        if not is_known_stage_name(self.stage):
            raise ValueError(f"Unknown pipeline stage: {self.stage!r}")

    @classmethod
    def initial(cls, work_dir: str, *, distribution: str = "") -> "BuildState":
        now = int(time.time())
        return cls(
            stage="init",
            work_dir=work_dir,
            start_time=now,
            distribution=distribution,
            pid=os.getpid(),
            timestamp=now,
        )

    def with_stage(self, stage: str) -> "BuildState":
        return replace(self, stage=stage)

    def with_flags(self, **changes) -> "BuildState":
        return replace(self, **changes)

    @property
    def next_stage(self) -> Optional[Stage]:
        return resume_point(self.stage)

    @property
    def is_terminal(self) -> bool:
        return self.stage == TERMINAL_STAGE
