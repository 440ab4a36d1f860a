from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Protocol, Sequence

from .build_ctx import BuildCtx
from .build_state import BuildState, Stage, TERMINAL_STAGE, stage_chain
from .stage_runner import StageRunner
from .stages import (
    BootloaderStage,
    ChrootConfigureStage,
    IsoCreationStage,
    PostCopyCleanupStage,
    SquashfsStage,
    SystemCopyStage,
)

logger = logging.getLogger(__name__)


class BuildStage(Protocol):
    """One pipeline stage; safe to re-run from its start after a failure."""

    stage: Stage

    def run(self, ctx: BuildCtx, state: BuildState) -> BuildState:
        ...


STAGE_CLASSES = (
    SystemCopyStage,
    PostCopyCleanupStage,
    ChrootConfigureStage,
    SquashfsStage,
    BootloaderStage,
    IsoCreationStage,
)


def default_stages() -> List[BuildStage]:
    return [cls() for cls in STAGE_CLASSES]


@dataclass(frozen=True)
class PipelineResult:
    state: BuildState
    ran_stages: List[str]
    skipped_stages: List[str]


def check_stage_table(stages: Sequence[BuildStage]) -> None:
    """Every stage exactly once, in pipeline order."""

    got = [s.stage for s in stages]
    want = stage_chain()
    if got != want:
        raise ValueError(
            "stage table must be "
            + ", ".join(s.value for s in want)
            + "; got "
            + ", ".join(s.value for s in got)
        )


def run_pipeline(
    *,
    ctx: BuildCtx,
    state: BuildState,
    stages: Sequence[BuildStage],
    runner: StageRunner,
) -> PipelineResult:
    """Run the stages not yet completed according to ``state.stage``.

    A failing stage raises StageError and leaves the persisted state at its
    ``<stage>_start`` record, so the next run resumes there.
    """

    check_stage_table(stages)

    start = state.next_stage
    ran: List[str] = []
    skipped: List[str] = []
    if start is None:
        logger.info("Nothing to do; build already complete")
        return PipelineResult(state=state, ran_stages=ran, skipped_stages=[s.stage.value for s in stages])

    remaining = set(stage_chain(start))
    for stage in stages:
        if stage.stage not in remaining:
            logger.info("Skipping stage %s (already completed)", stage.stage.value)
            skipped.append(stage.stage.value)
            continue
        state = runner.execute(stage.stage, lambda st, s=stage: s.run(ctx, st), state)
        ran.append(stage.stage.value)

    state = state.with_stage(TERMINAL_STAGE)
    runner.store.save(state)
    return PipelineResult(state=state, ran_stages=ran, skipped_stages=skipped)
