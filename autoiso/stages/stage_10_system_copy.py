from __future__ import annotations

import logging
import shutil
from pathlib import Path

from ..build_ctx import BuildCtx
from ..build_state import BuildState, Stage
from ..lib.mounts import (
    build_exclusion_set,
    rsync_exclude_args,
    validate_staging_size,
    verify_no_foreign_mounts,
)
from ..lib.progress import ProgressReporter, RsyncProgressParser
from ..lib.space import GIB, STAGE_SPACE, check_available, fallback_estimate, measure_tree, required_space

logger = logging.getLogger(__name__)

# rsync: "some files vanished before they could be transferred".
RSYNC_VANISHED = 24


def copy_space_needed(extract_dir: Path, estimate: int, *, timeout: float) -> int:
    """Space still needed for the copy; files staged by an earlier attempt count as done."""

    required = required_space(Stage.SYSTEM_COPY, estimate)
    if not extract_dir.is_dir() or not any(extract_dir.iterdir()):
        return required
    staged = measure_tree(str(extract_dir), timeout=timeout)
    if not staged:
        return required
    logger.info("%.2f GiB already staged by an earlier attempt", staged / GIB)
    _, overhead = STAGE_SPACE[Stage.SYSTEM_COPY]
    return max(required - staged, overhead)


def rsync_argv(ctx: BuildCtx, exclusions) -> list[str]:
    paths = ctx.paths
    return [
        "rsync",
        "-aAXH",
        "--one-file-system",
        "--numeric-ids",
        "--partial",
        f"--partial-dir={paths.rsync_partial_dir}",
        f"--log-file={paths.log('rsync-transfer.log')}",
        "--stats",
        "--human-readable",
        "--info=progress2",
        *rsync_exclude_args(exclusions),
        "/",
        f"{paths.extract_dir}/",
    ]


class SystemCopyStage:
    stage = Stage.SYSTEM_COPY

    def run(self, ctx: BuildCtx, state: BuildState) -> BuildState:
        cfg = ctx.cfg
        paths = ctx.paths
        estimate = state.source_estimate or fallback_estimate(state.distribution)

        check_available(str(paths.work_dir), copy_space_needed(paths.extract_dir, estimate, timeout=cfg.du_timeout))

        exclusions = build_exclusion_set(str(paths.work_dir), state.distribution, list(ctx.mount_table()))
        logger.info("Excluding %d paths from the system copy", len(exclusions))
        for path in sorted(exclusions):
            logger.debug("  exclude %s", path)

        paths.extract_dir.mkdir(parents=True, exist_ok=True)
        paths.logs_dir.mkdir(parents=True, exist_ok=True)
        paths.rsync_partial_dir.mkdir(parents=True, exist_ok=True)

        ctx.tools.run(
            rsync_argv(ctx, exclusions),
            timeout=cfg.copy_timeout,
            log_path=paths.log("rsync.log"),
            progress=ProgressReporter(RsyncProgressParser()),
            ok_codes=(0, RSYNC_VANISHED),
        )
        # Kept across failures so a resumed copy can reuse partial files.
        shutil.rmtree(paths.rsync_partial_dir, ignore_errors=True)

        verify_no_foreign_mounts(ctx.extract_dir, ctx.mount_table())
        staged = measure_tree(ctx.extract_dir, timeout=max(cfg.du_timeout, 300.0))
        validate_staging_size(
            staged,
            staging_root=ctx.extract_dir,
            estimate_bytes=estimate,
            max_reasonable_gb=cfg.max_staging_gb,
            ratio=cfg.staging_size_ratio,
        )
        return state.with_flags(cleanup_required=True)
