from __future__ import annotations

import logging
import os
import platform
from pathlib import Path
from typing import List

from ..build_ctx import BuildCtx
from ..build_state import BuildState, Stage
from ..lib.mounts import verify_no_foreign_mounts
from ..lib.progress import ProgressReporter, SquashfsProgressParser
from ..lib.space import GIB, check_available, fallback_estimate, measure_tree, required_space

logger = logging.getLogger(__name__)

MEMINFO = "/proc/meminfo"
MIN_MEM_MB = 256
FALLBACK_MEM_MB = 1024


def mem_total_mb(meminfo: str = MEMINFO) -> int | None:
    try:
        text = Path(meminfo).read_text(encoding="utf-8")
    except OSError:
        return None
    for line in text.splitlines():
        if line.startswith("MemTotal:"):
            parts = line.split()
            if len(parts) >= 2 and parts[1].isdigit():
                return int(parts[1]) // 1024
    return None


def memory_cap_mb(fraction: float, meminfo: str = MEMINFO) -> int:
    total = mem_total_mb(meminfo)
    if total is None:
        return FALLBACK_MEM_MB
    return max(int(total * fraction), MIN_MEM_MB)


def mksquashfs_argv(
    source: str,
    dest: str,
    *,
    compressor: str,
    block_size: str,
    processors: int,
    mem_mb: int,
    machine: str = "",
) -> List[str]:
    argv = ["mksquashfs", source, dest, "-no-exports", "-noappend", "-comp", compressor]
    if compressor == "xz" and machine in {"x86_64", "i686", "i386"}:
        argv += ["-Xbcj", "x86"]
    argv += ["-b", block_size, "-processors", str(processors), "-mem", f"{mem_mb}M", "-progress"]
    return argv


class SquashfsStage:
    stage = Stage.SQUASHFS

    def run(self, ctx: BuildCtx, state: BuildState) -> BuildState:
        cfg = ctx.cfg
        paths = ctx.paths
        verify_no_foreign_mounts(ctx.extract_dir, ctx.mount_table())

        # Leftover from an interrupted attempt; gone before free space is measured.
        paths.squashfs_path.unlink(missing_ok=True)

        estimate = state.source_estimate or fallback_estimate(state.distribution)
        check_available(str(paths.work_dir), required_space(self.stage, estimate))

        paths.live_dir.mkdir(parents=True, exist_ok=True)

        argv = mksquashfs_argv(
            ctx.extract_dir,
            str(paths.squashfs_path),
            compressor=cfg.squashfs_compressor,
            block_size=cfg.squashfs_block_size,
            processors=os.cpu_count() or 1,
            mem_mb=memory_cap_mb(cfg.squashfs_mem_fraction),
            machine=platform.machine(),
        )
        ctx.tools.run(
            argv,
            timeout=cfg.squashfs_timeout,
            stall_timeout=cfg.squashfs_stall_minutes * 60,
            log_path=paths.log("mksquashfs.log"),
            progress=ProgressReporter(SquashfsProgressParser()),
        )

        compressed = paths.squashfs_path.stat().st_size
        original = measure_tree(ctx.extract_dir, timeout=max(cfg.du_timeout, 300.0))
        if original:
            logger.info(
                "SquashFS: %.2f GiB -> %.2f GiB (%.0f%% of original)",
                original / GIB,
                compressed / GIB,
                100.0 * compressed / original,
            )
        else:
            logger.info("SquashFS: %.2f GiB", compressed / GIB)
        return state
