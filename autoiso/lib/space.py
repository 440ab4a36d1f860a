from __future__ import annotations

import logging
import shutil
import subprocess
import time
from pathlib import Path
from typing import Iterable, Optional

from ..build_state import Stage
from ..errors import InsufficientSpace
from .command import run_cmd
from .mounts import du_exclude_args

logger = logging.getLogger(__name__)

GIB = 1024 ** 3

DEFAULT_ESTIMATE = 15 * GIB
DEFAULT_ESTIMATE_KALI = 20 * GIB
CACHE_ALLOWANCE = 2 * GIB

WORKING_SPACE = 3 * GIB
SAFETY_MARGIN = 5 * GIB

# (factor of source size, fixed overhead) per stage that writes data.
STAGE_SPACE = {
    Stage.SYSTEM_COPY: (1.1, 2 * GIB),
    Stage.SQUASHFS: (0.5, 1 * GIB),
    Stage.ISO_CREATION: (0.1, 2 * GIB),
}


def parse_int(text: Optional[str]) -> Optional[int]:
    """Parse a non-negative integer; anything else is unknown (None)."""

    if text is None:
        return None
    s = text.strip()
    if not s.isdigit():
        return None
    return int(s)


def first_field(output: str) -> Optional[int]:
    lines = [ln for ln in output.splitlines() if ln.strip()]
    if not lines:
        return None
    return parse_int(lines[-1].split()[0])


def fallback_estimate(distribution: str = "") -> int:
    return DEFAULT_ESTIMATE_KALI if distribution == "kali" else DEFAULT_ESTIMATE


def _du_kib(argv: list[str], timeout: float) -> Optional[int]:
    try:
        r = run_cmd(argv, check=False, timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning("du timed out after %.0fs", timeout)
        return None
    except OSError as e:
        logger.warning("du unavailable: %s", e)
        return None
    # du exits 1 for unreadable files but still prints a total.
    return first_field(r.stdout)


def used_bytes(path: str = "/") -> Optional[int]:
    try:
        usage = shutil.disk_usage(path)
    except OSError:
        return None
    return usage.used


def estimate_source_size(
    exclusions: Iterable[str],
    *,
    timeout: float = 60.0,
    distribution: str = "",
    root: str = "/",
) -> int:
    """Bytes the system copy is expected to take.

    Tries ``du`` under a timeout, then filesystem usage minus a cache
    allowance, then a fixed conservative estimate.
    """

    kib = _du_kib(["du", "-skx", *du_exclude_args(exclusions), root], timeout)
    if kib:
        logger.info("Source size (du): %d bytes", kib * 1024)
        return kib * 1024

    used = used_bytes(root)
    if used:
        estimate = used - CACHE_ALLOWANCE if used > CACHE_ALLOWANCE else used
        logger.info("Source size (filesystem usage): %d bytes", estimate)
        return estimate

    estimate = fallback_estimate(distribution)
    logger.warning("Could not measure source size; assuming %d bytes", estimate)
    return estimate


def measure_tree(path: str, *, timeout: float = 300.0) -> Optional[int]:
    """Apparent size of a tree in bytes, or None if unknown."""

    kib = _du_kib(["du", "-skx", path], timeout)
    return kib * 1024 if kib is not None else None


def required_space(stage: Stage, source_estimate: int) -> int:
    factor, overhead = STAGE_SPACE.get(stage, (0.0, 0))
    if factor == 0 and overhead == 0:
        return 0
    return int(source_estimate * factor) + overhead


def plan_required_space(source_estimate: int, *, min_space_gb: int = 20, distribution: str = "") -> int:
    estimate = source_estimate
    if distribution == "kali":
        # Kali tool sets grow noticeably during chroot configuration.
        estimate += 5 * GIB
    total = sum(required_space(s, estimate) for s in Stage) + WORKING_SPACE + SAFETY_MARGIN
    return max(total, min_space_gb * GIB)


def available_space(path: str) -> Optional[int]:
    """Free bytes on the filesystem holding ``path`` (nearest existing parent)."""

    p = Path(path)
    while not p.exists() and p != p.parent:
        p = p.parent
    try:
        return shutil.disk_usage(str(p)).free
    except OSError:
        return None


def check_available(path: str, required: int) -> int:
    """Raise InsufficientSpace unless ``available >= required``."""

    available = available_space(path)
    if available is None:
        raise InsufficientSpace(path, required, 0)
    if available < required:
        raise InsufficientSpace(path, required, available)
    logger.info("Space at %s: %.1f GiB available, %.1f GiB required", path, available / GIB, required / GIB)
    return available


def write_space_analysis(path: Path, *, source_estimate: int, required: int, available: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        f"SYSTEM_SIZE_BYTES={source_estimate}\n"
        f"REQUIRED_SPACE_BYTES={required}\n"
        f"AVAILABLE_SPACE_BYTES={available}\n"
        f"CALCULATION_TIME={int(time.time())}\n",
        encoding="utf-8",
    )
