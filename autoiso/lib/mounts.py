from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional

from ..errors import MountViolation, SizeAnomaly

logger = logging.getLogger(__name__)

PROC_MOUNTS = "/proc/self/mounts"

# The directory is kept in the copy (it is a mount target inside the chroot)
# but everything below it is skipped.
VIRTUAL_DIRS = ("/dev", "/proc", "/sys", "/tmp", "/run", "/mnt", "/media")

CACHE_PATHS = (
    "/lost+found",
    "/.cache",
    "/var/cache",
    "/var/tmp",
    "/var/lib/docker",
    "/snap",
    "/swapfile",
)

# Copied as empty directories: packages and tools inside the chroot expect them.
KEEP_DIR_PATHS = VIRTUAL_DIRS + ("/var/cache", "/var/tmp", "/var/lib/docker", "/snap")

KALI_PATHS = (
    "/root/.cache",
    "/root/.local/share/Trash",
    "/opt/metasploit-framework/embedded/framework/.git",
)

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


@dataclass(frozen=True)
class MountPoint:
    path: str
    source_device: str
    fstype: str
    is_root: bool


def _unescape(field: str) -> str:
    # The kernel escapes space, tab, newline and backslash as \ooo.
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), field)


def _normalize(path: str) -> str:
    p = os.path.normpath(path)
    return "/" if p in ("", ".", "//") else p


def parse_mount_line(line: str) -> Optional[MountPoint]:
    fields = line.split()
    if len(fields) < 3:
        return None
    path = _normalize(_unescape(fields[1]))
    return MountPoint(
        path=path,
        source_device=_unescape(fields[0]),
        fstype=fields[2],
        is_root=path == "/",
    )


def list_mount_points(mounts_file: str = PROC_MOUNTS) -> Iterator[MountPoint]:
    """Yield the live mount table, one entry per line. Nothing is cached."""

    with open(mounts_file, encoding="utf-8", errors="replace") as f:
        for line in f:
            mp = parse_mount_line(line)
            if mp is not None:
                yield mp


def is_mount_point(path: str, mount_points: Optional[Iterable[MountPoint]] = None) -> bool:
    target = _normalize(path)
    mps = list_mount_points() if mount_points is None else mount_points
    return any(mp.path == target for mp in mps)


def is_strict_descendant(path: str, root: str) -> bool:
    p = _normalize(path)
    r = _normalize(root)
    if p == r:
        return False
    if r == "/":
        return True
    return p.startswith(r + "/")


def build_exclusion_set(
    work_dir: str,
    distribution: str = "",
    mount_points: Optional[Iterable[MountPoint]] = None,
) -> frozenset:
    """Paths that must never be copied into the staging tree."""

    excluded = set(VIRTUAL_DIRS) | set(CACHE_PATHS)
    if distribution == "kali":
        excluded |= set(KALI_PATHS)
    excluded.add(_normalize(os.path.abspath(work_dir)))

    mps = list_mount_points() if mount_points is None else mount_points
    for mp in mps:
        if not mp.is_root:
            excluded.add(mp.path)
    return frozenset(excluded)


def rsync_exclude_args(exclusions: Iterable[str]) -> List[str]:
    """Render an exclusion set as anchored rsync ``--exclude`` options."""

    args: List[str] = []
    for path in sorted(set(exclusions)):
        pattern = f"{path}/*" if path in KEEP_DIR_PATHS else path
        args.append(f"--exclude={pattern}")
    return args


def du_exclude_args(exclusions: Iterable[str]) -> List[str]:
    return [f"--exclude={p}" for p in sorted(set(exclusions))]


def foreign_mounts(staging_root: str, mount_points: Optional[Iterable[MountPoint]] = None) -> List[str]:
    mps = list_mount_points() if mount_points is None else mount_points
    return sorted({mp.path for mp in mps if is_strict_descendant(mp.path, staging_root)})


def verify_no_foreign_mounts(
    staging_root: str,
    mount_points: Optional[Iterable[MountPoint]] = None,
) -> None:
    """Raise MountViolation if anything is mounted below ``staging_root``.

    The staging root itself being a mount point is fine.
    """

    offenders = foreign_mounts(staging_root, mount_points)
    if offenders:
        logger.error("Mounted filesystems found inside %s:", staging_root)
        for path in offenders:
            logger.error("  %s", path)
        raise MountViolation(staging_root, offenders)
    logger.debug("No foreign mounts under %s", staging_root)


def validate_staging_size(
    staged_bytes: Optional[int],
    *,
    staging_root: str,
    estimate_bytes: int,
    max_reasonable_gb: float,
    ratio: float = 1.5,
) -> None:
    """Raise SizeAnomaly when the staged tree is far larger than planned.

    An unknown staged size (None) only logs a warning.
    """

    if staged_bytes is None:
        logger.warning("Could not measure %s; skipping size sanity check", staging_root)
        return

    limit = int(max_reasonable_gb * 1024 ** 3)
    if estimate_bytes > 0:
        limit = min(limit, int(estimate_bytes * ratio))
    if staged_bytes > limit:
        raise SizeAnomaly(staging_root, staged_bytes, limit)
    logger.info("Staged size %d bytes within limit %d", staged_bytes, limit)
