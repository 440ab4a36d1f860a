"""Pre-flight checks run before anything destructive happens."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Tuple

from .build_config import BuildConfig
from .errors import InsufficientSpace, ValidationError
from .lib.command import run_cmd
from .lib.distro import OS_RELEASE, SUPPORTED_IDS, detect_distribution
from .lib.env import BuildPaths
from .lib.kernel import find_kernel_files
from .lib.mounts import MountPoint, build_exclusion_set
from .lib.space import (
    check_available,
    estimate_source_size,
    plan_required_space,
    write_space_analysis,
)

logger = logging.getLogger(__name__)

# command -> package that provides it
REQUIRED_TOOLS = {
    "rsync": "rsync",
    "mksquashfs": "squashfs-tools",
    "xorriso": "xorriso",
    "chroot": "coreutils",
    "mount": "mount",
    "umount": "mount",
    "du": "coreutils",
    "dpkg-query": "dpkg",
}

DPKG_LOCKS = (
    "/var/lib/dpkg/lock",
    "/var/lib/dpkg/lock-frontend",
    "/var/cache/apt/archives/lock",
)


@dataclass
class ValidationReport:
    problems: List[str] = field(default_factory=list)
    hints: List[str] = field(default_factory=list)

    def add(self, problem: str, hint: Optional[str] = None) -> None:
        logger.error("Validation: %s", problem)
        self.problems.append(problem)
        if hint:
            self.hints.append(hint)

    def raise_if_failed(self) -> None:
        if not self.problems:
            return
        raise ValidationError("; ".join(self.problems), hint="\n".join(self.hints) or None)


def check_root(report: ValidationReport, geteuid: Callable[[], int] = os.geteuid) -> None:
    if geteuid() != 0:
        report.add("root privileges are required", "re-run with sudo")


def resolve_distribution(cfg: BuildConfig, report: ValidationReport, os_release: str = OS_RELEASE) -> str:
    if cfg.distribution_override:
        logger.info("Distribution forced by config: %s", cfg.distribution_override)
        return cfg.distribution_override
    try:
        info = detect_distribution(os_release)
    except (OSError, ValueError) as e:
        report.add(f"cannot detect distribution: {e}", f"check {os_release}")
        return ""
    logger.info("Detected distribution: %s %s", info.name, info.version)
    if not info.supported:
        if cfg.allow_unsupported:
            logger.warning("Unsupported distribution %s; continuing because allow_unsupported is set", info.id)
        else:
            report.add(
                f"unsupported distribution: {info.id}",
                f"supported: {', '.join(sorted(SUPPORTED_IDS))}; set distribution.allow_unsupported to try anyway",
            )
    return info.id


def check_tools(report: ValidationReport, which: Callable[[str], Optional[str]] = shutil.which) -> None:
    missing = {tool: pkg for tool, pkg in REQUIRED_TOOLS.items() if which(tool) is None}
    if missing:
        report.add(
            f"required tools are missing: {', '.join(sorted(missing))}",
            f"apt install {' '.join(sorted(set(missing.values())))}",
        )
    if which("isohybrid") is None:
        logger.info("isohybrid not found; optional (package syslinux-utils)")


def check_package_locks(report: ValidationReport, locks: Iterable[str] = DPKG_LOCKS) -> None:
    if shutil.which("fuser") is None:
        logger.debug("fuser not available; skipping package manager lock check")
        return
    for lock in locks:
        if not os.path.exists(lock):
            continue
        try:
            r = run_cmd(["fuser", lock], check=False, timeout=10)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Could not check %s: %s", lock, e)
            continue
        if r.returncode == 0:
            report.add(f"package manager is busy ({lock} is held)", "wait for apt/dpkg to finish")
            return


def check_kernel(report: ValidationReport, distribution: str, roots: Iterable[str] = ("/",)) -> None:
    vmlinuz, initrd = find_kernel_files(list(roots))
    if vmlinuz is None:
        pkg = "linux-image-amd64" if distribution in {"kali", "debian"} else "linux-generic"
        report.add("no kernel image found", f"apt install {pkg}")
    if initrd is None:
        report.add("no initrd image found", "update-initramfs -c -k all")


def check_space(
    cfg: BuildConfig,
    paths: BuildPaths,
    distribution: str,
    report: ValidationReport,
    mount_points: Optional[List[MountPoint]] = None,
) -> int:
    exclusions = build_exclusion_set(str(paths.work_dir), distribution, mount_points)
    estimate = estimate_source_size(exclusions, timeout=cfg.du_timeout, distribution=distribution)
    required = plan_required_space(estimate, min_space_gb=cfg.min_space_gb, distribution=distribution)
    try:
        available = check_available(str(paths.work_dir), required)
    except InsufficientSpace as e:
        report.add(str(e), e.hint)
        return estimate
    paths.work_dir.mkdir(parents=True, exist_ok=True)
    write_space_analysis(paths.space_analysis, source_estimate=estimate, required=required, available=available)
    return estimate


def validate_system(cfg: BuildConfig, paths: BuildPaths) -> Tuple[str, int]:
    """Run every pre-flight check; return (distribution, source size estimate).

    All problems are collected before ValidationError is raised, so one
    run reports everything that needs fixing.
    """

    report = ValidationReport()
    check_root(report)
    distribution = resolve_distribution(cfg, report)
    check_tools(report)
    check_package_locks(report)
    check_kernel(report, distribution)
    estimate = 0
    if not report.problems:
        estimate = check_space(cfg, paths, distribution, report)
    report.raise_if_failed()
    logger.info("System validation passed")
    return distribution, estimate


def validate_resume() -> None:
    """Tools may have been removed since the interrupted run."""

    report = ValidationReport()
    check_root(report)
    check_tools(report)
    report.raise_if_failed()
