from __future__ import annotations

import glob
import logging
import os
import shutil
from pathlib import Path
from typing import List

from ..build_ctx import BuildCtx
from ..build_state import BuildState, Stage
from ..lib.mounts import is_strict_descendant, verify_no_foreign_mounts

logger = logging.getLogger(__name__)

# Relative to the staged root.
SCRUB_PATTERNS = (
    "var/cache/apt/archives/*.deb",
    "var/cache/apt/*.bin",
    "var/lib/apt/lists/*_*",
    "var/log/*.log",
    "var/log/*.gz",
    "var/log/*.[0-9]",
    "tmp/*",
    "var/tmp/*",
    "etc/ssh/ssh_host_*",
    "root/.ssh",
    "root/.bash_history",
    "var/lib/dbus/machine-id",
)

KALI_SCRUB_PATTERNS = (
    "root/.zsh_history",
    "root/.cache/mozilla",
    "root/.cache/chromium",
    "root/.msf4/logs",
    "var/lib/postgresql/*/main/pg_log/*",
)

# Emptied rather than removed; systemd regenerates it on first boot.
TRUNCATE_FILES = ("etc/machine-id",)


def scrub_patterns(distribution: str) -> List[str]:
    patterns = list(SCRUB_PATTERNS)
    if distribution == "kali":
        patterns += KALI_SCRUB_PATTERNS
    return patterns


def remove_path(root: str, path: str) -> bool:
    """Remove ``path`` below ``root`` without following symlinks out of it."""

    if not is_strict_descendant(os.path.abspath(path), root):
        logger.warning("Refusing to remove %s outside %s", path, root)
        return False
    if os.path.islink(path) or os.path.isfile(path):
        os.unlink(path)
    elif os.path.isdir(path):
        shutil.rmtree(path)
    else:
        return False
    return True


def scrub_tree(root: str, distribution: str = "") -> int:
    removed = 0
    for pattern in scrub_patterns(distribution):
        for path in sorted(glob.glob(os.path.join(root, pattern))):
            try:
                if remove_path(root, path):
                    removed += 1
            except OSError as e:
                logger.warning("Could not remove %s: %s", path, e)

    for rel in TRUNCATE_FILES:
        p = Path(root) / rel
        if p.is_file() and not p.is_symlink():
            p.write_text("", encoding="utf-8")
    return removed


class PostCopyCleanupStage:
    stage = Stage.POST_COPY_CLEANUP

    def run(self, ctx: BuildCtx, state: BuildState) -> BuildState:
        # Removal below a mount would delete host data.
        verify_no_foreign_mounts(ctx.extract_dir, ctx.mount_table())
        removed = scrub_tree(ctx.extract_dir, state.distribution)
        logger.info("Removed %d host-specific paths from the staged tree", removed)
        return state
