from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Optional, Sequence

from .templates import configure_script
from .tool_runner import ToolResult, ToolRunner

logger = logging.getLogger(__name__)

SCRIPT_REL = "tmp/configure_system.sh"
CHROOT_LOG_REL = "tmp/chroot.log"


def chroot_cmd(
    tools: ToolRunner,
    target_root: str | Path,
    argv: Sequence[str],
    *,
    timeout: float,
    log_path: Optional[str | Path] = None,
) -> ToolResult:
    """Run a command inside target root."""

    return tools.run(["chroot", str(target_root), *argv], timeout=timeout, log_path=log_path)


def setup_chroot_network(target_root: str | Path) -> None:
    """Give the chroot working DNS and a hostname before apt runs in it."""

    root = Path(target_root)
    etc = root / "etc"
    etc.mkdir(parents=True, exist_ok=True)

    resolv = Path("/etc/resolv.conf")
    if resolv.exists():
        dst = etc / "resolv.conf"
        tmp = etc / "resolv.conf.tmp"
        # Follows the host symlink (systemd-resolved) and replaces the
        # staged one, which usually dangles inside the chroot.
        shutil.copyfile(resolv, tmp)
        if dst.is_symlink():
            dst.unlink()
        os.replace(tmp, dst)
        logger.debug("Copied DNS configuration into %s", dst)

    hosts = etc / "hosts"
    if not hosts.exists() and Path("/etc/hosts").exists():
        shutil.copyfile("/etc/hosts", hosts)

    hostname = etc / "hostname"
    if not hostname.exists():
        hostname.write_text("localhost\n", encoding="utf-8")


def write_configure_script(target_root: str | Path, distribution: str) -> Path:
    script = Path(target_root) / SCRIPT_REL
    script.parent.mkdir(parents=True, exist_ok=True)
    script.write_text(configure_script(distribution), encoding="utf-8")
    script.chmod(0o755)
    return script


def chroot_log_tail(target_root: str | Path, lines: int = 30) -> list[str]:
    log = Path(target_root) / CHROOT_LOG_REL
    if not log.exists():
        return []
    return log.read_text(encoding="utf-8", errors="replace").splitlines()[-lines:]
