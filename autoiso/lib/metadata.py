from __future__ import annotations

import logging
import subprocess
import time
from pathlib import Path
from typing import Optional

from .command import run_cmd
from .distro import display_name

logger = logging.getLogger(__name__)


def write_package_manifest(extract_dir: Path, dest: Path) -> bool:
    """``filesystem.manifest``: package name and version per line."""

    admindir = extract_dir / "var/lib/dpkg"
    if not admindir.is_dir():
        logger.warning("No dpkg database in %s; skipping package manifest", extract_dir)
        return False
    try:
        r = run_cmd(
            [
                "dpkg-query",
                f"--admindir={admindir}",
                "-W",
                "--showformat=${Package} ${Version}\\n",
            ],
            check=False,
            timeout=300,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning("dpkg-query failed: %s", e)
        return False
    if r.returncode != 0:
        logger.warning("dpkg-query exited with %s", r.returncode)
        return False
    dest.write_text(r.stdout, encoding="utf-8")
    return True


def create_iso_metadata(
    *,
    extract_dir: Path,
    cdroot: Path,
    distribution: str,
    filesystem_size: Optional[int],
) -> None:
    live = cdroot / "live"
    live.mkdir(parents=True, exist_ok=True)

    (live / "filesystem.size").write_text(f"{filesystem_size or 0}\n", encoding="utf-8")
    write_package_manifest(extract_dir, live / "filesystem.manifest")

    disk = cdroot / ".disk"
    disk.mkdir(parents=True, exist_ok=True)
    (disk / "info").write_text(
        f"{display_name(distribution)} Live CD - Built {time.strftime('%Y-%m-%d')}\n",
        encoding="utf-8",
    )
    (disk / "base_installable").touch()
    (disk / "cd_type").write_text("full_cd/single\n", encoding="utf-8")
    logger.info("Wrote ISO metadata under %s", cdroot)
