from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    return raw.get(name) or {}


@dataclass(frozen=True)
class BuildConfig:
    raw: Dict[str, Any] = field(default_factory=dict)

    # -- timeouts (seconds) -------------------------------------------------

    @property
    def copy_timeout(self) -> float:
        return float(_section(self.raw, "timeouts").get("copy") or 3 * 3600)

    @property
    def chroot_timeout(self) -> float:
        return float(_section(self.raw, "timeouts").get("chroot") or 3600)

    @property
    def squashfs_timeout(self) -> float:
        return float(_section(self.raw, "timeouts").get("squashfs") or 3600)

    @property
    def iso_timeout(self) -> float:
        return float(_section(self.raw, "timeouts").get("iso") or 1800)

    @property
    def du_timeout(self) -> float:
        return float(_section(self.raw, "timeouts").get("du") or 60)

    @property
    def kill_grace(self) -> float:
        return float(_section(self.raw, "timeouts").get("kill_grace") or 10)

    # -- squashfs -----------------------------------------------------------

    @property
    def squashfs_compressor(self) -> str:
        return str(_section(self.raw, "squashfs").get("compressor") or "xz")

    @property
    def squashfs_block_size(self) -> str:
        return str(_section(self.raw, "squashfs").get("block_size") or "1M")

    @property
    def squashfs_mem_fraction(self) -> float:
        return float(_section(self.raw, "squashfs").get("mem_fraction") or 0.5)

    @property
    def squashfs_stall_minutes(self) -> float:
        return float(_section(self.raw, "squashfs").get("stall_minutes") or 10)

    # -- space and safety ---------------------------------------------------

    @property
    def min_space_gb(self) -> int:
        return int(_section(self.raw, "space").get("min_gb") or 20)

    @property
    def staging_size_ratio(self) -> float:
        return float(_section(self.raw, "space").get("staging_ratio") or 1.5)

    @property
    def max_staging_gb(self) -> float:
        return float(_section(self.raw, "space").get("max_staging_gb") or 500)

    @property
    def umount_retries(self) -> int:
        return int(_section(self.raw, "mounts").get("umount_retries") or 3)

    # -- distribution -------------------------------------------------------

    @property
    def allow_unsupported(self) -> bool:
        return bool(_section(self.raw, "distribution").get("allow_unsupported", False))

    @property
    def distribution_override(self) -> Optional[str]:
        v = _section(self.raw, "distribution").get("id")
        return str(v) if v else None


def load_build_config(path: Optional[str]) -> BuildConfig:
    """Load the optional YAML build config; no path means all defaults."""

    if path is None:
        return BuildConfig()

    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(path)

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ValueError("build config must be YAML")

    raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{p.name} must contain a mapping/object")

    return BuildConfig(raw=raw)
