from __future__ import annotations

import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

OS_RELEASE = "/etc/os-release"

# Booted by casper (Ubuntu family) or live-boot (Debian family).
CASPER_IDS = {"ubuntu", "linuxmint", "pop", "elementary", "zorin"}
LIVE_BOOT_IDS = {"debian", "kali", "parrot"}
SUPPORTED_IDS = CASPER_IDS | LIVE_BOOT_IDS

DISPLAY_NAMES = {
    "ubuntu": "Ubuntu",
    "debian": "Debian",
    "kali": "Kali Linux",
    "linuxmint": "Linux Mint",
    "pop": "Pop!_OS",
    "elementary": "elementary OS",
    "zorin": "Zorin OS",
    "parrot": "Parrot OS",
}


@dataclass(frozen=True)
class DistroInfo:
    id: str
    name: str
    version: str = ""

    @property
    def supported(self) -> bool:
        return self.id in SUPPORTED_IDS


def parse_os_release(text: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, raw = line.partition("=")
        try:
            parts = shlex.split(raw)
        except ValueError:
            parts = [raw.strip("\"'")]
        values[key.strip()] = parts[0] if parts else ""
    return values


def detect_distribution(path: str = OS_RELEASE) -> DistroInfo:
    values = parse_os_release(Path(path).read_text(encoding="utf-8"))
    distro_id = values.get("ID", "").lower()
    if not distro_id:
        raise ValueError(f"{path} has no ID")
    return DistroInfo(
        id=distro_id,
        name=values.get("NAME", distro_id),
        version=values.get("VERSION", ""),
    )


def uses_casper(distribution: str) -> bool:
    return distribution in CASPER_IDS or distribution not in LIVE_BOOT_IDS


def display_name(distribution: str) -> str:
    return DISPLAY_NAMES.get(distribution, distribution.capitalize() or "Linux")


def iso_label(distribution: str) -> str:
    return (distribution or "linux").lower()
