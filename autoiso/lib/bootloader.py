from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Optional, Sequence

from ..errors import ValidationError
from .kernel import find_kernel_files
from .templates import grub_config, isolinux_config

logger = logging.getLogger(__name__)

ISOLINUX_FILES = (
    "/usr/lib/ISOLINUX/isolinux.bin",
    "/usr/lib/syslinux/modules/bios/ldlinux.c32",
    "/usr/lib/syslinux/modules/bios/libcom32.c32",
    "/usr/lib/syslinux/modules/bios/libutil.c32",
    "/usr/lib/syslinux/modules/bios/menu.c32",
    "/usr/lib/syslinux/modules/bios/vesamenu.c32",
)

ISOHYBRID_MBR = "/usr/lib/ISOLINUX/isohdpfx.bin"

GRUB_EFI_SOURCES = (
    "/usr/lib/grub/x86_64-efi/grubx64.efi",
    "/usr/lib/grub/x86_64-efi-signed/grubx64.efi.signed",
    "/usr/lib/grub/x86_64-efi-signed/grubx64.efi",
    "/boot/efi/EFI/ubuntu/grubx64.efi",
    "/boot/efi/EFI/debian/grubx64.efi",
    "/boot/efi/EFI/kali/grubx64.efi",
)


def _first_existing(paths: Sequence[str]) -> Optional[Path]:
    for p in paths:
        if Path(p).is_file():
            return Path(p)
    return None


def copy_kernel_files(
    live_dir: Path,
    *,
    roots: Sequence[str | Path],
    distribution: str = "",
    kernel_version: Optional[str] = None,
) -> None:
    """Copy vmlinuz and initrd.img into the ISO's live directory."""

    vmlinuz, initrd = find_kernel_files(roots, kernel_version)
    if vmlinuz is None:
        pkg = "linux-image-amd64" if distribution in {"kali", "debian"} else "linux-generic"
        raise ValidationError("No kernel image found", hint=f"apt install {pkg}")
    if initrd is None:
        raise ValidationError("No initrd image found", hint="update-initramfs -c -k all")

    live_dir.mkdir(parents=True, exist_ok=True)
    for src, name in ((vmlinuz, "vmlinuz"), (initrd, "initrd.img")):
        dst = live_dir / name
        shutil.copyfile(src, dst)
        dst.chmod(0o644)
        logger.info("Copied %s -> %s", src, dst)


def setup_isolinux(cdroot: Path, distribution: str, *, sources: Sequence[str] = ISOLINUX_FILES) -> bool:
    """BIOS boot files and menu. Returns False if isolinux.bin is missing."""

    isolinux_dir = cdroot / "boot/isolinux"
    isolinux_dir.mkdir(parents=True, exist_ok=True)
    for src in sources:
        if Path(src).is_file():
            shutil.copy2(src, isolinux_dir)
        else:
            logger.debug("ISOLINUX file not found: %s", src)
    (isolinux_dir / "isolinux.cfg").write_text(isolinux_config(distribution), encoding="utf-8")

    if not (isolinux_dir / "isolinux.bin").exists():
        logger.warning("isolinux.bin not found; install the isolinux package for BIOS boot")
        return False
    return True


def setup_grub_uefi(cdroot: Path, distribution: str, *, sources: Sequence[str] = GRUB_EFI_SOURCES) -> bool:
    """UEFI loader and grub.cfg. Returns False when no GRUB EFI binary exists."""

    grub_dir = cdroot / "boot/grub"
    grub_dir.mkdir(parents=True, exist_ok=True)
    (grub_dir / "grub.cfg").write_text(grub_config(distribution), encoding="utf-8")

    efi_dir = cdroot / "EFI/boot"
    efi_dir.mkdir(parents=True, exist_ok=True)
    src = _first_existing(sources)
    if src is None:
        logger.warning("GRUB EFI not found - UEFI boot may not work")
        return False
    shutil.copyfile(src, efi_dir / "bootx64.efi")
    # Prebuilt images look for their config next to themselves.
    (efi_dir / "grub.cfg").write_text(grub_config(distribution), encoding="utf-8")
    logger.info("Installed GRUB EFI from %s", src)
    return True
