from __future__ import annotations

import hashlib
import logging
import shutil
import time
from pathlib import Path
from typing import Dict, List, Optional

from ..build_ctx import BuildCtx
from ..build_state import BuildState, Stage
from ..errors import ValidationError
from ..lib.bootloader import ISOHYBRID_MBR
from ..lib.distro import iso_label
from ..lib.progress import ProgressReporter, XorrisoProgressParser
from ..lib.space import GIB, check_available, fallback_estimate, required_space

logger = logging.getLogger(__name__)

ISOLINUX_BIN_REL = "boot/isolinux/isolinux.bin"
EFI_LOADER_REL = "EFI/boot/bootx64.efi"


def volume_id(distribution: str, when: Optional[time.struct_time] = None) -> str:
    label = iso_label(distribution).capitalize()
    # ISO 9660 volume identifiers are at most 32 characters.
    return f"{label}_Live_{time.strftime('%Y%m%d', when or time.localtime())}"[:32]


def iso_filename(distribution: str, when: Optional[time.struct_time] = None) -> str:
    return f"{iso_label(distribution)}-live-{time.strftime('%Y%m%d-%H%M', when or time.localtime())}.iso"


def remove_stale_isos(work_dir: Path) -> List[Path]:
    """Delete images left by earlier attempts; their names carry a different timestamp."""

    removed = sorted(work_dir.glob("*-live-*.iso"))
    for old in removed:
        logger.info("Removing previous image %s", old)
        old.unlink(missing_ok=True)
    return removed


def xorriso_argv(
    cdroot: Path,
    iso_path: Path,
    *,
    volid: str,
    bios: bool,
    uefi: bool,
    mbr_template: Optional[str] = ISOHYBRID_MBR,
) -> List[str]:
    argv = [
        "xorriso",
        "-as",
        "mkisofs",
        "-iso-level",
        "3",
        "-full-iso9660-filenames",
        "-volid",
        volid,
        "-joliet",
        "-joliet-long",
        "-rational-rock",
    ]
    if bios:
        argv += [
            "-eltorito-boot",
            ISOLINUX_BIN_REL,
            "-eltorito-catalog",
            "boot/isolinux/boot.cat",
            "-no-emul-boot",
            "-boot-load-size",
            "4",
            "-boot-info-table",
        ]
        if mbr_template:
            argv += ["-isohybrid-mbr", mbr_template]
    if uefi:
        if bios:
            argv.append("-eltorito-alt-boot")
        argv += ["-e", EFI_LOADER_REL, "-no-emul-boot"]
        if bios and mbr_template:
            argv.append("-isohybrid-gpt-basdat")
    argv += ["-output", str(iso_path), str(cdroot)]
    return argv


def file_digests(path: Path, *, chunk_size: int = 4 * 1024 * 1024) -> Dict[str, str]:
    md5 = hashlib.md5()
    sha256 = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            md5.update(chunk)
            sha256.update(chunk)
    return {"MD5": md5.hexdigest(), "SHA256": sha256.hexdigest()}


def write_checksums(iso_path: Path, dest: Path) -> Dict[str, str]:
    digests = file_digests(iso_path)
    dest.write_text(
        "".join(f"{algo}: {value}  {iso_path.name}\n" for algo, value in digests.items()),
        encoding="utf-8",
    )
    return digests


class IsoCreationStage:
    stage = Stage.ISO_CREATION

    def run(self, ctx: BuildCtx, state: BuildState) -> BuildState:
        paths = ctx.paths
        remove_stale_isos(paths.work_dir)
        paths.final_iso_pointer.unlink(missing_ok=True)
        estimate = state.source_estimate or fallback_estimate(state.distribution)
        check_available(str(paths.work_dir), required_space(self.stage, estimate))

        cdroot = paths.cdroot_dir
        bios = (cdroot / ISOLINUX_BIN_REL).is_file()
        uefi = (cdroot / EFI_LOADER_REL).is_file()
        if not (bios or uefi):
            raise ValidationError(
                "No boot loader in the ISO tree",
                hint="apt install isolinux syslinux-common grub-efi-amd64-bin",
            )

        mbr: Optional[str] = ISOHYBRID_MBR if Path(ISOHYBRID_MBR).is_file() else None
        iso_path = paths.work_dir / iso_filename(state.distribution)

        ctx.tools.run(
            xorriso_argv(cdroot, iso_path, volid=volume_id(state.distribution), bios=bios, uefi=uefi, mbr_template=mbr),
            timeout=ctx.cfg.iso_timeout,
            log_path=paths.log("xorriso.log"),
            progress=ProgressReporter(XorrisoProgressParser()),
        )

        if bios and mbr is None:
            if shutil.which("isohybrid"):
                argv = ["isohybrid"]
                if uefi:
                    argv.append("--uefi")
                ctx.tools.run([*argv, str(iso_path)], timeout=300, log_path=paths.log("isohybrid.log"))
            else:
                logger.warning("No isohybrid MBR available; the ISO may not boot from USB")

        digests = write_checksums(iso_path, paths.checksums)
        paths.final_iso_pointer.write_text(f"{iso_path}\n", encoding="utf-8")

        logger.info("ISO created: %s (%.2f GiB)", iso_path, iso_path.stat().st_size / GIB)
        logger.info("SHA256: %s", digests["SHA256"])
        return state
