from __future__ import annotations

import logging

from ..build_ctx import BuildCtx
from ..build_state import BuildState, Stage
from ..lib.bootloader import copy_kernel_files, setup_grub_uefi, setup_isolinux
from ..lib.metadata import create_iso_metadata
from ..lib.space import measure_tree

logger = logging.getLogger(__name__)


class BootloaderStage:
    stage = Stage.BOOTLOADER

    def run(self, ctx: BuildCtx, state: BuildState) -> BuildState:
        paths = ctx.paths
        distro = state.distribution

        copy_kernel_files(paths.live_dir, roots=[paths.extract_dir, "/"], distribution=distro)

        bios = setup_isolinux(paths.cdroot_dir, distro)
        uefi = setup_grub_uefi(paths.cdroot_dir, distro)
        if not (bios or uefi):
            logger.warning("Neither ISOLINUX nor GRUB EFI is available; the ISO will not boot")
        elif not uefi:
            logger.warning("ISO will boot in BIOS mode only")

        try:
            create_iso_metadata(
                extract_dir=paths.extract_dir,
                cdroot=paths.cdroot_dir,
                distribution=distro,
                filesystem_size=measure_tree(ctx.extract_dir, timeout=max(ctx.cfg.du_timeout, 300.0)),
            )
        except OSError as e:
            logger.warning("Could not write ISO metadata: %s", e)
        return state
