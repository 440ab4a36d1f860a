from .stage_10_system_copy import SystemCopyStage
from .stage_20_post_copy_cleanup import PostCopyCleanupStage
from .stage_30_chroot_configure import ChrootConfigureStage
from .stage_40_squashfs import SquashfsStage
from .stage_50_bootloader import BootloaderStage
from .stage_60_iso_creation import IsoCreationStage

__all__ = [
    "SystemCopyStage",
    "PostCopyCleanupStage",
    "ChrootConfigureStage",
    "SquashfsStage",
    "BootloaderStage",
    "IsoCreationStage",
]
