from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

DEFAULT_WORKDIR = "/tmp/autoiso-build"
WORKDIR_NAME = "autoiso-build"


@dataclass(frozen=True)
class BuildPaths:
    work_dir: Path

    @classmethod
    def from_argument(cls, root: str | None) -> "BuildPaths":
        """``autoiso /media/usb`` builds in ``/media/usb/autoiso-build``."""

        raw = Path(root) / WORKDIR_NAME if root else Path(DEFAULT_WORKDIR)
        return cls(work_dir=raw.expanduser().absolute())

    @property
    def extract_dir(self) -> Path:
        return self.work_dir / "extract"

    @property
    def cdroot_dir(self) -> Path:
        return self.work_dir / "cdroot"

    @property
    def isolinux_dir(self) -> Path:
        return self.cdroot_dir / "boot/isolinux"

    @property
    def live_dir(self) -> Path:
        return self.cdroot_dir / "live"

    @property
    def efi_dir(self) -> Path:
        return self.cdroot_dir / "EFI/boot"

    @property
    def squashfs_path(self) -> Path:
        return self.live_dir / "filesystem.squashfs"

    @property
    def logs_dir(self) -> Path:
        return self.work_dir / "logs"

    @property
    def checkpoints_dir(self) -> Path:
        return self.work_dir / ".checkpoints"

    @property
    def rsync_partial_dir(self) -> Path:
        return self.work_dir / ".rsync-partial"

    @property
    def space_analysis(self) -> Path:
        return self.work_dir / ".space_analysis"

    @property
    def checksums(self) -> Path:
        return self.work_dir / "checksums.txt"

    @property
    def final_iso_pointer(self) -> Path:
        return self.work_dir / ".final_iso_path"

    def log(self, name: str) -> Path:
        return self.logs_dir / name
