from __future__ import annotations

import glob
import logging
import os
import platform
import re
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


def _version_key(path: str) -> List[object]:
    # Natural sort, like ``sort -V``.
    return [int(t) if t.isdigit() else t for t in re.split(r"(\d+)", os.path.basename(path))]


def kernel_patterns(kind: str, kernel_version: str) -> List[str]:
    """Candidate locations, most preferred first. ``kind`` is vmlinuz or initrd.img."""

    return [
        f"boot/{kind}-{kernel_version}",
        f"boot/{kind}",
        kind,
        f"boot/{kind}-*-amd64",
        f"boot/{kind}-*-generic",
        f"boot/{kind}-*-kali*",
        f"boot/{kind}-*",
    ]


def find_file(root: str | Path, kind: str, kernel_version: Optional[str] = None) -> Optional[Path]:
    version = kernel_version or platform.release()
    for pattern in kernel_patterns(kind, version):
        full = os.path.join(str(root), pattern)
        if "*" in pattern:
            matches = sorted((m for m in glob.glob(full) if os.path.isfile(m)), key=_version_key)
            if matches:
                return Path(matches[-1])
        elif os.path.isfile(full):
            return Path(full)
    return None


def find_kernel_files(
    roots: Sequence[str | Path],
    kernel_version: Optional[str] = None,
) -> Tuple[Optional[Path], Optional[Path]]:
    """Return (vmlinuz, initrd) from the first root that has each."""

    vmlinuz = initrd = None
    for root in roots:
        vmlinuz = vmlinuz or find_file(root, "vmlinuz", kernel_version)
        initrd = initrd or find_file(root, "initrd.img", kernel_version)
    logger.debug("Kernel files: vmlinuz=%s initrd=%s", vmlinuz, initrd)
    return vmlinuz, initrd
