from __future__ import annotations

import contextlib
import logging
import shutil
import signal
import subprocess
import time
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional

from .lib.command import run_cmd
from .lib.mounts import MountPoint, foreign_mounts, is_mount_point, list_mount_points

logger = logging.getLogger(__name__)

# (fstype, source, path relative to the chroot root), mounted in this order.
CHROOT_MOUNTS = (
    ("proc", "proc", "proc"),
    ("sysfs", "sysfs", "sys"),
    ("devtmpfs", "udev", "dev"),
    ("devpts", "devpts", "dev/pts"),
)

MountTable = Callable[[], Iterable[MountPoint]]


class ScopedMount:
    """A mount registered with the coordinator; released on exit of ``with``."""

    def __init__(self, coordinator: "CleanupCoordinator", fstype: str, source: str, target: str) -> None:
        self.coordinator = coordinator
        self.fstype = fstype
        self.source = source
        self.target = target
        self.released = False

    def release(self) -> bool:
        """Unmount; safe to call repeatedly. Returns True once unmounted."""

        if self.released:
            return True
        if self.coordinator.unmount(self.target):
            self.released = True
            self.coordinator._mount_released(self)
        return self.released

    def __enter__(self) -> "ScopedMount":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"ScopedMount({self.fstype} {self.source} -> {self.target})"


class CleanupCoordinator:
    """Tracks every resource the build acquires and releases them all.

    ``run_all`` is called from the top-level error handler, the signal path and
    normal exit; it is idempotent and never raises.
    """

    def __init__(
        self,
        *,
        umount_retries: int = 3,
        retry_delay: float = 1.0,
        kill_grace: float = 10.0,
        mount_table: MountTable = list_mount_points,
        on_mounts_changed: Optional[Callable[[bool], None]] = None,
    ) -> None:
        self.umount_retries = umount_retries
        self.retry_delay = retry_delay
        self.kill_grace = kill_grace
        self.mount_table = mount_table
        self.on_mounts_changed = on_mounts_changed
        self._mounts: List[ScopedMount] = []
        self._processes: List[subprocess.Popen] = []
        self._temp_paths: List[Path] = []
        self.running = False

    # -- mounts -------------------------------------------------------------

    @property
    def mounts_active(self) -> bool:
        return any(not m.released for m in self._mounts)

    def acquire_mount(self, fstype: str, source: str, target: str | Path) -> ScopedMount:
        target_s = str(target)
        Path(target_s).mkdir(parents=True, exist_ok=True)
        scoped = ScopedMount(self, fstype, source, target_s)
        if is_mount_point(target_s, self.mount_table()):
            logger.warning("%s is already mounted; taking ownership", target_s)
        else:
            run_cmd(["mount", "-t", fstype, source, target_s])
            logger.debug("Mounted %s (%s) at %s", source, fstype, target_s)
        self._mounts.append(scoped)
        self._notify()
        return scoped

    @contextlib.contextmanager
    def mount_virtual_filesystems(self, root: str | Path) -> Iterator[List[ScopedMount]]:
        """Mount proc, sys, dev and dev/pts under ``root`` for the block's duration."""

        with contextlib.ExitStack() as stack:
            acquired: List[ScopedMount] = []
            for fstype, source, rel in CHROOT_MOUNTS:
                m = stack.enter_context(self.acquire_mount(fstype, source, Path(root) / rel))
                acquired.append(m)
            # ExitStack releases in reverse order: dev/pts before dev.
            yield acquired

    def adopt_stale_mounts(self, root: str | Path) -> List[ScopedMount]:
        """Register mounts a crashed run left below ``root`` so they get released."""

        adopted: List[ScopedMount] = []
        known = {m.target for m in self._mounts if not m.released}
        # Shallowest first; run_all releases in reverse, so deepest go first.
        for path in sorted(foreign_mounts(str(root), self.mount_table()), key=lambda p: p.count("/")):
            if path in known:
                continue
            logger.warning("Adopting stale mount %s", path)
            scoped = ScopedMount(self, "unknown", "stale", path)
            self._mounts.append(scoped)
            adopted.append(scoped)
        if adopted:
            self._notify()
        return adopted

    def unmount(self, target: str) -> bool:
        """Graceful unmount with retries, then force, then lazy detach."""

        if not is_mount_point(target, self.mount_table()):
            return True
        for attempt in range(1, self.umount_retries + 1):
            if self._umount(["umount", target]):
                logger.debug("Unmounted %s", target)
                return True
            logger.debug("umount %s failed (attempt %d/%d)", target, attempt, self.umount_retries)
            time.sleep(self.retry_delay * attempt)
        if self._umount(["umount", "-f", target]):
            logger.warning("Force-unmounted %s", target)
            return True
        if self._umount(["umount", "-l", target]):
            logger.warning("Lazily detached %s", target)
            return True
        logger.error("Could not unmount %s", target)
        return False

    def _umount(self, argv: List[str]) -> bool:
        try:
            return run_cmd(argv, check=False, timeout=60).returncode == 0
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("%s: %s", " ".join(argv), e)
            return False

    def _mount_released(self, scoped: ScopedMount) -> None:
        self._notify()

    def _notify(self) -> None:
        if self.on_mounts_changed is None:
            return
        try:
            self.on_mounts_changed(self.mounts_active)
        except Exception:
            logger.exception("mounts listener failed")

    # -- processes and temp paths ------------------------------------------

    def register_process(self, proc: subprocess.Popen) -> None:
        if proc not in self._processes:
            self._processes.append(proc)

    def forget_process(self, proc: subprocess.Popen) -> None:
        if proc in self._processes:
            self._processes.remove(proc)

    def register_temp_path(self, path: str | Path) -> Path:
        p = Path(path)
        if p not in self._temp_paths:
            self._temp_paths.append(p)
        return p

    def _terminate(self, proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        logger.info("Stopping helper process %s", proc.pid)
        proc.send_signal(signal.SIGTERM)
        try:
            proc.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            logger.warning("Helper process %s ignored SIGTERM; killing", proc.pid)
            proc.kill()
            proc.wait(timeout=self.kill_grace)

    def _remove_temp(self, path: Path) -> bool:
        if path.is_dir() and not path.is_symlink():
            if foreign_mounts(str(path), self.mount_table()):
                logger.error("Not removing %s: filesystems are still mounted inside it", path)
                return False
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            path.unlink()
        return True

    # -- teardown -----------------------------------------------------------

    def run_all(self) -> None:
        """Release everything. Idempotent; never raises."""

        if self.running:
            return
        self.running = True
        try:
            for proc in list(self._processes):
                try:
                    self._terminate(proc)
                    self._processes.remove(proc)
                except Exception:
                    logger.exception("Failed to stop process %s", getattr(proc, "pid", "?"))

            for scoped in reversed(self._mounts):
                try:
                    scoped.release()
                except Exception:
                    logger.exception("Failed to release %r", scoped)
            self._mounts = [m for m in self._mounts if not m.released]

            for path in list(self._temp_paths):
                try:
                    if self._remove_temp(path):
                        self._temp_paths.remove(path)
                except Exception:
                    logger.exception("Failed to remove %s", path)

            self._notify()
        except Exception:
            logger.exception("Cleanup failed")
        finally:
            self.running = False
