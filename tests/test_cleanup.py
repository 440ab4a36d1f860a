"""Tests for CleanupCoordinator with mount/umount substituted."""

import signal
import subprocess

import pytest

from autoiso import cleanup
from autoiso.cleanup import CleanupCoordinator
from autoiso.errors import BuildInterrupted
from autoiso.lib.command import CmdResult
from conftest import FakeMountTable


class FakeMountCommands:
    """Records mount/umount calls against a FakeMountTable."""

    def __init__(self, table: FakeMountTable) -> None:
        self.table = table
        self.calls = []
        # target -> umount flags that succeed ("" is a plain umount)
        self.stuck = {}

    def __call__(self, argv, check=True, timeout=None, **kwargs):
        argv = list(argv)
        self.calls.append(argv)
        target = argv[-1]
        if argv[0] == "mount":
            self.table.mounted.add(target)
            return CmdResult(argv, 0, "", "")
        flag = argv[1] if len(argv) == 3 else ""
        allowed = self.stuck.get(target)
        if allowed is not None and flag not in allowed:
            return CmdResult(argv, 32, "", "target is busy")
        self.table.mounted.discard(target)
        return CmdResult(argv, 0, "", "")

    def umounts(self):
        return [c for c in self.calls if c[0] == "umount"]


@pytest.fixture
def fake_cmds(monkeypatch, mount_table):
    fake = FakeMountCommands(mount_table)
    monkeypatch.setattr(cleanup, "run_cmd", fake)
    return fake


@pytest.fixture
def coordinator(mount_table) -> CleanupCoordinator:
    return CleanupCoordinator(retry_delay=0, kill_grace=1, mount_table=mount_table)


class TestScopedMounts:
    """Tests for mount acquisition and release."""

    def test_virtual_filesystems_mounted_and_released(self, coordinator, fake_cmds, mount_table, tmp_path):
        """The four chroot mounts go up in order and come down in reverse."""
        root = tmp_path / "extract"
        with coordinator.mount_virtual_filesystems(root):
            assert coordinator.mounts_active
            assert mount_table.mounted == {str(root / p) for p in ("proc", "sys", "dev", "dev/pts")}
        assert not coordinator.mounts_active
        assert not mount_table.mounted
        released = [c[-1] for c in fake_cmds.umounts()]
        assert released == [str(root / p) for p in ("dev/pts", "dev", "sys", "proc")]

    def test_released_on_exception(self, coordinator, fake_cmds, mount_table, tmp_path):
        """An error inside the block still unmounts everything."""
        with pytest.raises(RuntimeError):
            with coordinator.mount_virtual_filesystems(tmp_path / "extract"):
                raise RuntimeError("chroot failed")
        assert not mount_table.mounted

    def test_existing_mount_adopted(self, coordinator, fake_cmds, mount_table, tmp_path):
        """A target that is already mounted is not mounted twice."""
        target = str(tmp_path / "extract" / "proc")
        mount_table.mounted.add(target)
        scoped = coordinator.acquire_mount("proc", "proc", target)
        assert not [c for c in fake_cmds.calls if c[0] == "mount"]
        assert scoped.release()
        assert target not in mount_table.mounted

    def test_release_idempotent(self, coordinator, fake_cmds, tmp_path):
        """Releasing twice issues a single umount."""
        scoped = coordinator.acquire_mount("proc", "proc", tmp_path / "p")
        assert scoped.release()
        assert scoped.release()
        assert len(fake_cmds.umounts()) == 1


class TestUnmountEscalation:
    """Tests for retry, force and lazy unmount."""

    def test_lazy_after_retries_and_force(self, coordinator, fake_cmds, mount_table):
        """A busy mount is retried, forced, then lazily detached."""
        mount_table.mounted.add("/w/extract/dev")
        fake_cmds.stuck["/w/extract/dev"] = {"-l"}
        assert coordinator.unmount("/w/extract/dev")
        assert fake_cmds.umounts() == [
            ["umount", "/w/extract/dev"],
            ["umount", "/w/extract/dev"],
            ["umount", "/w/extract/dev"],
            ["umount", "-f", "/w/extract/dev"],
            ["umount", "-l", "/w/extract/dev"],
        ]

    def test_gives_up(self, coordinator, fake_cmds, mount_table):
        """If nothing works the mount is reported as still present."""
        mount_table.mounted.add("/w/x")
        fake_cmds.stuck["/w/x"] = set()
        assert coordinator.unmount("/w/x") is False
        assert "/w/x" in mount_table.mounted

    def test_not_mounted_is_success(self, coordinator, fake_cmds):
        """Unmounting something that is not mounted is a no-op."""
        assert coordinator.unmount("/w/none")
        assert fake_cmds.calls == []


class TestRunAll:
    """Tests for run_all."""

    def test_idempotent(self, coordinator, fake_cmds, mount_table, tmp_path):
        """A second run_all finds nothing left to do."""
        coordinator.acquire_mount("proc", "proc", tmp_path / "extract" / "proc")
        scratch = tmp_path / "scratch"
        scratch.mkdir()
        (scratch / "f").write_text("x", encoding="utf-8")
        coordinator.register_temp_path(scratch)

        coordinator.run_all()
        coordinator.run_all()

        assert len(fake_cmds.umounts()) == 1
        assert not mount_table.mounted
        assert not scratch.exists()

    def test_refuses_to_remove_tree_with_mounts(self, coordinator, fake_cmds, mount_table, tmp_path):
        """A temp dir with something mounted inside is left alone."""
        scratch = tmp_path / "scratch"
        (scratch / "proc").mkdir(parents=True)
        mount_table.mounted.add(str(scratch / "proc"))
        coordinator.register_temp_path(scratch)
        coordinator.run_all()
        assert scratch.exists()

    def test_stale_mounts_released_deepest_first(self, coordinator, fake_cmds, mount_table):
        """Mounts left by a crashed run are adopted and released child-first."""
        for p in ("/w/extract/proc", "/w/extract/dev", "/w/extract/dev/pts"):
            mount_table.mounted.add(p)
        adopted = coordinator.adopt_stale_mounts("/w/extract")
        assert len(adopted) == 3
        coordinator.run_all()
        order = [c[-1] for c in fake_cmds.umounts()]
        assert order.index("/w/extract/dev/pts") < order.index("/w/extract/dev")
        assert not mount_table.mounted

    def test_terminates_registered_process(self, coordinator):
        """Registered helper processes are stopped."""
        proc = subprocess.Popen(["sleep", "30"])
        coordinator.register_process(proc)
        coordinator.run_all()
        assert proc.poll() is not None

    def test_listener_notified(self, fake_cmds, mount_table, tmp_path):
        """The mounts listener sees activation and release."""
        seen = []
        coordinator = CleanupCoordinator(retry_delay=0, mount_table=mount_table, on_mounts_changed=seen.append)
        with coordinator.mount_virtual_filesystems(tmp_path / "e"):
            pass
        assert seen[0] is True
        assert seen[-1] is False

    def test_listener_errors_swallowed(self, fake_cmds, mount_table, tmp_path):
        """A failing listener does not break mounting."""

        def broken(active):
            raise OSError("disk full")

        coordinator = CleanupCoordinator(retry_delay=0, mount_table=mount_table, on_mounts_changed=broken)
        with coordinator.mount_virtual_filesystems(tmp_path / "e"):
            pass
        assert not mount_table.mounted

    def test_listener_interrupt_propagates(self, fake_cmds, mount_table, tmp_path):
        """An operator signal in the listener is not swallowed; run_all still releases the mount."""

        def interrupted(active):
            if active:
                raise BuildInterrupted(signal.SIGTERM)

        coordinator = CleanupCoordinator(retry_delay=0, mount_table=mount_table, on_mounts_changed=interrupted)
        with pytest.raises(BuildInterrupted):
            with coordinator.mount_virtual_filesystems(tmp_path / "e"):
                pass
        coordinator.run_all()
        assert not mount_table.mounted
        assert not coordinator.mounts_active
