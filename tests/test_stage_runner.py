"""Tests for StageRunner durability semantics."""

import signal

import pytest

from autoiso.build_state import BuildState, Stage
from autoiso.errors import BuildInterrupted, ExternalToolFailure, StageError
from autoiso.stage_runner import StageRunner


@pytest.fixture
def runner(store, paths) -> StageRunner:
    return StageRunner(store, paths.checkpoints_dir)


@pytest.fixture
def state(paths) -> BuildState:
    return BuildState(stage="system_copy_complete", work_dir=str(paths.work_dir))


class TestExecute:
    """Tests for StageRunner.execute."""

    def test_start_recorded_before_work(self, runner, store, state):
        """The start record is durable before the stage body runs."""
        seen = []

        def body(st):
            seen.append(store.load().stage)
            return st

        runner.execute(Stage.POST_COPY_CLEANUP, body, state)
        assert seen == ["post_copy_cleanup_start"]

    def test_success_records_completion(self, runner, store, state, paths):
        """On success the completion record and marker are written."""
        result = runner.execute(Stage.POST_COPY_CLEANUP, lambda st: st.with_flags(cleanup_required=True), state)
        assert result.stage == "post_copy_cleanup_complete"
        assert result.cleanup_required is True
        assert store.load().stage == "post_copy_cleanup_complete"
        assert (paths.checkpoints_dir / "post_copy_cleanup_complete").exists()
        assert not (paths.checkpoints_dir / "post_copy_cleanup_start").exists()

    def test_failure_leaves_start_record(self, runner, store, state, paths):
        """A failing stage raises StageError and does not advance."""
        cause = ExternalToolFailure(["chroot"], 1)

        def body(st):
            raise cause

        with pytest.raises(StageError) as exc:
            runner.execute(Stage.CHROOT_CONFIGURE, body, state)
        assert exc.value.cause is cause
        assert exc.value.__cause__ is cause
        assert store.load().stage == "chroot_configure_start"
        assert not (paths.checkpoints_dir / "chroot_configure_complete").exists()

    def test_interrupt_not_wrapped(self, runner, store, state):
        """BuildInterrupted passes through unchanged."""

        def body(st):
            raise BuildInterrupted(signal.SIGINT)

        with pytest.raises(BuildInterrupted):
            runner.execute(Stage.SQUASHFS, body, state)
        assert store.load().stage == "squashfs_start"

    def test_rerun_clears_old_completion(self, runner, state, paths):
        """Re-running a stage invalidates its previous completion marker."""
        runner.execute(Stage.SQUASHFS, lambda st: st, state)

        def body(st):
            raise ValueError("disk error")

        with pytest.raises(StageError):
            runner.execute(Stage.SQUASHFS, body, state)
        assert not (paths.checkpoints_dir / "squashfs_complete").exists()
