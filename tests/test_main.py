"""Tests for the command line entry point."""

import os
import signal
from pathlib import Path

import pytest

from autoiso import __version__, cleanup, main as cli, validation
from autoiso.build_state import BuildState, Stage
from autoiso.errors import ToolTimeout, ValidationError
from autoiso.lib import space
from autoiso.lib.env import BuildPaths
from autoiso.state_store import StateStore


class ScriptedStage:
    def __init__(self, stage, log, action=None):
        self.stage = stage
        self.log = log
        self.action = action

    def run(self, ctx, state):
        self.log.append(self.stage.value)
        if self.action is not None:
            self.action()
        return state


def scripted(log, **actions):
    return lambda: [ScriptedStage(s, log, actions.get(s.value)) for s in Stage]


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    """Run the CLI without root, real validation or logging handlers."""
    monkeypatch.setattr(cli, "configure_logging", lambda logs_dir, console_level: str(tmp_path / "test.log"))
    monkeypatch.setattr(cli, "validate_system", lambda cfg, paths: ("ubuntu", 0))
    monkeypatch.setattr(cli, "validate_resume", lambda: None)
    work = BuildPaths.from_argument(str(tmp_path))
    return work


class TestParser:
    """Tests for argument parsing."""

    def test_version(self, capsys):
        """--version prints the version and exits 0."""
        with pytest.raises(SystemExit) as exc:
            cli.main(["--version"])
        assert exc.value.code == 0
        assert f"autoiso {__version__}" in capsys.readouterr().out

    def test_help(self, capsys):
        """-h describes the work directory argument."""
        with pytest.raises(SystemExit) as exc:
            cli.main(["-h"])
        assert exc.value.code == 0
        assert "WORK_DIRECTORY" in capsys.readouterr().out

    def test_resume_and_fresh_conflict(self):
        """--resume and --fresh are mutually exclusive."""
        with pytest.raises(SystemExit) as exc:
            cli.main(["--resume", "--fresh"])
        assert exc.value.code == 2

    def test_console_level(self):
        """--debug wins over --quiet."""
        parser = cli.build_parser()
        assert cli.console_level(parser.parse_args(["-q"])) == 30
        assert cli.console_level(parser.parse_args(["-q", "-d"])) == 10
        assert cli.console_level(parser.parse_args([])) == 20

    def test_work_directory(self):
        """The positional argument names the parent of autoiso-build."""
        assert BuildPaths.from_argument("/media/usb").work_dir == Path("/media/usb/autoiso-build")
        assert BuildPaths.from_argument(None).work_dir == Path("/tmp/autoiso-build")


class TestAskResume:
    """Tests for the resume prompt."""

    def test_non_interactive_resumes(self):
        """Without a terminal the previous build is resumed."""
        state = BuildState(stage="squashfs_start", work_dir="/w")
        assert cli.ask_resume(state, interactive=False) == cli.RESUME

    def test_reprompts_until_valid(self, capsys):
        """Invalid answers are asked again."""
        answers = iter(["x", "2"])
        state = BuildState(stage="squashfs_start", work_dir="/w")
        assert cli.ask_resume(state, input_fn=lambda prompt: next(answers), interactive=True) == cli.FRESH

    def test_eof_exits(self):
        """Closed stdin means exit."""

        def eof(prompt):
            raise EOFError

        state = BuildState(stage="squashfs_start", work_dir="/w")
        assert cli.ask_resume(state, input_fn=eof, interactive=True) == cli.EXIT


class TestRun:
    """End-to-end runs with scripted stages."""

    def test_fresh_build(self, monkeypatch, cli_env, tmp_path):
        """A fresh build runs all stages, archives state and exits 0."""
        log = []
        monkeypatch.setattr(cli, "default_stages", scripted(log))
        assert cli.main([str(tmp_path)]) == cli.EXIT_OK
        assert log == [s.value for s in Stage]
        assert not (cli_env.work_dir / ".autoiso-state").exists()
        assert list(cli_env.logs_dir.glob("state-*.complete"))
        assert cli_env.isolinux_dir.is_dir()
        assert cli_env.efi_dir.is_dir()

    def test_interrupt_then_resume(self, monkeypatch, cli_env, tmp_path):
        """SIGINT during compression exits 130; --resume continues from compression."""
        log = []
        monkeypatch.setattr(
            cli,
            "default_stages",
            scripted(log, squashfs=lambda: os.kill(os.getpid(), signal.SIGINT)),
        )
        before = signal.getsignal(signal.SIGINT)
        assert cli.main([str(tmp_path)]) == cli.EXIT_INTERRUPTED
        assert signal.getsignal(signal.SIGINT) is before
        assert "bootloader" not in log
        persisted = StateStore.for_work_dir(cli_env.work_dir).load()
        assert persisted.stage == "squashfs_start"
        assert persisted.mounts_active is False

        log.clear()
        monkeypatch.setattr(cli, "default_stages", scripted(log))
        assert cli.main(["--resume", str(tmp_path)]) == cli.EXIT_OK
        assert log == ["squashfs", "bootloader", "iso_creation"]

    def test_timeout_exit_code(self, monkeypatch, cli_env, tmp_path):
        """A tool timeout inside a stage exits 124."""

        def timeout():
            raise ToolTimeout(["xorriso"], reason="timeout", seconds=1800)

        monkeypatch.setattr(cli, "default_stages", scripted([], iso_creation=timeout))
        assert cli.main([str(tmp_path)]) == cli.EXIT_TIMEOUT

    def test_validation_failure(self, monkeypatch, cli_env, tmp_path):
        """A failed pre-flight check exits 1 before any stage runs."""
        log = []

        def fail(cfg, paths):
            raise ValidationError("required tools are missing", hint="apt install xorriso")

        monkeypatch.setattr(cli, "validate_system", fail)
        monkeypatch.setattr(cli, "default_stages", scripted(log))
        assert cli.main([str(tmp_path)]) == cli.EXIT_FAILURE
        assert log == []

    def test_fresh_discards_previous(self, monkeypatch, cli_env, tmp_path):
        """--fresh ignores a resumable state and starts over."""
        store = StateStore.for_work_dir(cli_env.work_dir)
        store.save(BuildState(stage="bootloader_complete", work_dir=str(cli_env.work_dir)))
        stale = cli_env.extract_dir / "stale-file"
        stale.parent.mkdir(parents=True)
        stale.write_text("x", encoding="utf-8")

        log = []
        monkeypatch.setattr(cli, "default_stages", scripted(log))
        assert cli.main(["--fresh", str(tmp_path)]) == cli.EXIT_OK
        assert log[0] == "system_copy"
        assert not stale.exists()

    def test_bad_config(self, cli_env, tmp_path):
        """A missing config file is a failure."""
        assert cli.main(["--config", str(tmp_path / "nope.yaml"), str(tmp_path)]) == cli.EXIT_FAILURE

    def test_insufficient_space_stops_before_copy(self, monkeypatch, cli_env, tmp_path):
        """1 GiB free against a 20 GiB requirement fails pre-flight; nothing is staged or mounted."""
        gib = 1024**3
        monkeypatch.setattr(cli, "validate_system", validation.validate_system)
        for name in ("check_root", "check_tools", "check_package_locks"):
            monkeypatch.setattr(validation, name, lambda report: None)
        monkeypatch.setattr(validation, "check_kernel", lambda report, distribution: None)
        monkeypatch.setattr(validation, "resolve_distribution", lambda cfg, report: "ubuntu")
        monkeypatch.setattr(validation, "estimate_source_size", lambda excl, timeout, distribution: 10 * gib)
        monkeypatch.setattr(space, "available_space", lambda path: 1 * gib)

        commands = []
        monkeypatch.setattr(cleanup, "run_cmd", lambda argv, **kw: commands.append(argv))

        log = []
        monkeypatch.setattr(cli, "default_stages", scripted(log))
        assert cli.main(["--fresh", str(tmp_path)]) == cli.EXIT_FAILURE
        assert log == []
        assert commands == []
        assert not cli_env.extract_dir.exists()
        assert StateStore.for_work_dir(cli_env.work_dir).load() is None
