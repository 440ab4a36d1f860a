"""Tests for run_cmd, the helper for quick commands."""

import subprocess

import pytest

from autoiso.errors import ExternalToolFailure
from autoiso.lib.command import fmt_argv, run_cmd


class TestRunCmd:
    """Tests for run_cmd."""

    def test_captures_output(self):
        """stdout and stderr are captured separately."""
        r = run_cmd(["sh", "-c", "echo out; echo err >&2"])
        assert r.returncode == 0
        assert r.stdout == "out\n"
        assert r.stderr == "err\n"

    def test_failure_raises(self):
        """A non-zero exit with check set raises ExternalToolFailure."""
        with pytest.raises(ExternalToolFailure) as exc:
            run_cmd(["sh", "-c", "echo busy >&2; exit 32"])
        assert exc.value.returncode == 32
        assert exc.value.argv[0] == "sh"

    def test_unchecked_returns_result(self):
        """check=False hands the exit code back."""
        assert run_cmd(["sh", "-c", "exit 1"], check=False).returncode == 1

    def test_timeout(self):
        """An overrunning command raises TimeoutExpired."""
        with pytest.raises(subprocess.TimeoutExpired):
            run_cmd(["sleep", "5"], timeout=0.2)

    def test_fmt_argv_quotes(self):
        assert fmt_argv(["mount", "-t", "proc", "/w/my root/proc"]) == "mount -t proc '/w/my root/proc'"
