from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Mapping, Sequence

from ..errors import ExternalToolFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str


def fmt_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(a)) for a in argv)


def run_cmd(
    argv: Sequence[str],
    *,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    input_text: str | None = None,
    timeout: float | None = None,
) -> CmdResult:
    """Run a quick helper command (mount, umount, du, fuser, dpkg-query).

    Output is captured and logged at DEBUG. A non-zero exit raises
    ExternalToolFailure when ``check`` is set; ``timeout`` is passed to
    subprocess, so TimeoutExpired reaches the caller. Anything that can run
    for minutes belongs in ToolRunner, which owns a process group.
    """

    argv_list = [str(a) for a in argv]
    logger.debug("CMD %s", fmt_argv(argv_list))

    p = subprocess.run(
        argv_list,
        input=input_text,
        text=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        cwd=cwd,
        env=dict(os.environ, **(env or {})),
        timeout=timeout,
    )

    if p.stdout:
        logger.debug("STDOUT %s", p.stdout.strip())
    if p.stderr:
        logger.debug("STDERR %s", p.stderr.strip())

    if check and p.returncode != 0:
        logger.error("%s exited with %s: %s", argv_list[0], p.returncode, p.stderr.strip())
        raise ExternalToolFailure(argv_list, p.returncode)

    return CmdResult(argv=argv_list, returncode=p.returncode, stdout=p.stdout, stderr=p.stderr)
