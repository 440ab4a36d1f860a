from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Iterable, Mapping, Optional, Protocol, Sequence

from ..errors import ExternalToolFailure, ToolTimeout
from .command import fmt_argv

logger = logging.getLogger(__name__)

LineSink = Callable[[str], None]

_LINE_SPLIT = re.compile(rb"[\r\n]")


class ProcessRegistry(Protocol):
    def register_process(self, proc: subprocess.Popen) -> None:
        ...

    def forget_process(self, proc: subprocess.Popen) -> None:
        ...


@dataclass(frozen=True)
class ToolResult:
    argv: list[str]
    returncode: int
    duration: float
    log_path: Optional[str]
    tail: list[str]


class _OutputPump:
    """Reader thread: copies tool output to the log and the progress sink."""

    def __init__(
        self,
        stream: IO[bytes],
        log_file: Optional[IO[str]],
        sink: Optional[LineSink],
        tail_lines: int = 40,
    ) -> None:
        self.stream = stream
        self.log_file = log_file
        self.sink = sink
        self.tail: deque[str] = deque(maxlen=tail_lines)
        self.last_activity = time.monotonic()
        self.lock = threading.Lock()
        self._sink_failed = False
        self.thread = threading.Thread(target=self._run, name="tool-output", daemon=True)

    def start(self) -> None:
        self.thread.start()

    def join(self, timeout: float) -> bool:
        self.thread.join(timeout)
        return not self.thread.is_alive()

    def _run(self) -> None:
        buf = b""
        try:
            while True:
                chunk = self.stream.read1(65536)
                if not chunk:
                    break
                self.last_activity = time.monotonic()
                buf += chunk
                *lines, buf = _LINE_SPLIT.split(buf)
                for raw in lines:
                    self._handle(raw)
            if buf:
                self._handle(buf)
        except (OSError, ValueError):
            # Stream closed underneath us during teardown.
            pass

    def _handle(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").rstrip()
        if not line:
            return
        self.tail.append(line)
        with self.lock:
            if self.log_file is not None and not self.log_file.closed:
                self.log_file.write(line + "\n")
        if self.sink is not None and not self._sink_failed:
            try:
                self.sink(line)
            except Exception:
                # Progress display is best-effort; the tool keeps running.
                self._sink_failed = True
                logger.debug("Progress parser failed; disabling it", exc_info=True)


class ToolRunner:
    """Run long external tools under a wall-clock limit.

    The child gets its own process group so that termination reaches
    everything it spawned. Escalation is SIGTERM, then SIGKILL after
    ``grace_period`` seconds.
    """

    def __init__(
        self,
        *,
        grace_period: float = 10.0,
        poll_interval: float = 0.2,
        registry: Optional[ProcessRegistry] = None,
    ) -> None:
        self.grace_period = grace_period
        self.poll_interval = poll_interval
        self.registry = registry

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: Optional[float],
        log_path: Optional[str | Path] = None,
        progress: Optional[LineSink] = None,
        stall_timeout: Optional[float] = None,
        ok_codes: Iterable[int] = (0,),
        check: bool = True,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
    ) -> ToolResult:
        argv_list = [str(a) for a in argv]
        ok = set(ok_codes)
        logger.info("CMD %s", fmt_argv(argv_list))

        log_file: Optional[IO[str]] = None
        if log_path is not None:
            Path(log_path).parent.mkdir(parents=True, exist_ok=True)
            log_file = open(log_path, "a", encoding="utf-8")
            log_file.write(f"# Command: {fmt_argv(argv_list)}\n")
            log_file.write(f"# Started: {time.strftime('%Y-%m-%dT%H:%M:%S%z')}\n")
            log_file.flush()

        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv_list,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                cwd=cwd,
                env=dict(os.environ, **(env or {})),
            )
        except OSError:
            if log_file is not None:
                log_file.close()
            raise

        pump = _OutputPump(proc.stdout, log_file, progress)  # type: ignore[arg-type]
        pump.start()
        if self.registry is not None:
            self.registry.register_process(proc)

        returncode: Optional[int] = None
        try:
            returncode = self._wait(proc, pump, argv_list, started, timeout, stall_timeout, log_path)
        finally:
            if proc.poll() is None:
                logger.warning("Terminating %s (pid %s)", argv_list[0], proc.pid)
                self.terminate_group(proc)
            if not pump.join(min(self.grace_period, 5.0)):
                # Orphans of the tool still hold the pipe open.
                _signal_group(proc.pid, signal.SIGKILL)
                pump.join(1.0)
            if proc.stdout is not None:
                proc.stdout.close()
            if self.registry is not None:
                self.registry.forget_process(proc)
            duration = time.monotonic() - started
            if log_file is not None:
                with pump.lock:
                    log_file.write(f"# Exit code: {proc.returncode}\n")
                    log_file.write(f"# Duration: {duration:.1f}s\n")
                    log_file.close()

        result = ToolResult(
            argv=argv_list,
            returncode=returncode,
            duration=duration,
            log_path=str(log_path) if log_path is not None else None,
            tail=list(pump.tail),
        )
        if check and returncode not in ok:
            logger.error("%s exited with %s", argv_list[0], returncode)
            for line in result.tail[-10:]:
                logger.error("  %s", line)
            raise ExternalToolFailure(argv_list, returncode, result.log_path)
        if returncode != 0 and returncode in ok:
            logger.warning("%s exited with %s (accepted)", argv_list[0], returncode)
        return result

    def _wait(
        self,
        proc: subprocess.Popen,
        pump: _OutputPump,
        argv: list[str],
        started: float,
        timeout: Optional[float],
        stall_timeout: Optional[float],
        log_path: Optional[str | Path],
    ) -> int:
        where = str(log_path) if log_path is not None else None
        while True:
            try:
                return proc.wait(timeout=self.poll_interval)
            except subprocess.TimeoutExpired:
                pass
            now = time.monotonic()
            if timeout is not None and now - started >= timeout:
                self.terminate_group(proc)
                raise ToolTimeout(argv, reason="timeout", seconds=timeout, log_path=where)
            if stall_timeout is not None and now - pump.last_activity >= stall_timeout:
                self.terminate_group(proc)
                raise ToolTimeout(argv, reason="stall", seconds=stall_timeout, log_path=where)

    def terminate_group(self, proc: subprocess.Popen) -> None:
        """SIGTERM the process group, then SIGKILL after the grace period."""

        if proc.poll() is not None:
            _signal_group(proc.pid, signal.SIGKILL)
            return
        _signal_group(proc.pid, signal.SIGTERM)
        try:
            proc.wait(timeout=self.grace_period)
            return
        except subprocess.TimeoutExpired:
            pass
        logger.warning("pid %s ignored SIGTERM for %.0fs; sending SIGKILL", proc.pid, self.grace_period)
        _signal_group(proc.pid, signal.SIGKILL)
        try:
            proc.wait(timeout=max(self.poll_interval, 1.0))
        except subprocess.TimeoutExpired:
            logger.error("pid %s did not exit after SIGKILL", proc.pid)


def _signal_group(pgid: int, sig: int) -> None:
    try:
        os.killpg(pgid, sig)
    except (ProcessLookupError, PermissionError):
        pass
