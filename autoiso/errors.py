from __future__ import annotations

from typing import Optional


class AutoISOError(RuntimeError):
    """Base class for errors reported to the operator."""


class ValidationError(AutoISOError):
    """Pre-flight check failed; nothing destructive has happened yet."""

    def __init__(self, message: str, *, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.hint = hint


class InsufficientSpace(ValidationError):
    def __init__(self, path: str, required: int, available: int) -> None:
        super().__init__(
            f"Insufficient space at {path}: need {required} bytes, have {available} bytes",
            hint=(
                "Free space with 'apt-get autoremove --purge && apt-get autoclean' and "
                "'journalctl --vacuum-time=1d', or pass a work directory on a larger disk "
                "(e.g. autoiso /media/usb/iso-build)"
            ),
        )
        self.path = path
        self.required = required
        self.available = available


class MountViolation(AutoISOError):
    """A mounted filesystem was found inside the staging tree."""

    def __init__(self, staging_root: str, offenders: list[str]) -> None:
        super().__init__(
            f"Foreign mounts found under {staging_root}: {', '.join(offenders)}"
        )
        self.staging_root = staging_root
        self.offenders = offenders


class SizeAnomaly(AutoISOError):
    """Staged tree is much larger than expected; exclusion probably failed."""

    def __init__(self, staging_root: str, staged: int, limit: int) -> None:
        super().__init__(
            f"Staged tree {staging_root} is {staged} bytes, above the sanity limit of {limit} bytes"
        )
        self.staging_root = staging_root
        self.staged = staged
        self.limit = limit


class ExternalToolFailure(AutoISOError):
    def __init__(self, argv: list[str], returncode: int, log_path: Optional[str] = None) -> None:
        where = f"; see {log_path}" if log_path else ""
        super().__init__(f"{argv[0]} failed with exit code {returncode}{where}")
        self.argv = argv
        self.returncode = returncode
        self.log_path = log_path


class ToolTimeout(AutoISOError):
    """The tool was killed because it ran too long or stopped making progress."""

    def __init__(
        self,
        argv: list[str],
        *,
        reason: str,
        seconds: float,
        log_path: Optional[str] = None,
    ) -> None:
        if reason == "stall":
            what = f"{argv[0]} produced no output for {seconds:.0f}s"
        else:
            what = f"{argv[0]} exceeded {seconds:.0f}s"
        where = f"; see {log_path}" if log_path else ""
        super().__init__(f"{what} and was terminated{where}")
        self.argv = argv
        self.reason = reason
        self.seconds = seconds
        self.log_path = log_path


class StageError(AutoISOError):
    def __init__(self, stage_name: str, cause: BaseException) -> None:
        super().__init__(f"Stage {stage_name} failed: {cause}")
        self.stage_name = stage_name
        self.cause = cause


class BuildInterrupted(BaseException):
    """Raised in the main thread when the operator signals the process.

    Like KeyboardInterrupt it is not an Exception, so handlers that must
    never raise (state saves, cleanup steps) let it through.
    """

    def __init__(self, signum: int) -> None:
        super().__init__(f"Interrupted by signal {signum}")
        self.signum = signum
