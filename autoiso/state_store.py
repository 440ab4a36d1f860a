from __future__ import annotations

import logging
import os
import shutil
import time
from pathlib import Path
from typing import Dict, Optional

from .build_state import BuildState

logger = logging.getLogger(__name__)

STATE_FILE_NAME = ".autoiso-state"


def _fmt_bool(v: bool) -> str:
    return "true" if v else "false"


def _parse_bool(v: Optional[str]) -> bool:
    return (v or "").strip().lower() == "true"


def _parse_int(v: Optional[str], default: int = 0) -> int:
    try:
        return int((v or "").strip())
    except ValueError:
        return default


def render_state(state: BuildState) -> str:
    lines = [
        f"STAGE={state.stage}",
        f"CLEANUP_REQUIRED={_fmt_bool(state.cleanup_required)}",
        f"MOUNTS_ACTIVE={_fmt_bool(state.mounts_active)}",
        f"WORKDIR={state.work_dir}",
        f"TIMESTAMP={int(time.time())}",
        f"START_TIME={state.start_time}",
        f"DISTRIBUTION={state.distribution}",
        f"PID={state.pid}",
        f"SOURCE_ESTIMATE={state.source_estimate}",
    ]
    return "\n".join(lines) + "\n"


def parse_state(text: str, *, default_work_dir: str = "") -> BuildState:
    """Parse a KEY=VALUE record.

    Unknown keys are ignored and missing keys take defaults; only STAGE is
    required. Raises ValueError for a missing or unknown stage.
    """

    values: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip()

    stage = values.get("STAGE")
    if not stage:
        raise ValueError("state record has no STAGE")

    now = int(time.time())
    return BuildState(
        stage=stage,
        work_dir=values.get("WORKDIR") or default_work_dir,
        cleanup_required=_parse_bool(values.get("CLEANUP_REQUIRED")),
        mounts_active=_parse_bool(values.get("MOUNTS_ACTIVE")),
        start_time=_parse_int(values.get("START_TIME"), now),
        distribution=values.get("DISTRIBUTION", ""),
        pid=_parse_int(values.get("PID")),
        source_estimate=_parse_int(values.get("SOURCE_ESTIMATE")),
        timestamp=_parse_int(values.get("TIMESTAMP"), now),
    )


class StateStore:
    """Persist the aggregate pipeline state under the work directory."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    @classmethod
    def for_work_dir(cls, work_dir: str | Path) -> "StateStore":
        return cls(Path(work_dir) / STATE_FILE_NAME)

    def save(self, state: BuildState) -> None:
        """Overwrite the record. Never raises: this runs from error handlers."""

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_name(self.path.name + ".tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(render_state(state))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
            logger.debug("State saved: %s", state.stage)
        except Exception:
            logger.exception("Failed to save state %s to %s", state.stage, self.path)

    def load(self) -> Optional[BuildState]:
        """Return the previous state, or None to start fresh."""

        if not self.path.exists():
            return None
        try:
            text = self.path.read_text(encoding="utf-8")
            state = parse_state(text, default_work_dir=str(self.path.parent))
        except (OSError, UnicodeDecodeError, ValueError) as e:
            logger.warning("Ignoring unreadable state file %s: %s", self.path, e)
            return None
        logger.debug("Loaded previous state: %s", state.stage)
        return state

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def archive(self, dest_dir: str | Path) -> Optional[Path]:
        """Move the record aside after a successful build."""

        if not self.path.exists():
            return None
        dest = Path(dest_dir)
        dest.mkdir(parents=True, exist_ok=True)
        target = dest / f"state-{time.strftime('%Y%m%d-%H%M%S')}.complete"
        shutil.move(str(self.path), str(target))
        logger.info("Archived build state to %s", target)
        return target
