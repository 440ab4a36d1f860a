from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable

from .build_state import BuildState, Stage
from .errors import BuildInterrupted, StageError
from .state_store import StateStore

logger = logging.getLogger(__name__)


class StageRunner:
    """Run one stage between a durable start record and a completion record."""

    def __init__(self, store: StateStore, checkpoints_dir: str | Path) -> None:
        self.store = store
        self.checkpoints_dir = Path(checkpoints_dir)

    def _marker(self, name: str) -> Path:
        return self.checkpoints_dir / name

    def _touch(self, name: str) -> None:
        self.checkpoints_dir.mkdir(parents=True, exist_ok=True)
        self._marker(name).write_text(f"{int(time.time())}\n", encoding="utf-8")

    def _remove(self, name: str) -> None:
        try:
            self._marker(name).unlink()
        except FileNotFoundError:
            pass

    def execute(self, stage: Stage, fn: Callable[[BuildState], BuildState], state: BuildState) -> BuildState:
        """Run ``fn`` for ``stage`` and return the state it leaves behind.

        On failure the persisted state stays at ``<stage>_start`` so that a
        resume retries this stage, and StageError is raised.
        """

        self._remove(stage.complete_marker)
        self._touch(stage.start_marker)
        state = state.with_stage(stage.start_marker)
        self.store.save(state)

        logger.info("Starting: %s", stage.value)
        started = time.monotonic()
        try:
            state = fn(state)
        except BuildInterrupted:
            logger.error("%s interrupted", stage.value)
            raise
        except Exception as e:
            logger.error("%s failed: %s", stage.value, e)
            raise StageError(stage.value, e) from e

        state = state.with_stage(stage.complete_marker)
        self.store.save(state)
        self._touch(stage.complete_marker)
        self._remove(stage.start_marker)
        logger.info("%s completed in %.0fs", stage.value, time.monotonic() - started)
        return state
