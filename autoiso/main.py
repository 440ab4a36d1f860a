from __future__ import annotations

import argparse
import logging
import shutil
import signal
import sys
import time
from typing import Callable, Dict, Optional

from . import __version__
from .build_config import load_build_config
from .build_ctx import BuildCtx
from .build_state import BuildState
from .cleanup import CleanupCoordinator
from .errors import AutoISOError, BuildInterrupted, StageError, ToolTimeout
from .lib.env import BuildPaths
from .lib.mounts import verify_no_foreign_mounts
from .lib.tool_runner import ToolRunner
from .logging_utils import configure_logging
from .pipeline import default_stages, run_pipeline
from .stage_runner import StageRunner
from .state_store import StateStore
from .validation import validate_resume, validate_system

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_TIMEOUT = 124
EXIT_INTERRUPTED = 130

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)

RESUME, FRESH, EXIT = "resume", "fresh", "exit"


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="autoiso",
        description="Build a bootable live ISO from the running Debian/Ubuntu/Kali system.",
    )
    p.add_argument(
        "work_directory",
        nargs="?",
        default=None,
        help="Build under WORK_DIRECTORY/autoiso-build (default: /tmp/autoiso-build)",
    )
    p.add_argument("-v", "--version", action="version", version=f"autoiso {__version__}")
    p.add_argument("-q", "--quiet", action="store_true", help="Only warnings and errors on the console")
    p.add_argument("-d", "--debug", action="store_true", help="Debug output on the console")
    p.add_argument("--config", default=None, help="Optional YAML build config")
    decision = p.add_mutually_exclusive_group()
    decision.add_argument("--resume", action="store_true", help="Resume a previous build without asking")
    decision.add_argument("--fresh", action="store_true", help="Discard a previous build without asking")
    return p


def console_level(args: argparse.Namespace) -> int:
    if args.debug:
        return logging.DEBUG
    if args.quiet:
        return logging.WARNING
    return logging.INFO


def ask_resume(
    previous: BuildState,
    *,
    input_fn: Callable[[str], str] = input,
    interactive: Optional[bool] = None,
) -> str:
    """Ask what to do with an unfinished build. Non-interactive runs resume."""

    started = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(previous.start_time))
    logger.info("Previous build found at stage %s (started %s)", previous.stage, started)

    if interactive is None:
        interactive = sys.stdin.isatty()
    if not interactive:
        logger.info("Non-interactive session; resuming")
        return RESUME

    choices = {"1": RESUME, "2": FRESH, "3": EXIT}
    while True:
        try:
            answer = input_fn("1) Resume  2) Start fresh  3) Exit  [1-3]: ").strip()
        except EOFError:
            return EXIT
        if answer in choices:
            return choices[answer]
        print("Please answer 1, 2 or 3.")


def prepare_workspace(paths: BuildPaths, store: StateStore, *, distribution: str, source_estimate: int) -> BuildState:
    """Empty the staging trees and persist ``workspace_prepared``."""

    for tree in (paths.extract_dir, paths.cdroot_dir):
        if tree.exists():
            # rmtree below a live mount would delete host data.
            verify_no_foreign_mounts(str(tree))
            shutil.rmtree(tree)
    shutil.rmtree(paths.checkpoints_dir, ignore_errors=True)
    shutil.rmtree(paths.rsync_partial_dir, ignore_errors=True)

    for d in (paths.extract_dir, paths.isolinux_dir, paths.live_dir, paths.efi_dir, paths.logs_dir):
        d.mkdir(parents=True, exist_ok=True)

    state = BuildState.initial(str(paths.work_dir), distribution=distribution)
    state = state.with_flags(stage="workspace_prepared", source_estimate=source_estimate)
    store.save(state)
    logger.info("Workspace prepared at %s", paths.work_dir)
    return state


def install_signal_handlers(coordinator: CleanupCoordinator) -> Dict[int, object]:
    def _handler(signum, frame):
        if coordinator.running:
            logger.warning("Signal %s received during cleanup; ignoring", signum)
            return
        raise BuildInterrupted(signum)

    previous: Dict[int, object] = {}
    for sig in HANDLED_SIGNALS:
        previous[sig] = signal.signal(sig, _handler)
    return previous


def restore_signal_handlers(previous: Dict[int, object]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def _log_failure(e: BaseException) -> None:
    logger.error("%s", e)
    cause = e.cause if isinstance(e, StageError) else e
    hint = getattr(cause, "hint", None)
    if hint:
        for line in str(hint).splitlines():
            logger.error("  hint: %s", line)
    log_path = getattr(cause, "log_path", None)
    if log_path:
        logger.error("  tool output: %s", log_path)


def _summary(paths: BuildPaths, state: BuildState) -> None:
    iso = paths.final_iso_pointer.read_text(encoding="utf-8").strip() if paths.final_iso_pointer.exists() else "?"
    elapsed = int(time.time()) - state.start_time if state.start_time else 0
    logger.info("Build complete in %dm %ds", elapsed // 60, elapsed % 60)
    logger.info("ISO: %s", iso)
    logger.info("Checksums: %s", paths.checksums)


def run(args: argparse.Namespace) -> int:
    paths = BuildPaths.from_argument(args.work_directory)
    log_path = configure_logging(paths.logs_dir, console_level=console_level(args))
    logger.info("autoiso %s, work directory %s, log %s", __version__, paths.work_dir, log_path)

    store = StateStore.for_work_dir(paths.work_dir)

    def _persist_mounts(active: bool) -> None:
        current = store.load()
        if current is not None and current.mounts_active != active:
            store.save(current.with_flags(mounts_active=active))

    try:
        cfg = load_build_config(args.config)
    except (OSError, ValueError) as e:
        logger.error("Cannot load build config %s: %s", args.config, e)
        return EXIT_FAILURE

    coordinator = CleanupCoordinator(
        umount_retries=cfg.umount_retries,
        kill_grace=cfg.kill_grace,
        on_mounts_changed=_persist_mounts,
    )
    tools = ToolRunner(grace_period=cfg.kill_grace, registry=coordinator)
    ctx = BuildCtx(cfg=cfg, paths=paths, coordinator=coordinator, tools=tools)
    runner = StageRunner(store, paths.checkpoints_dir)

    previous_handlers = install_signal_handlers(coordinator)
    try:
        previous = store.load()
        if previous is not None and previous.mounts_active:
            logger.warning("Previous run left mounts active; releasing them")
            coordinator.adopt_stale_mounts(paths.extract_dir)
            coordinator.run_all()

        decision = FRESH
        if previous is not None and not previous.is_terminal:
            if args.resume:
                decision = RESUME
            elif args.fresh:
                decision = FRESH
            else:
                decision = ask_resume(previous)
        if decision == EXIT:
            logger.info("Leaving the previous build untouched")
            return EXIT_OK

        if decision == RESUME and previous is not None:
            validate_resume()
            state = previous.with_flags(mounts_active=False)
            logger.info("Resuming from %s", state.stage)
        else:
            if previous is not None:
                logger.info("Discarding previous build state")
                store.clear()
            distribution, estimate = validate_system(cfg, paths)
            state = prepare_workspace(paths, store, distribution=distribution, source_estimate=estimate)

        result = run_pipeline(ctx=ctx, state=state, stages=default_stages(), runner=runner)
        logger.info("Stages run: %s", ", ".join(result.ran_stages) or "none")
        store.archive(paths.logs_dir)
        _summary(paths, result.state)
        return EXIT_OK
    except BuildInterrupted as e:
        logger.error("%s; run again to resume", e)
        return EXIT_INTERRUPTED
    except StageError as e:
        _log_failure(e)
        logger.error("Run again to resume from the failed stage")
        if isinstance(e.cause, ToolTimeout):
            return EXIT_TIMEOUT
        return EXIT_FAILURE
    except ToolTimeout as e:
        _log_failure(e)
        return EXIT_TIMEOUT
    except AutoISOError as e:
        _log_failure(e)
        return EXIT_FAILURE
    finally:
        coordinator.run_all()
        restore_signal_handlers(previous_handlers)


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return run(args)


if __name__ == "__main__":
    raise SystemExit(main())
