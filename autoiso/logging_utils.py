from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional


def configure_logging(
    logs_dir: str | Path,
    console_level: int = logging.INFO,
    also_console: bool = True,
) -> str:
    """Configure root logging for one build run.

    The file handler always records DEBUG in ``<logs_dir>/autoiso-<ts>.log``;
    the console follows ``console_level``. If ``logs_dir`` is not writable
    the log goes to the current directory instead.

    Returns the actual file path being used.
    """

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    # Avoid duplicate handlers if configure_logging() is called multiple times.
    if getattr(logger, "_autoiso_configured", False):
        return getattr(logger, "_autoiso_log_path", "")

    name = f"autoiso-{time.strftime('%Y%m%d-%H%M%S')}.log"
    log_path = str(Path(logs_dir) / name)
    handlers: list[logging.Handler] = []

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    file_handler: Optional[logging.Handler] = None
    try:
        Path(logs_dir).mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        chosen_path = log_path
    except OSError:
        chosen_path = str(Path.cwd() / name)
        file_handler = logging.FileHandler(chosen_path)
    file_handler.setFormatter(fmt)
    file_handler.setLevel(logging.DEBUG)
    handlers.append(file_handler)

    if also_console:
        console = logging.StreamHandler()
        console.setFormatter(fmt)
        console.setLevel(console_level)
        handlers.append(console)

    for h in handlers:
        logger.addHandler(h)

    setattr(logger, "_autoiso_configured", True)
    setattr(logger, "_autoiso_log_path", chosen_path)

    logging.getLogger(__name__).debug("Logging initialized (requested=%s, actual=%s)", log_path, chosen_path)
    return chosen_path
