"""Tests for configure_logging."""

import logging
from pathlib import Path

import pytest

from autoiso.logging_utils import configure_logging


@pytest.fixture
def clean_root_logger():
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    yield root
    for h in list(root.handlers):
        if h not in saved_handlers:
            root.removeHandler(h)
            h.close()
    root.setLevel(saved_level)
    for attr in ("_autoiso_configured", "_autoiso_log_path"):
        if hasattr(root, attr):
            delattr(root, attr)


def test_file_and_console_levels(clean_root_logger, tmp_path: Path):
    """The file records DEBUG while the console follows the requested level."""
    path = configure_logging(tmp_path / "logs", console_level=logging.WARNING)
    assert Path(path).parent == tmp_path / "logs"
    assert Path(path).name.startswith("autoiso-")

    logging.getLogger("autoiso.test").debug("detail for the file")
    for h in clean_root_logger.handlers:
        h.flush()
    assert "detail for the file" in Path(path).read_text(encoding="utf-8")

    consoles = [
        h for h in clean_root_logger.handlers
        if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
    ]
    assert any(h.level == logging.WARNING for h in consoles)


def test_second_call_is_noop(clean_root_logger, tmp_path: Path):
    """Calling twice does not add handlers."""
    first = configure_logging(tmp_path / "logs")
    count = len(clean_root_logger.handlers)
    assert configure_logging(tmp_path / "other") == first
    assert len(clean_root_logger.handlers) == count
