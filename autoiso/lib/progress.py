"""Parse progress output of the copy, compression and ISO tools."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

__all__ = [
    "ProgressUpdate",
    "ProgressParser",
    "RsyncProgressParser",
    "SquashfsProgressParser",
    "XorrisoProgressParser",
    "ProgressReporter",
]


@dataclass(frozen=True)
class ProgressUpdate:
    label: str
    percent: Optional[float] = None
    current: Optional[int] = None
    total: Optional[int] = None


class ProgressParser:
    """Base class for tool-specific progress parsers."""

    label = "progress"

    def parse(self, text: str) -> Optional[ProgressUpdate]:
        raise NotImplementedError


class RsyncProgressParser(ProgressParser):
    """Parse ``rsync --info=progress2`` lines.

    Example: ``  1,234,567  45%  12.34MB/s    0:01:23 (xfr#12, to-chk=456/7890)``
    """

    label = "System copy"

    _PERCENT_RE = re.compile(r"\s(?P<percent>\d{1,3})%\s")
    _CHECK_RE = re.compile(r"(?:to-chk|to-check|ir-chk)=(?P<remaining>\d+)/(?P<total>\d+)")

    def parse(self, text: str) -> Optional[ProgressUpdate]:
        line = f" {text.strip()} "
        pm = self._PERCENT_RE.search(line)
        cm = self._CHECK_RE.search(line)
        if not pm and not cm:
            return None
        percent = float(pm.group("percent")) if pm else None
        current = total = None
        if cm:
            total = int(cm.group("total"))
            current = total - int(cm.group("remaining"))
            if percent is None and total > 0:
                percent = current * 100.0 / total
        return ProgressUpdate(label=self.label, percent=percent, current=current, total=total)


class SquashfsProgressParser(ProgressParser):
    """Parse ``mksquashfs -progress`` lines: ``[====/   ] 1234/5678  21%``."""

    label = "Compression"

    _RE = re.compile(r"(?P<current>\d+)/(?P<total>\d+)\s+(?P<percent>\d{1,3})%")

    def parse(self, text: str) -> Optional[ProgressUpdate]:
        m = self._RE.search(text)
        if not m:
            return None
        return ProgressUpdate(
            label=self.label,
            percent=float(m.group("percent")),
            current=int(m.group("current")),
            total=int(m.group("total")),
        )


class XorrisoProgressParser(ProgressParser):
    """Parse ``xorriso : UPDATE :  45.12% done`` lines."""

    label = "Building ISO"

    _RE = re.compile(r"(?P<percent>\d+(?:\.\d+)?)%\s+done")

    def parse(self, text: str) -> Optional[ProgressUpdate]:
        m = self._RE.search(text)
        if not m:
            return None
        return ProgressUpdate(label=self.label, percent=float(m.group("percent")))


def format_eta(seconds: float) -> str:
    seconds = int(max(seconds, 0))
    minutes, secs = divmod(seconds, 60)
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class ProgressReporter:
    """Line callback for ToolRunner that logs parsed progress.

    Logs at most once per ``step`` percent so long runs stay readable.
    """

    def __init__(
        self,
        parser: ProgressParser,
        *,
        step: float = 5.0,
        emit: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.parser = parser
        self.step = step
        self.emit = emit or logger.info
        self.clock = clock
        self.started = clock()
        self.last: Optional[ProgressUpdate] = None
        self._last_logged = -1.0

    def __call__(self, line: str) -> None:
        update = self.parser.parse(line)
        if update is None:
            return
        self.last = update
        if update.percent is None:
            return
        if update.percent < 100 and update.percent - self._last_logged < self.step:
            return
        self._last_logged = update.percent
        self.emit(self.format(update))

    def format(self, update: ProgressUpdate) -> str:
        parts = [f"{update.label}: {update.percent or 0:.0f}%"]
        if update.current is not None and update.total:
            parts.append(f"files {update.current}/{update.total}")
        elapsed = self.clock() - self.started
        if update.percent and 0 < update.percent < 100 and elapsed > 0:
            remaining = elapsed * (100.0 - update.percent) / update.percent
            parts.append(f"ETA {format_eta(remaining)}")
        return ", ".join(parts)
