"""Kernel logger writing coloured records to registered output streams."""

from __future__ import annotations

import threading
import time
from enum import IntEnum
from typing import Callable, Optional, Protocol

FOREGROUND_CYAN = "\x1b[36m"
FOREGROUND_MAGENTA = "\x1b[35m"
FOREGROUND_DEFAULT = "\x1b[39m"
FOREGROUND_BRIGHT_WHITE = "\x1b[97m"
FOREGROUND_BRIGHT_GREEN = "\x1b[92m"
FOREGROUND_BRIGHT_BLUE = "\x1b[94m"
FOREGROUND_BRIGHT_YELLOW = "\x1b[93m"
FOREGROUND_BRIGHT_RED = "\x1b[91m"


class OutputStream(Protocol):
    def write(self, text: str) -> object: ...


class Level(IntEnum):
    """Severity of a record; lower values are more severe."""

    ERROR = 1
    WARN = 2
    INFO = 3
    DEBUG = 4
    TRACE = 5


_COLORS = {
    Level.TRACE: FOREGROUND_BRIGHT_WHITE,
    Level.DEBUG: FOREGROUND_BRIGHT_GREEN,
    Level.INFO: FOREGROUND_BRIGHT_BLUE,
    Level.WARN: FOREGROUND_BRIGHT_YELLOW,
    Level.ERROR: FOREGROUND_BRIGHT_RED,
}

_TOKENS = {
    Level.TRACE: "TRC",
    Level.DEBUG: "DBG",
    Level.INFO: "INF",
    Level.WARN: "WRN",
    Level.ERROR: "ERR",
}


def ansi_color(level: Level) -> str:
    """Return the ANSI colour sequence used for ``level``."""
    return _COLORS[level]


def level_token(level: Level) -> str:
    """Return the three-letter token printed for ``level``."""
    return _TOKENS[level]


def _monotonic_clock() -> Callable[[], int]:
    origin = time.monotonic()
    return lambda: int((time.monotonic() - origin) * 1000)


class Logger:
    """Dumps every enabled record on each registered stream.

    While no stream is registered, records go to ``serial`` without a
    timestamp, if a serial stream was given.
    """

    def __init__(
        self,
        level: Level = Level.INFO,
        serial: Optional[OutputStream] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.level = level
        self.serial = serial
        self._clock = clock if clock is not None else _monotonic_clock()
        self._streams: list[OutputStream] = []
        self._lock = threading.RLock()

    def enabled(self, level: Level) -> bool:
        """Return True if records of ``level`` are written."""
        return level <= self.level

    def log(
        self,
        level: Level,
        message: str,
        file: Optional[str] = None,
        line: Optional[int] = None,
    ) -> Optional[str]:
        """Write a record; return the text written, or None if nothing was written."""
        if not self.enabled(level):
            return None

        file_name = (file or "unknown").split("/")[-1]
        line_number = line if line is not None else 0

        with self._lock:
            streams = list(self._streams)

        if not streams:
            if self.serial is None:
                return None
            text = (
                f"{FOREGROUND_CYAN}[0.000]{ansi_color(level)}[{level_token(level)}]"
                f"{FOREGROUND_MAGENTA}[{file_name}] {FOREGROUND_DEFAULT}{message}\n"
            )
            self.serial.write(text)
            return text

        systime = self._clock()
        seconds, fraction = divmod(systime, 1000)
        text = (
            f"{FOREGROUND_CYAN}[{seconds}.{fraction:0>3}]"
            f"{ansi_color(level)}[{level_token(level)}]"
            f"{FOREGROUND_MAGENTA}[{file_name}@{line_number:0>3}]"
            f"{FOREGROUND_DEFAULT} {message}\n"
        )
        for stream in streams:
            stream.write(text)
        return text

    def register(self, stream: OutputStream) -> None:
        """Add ``stream`` to the streams that receive records."""
        with self._lock:
            self._streams.append(stream)

    def remove(self, stream: OutputStream) -> None:
        """Stop writing to ``stream``; streams are matched by identity."""
        with self._lock:
            self._streams = [s for s in self._streams if s is not stream]