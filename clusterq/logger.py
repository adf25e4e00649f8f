"""Timestamped console and file logging."""

from __future__ import annotations

import sys
from datetime import datetime
from enum import Enum
from pathlib import Path

_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class LogLevel(Enum):
    """Severity of a log record."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"

    @property
    def tag(self) -> str:
        """The bracketed level name, padded to a fixed width."""
        return f"[{self.value}]".ljust(10)


def _timestamp(when: datetime | None) -> str:
    return (when or datetime.now()).strftime(_TIMESTAMP_FORMAT)


def format_record(
    who: str,
    message: str,
    level: LogLevel = LogLevel.INFO,
    when: datetime | None = None,
) -> str:
    """Render a record as ``[timestamp] [LEVEL]   who: message``."""
    return f"[{_timestamp(when)}] {level.tag}{who}: {message}"


def log(who: str, message: str, level: LogLevel = LogLevel.INFO) -> None:
    """Print a record for ``who`` to standard output."""
    print(format_record(who, message, level), flush=True)


def log_message(component: str, message: str, log_dir: str | Path = "logs") -> None:
    """Append ``message`` to ``<log_dir>/<component>.log`` and echo it to stdout.

    A log file that cannot be opened is skipped; the message is still printed.
    """
    try:
        with open(Path(log_dir) / f"{component}.log", "a", encoding="utf-8") as handle:
            handle.write(f"[{_timestamp(None)}] {message}\n")
    except OSError:
        pass
    print(f"[{component}] {message}", flush=True)


def format_event(level: str | LogLevel, message: str, when: datetime | None = None) -> str:
    """Render a service event as ``[timestamp] [LEVEL]    message``."""
    name = level.value if isinstance(level, LogLevel) else level
    return f"[{_timestamp(when)}] [{name}]    {message}"


def log_event(level: str | LogLevel, message: str) -> None:
    """Print a service event to the current standard output."""
    print(format_event(level, message), file=sys.stdout, flush=True)