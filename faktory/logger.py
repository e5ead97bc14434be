"""Levelled console logging with optional ANSI colour."""

from __future__ import annotations

import enum
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TextIO


class _Level(enum.Enum):
    """Log levels with their one-letter prefix and ANSI colour code."""

    DEBUG = ("D", 32)
    INFO = ("I", 34)
    WARN = ("W", 33)
    ERROR = ("E", 31)
    FATAL = ("F", 31)

    def __init__(self, prefix: str, color: int) -> None:
        self.prefix = prefix
        self.color = color


@dataclass
class _Settings:
    info: bool = False
    debug: bool = False


_settings = _Settings()


def init_logger(level: str) -> None:
    """Configure verbosity from a level name: "info", "debug" or anything else."""
    _settings.info = level in ("info", "debug")
    _settings.debug = level == "debug"


def is_info() -> bool:
    """Whether info messages are emitted."""
    return _settings.info


def is_debug() -> bool:
    """Whether debug messages are emitted."""
    return _settings.debug


def is_tty(stream: Any) -> bool:
    """Whether the given stream is attached to a terminal."""
    if os.name == "nt":
        return False
    try:
        fd = stream.fileno()
    except (AttributeError, OSError, ValueError):
        return False
    try:
        return os.isatty(fd)
    except OSError:
        return False


def _timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S") + f".{now.microsecond // 1000:03d}Z"


def _render(msg: str, args: tuple[Any, ...]) -> str:
    return msg % args if args else msg


def _emit(level: _Level, msg: str) -> None:
    stream: TextIO = sys.stdout
    ts = _timestamp()
    if is_tty(stream):
        stream.write(f"\033[{level.color}m{level.prefix}\033[0m {ts} {msg}\n")
    else:
        stream.write(f"{level.prefix} {ts} {msg}\n")
    stream.flush()


def error(msg: str, err: Any) -> None:
    """Log an error together with its cause."""
    _emit(_Level.ERROR, f"{msg}: {err}")


def warn(msg: str, *args: Any) -> None:
    """Log a warning; always emitted."""
    _emit(_Level.WARN, _render(msg, args))


def info(msg: str, *args: Any) -> None:
    """Log an informational message when info logging is enabled."""
    if _settings.info:
        _emit(_Level.INFO, _render(msg, args))


def debug(msg: str, *args: Any) -> None:
    """Log a debug message when debug logging is enabled."""
    if _settings.debug:
        _emit(_Level.DEBUG, _render(msg, args))