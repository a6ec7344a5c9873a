"""Leveled terminal logging for the sipag worker.

Every line carries a wall-clock prefix. Lines emitted inside ``task_tag``
also carry the sandbox they belong to, so output from a batch of concurrent
sandboxes stays attributable.
"""

from __future__ import annotations

import datetime as dt
import os
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from enum import IntEnum

from rich.console import Console
from rich.text import Text


class LogLevel(IntEnum):
    TRACE = 10
    DEBUG = 20
    INFO = 30
    SUCCESS = 35
    WARNING = 40
    ERROR = 50


LEVEL_NAMES = tuple(level.name.lower() for level in LogLevel)
_LEVEL_BY_NAME = {name: LogLevel[name.upper()] for name in LEVEL_NAMES}
_LEVEL_BY_NAME["warn"] = LogLevel.WARNING
_STYLES = {
    LogLevel.TRACE: "dim",
    LogLevel.DEBUG: "cyan",
    LogLevel.SUCCESS: "green",
    LogLevel.WARNING: "yellow",
    LogLevel.ERROR: "bold red",
}
_DEFAULT_LEVEL = LogLevel.INFO
_configured_level: LogLevel | None = None
_no_color = False
# Sandboxes in one batch finish on worker threads; keep their lines whole.
_EMIT_LOCK = threading.Lock()
_local = threading.local()


def _normalize_level(value: str | None) -> LogLevel:
    if value is None:
        return _DEFAULT_LEVEL
    return _LEVEL_BY_NAME.get(value.strip().lower(), _DEFAULT_LEVEL)


def configured_level() -> LogLevel:
    global _configured_level
    if _configured_level is None:
        _configured_level = _normalize_level(os.environ.get("SIPAG_LOG_LEVEL"))
    return _configured_level


def set_level(value: str | None) -> None:
    """Set the active log level; unknown names fall back to ``info``."""
    global _configured_level
    _configured_level = _normalize_level(value)


def set_no_color(value: bool) -> None:
    global _no_color
    _no_color = bool(value)


def is_enabled(level: LogLevel) -> bool:
    return level >= configured_level()


def _color_disabled() -> bool:
    return _no_color or bool(os.environ.get("NO_COLOR") or os.environ.get("SIPAG_NO_COLOR"))


def _console(*, stderr: bool) -> Console:
    return Console(
        file=sys.stderr if stderr else sys.stdout,
        soft_wrap=True,
        highlight=False,
        no_color=_color_disabled(),
    )


def clock() -> str:
    """Return the wall-clock prefix used on worker loop lines."""
    return dt.datetime.now().strftime("%H:%M:%S")


def current_tag() -> str | None:
    """Return the sandbox tag active on this thread, if any."""
    return getattr(_local, "tag", None)


@contextmanager
def task_tag(tag: str) -> Iterator[None]:
    """Tag every line this thread emits with ``tag`` until the block exits.

    Tags nest; the previous tag is restored on exit.
    """
    previous = current_tag()
    _local.tag = tag
    try:
        yield
    finally:
        _local.tag = previous


def format_line(message: str) -> str:
    tag = current_tag()
    if tag:
        return f"[{clock()}] [{tag}] {message}"
    return f"[{clock()}] {message}"


def emit(
    level: LogLevel,
    message: str,
    *,
    style: str | None = None,
    stderr: bool | None = None,
) -> None:
    if not is_enabled(level):
        return
    target_stderr = stderr if stderr is not None else level >= LogLevel.WARNING
    text = Text(format_line(message), style=style or _STYLES.get(level, ""))
    with _EMIT_LOCK:
        _console(stderr=target_stderr).print(text)


def trace(message: str, *, style: str | None = None) -> None:
    emit(LogLevel.TRACE, message, style=style)


def debug(message: str, *, style: str | None = None) -> None:
    emit(LogLevel.DEBUG, message, style=style)


def info(message: str, *, style: str | None = None) -> None:
    emit(LogLevel.INFO, message, style=style)


def success(message: str, *, style: str | None = None) -> None:
    emit(LogLevel.SUCCESS, message, style=style)


def warning(message: str, *, style: str | None = None) -> None:
    emit(LogLevel.WARNING, message, style=style)


def error(message: str, *, style: str | None = None) -> None:
    emit(LogLevel.ERROR, message, style=style)
