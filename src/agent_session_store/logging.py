"""
Package-wide logging.

Modules call ``get_logger("window")`` and get ``agent_session_store.window``;
everything propagates to one package logger that :func:`setup_logging`
attaches handlers to.
"""

from __future__ import annotations

import logging
import sys
from typing import TextIO

PACKAGE = "agent_session_store"
DEFAULT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s | %(message)s"

_package_logger = logging.getLogger(PACKAGE)


def _coerce_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(
    level: str | int = "INFO",
    format: str | None = None,
    stream: TextIO | None = None,
    file: str | None = None,
) -> None:
    """
    Replace the package's handlers with a stream handler and an optional file handler.

    Args:
        level: Level name or number; unknown names fall back to INFO
        format: ``logging.Formatter`` pattern, defaults to :data:`DEFAULT_FORMAT`
        stream: Where to write, stderr when omitted
        file: Also append records to this path
    """
    numeric = _coerce_level(level)
    formatter = logging.Formatter(format or DEFAULT_FORMAT)

    handlers: list[logging.Handler] = [logging.StreamHandler(stream or sys.stderr)]
    if file:
        handlers.append(logging.FileHandler(file))

    _package_logger.handlers.clear()
    _package_logger.setLevel(numeric)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(numeric)
        _package_logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Child logger of the package; already-qualified names pass through."""
    qualified = name if name.startswith(PACKAGE + ".") else f"{PACKAGE}.{name}"
    return logging.getLogger(qualified)


def set_level(level: str | int) -> None:
    _package_logger.setLevel(_coerce_level(level))


def _reject(record: logging.LogRecord) -> bool:
    return False


def disable() -> None:
    """Silence the package until :func:`enable` is called."""
    # disabled only stops records logged on the package logger itself; children
    # still reach its handlers through propagation.
    _package_logger.disabled = True
    for handler in _package_logger.handlers:
        handler.addFilter(_reject)


def enable() -> None:
    _package_logger.disabled = False
    for handler in _package_logger.handlers:
        handler.removeFilter(_reject)
