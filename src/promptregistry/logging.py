"""
Logging helpers for the package.

All modules log through children of the ``promptregistry`` logger so the CLI
(or an embedding application) can configure output in one place.
"""

from __future__ import annotations

import logging
import sys
from typing import TextIO

_root_logger = logging.getLogger("promptregistry")
_root_logger.addHandler(logging.NullHandler())

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _coerce_level(level: str | int) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return level


def setup_logging(
    level: str | int = "WARNING",
    format: str | None = None,
    stream: TextIO | None = None,
    file: str | None = None,
) -> None:
    """
    Configure the package logger.

    Args:
        level: Log level name (DEBUG, INFO, ...) or int
        format: Custom log format string
        stream: Output stream (defaults to stderr)
        file: Optional file path to also write logs to
    """
    lvl = _coerce_level(level)
    _root_logger.setLevel(lvl)
    _root_logger.handlers.clear()

    formatter = logging.Formatter(format or DEFAULT_FORMAT)

    stream_handler = logging.StreamHandler(stream or sys.stderr)
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(lvl)
    _root_logger.addHandler(stream_handler)

    if file:
        file_handler = logging.FileHandler(file)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(lvl)
        _root_logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    if name == "promptregistry" or name.startswith("promptregistry."):
        return logging.getLogger(name)
    return logging.getLogger(f"promptregistry.{name}")
