"""Structured logging for Shipwright.

Log events go to stderr so streamed model output on stdout stays clean.
``logging.format`` picks the renderer: ``console`` for a terminal, anything
else for one JSON object per line.
"""

import logging
import sys
from typing import Any

import structlog

from shipwright.config import Config, get_config


def _level_number(name: str) -> int:
    """Map a level name like ``debug`` to its number; unknown names mean INFO."""
    value = logging.getLevelName(name.strip().upper())
    return value if isinstance(value, int) else logging.INFO


def _renderer(fmt: str) -> Any:
    if fmt == "console":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def configure_logging(config: Config | None = None, level: str | None = None) -> None:
    """Configure structlog from ``Config.logging``.

    Args:
        config: Configuration to read; defaults to the process config
        level: Level name overriding ``logging.level`` (the CLI's ``-v``)
    """
    config = config or get_config()
    threshold = _level_number(level or config.logging.level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(config.logging.format),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Logger for a module; pass ``__name__``."""
    return structlog.get_logger(name) if name else structlog.get_logger()


log = get_logger(__name__)
