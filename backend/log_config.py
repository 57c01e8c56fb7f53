"""Structured logging setup for Recollect."""

from __future__ import annotations

import logging
import sys

import structlog

_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def resolve_level(level: str) -> int:
    try:
        return _LEVEL_MAP[level.upper()]
    except KeyError:
        raise ValueError(f"Unknown log level: {level}") from None


def configure_logging(level: str = "INFO", json_format: bool = False) -> None:
    """Configure structlog for the whole process.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_format: Emit one JSON object per line instead of console output
    """
    renderer = (
        structlog.processors.JSONRenderer()
        if json_format
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(resolve_level(level)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
