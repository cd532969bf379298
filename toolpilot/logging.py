"""structlog setup shared by the CLI and library callers."""

import logging
import sys
from typing import TextIO

import structlog

from toolpilot.config import get_config


def _renderer(fmt: str):
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=False)


def configure_logging(level: str | None = None, stream: TextIO | None = None, fmt: str | None = None) -> None:
    """Configure structured logging.

    Args:
        level: Level name overriding ``config.logging.level``
        stream: Destination for rendered lines, stderr by default
        fmt: ``console`` or ``json``, overriding ``config.logging.format``
    """
    config = get_config()
    level_name = (level or config.logging.level or "INFO").upper()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            _renderer(fmt or config.logging.format),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level_name, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Module logger; pass ``__name__``."""
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
