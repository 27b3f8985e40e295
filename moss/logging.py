"""Logging configuration for Moss."""

import logging
import sys
from typing import Any, TextIO

import structlog

from moss.config import get_config


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    stream: TextIO | None = None,
) -> None:
    """Configure structured logging for Moss.

    Logs go to stderr by default so streamed assistant text on stdout stays
    readable and pipeable.

    Args:
        level: Log level name, overrides `config.logging.level`
        fmt: "console" or "json", overrides `config.logging.format`
        stream: Output stream (default stderr)
    """
    if level is None or fmt is None:
        config = get_config()
        level = level or config.logging.level
        fmt = fmt or config.logging.format
    log_level = getattr(logging, (level or "WARNING").upper(), logging.WARNING)
    render_format = (fmt or "console").lower()

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if render_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        # Module-level loggers must follow later reconfiguration.
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


log = get_logger("moss")
