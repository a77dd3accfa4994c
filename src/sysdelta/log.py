"""Structured logging configuration using structlog."""

import logging
import sys
from typing import TextIO

import structlog


def setup_logging(level: str = "info", stream: TextIO | None = None, json: bool = True) -> None:
    """
    Configure structlog for the whole process.

    Args:
        level: Minimum level to emit (debug, info, warning, error).
        stream: Where to write log lines. Defaults to stderr.
        json: Render JSON lines when True, human-readable console output otherwise.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str) -> structlog.stdlib.BoundLogger:
    """Get a logger bound with a component name."""
    return structlog.get_logger(component=component)  # type: ignore[return-value]
