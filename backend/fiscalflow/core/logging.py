"""
Structured logging setup (structlog).

Every module obtains its logger through get_logger() and logs key-value
events::

    logger = get_logger(__name__)
    logger.info("Stage completed", job_id=job_id, stage="audit")

Console rendering in development, JSON lines everywhere else.
"""

from __future__ import annotations

import logging
import sys

import structlog


def setup_logging(level: str = "INFO", json_logs: bool | None = None) -> None:
    """
    Configure stdlib logging and structlog.  Call once at startup.

    Args:
        level: Minimum log level name ("DEBUG", "INFO", ...).
        json_logs: Force JSON output.  Defaults to JSON outside development.
    """
    from fiscalflow.core.config import settings

    log_level = getattr(logging, level.upper(), logging.INFO)
    if json_logs is None:
        json_logs = settings.APP_ENV != "development"

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
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
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> structlog.typing.FilteringBoundLogger:
    """Return a structlog logger named after the calling module."""
    return structlog.get_logger(name)
