"""Logging configuration for the fulfillment engine."""

from __future__ import annotations

import logging

import structlog

from app.core.config import LOG_JSON, LOG_LEVEL


def configure_logging(level: str = LOG_LEVEL, *, json: bool = LOG_JSON) -> None:
    logging.basicConfig(format="%(message)s", level=getattr(logging, level, logging.INFO))
    # Suppress noisy library loggers
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
