"""Structured logging for the scheduler, tuners and CLI."""

from __future__ import annotations

import logging
import sys
from typing import Literal

import structlog

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

# Client libraries that log every request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore", "telegram")

_LOGGING_IS_CONFIGURED = False


def configure_logging(level: LogLevel = "INFO", json_output: bool = True) -> None:
    """
    Configure structlog over stdlib logging, once per process.

    Context bound with ``structlog.contextvars`` (the tick ``correlation_id``)
    is merged into every event.
    """

    global _LOGGING_IS_CONFIGURED
    if _LOGGING_IS_CONFIGURED:
        return

    numeric_level = getattr(logging, level, logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=True,
    )

    _LOGGING_IS_CONFIGURED = True
