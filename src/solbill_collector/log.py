"""
Structured logging setup.

SOLBILL_LOG_FORMAT: "console" (default) or "json"
SOLBILL_LOG_LEVEL:  DEBUG, INFO (default), WARNING, ERROR
"""

import logging
import os
import sys
from typing import Optional

import structlog

LOG_FORMATS = ("console", "json")


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    level = (level or os.environ.get("SOLBILL_LOG_LEVEL", "INFO")).upper()
    fmt = (fmt or os.environ.get("SOLBILL_LOG_FORMAT", "console")).lower()

    numeric = logging.getLevelName(level)
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level}")
    if fmt not in LOG_FORMATS:
        raise ValueError(f"Unknown log format: {fmt} (expected one of {LOG_FORMATS})")

    renderer = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if fmt == "json":
        processors.append(structlog.processors.format_exc_info)
    processors.append(renderer)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
