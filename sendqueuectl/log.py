"""
Structured logging setup using structlog.
"""

import logging
import os
import sys
from typing import Any, List, Optional

import structlog


def setup_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """
    Configure structlog for the CLI.

    Level and format come from SENDQ_LOG_LEVEL / SENDQ_LOG_FORMAT unless given.
    Logs go to stderr so `--json` output on stdout stays machine readable.
    """
    level = (level or os.environ.get("SENDQ_LOG_LEVEL", "WARNING")).upper()
    fmt = (fmt or os.environ.get("SENDQ_LOG_FORMAT", "console")).lower()
    log_level = getattr(logging, level, logging.WARNING)

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
