"""Structured logging configuration shared by the CLI and the watchdog process."""

import logging
import sys
from pathlib import Path
from typing import Optional, TextIO
import structlog


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Configure structlog on top of stdlib logging.

    Args:
        log_level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file that receives a copy of every record
        stream: Console stream, stderr by default so stdout stays clean
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(stream or sys.stderr)]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
        handlers=handlers,
        force=True,
    )
