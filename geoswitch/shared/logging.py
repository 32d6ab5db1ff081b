"""Structured logging configuration for GeoSwitch.

This module provides:
- structlog processors rendering JSON or console output
- stdlib logging as the output backend, so library loggers share one sink
- A TTY-aware colored formatter for console mode
"""

import logging
import sys
from typing import Any, Dict, Optional

import structlog
from structlog.processors import JSONRenderer, TimeStamper
from structlog.stdlib import BoundLogger

from .settings import Settings

# Third-party loggers capped at WARNING
NOISY_LOGGERS = [
    'asyncio',
    'httpx',
    'httpcore',
    'hpack',
    'hypercorn.access',
    'python_on_whales',
]


class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        """Format the log record with colors if supported."""
        msg = super().format(record)

        if sys.stdout.isatty():
            color = self.COLORS.get(record.levelname, '')
            if color:
                msg = f"{color}{msg}{self.RESET}"

        return msg


def configure_logging(log_level: Optional[str] = None, log_format: Optional[str] = None) -> Dict[str, Any]:
    """Configure structured logging for the application.

    Args:
        log_level: Logging level name (defaults to LOG_LEVEL)
        log_format: ``json`` or ``console`` (defaults to LOG_FORMAT)

    Returns:
        Dict with the effective level and format
    """
    log_level = (log_level or Settings.LOG_LEVEL).upper()
    log_format = (log_format or Settings.LOG_FORMAT).lower()
    level = getattr(logging, log_level, logging.INFO)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors.append(JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Remove any existing handlers to avoid duplicates
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    if log_format == "json":
        console_handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        console_handler.setFormatter(ColoredFormatter("%(message)s"))

    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    return {"level": log_level, "format": log_format}


def get_logger(name: str) -> BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
