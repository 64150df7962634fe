"""Correlation ID based logging for requests and verification runs.

Every HTTP request and every per-rental verification pipeline runs under its
own correlation ID so a single rental's history can be followed through the
logs even when many rentals are verified concurrently.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Optional

# Correlation ID of the current request or rental pipeline
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


class CorrelationIdFilter(logging.Filter):
    """Add correlation ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "no-correlation-id"
        return True


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure the root logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper()))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
            '"correlation_id": "%(correlation_id)s", "name": "%(name)s", '
            '"message": "%(message)s"}'
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] [%(correlation_id)s] %(name)s: %(message)s"
        )

    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())
    root.addHandler(handler)

    if root.level <= logging.INFO:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def generate_correlation_id(prefix: str = "corr") -> str:
    """Generate a new correlation ID.

    Args:
        prefix: Short label for the kind of work being traced.

    Returns:
        A new UUID-based correlation ID.
    """
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class CorrelationIdContext:
    """Context manager for setting correlation ID in a block of code."""

    def __init__(self, correlation_id: Optional[str] = None):
        """Initialize the context manager.

        Args:
            correlation_id: The correlation ID to set. If None, generates a new one.
        """
        self.correlation_id = correlation_id or generate_correlation_id()
        self.previous_correlation_id: Optional[str] = None

    def __enter__(self) -> str:
        self.previous_correlation_id = get_correlation_id()
        set_correlation_id(self.correlation_id)
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.previous_correlation_id:
            set_correlation_id(self.previous_correlation_id)
        else:
            correlation_id_var.set(None)
