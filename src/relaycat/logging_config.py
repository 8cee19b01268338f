"""
Logging configuration for relaycat.

Console output goes to stderr since stdout carries relayed data.
Optional file logging with rotation and structured formatting.
"""

import logging
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any


class StructuredFormatter(logging.Formatter):
    """Structured formatter for easier log parsing."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with structured data."""
        if not hasattr(record, 'module_name'):
            record.module_name = record.module
        if not hasattr(record, 'function_name'):
            record.function_name = record.funcName

        return super().format(record)


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    max_bytes: int = 10485760,  # 10MB
    backup_count: int = 5,
    enable_console: bool = True,
) -> logging.Logger:
    """
    Set up logging for relaycat.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Log file path; file logging is enabled when given
        max_bytes: Maximum log file size before rotation
        backup_count: Number of backup log files to keep
        enable_console: Enable console logging on stderr

    Returns:
        Configured package logger
    """
    logger = logging.getLogger("relaycat")
    logger.setLevel(getattr(logging, level.upper()))

    # Clear existing handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_fmt = logging.Formatter(
        fmt='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    file_fmt = StructuredFormatter(
        fmt='%(asctime)s | %(levelname)-8s | %(name)-24s | %(module_name)-10s | '
            '%(function_name)-20s | %(lineno)-4d | %(threadName)-16s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    if enable_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(console_fmt)
        logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(file_fmt)
        logger.addHandler(file_handler)

    # Prevent propagation to root logger
    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a specific module."""
    return logging.getLogger(name)


def configure_logging(verbose: bool = False, debug: bool = False, log_file: str | None = None) -> None:
    """
    Quick logging configuration from CLI flags.

    Args:
        verbose: Report connection lifecycle events (INFO)
        debug: Report everything, including per-chunk transfer detail
        log_file: Also log to this file
    """
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    else:
        level = "WARNING"
    setup_logging(level=level, log_file=log_file)


class ErrorTracker:
    """Count absorbed per-connection faults by kind."""

    def __init__(self):
        self.errors: dict[str, int] = {}
        self._lock = threading.Lock()
        self.logger = get_logger(__name__)

    def log_error(
        self,
        error_type: str,
        message: str,
        exception: BaseException | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        """
        Log an error with tracking.

        Args:
            error_type: Type of error (e.g., 'handshake', 'transfer')
            message: Error message
            exception: Exception object if available
            context: Additional context data
        """
        with self._lock:
            self.errors[error_type] = self.errors.get(error_type, 0) + 1

        log_msg = f"{error_type}: {message}"
        if context:
            log_msg += f" | Context: {context}"

        if exception is not None and self.logger.isEnabledFor(logging.DEBUG):
            self.logger.error(log_msg, exc_info=exception)
        else:
            self.logger.error(log_msg)

    def get_error_counts(self) -> dict[str, int]:
        """Get error counts by type."""
        with self._lock:
            return self.errors.copy()

    def reset_counts(self) -> None:
        """Reset error counters."""
        with self._lock:
            self.errors.clear()


# Global error tracker instance
_error_tracker = ErrorTracker()


def track_error(
    error_type: str,
    message: str,
    exception: BaseException | None = None,
    context: dict[str, Any] | None = None,
) -> None:
    """Track an error globally."""
    _error_tracker.log_error(error_type, message, exception, context)


def get_error_stats() -> dict[str, int]:
    """Get global error statistics."""
    return _error_tracker.get_error_counts()


def reset_error_stats() -> None:
    """Reset global error statistics."""
    _error_tracker.reset_counts()
