"""Logging setup for the automation engine.

Run-scoped fields (run id, definition id, request id) are carried in a
ContextVar and stamped onto every record by ``RunContextFilter``, so the
worker threads of concurrent runs log with their own context.
"""

import json
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

DEFAULT_TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s%(context_suffix)s"

_log_context: ContextVar[Dict[str, Any]] = ContextVar("socialflow_log_context", default={})

# Third-party loggers that are noisy at DEBUG
_QUIET_LOGGERS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
}


class RunContextFilter(logging.Filter):
    """Copies the current logging context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        fields = dict(_log_context.get())
        fields.update(getattr(record, "extra_fields", {}))
        record.extra_fields = fields
        record.context_suffix = "".join(f" [{key}={value}]" for key, value in fields.items() if value is not None)
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line, context fields merged in at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        entry.update(getattr(record, "extra_fields", {}))
        return json.dumps(entry, default=str)


_context_filter = RunContextFilter()


def _build_handlers(log_file: Optional[str], max_size: int, backup_count: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count))
    return handlers


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        level: Logging level name
        log_file: Optional file path; rotated at ``max_size`` bytes
        log_format: Text format; ignored when ``structured`` is set
        structured: Emit JSON lines instead of text
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of rotated files to keep

    Returns:
        Root logger instance
    """
    if structured:
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    for handler in _build_handlers(log_file, max_size, backup_count):
        handler.setFormatter(formatter)
        handler.addFilter(_context_filter)
        root_logger.addHandler(handler)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)
    logging.getLogger("socialflow").setLevel(getattr(logging, level.upper()))

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_logging_context(**fields):
    """Add fields to the context of subsequent log records in this thread or task."""
    _log_context.set({**_log_context.get(), **fields})


def clear_logging_context():
    _log_context.set({})


def log_with_context(logger: logging.Logger, level: int, message: str, **fields):
    """Log a message with extra fields for this record only."""
    logger.log(level, message, extra={"extra_fields": fields})


class RetryLogger:
    """Logs the attempts of one retried operation."""

    def __init__(self, operation: str):
        self.operation = operation
        self.logger = get_logger(f"socialflow.retry.{operation.split(':')[0]}")

    def attempt_failed(self, error: Exception, attempt: int, max_attempts: int, delay: float):
        log_with_context(
            self.logger, logging.WARNING,
            f"{self.operation} failed (attempt {attempt}/{max_attempts}), retrying in {delay:.2f}s: {error}",
            operation=self.operation,
            error_type=type(error).__name__,
            attempt=attempt
        )

    def recovered(self, attempts_used: int):
        log_with_context(
            self.logger, logging.INFO,
            f"{self.operation} succeeded after {attempts_used} attempts",
            operation=self.operation,
            attempts_used=attempts_used
        )

    def gave_up(self, error: Exception, attempts_used: int):
        log_with_context(
            self.logger, logging.ERROR,
            f"{self.operation} failed after {attempts_used} attempt(s): {error}",
            operation=self.operation,
            error_type=type(error).__name__,
            attempts_used=attempts_used
        )
