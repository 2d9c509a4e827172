"""Core automation engine components."""

from .exceptions import (
    ErrorKind,
    ErrorRecord,
    WorkflowEngineError,
    GraphValidationError,
    InvalidStateError,
    NotFoundError,
    TypeMismatchError,
    ScheduleError,
    ActionError,
    ActionTimeoutError,
    ExecutionEngineError,
    StorageError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger

__all__ = [
    "ErrorKind",
    "ErrorRecord",
    "WorkflowEngineError",
    "GraphValidationError",
    "InvalidStateError",
    "NotFoundError",
    "TypeMismatchError",
    "ScheduleError",
    "ActionError",
    "ActionTimeoutError",
    "ExecutionEngineError",
    "StorageError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
]
