"""Exceptions of the automation engine and the structured error records they produce."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    BUSINESS_LOGIC = "business_logic"


class ErrorKind(str, Enum):
    """Kinds of failure records surfaced to the editor and dashboards."""
    SCHEMA_VIOLATION = "SchemaViolation"
    CYCLE_DETECTED = "CycleDetected"
    UNREACHABLE = "Unreachable"
    TOPOLOGY_VIOLATION = "TopologyViolation"
    NO_TERMINAL_ACTION = "NoTerminalAction"
    TYPE_MISMATCH = "TypeMismatch"
    SCHEDULE_ERROR = "ScheduleError"
    ACTION_ERROR = "ActionError"
    INVALID_STATE = "InvalidState"
    NOT_FOUND = "NotFound"
    ENGINE_INTERNAL = "EngineInternal"
    STORAGE = "StorageError"
    CONFIGURATION = "ConfigurationError"


class ErrorRecord(BaseModel):
    """Structured failure record: kind, optional node/field, and a readable reason."""
    kind: ErrorKind = Field(..., description="Kind of failure")
    reason: str = Field(..., description="Human readable reason")
    node_id: Optional[str] = Field(None, description="Node the failure refers to")
    field: Optional[str] = Field(None, description="Config field the failure refers to")

    def __str__(self) -> str:
        location = ""
        if self.node_id:
            location = f" [node {self.node_id}"
            location += f", field {self.field}]" if self.field else "]"
        return f"{self.kind.value}{location}: {self.reason}"


def _dump_violations(violations: List[ErrorRecord]) -> List[Dict[str, Any]]:
    return [violation.model_dump(mode="json") for violation in violations]


class WorkflowEngineError(Exception):
    """Base exception for all automation engine errors.

    Subclasses set ``kind``, ``severity``, ``category`` and ``recoverable``
    as class attributes. Keyword arguments that are not None become the
    error's ``context`` (node_id, run_id, field, ...).
    """

    kind: ErrorKind = ErrorKind.ENGINE_INTERNAL
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    category: ErrorCategory = ErrorCategory.EXECUTION
    recoverable: bool = False

    def __init__(
        self,
        message: str,
        recoverable: Optional[bool] = None,
        details: Optional[Dict[str, Any]] = None,
        **context: Any
    ):
        super().__init__(message)
        self.message = message
        self.error_code = type(self).__name__
        if recoverable is not None:
            self.recoverable = recoverable
        self.details: Dict[str, Any] = dict(details or {})
        self.context: Dict[str, Any] = {key: value for key, value in context.items() if value is not None}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Flat representation for structured log records."""
        return {
            "error_code": self.error_code,
            "kind": self.kind.value,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "recoverable": self.recoverable,
            "details": self.details,
            "context": self.context,
            "timestamp": self.timestamp.isoformat()
        }

    def to_record(self, node_id: Optional[str] = None) -> ErrorRecord:
        """The record stored on runs and node outcomes."""
        return ErrorRecord(
            kind=self.kind,
            reason=self.message,
            node_id=node_id or self.context.get("node_id"),
            field=self.context.get("field"),
        )

    def add_details(self, **kwargs):
        self.details.update(kwargs)
        return self


class GraphValidationError(WorkflowEngineError):
    """Raised when a graph edit or definition payload is structurally invalid."""

    kind = ErrorKind.TOPOLOGY_VIOLATION
    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, violations: Optional[List[ErrorRecord]] = None, **context: Any):
        super().__init__(message, **context)
        self.violations = list(violations or [])
        if self.violations:
            self.add_details(violations=_dump_violations(self.violations))


class InvalidStateError(WorkflowEngineError):
    """Raised synchronously on an illegal lifecycle transition or edit."""

    kind = ErrorKind.INVALID_STATE
    category = ErrorCategory.BUSINESS_LOGIC

    def __init__(self, message: str, violations: Optional[List[ErrorRecord]] = None, **context: Any):
        super().__init__(message, **context)
        self.violations = list(violations or [])
        if self.violations:
            self.add_details(violations=_dump_violations(self.violations))


class NotFoundError(WorkflowEngineError):
    """Raised when a definition, run or continuation does not exist."""

    kind = ErrorKind.NOT_FOUND
    severity = ErrorSeverity.LOW
    category = ErrorCategory.STORAGE


class TypeMismatchError(WorkflowEngineError):
    """Raised when an ordering comparison gets a non-numeric operand."""

    kind = ErrorKind.TYPE_MISMATCH
    severity = ErrorSeverity.LOW


class ScheduleError(WorkflowEngineError):
    """Raised when a schedule node cannot resolve its fire time."""

    kind = ErrorKind.SCHEDULE_ERROR


class ActionError(WorkflowEngineError):
    """Raised by action collaborators. Recoverable by default, so retried."""

    kind = ErrorKind.ACTION_ERROR
    severity = ErrorSeverity.HIGH
    category = ErrorCategory.NETWORK
    recoverable = True


class ActionTimeoutError(ActionError):
    """Raised when an action collaborator exceeds its deadline."""

    def __init__(self, message: str, timeout: Optional[float] = None, **context: Any):
        super().__init__(message, details={"timeout": timeout} if timeout is not None else None, **context)


class ExecutionEngineError(WorkflowEngineError):
    """Engine-internal failure; fatal to the run it occurs in."""

    severity = ErrorSeverity.HIGH


class StorageError(WorkflowEngineError):
    """Raised when a database operation fails."""

    kind = ErrorKind.STORAGE
    severity = ErrorSeverity.HIGH
    category = ErrorCategory.STORAGE
    recoverable = True


class TransientError(WorkflowEngineError):
    """A failure expected to go away on retry."""

    recoverable = True


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    kind = ErrorKind.CONFIGURATION
    severity = ErrorSeverity.HIGH
    category = ErrorCategory.CONFIGURATION


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Body of an API error response."""
    return {
        "error": error.error_code,
        "kind": error.kind.value,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
