"""Data models for the automation engine."""

from .configs import (
    NODE_SCHEMAS,
    NodeType,
    FieldType,
    FieldSpec,
    NodeSchema,
    parse_config,
)
from .core import (
    DefinitionState,
    RunStatus,
    RunOrigin,
    OutcomeStatus,
    ContinuationState,
    EvaluationOutcome,
    Sentiment,
    Node,
    Edge,
    WorkflowDefinition,
    DefinitionSummary,
    Event,
    ActorProfile,
    EvaluationContext,
    NodeOutcome,
    Run,
    Continuation,
    FireTime,
    ValidationResult,
)

__all__ = [
    "NODE_SCHEMAS",
    "NodeType",
    "FieldType",
    "FieldSpec",
    "NodeSchema",
    "parse_config",
    "DefinitionState",
    "RunStatus",
    "RunOrigin",
    "OutcomeStatus",
    "ContinuationState",
    "EvaluationOutcome",
    "Sentiment",
    "Node",
    "Edge",
    "WorkflowDefinition",
    "DefinitionSummary",
    "Event",
    "ActorProfile",
    "EvaluationContext",
    "NodeOutcome",
    "Run",
    "Continuation",
    "FireTime",
    "ValidationResult",
]
