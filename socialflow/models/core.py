"""Core Pydantic models for the automation engine."""

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..core.exceptions import ErrorRecord, GraphValidationError, InvalidStateError
from .configs import NodeConfig, NodeType, parse_config


_NODE_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')

ACTION_NODE_TYPES = frozenset({NodeType.CONTENT, NodeType.ANALYTICS})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class DefinitionState(str, Enum):
    """Lifecycle states of a workflow definition version."""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class RunStatus(str, Enum):
    """Enumeration of run statuses."""
    PENDING = "pending"
    EVALUATING = "evaluating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


class RunOrigin(str, Enum):
    EVENT = "event"
    SCHEDULE = "schedule"


class OutcomeStatus(str, Enum):
    """What happened to a node during a run."""
    SKIPPED = "skipped"
    MATCHED = "matched"
    FAILED = "failed"
    EXECUTED = "executed"


class ContinuationState(str, Enum):
    PENDING = "pending"
    RESUMED = "resumed"
    CANCELLED = "cancelled"
    ERROR = "error"


class EvaluationOutcome(str, Enum):
    MATCH = "match"
    NO_MATCH = "no_match"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class Position(BaseModel):
    """Canvas coordinates; presentation only."""
    x: float = 0
    y: float = 0


class Node(BaseModel):
    """A typed node of a workflow graph."""
    id: str = Field(..., description="Unique identifier for the node")
    type: NodeType = Field(..., description="Node type")
    config: Dict[str, Any] = Field(default_factory=dict, description="Field name to value, checked against the schema registry")
    label: Optional[str] = Field(None, description="Display label")
    description: Optional[str] = Field(None, description="Display description")
    position: Optional[Position] = Field(None, description="Canvas position")

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure node ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")

        if not _NODE_ID_PATTERN.match(id_value.strip()):
            raise ValueError("Node ID must contain only alphanumeric characters, underscores, and hyphens")

        return id_value.strip()


class Edge(BaseModel):
    """Directed edge between two nodes."""
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")

    @field_validator('source', 'target')
    @classmethod
    def validate_node_ids(cls, node_id):
        """Ensure node IDs are valid."""
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()


class WorkflowDefinition(BaseModel):
    """A versioned workflow graph.

    Structural edits go through the methods below, which refuse to touch any
    version that is not a draft. Once a version has been activated the only
    way to change it is ``clone_as_draft``.
    """
    id: str = Field(default_factory=new_id, description="Definition ID shared by all versions")
    tenant_id: Optional[str] = Field(None, description="Owning tenant")
    name: str = Field(..., description="Name of the workflow")
    description: str = Field("", description="Description of the workflow")
    version: int = Field(1, ge=1, description="Version number, starting at 1")
    nodes: List[Node] = Field(default_factory=list, description="Ordered list of nodes")
    edges: List[Edge] = Field(default_factory=list, description="Edges connecting nodes")
    state: DefinitionState = Field(DefinitionState.DRAFT, description="Lifecycle state")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        """Ensure workflow name is not empty."""
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        """Ensure all node IDs are unique."""
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes

    # Edits

    def _ensure_editable(self) -> None:
        if self.state != DefinitionState.DRAFT:
            raise InvalidStateError(
                f"Definition {self.id} v{self.version} is {self.state.value}; "
                "create a new draft version to edit it",
                current_state=self.state.value
            )

    def _require_node(self, node_id: str) -> Node:
        node = self.get_node(node_id)
        if node is None:
            raise GraphValidationError(f"Node '{node_id}' does not exist", definition_id=self.id)
        return node

    def _touch(self) -> None:
        self.updated_at = utc_now()

    def add_node(self, node: Node) -> Node:
        self._ensure_editable()
        if self.get_node(node.id) is not None:
            raise GraphValidationError(f"Node '{node.id}' already exists", definition_id=self.id)
        self.nodes.append(node)
        self._touch()
        return node

    def remove_node(self, node_id: str) -> Node:
        """Remove a node together with every edge touching it."""
        self._ensure_editable()
        node = self._require_node(node_id)
        self.nodes = [n for n in self.nodes if n.id != node_id]
        self.edges = [e for e in self.edges if e.source != node_id and e.target != node_id]
        self._touch()
        return node

    def update_node_config(self, node_id: str, config: Dict[str, Any], replace: bool = False) -> Node:
        self._ensure_editable()
        node = self._require_node(node_id)
        node.config = dict(config) if replace else {**node.config, **config}
        self._touch()
        return node

    def add_edge(self, source: str, target: str) -> Edge:
        self._ensure_editable()
        self._require_node(source)
        self._require_node(target)
        if any(e.source == source and e.target == target for e in self.edges):
            raise GraphValidationError(f"Edge {source} -> {target} already exists", definition_id=self.id)
        edge = Edge(source=source, target=target)
        self.edges.append(edge)
        self._touch()
        return edge

    def remove_edge(self, source: str, target: str) -> Edge:
        self._ensure_editable()
        for edge in self.edges:
            if edge.source == source and edge.target == target:
                self.edges.remove(edge)
                self._touch()
                return edge
        raise GraphValidationError(f"Edge {source} -> {target} does not exist", definition_id=self.id)

    # Reads

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_config(self, node_id: str) -> NodeConfig:
        """Typed config of a node; raises pydantic.ValidationError if malformed."""
        node = self._require_node(node_id)
        return parse_config(node.type, node.config)

    def outgoing_edges(self, node_id: str) -> List[Edge]:
        return [e for e in self.edges if e.source == node_id]

    def incoming_edges(self, node_id: str) -> List[Edge]:
        return [e for e in self.edges if e.target == node_id]

    def successors(self, node_id: str) -> List[str]:
        return [e.target for e in self.outgoing_edges(node_id)]

    def predecessors(self, node_id: str) -> List[str]:
        return [e.source for e in self.incoming_edges(node_id)]

    def reachable_from(self, start_ids: Iterable[str]) -> Set[str]:
        """Node IDs reachable from (and including) the given start nodes."""
        adjacency: Dict[str, List[str]] = {}
        for edge in self.edges:
            adjacency.setdefault(edge.source, []).append(edge.target)

        reachable = set(start_ids)
        queue = list(reachable)
        while queue:
            current = queue.pop(0)
            for neighbor in adjacency.get(current, []):
                if neighbor not in reachable:
                    reachable.add(neighbor)
                    queue.append(neighbor)
        return reachable

    def trigger_nodes(self) -> List[Node]:
        return [node for node in self.nodes if node.type == NodeType.TRIGGER]

    def terminal_nodes(self) -> List[Node]:
        """Nodes without outgoing edges."""
        sources = {e.source for e in self.edges}
        return [node for node in self.nodes if node.id not in sources]

    def clone_as_draft(self, version: int) -> "WorkflowDefinition":
        now = utc_now()
        return self.model_copy(
            deep=True,
            update={"version": version, "state": DefinitionState.DRAFT, "created_at": now, "updated_at": now}
        )


class DefinitionSummary(BaseModel):
    """Summary information about a workflow definition version."""
    id: str
    tenant_id: Optional[str] = None
    name: str
    version: int
    state: DefinitionState
    node_count: int
    updated_at: datetime

    @classmethod
    def from_definition(cls, definition: WorkflowDefinition) -> "DefinitionSummary":
        return cls(
            id=definition.id,
            tenant_id=definition.tenant_id,
            name=definition.name,
            version=definition.version,
            state=definition.state,
            node_count=len(definition.nodes),
            updated_at=definition.updated_at,
        )


class Event(BaseModel):
    """A platform event. ``event_id`` is the idempotency key."""
    event_id: str = Field(default_factory=new_id, description="External event ID")
    tenant_id: Optional[str] = Field(None, description="Tenant the event belongs to")
    platform: str = Field(..., description="Platform the event came from")
    event_type: str = Field(..., description="Kind of event, e.g. New Comment")
    timestamp: datetime = Field(default_factory=utc_now)
    actor: Optional[str] = Field(None, description="Username of the acting account")
    payload: str = Field("", description="Free text of the comment or message")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Additional event fields")


class ActorProfile(BaseModel):
    """Audience facts about the acting account."""
    username: Optional[str] = None
    is_follower: bool = False
    followed_at: Optional[datetime] = None
    follower_count: Optional[int] = None
    engagement_rate: Optional[float] = None
    last_engagement_at: Optional[datetime] = None
    location: Optional[str] = None
    is_private: bool = False


class EvaluationContext(BaseModel):
    """Facts the evaluator may consult beyond the event itself."""
    model_config = ConfigDict(frozen=True)

    actor: Optional[ActorProfile] = None
    sentiment: Optional[Sentiment] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)


class NodeOutcome(BaseModel):
    node_id: str
    node_type: NodeType
    status: OutcomeStatus
    timestamp: datetime = Field(default_factory=utc_now)
    detail: Optional[str] = None
    fire_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[ErrorRecord] = None


class Run(BaseModel):
    """One evaluation of a definition version against an event."""
    id: str = Field(default_factory=new_id, description="Unique identifier for the run")
    definition_id: str
    definition_version: int
    tenant_id: Optional[str] = None
    origin: RunOrigin = RunOrigin.EVENT
    parent_run_id: Optional[str] = Field(None, description="Run whose schedule produced this recurrence")
    event: Optional[Event] = None
    context: EvaluationContext = Field(default_factory=EvaluationContext)
    outcomes: List[NodeOutcome] = Field(default_factory=list)
    status: RunStatus = RunStatus.PENDING
    error: Optional[ErrorRecord] = None
    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def outcome_for(self, node_id: str) -> Optional[NodeOutcome]:
        """Latest outcome recorded for a node."""
        for outcome in reversed(self.outcomes):
            if outcome.node_id == node_id:
                return outcome
        return None

    def outcomes_with_status(self, status: OutcomeStatus) -> List[NodeOutcome]:
        return [o for o in self.outcomes if o.status == status]


class Continuation(BaseModel):
    """A schedule node waiting for its fire time."""
    run_id: str
    node_id: str
    fire_at: datetime
    state: ContinuationState = ContinuationState.PENDING
    detail: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class FireTime(BaseModel):
    fire_at: datetime
    degraded: bool = False
    detail: Optional[str] = None


class ValidationResult(BaseModel):
    """Result of definition validation."""
    is_valid: bool = Field(..., description="Whether the definition is valid")
    violations: List[ErrorRecord] = Field(default_factory=list, description="Every violation found")

    @classmethod
    def from_violations(cls, violations: List[ErrorRecord]) -> "ValidationResult":
        return cls(is_valid=not violations, violations=violations)

    @property
    def errors(self) -> List[str]:
        return [str(violation) for violation in self.violations]
