"""Pytest configuration and fixtures."""

import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from socialflow.core.collaborators import ActionCollaborator, ActionResult, AudienceMetricsReader
from socialflow.core.definition_manager import DefinitionManager
from socialflow.core.error_recovery import RetryConfig
from socialflow.core.exceptions import ActionError
from socialflow.core.execution_engine import ExecutionEngine
from socialflow.core.scheduler import Scheduler
from socialflow.core.stores import InMemoryDefinitionStore, InMemoryRunStore
from socialflow.models.configs import NodeType
from socialflow.models.core import ActorProfile, Edge, Event, Node, WorkflowDefinition

# Wednesday, 10:00 UTC
BASE_TIME = datetime(2024, 6, 5, 10, 0, tzinfo=timezone.utc)


class FixedClock:
    """Deterministic clock; advance it explicitly."""

    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingPublisher(ActionCollaborator):
    """Action collaborator that records calls and can fail on demand.

    ``failures`` holds exceptions raised by successive calls before calls
    start succeeding.
    """

    def __init__(self, failures: Optional[List[Exception]] = None, result: Any = None):
        self.calls: List[Dict[str, Any]] = []
        self.failures = list(failures or [])
        self.result = result
        self._lock = threading.Lock()

    def execute(self, config, event, context):
        with self._lock:
            self.calls.append({"config": config, "event": event, "context": context})
            if self.failures:
                raise self.failures.pop(0)
        if self.result is not None:
            return self.result
        return ActionResult(detail="published", data={"message": getattr(config, "message", None)})


class SlowPublisher(ActionCollaborator):
    """Blocks until released, to exercise action deadlines."""

    def __init__(self):
        self.release = threading.Event()

    def execute(self, config, event, context):
        self.release.wait(5.0)
        return ActionResult(detail="late")


class StaticMetricsReader(AudienceMetricsReader):
    def __init__(self, profile: Optional[ActorProfile]):
        self.profile = profile
        self.lookups = 0

    def profile_for(self, event):
        self.lookups += 1
        return self.profile


def trigger_node(node_id: str = "trigger", **config) -> Node:
    cfg = {"platform": "Instagram", "eventType": "New Comment"}
    cfg.update(config)
    return Node(id=node_id, type=NodeType.TRIGGER, config=cfg)


def filter_node(node_id: str = "filter", **config) -> Node:
    cfg = {"condition": "Contains", "field": "message", "value": "price", "caseSensitive": False}
    cfg.update(config)
    return Node(id=node_id, type=NodeType.FILTER, config=cfg)


def content_node(node_id: str = "content", **config) -> Node:
    cfg = {"contentType": "Text", "message": "Thanks, DMing you pricing!"}
    cfg.update(config)
    return Node(id=node_id, type=NodeType.CONTENT, config=cfg)


def schedule_node(node_id: str = "schedule", **config) -> Node:
    cfg = {"scheduleType": "Immediate", "frequency": "Once"}
    cfg.update(config)
    return Node(id=node_id, type=NodeType.SCHEDULE, config=cfg)


def audience_node(node_id: str = "audience", **config) -> Node:
    cfg = {"segmentType": "All Followers"}
    cfg.update(config)
    return Node(id=node_id, type=NodeType.AUDIENCE, config=cfg)


def analytics_node(node_id: str = "analytics", **config) -> Node:
    cfg = {"metricType": "Reach", "timeRange": "Last 7 Days"}
    cfg.update(config)
    return Node(id=node_id, type=NodeType.ANALYTICS, config=cfg)


def make_definition(nodes: List[Node], edges: List[tuple], name: str = "Test workflow", **kwargs) -> WorkflowDefinition:
    return WorkflowDefinition(
        name=name,
        nodes=nodes,
        edges=[Edge(source=source, target=target) for source, target in edges],
        **kwargs
    )


def price_reply_definition(**kwargs) -> WorkflowDefinition:
    """trigger (price keyword) -> Contains "price" filter -> Text reply."""
    return make_definition(
        [trigger_node(keywords=["price"]), filter_node(), content_node()],
        [("trigger", "filter"), ("filter", "content")],
        name="Price replies",
        **kwargs
    )


def make_event(payload: str = "what's the PRICE?", **kwargs) -> Event:
    fields = {
        "platform": "Instagram",
        "event_type": "New Comment",
        "payload": payload,
        "actor": "jane",
        "timestamp": BASE_TIME,
    }
    fields.update(kwargs)
    return Event(**fields)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def definition_store():
    return InMemoryDefinitionStore()


@pytest.fixture
def run_store():
    return InMemoryRunStore()


@pytest.fixture
def manager(definition_store):
    return DefinitionManager(definition_store)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def retry_config():
    return RetryConfig(max_attempts=3, base_delay=0, jitter=False, retryable_exceptions=[Exception], sleep=lambda s: None)


@pytest.fixture
def engine(definition_store, run_store, clock, publisher, retry_config):
    """Engine on in-memory stores with a fixed clock and no retry delays."""
    execution_engine = ExecutionEngine(
        definition_store,
        run_store,
        scheduler=Scheduler("UTC"),
        retry_config=retry_config,
        clock=clock,
        max_concurrent_runs=4,
        max_branch_workers=4,
        max_action_workers=4,
        action_timeout=2.0
    )
    execution_engine.register_collaborator(NodeType.CONTENT, publisher)
    execution_engine.register_collaborator(NodeType.ANALYTICS, RecordingPublisher())
    yield execution_engine
    execution_engine.shutdown(wait=False)


@pytest.fixture
def activate(manager):
    """Create and activate a definition, returning the active version."""
    def _activate(definition: WorkflowDefinition) -> WorkflowDefinition:
        manager.create_definition(definition)
        return manager.activate(definition.id)
    return _activate


@pytest.fixture
def sqlite_url():
    """A temporary SQLite database file."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)
    yield f"sqlite:///{db_path}"
    try:
        os.unlink(db_path)
    except OSError:
        pass
