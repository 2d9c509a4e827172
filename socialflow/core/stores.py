"""Store interfaces used by the engine, with thread-safe in-memory implementations."""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

from ..models.core import (
    Continuation,
    ContinuationState,
    DefinitionState,
    NodeOutcome,
    Run,
    WorkflowDefinition,
)
from .exceptions import NotFoundError
from .logging import get_logger

logger = get_logger(__name__)


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime for ordering; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DefinitionStore(ABC):
    """Versioned workflow definitions, keyed by (id, version)."""

    @abstractmethod
    def save(self, definition: WorkflowDefinition) -> None:
        """Insert or replace one definition version."""

    @abstractmethod
    def get(self, definition_id: str, version: Optional[int] = None) -> Optional[WorkflowDefinition]:
        """Return a version, or the latest one when ``version`` is None."""

    @abstractmethod
    def list_versions(self, definition_id: str) -> List[WorkflowDefinition]:
        """All versions of a definition, oldest first."""

    @abstractmethod
    def list_by_tenant(self, tenant_id: Optional[str] = None) -> List[WorkflowDefinition]:
        """Latest version of every definition, optionally limited to one tenant."""

    @abstractmethod
    def list_active(self, tenant_id: Optional[str] = None) -> List[WorkflowDefinition]:
        """Every active version, optionally limited to one tenant."""


class RunStore(ABC):
    """Durable run history, node outcomes, continuations and processed events."""

    @abstractmethod
    def save_run(self, run: Run) -> None:
        """Insert or replace a run record."""

    @abstractmethod
    def append_outcome(self, run_id: str, outcome: NodeOutcome) -> None:
        """Append one node outcome to a run's history."""

    @abstractmethod
    def get_run(self, run_id: str) -> Optional[Run]:
        pass

    @abstractmethod
    def list_runs(self, definition_id: str, limit: Optional[int] = None) -> List[Run]:
        """Runs of a definition, oldest first."""

    @abstractmethod
    def list_runs_by_tenant(self, tenant_id: str, limit: Optional[int] = None) -> List[Run]:
        pass

    @abstractmethod
    def save_continuation(self, continuation: Continuation) -> None:
        """Insert or replace the continuation keyed by (run_id, node_id)."""

    @abstractmethod
    def get_continuation(self, run_id: str, node_id: str) -> Optional[Continuation]:
        pass

    @abstractmethod
    def list_continuations(
        self,
        run_id: Optional[str] = None,
        state: Optional[ContinuationState] = None
    ) -> List[Continuation]:
        pass

    @abstractmethod
    def due_continuations(self, now: datetime) -> List[Continuation]:
        """Pending continuations whose fire time is at or before ``now``."""

    @abstractmethod
    def transition_continuation(
        self,
        run_id: str,
        node_id: str,
        expected: ContinuationState,
        new_state: ContinuationState,
        detail: Optional[str] = None
    ) -> bool:
        """Atomically move a continuation from ``expected`` to ``new_state``.

        Returns False when the continuation is missing or in another state,
        which makes claiming a due continuation safe across sweepers.
        """

    def claim_continuation(self, run_id: str, node_id: str) -> bool:
        return self.transition_continuation(run_id, node_id, ContinuationState.PENDING, ContinuationState.RESUMED)

    @abstractmethod
    def record_event(self, event_id: str) -> bool:
        """Remember an event id; returns False if it was already recorded."""

    @abstractmethod
    def forget_event(self, event_id: str) -> None:
        """Drop a recorded event id so a redelivery is processed again."""


class InMemoryDefinitionStore(DefinitionStore):
    """Definition store kept in process memory. Returns deep copies."""

    def __init__(self):
        self._definitions: Dict[Tuple[str, int], WorkflowDefinition] = {}
        self._lock = threading.RLock()

    def save(self, definition: WorkflowDefinition) -> None:
        with self._lock:
            self._definitions[(definition.id, definition.version)] = definition.model_copy(deep=True)

    def get(self, definition_id: str, version: Optional[int] = None) -> Optional[WorkflowDefinition]:
        with self._lock:
            if version is None:
                versions = self._versions(definition_id)
                return versions[-1].model_copy(deep=True) if versions else None
            definition = self._definitions.get((definition_id, version))
            return definition.model_copy(deep=True) if definition else None

    def _versions(self, definition_id: str) -> List[WorkflowDefinition]:
        return sorted(
            (d for (d_id, _), d in self._definitions.items() if d_id == definition_id),
            key=lambda d: d.version
        )

    def list_versions(self, definition_id: str) -> List[WorkflowDefinition]:
        with self._lock:
            return [d.model_copy(deep=True) for d in self._versions(definition_id)]

    def list_by_tenant(self, tenant_id: Optional[str] = None) -> List[WorkflowDefinition]:
        with self._lock:
            latest: Dict[str, WorkflowDefinition] = {}
            for definition in self._definitions.values():
                if tenant_id is not None and definition.tenant_id != tenant_id:
                    continue
                current = latest.get(definition.id)
                if current is None or definition.version > current.version:
                    latest[definition.id] = definition
            ordered = sorted(latest.values(), key=lambda d: as_utc(d.created_at))
            return [d.model_copy(deep=True) for d in ordered]

    def list_active(self, tenant_id: Optional[str] = None) -> List[WorkflowDefinition]:
        with self._lock:
            return [
                d.model_copy(deep=True)
                for d in self._definitions.values()
                if d.state == DefinitionState.ACTIVE and (tenant_id is None or d.tenant_id == tenant_id)
            ]


class InMemoryRunStore(RunStore):
    """Run store kept in process memory. Returns deep copies."""

    def __init__(self):
        self._runs: Dict[str, Run] = {}
        self._continuations: Dict[Tuple[str, str], Continuation] = {}
        self._events: Set[str] = set()
        self._lock = threading.RLock()

    def save_run(self, run: Run) -> None:
        with self._lock:
            self._runs[run.id] = run.model_copy(deep=True)

    def append_outcome(self, run_id: str, outcome: NodeOutcome) -> None:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise NotFoundError(f"Run {run_id} not found", resource="run", resource_id=run_id)
            run.outcomes.append(outcome.model_copy(deep=True))

    def get_run(self, run_id: str) -> Optional[Run]:
        with self._lock:
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    def list_runs(self, definition_id: str, limit: Optional[int] = None) -> List[Run]:
        with self._lock:
            runs = [r for r in self._runs.values() if r.definition_id == definition_id]
            return self._ordered(runs, limit)

    def list_runs_by_tenant(self, tenant_id: str, limit: Optional[int] = None) -> List[Run]:
        with self._lock:
            runs = [r for r in self._runs.values() if r.tenant_id == tenant_id]
            return self._ordered(runs, limit)

    @staticmethod
    def _ordered(runs: List[Run], limit: Optional[int]) -> List[Run]:
        runs = sorted(runs, key=lambda r: as_utc(r.created_at))
        if limit is not None:
            runs = runs[-limit:]
        return [r.model_copy(deep=True) for r in runs]

    def save_continuation(self, continuation: Continuation) -> None:
        with self._lock:
            self._continuations[(continuation.run_id, continuation.node_id)] = continuation.model_copy(deep=True)

    def get_continuation(self, run_id: str, node_id: str) -> Optional[Continuation]:
        with self._lock:
            continuation = self._continuations.get((run_id, node_id))
            return continuation.model_copy(deep=True) if continuation else None

    def list_continuations(
        self,
        run_id: Optional[str] = None,
        state: Optional[ContinuationState] = None
    ) -> List[Continuation]:
        with self._lock:
            matches = [
                c for c in self._continuations.values()
                if (run_id is None or c.run_id == run_id) and (state is None or c.state == state)
            ]
            return [c.model_copy(deep=True) for c in sorted(matches, key=lambda c: as_utc(c.fire_at))]

    def due_continuations(self, now: datetime) -> List[Continuation]:
        cutoff = as_utc(now)
        return [
            c for c in self.list_continuations(state=ContinuationState.PENDING)
            if as_utc(c.fire_at) <= cutoff
        ]

    def transition_continuation(
        self,
        run_id: str,
        node_id: str,
        expected: ContinuationState,
        new_state: ContinuationState,
        detail: Optional[str] = None
    ) -> bool:
        with self._lock:
            continuation = self._continuations.get((run_id, node_id))
            if continuation is None or continuation.state != expected:
                return False
            continuation.state = new_state
            if detail is not None:
                continuation.detail = detail
            return True

    def record_event(self, event_id: str) -> bool:
        with self._lock:
            if event_id in self._events:
                return False
            self._events.add(event_id)
            return True

    def forget_event(self, event_id: str) -> None:
        with self._lock:
            self._events.discard(event_id)
