"""SQLAlchemy implementations of the definition and run stores."""

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.error_recovery import RetryConfig, with_retry
from ..core.exceptions import NotFoundError, StorageError, TransientError
from ..core.logging import get_logger
from ..core.stores import DefinitionStore, RunStore
from ..models.core import (
    Continuation,
    ContinuationState,
    DefinitionState,
    NodeOutcome,
    Run,
    WorkflowDefinition,
    utc_now,
)
from .models import (
    ContinuationModel,
    DefinitionModel,
    NodeOutcomeModel,
    ProcessedEventModel,
    RunModel,
)

logger = get_logger(__name__)

_STORAGE_RETRY = RetryConfig(max_attempts=3, base_delay=0.1, retryable_exceptions=[StorageError, TransientError])


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    """Columns hold naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


class _SqlStore:
    """Session handling shared by the SQL stores."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._lock = threading.RLock()

    @contextmanager
    def _session(self, operation: str, table: Optional[str] = None) -> Iterator[Session]:
        with self._lock:
            session = self._session_factory()
            try:
                yield session
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Database error during {operation}: {e}")
                raise StorageError(f"Failed to {operation.replace('_', ' ')}: {e}", operation=operation, table=table) from e
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()


class SqlDefinitionStore(_SqlStore, DefinitionStore):
    """Definition versions persisted as JSON documents, one row per version."""

    @staticmethod
    def _to_domain(row: DefinitionModel) -> WorkflowDefinition:
        return WorkflowDefinition.model_validate(row.definition)

    @with_retry(_STORAGE_RETRY)
    def save(self, definition: WorkflowDefinition) -> None:
        with self._session("save_definition", "workflow_definitions") as session:
            row = session.get(DefinitionModel, (definition.id, definition.version))
            if row is None:
                row = DefinitionModel(id=definition.id, version=definition.version)
                session.add(row)
            row.tenant_id = definition.tenant_id
            row.name = definition.name
            row.description = definition.description
            row.state = definition.state.value
            row.definition = definition.model_dump(mode="json")
            row.created_at = _to_db(definition.created_at)
            row.updated_at = _to_db(definition.updated_at)

    def get(self, definition_id: str, version: Optional[int] = None) -> Optional[WorkflowDefinition]:
        with self._session("get_definition", "workflow_definitions") as session:
            query = session.query(DefinitionModel).filter(DefinitionModel.id == definition_id)
            if version is not None:
                row = query.filter(DefinitionModel.version == version).first()
            else:
                row = query.order_by(DefinitionModel.version.desc()).first()
            return self._to_domain(row) if row else None

    def list_versions(self, definition_id: str) -> List[WorkflowDefinition]:
        with self._session("list_versions", "workflow_definitions") as session:
            rows = (
                session.query(DefinitionModel)
                .filter(DefinitionModel.id == definition_id)
                .order_by(DefinitionModel.version)
                .all()
            )
            return [self._to_domain(row) for row in rows]

    def list_by_tenant(self, tenant_id: Optional[str] = None) -> List[WorkflowDefinition]:
        with self._session("list_definitions", "workflow_definitions") as session:
            latest = (
                session.query(DefinitionModel.id, func.max(DefinitionModel.version).label("version"))
                .group_by(DefinitionModel.id)
                .subquery()
            )
            query = session.query(DefinitionModel).join(
                latest,
                (DefinitionModel.id == latest.c.id) & (DefinitionModel.version == latest.c.version)
            )
            if tenant_id is not None:
                query = query.filter(DefinitionModel.tenant_id == tenant_id)
            rows = query.order_by(DefinitionModel.created_at).all()
            return [self._to_domain(row) for row in rows]

    def list_active(self, tenant_id: Optional[str] = None) -> List[WorkflowDefinition]:
        with self._session("list_active_definitions", "workflow_definitions") as session:
            query = session.query(DefinitionModel).filter(DefinitionModel.state == DefinitionState.ACTIVE.value)
            if tenant_id is not None:
                query = query.filter(DefinitionModel.tenant_id == tenant_id)
            return [self._to_domain(row) for row in query.order_by(DefinitionModel.created_at).all()]


class SqlRunStore(_SqlStore, RunStore):
    """Runs, their outcome history, continuations and processed event ids."""

    # Conversions

    @staticmethod
    def _outcome_to_domain(row: NodeOutcomeModel) -> NodeOutcome:
        return NodeOutcome(
            node_id=row.node_id,
            node_type=row.node_type,
            status=row.status,
            timestamp=_from_db(row.timestamp),
            detail=row.detail,
            fire_at=_from_db(row.fire_at),
            result=row.result,
            error=row.error
        )

    @staticmethod
    def _outcome_to_row(run_id: str, outcome: NodeOutcome) -> NodeOutcomeModel:
        return NodeOutcomeModel(
            run_id=run_id,
            node_id=outcome.node_id,
            node_type=outcome.node_type.value,
            status=outcome.status.value,
            timestamp=_to_db(outcome.timestamp),
            detail=outcome.detail,
            fire_at=_to_db(outcome.fire_at),
            result=outcome.result,
            error=outcome.error.model_dump(mode="json") if outcome.error else None
        )

    def _run_to_domain(self, row: RunModel) -> Run:
        return Run(
            id=row.id,
            definition_id=row.definition_id,
            definition_version=row.definition_version,
            tenant_id=row.tenant_id,
            origin=row.origin,
            parent_run_id=row.parent_run_id,
            event=row.event,
            context=row.context or {},
            outcomes=[self._outcome_to_domain(o) for o in row.outcomes],
            status=row.status,
            error=row.error,
            created_at=_from_db(row.created_at),
            started_at=_from_db(row.started_at),
            completed_at=_from_db(row.completed_at)
        )

    @staticmethod
    def _continuation_to_domain(row: ContinuationModel) -> Continuation:
        return Continuation(
            run_id=row.run_id,
            node_id=row.node_id,
            fire_at=_from_db(row.fire_at),
            state=row.state,
            detail=row.detail,
            created_at=_from_db(row.created_at)
        )

    # Runs

    @with_retry(_STORAGE_RETRY)
    def save_run(self, run: Run) -> None:
        """Insert a run with its outcomes, or update the run columns of an existing one."""
        with self._session("save_run", "workflow_runs") as session:
            row = session.get(RunModel, run.id)
            is_new = row is None
            if is_new:
                row = RunModel(id=run.id)
                session.add(row)

            row.definition_id = run.definition_id
            row.definition_version = run.definition_version
            row.tenant_id = run.tenant_id
            row.origin = run.origin.value
            row.parent_run_id = run.parent_run_id
            row.status = run.status.value
            row.event = run.event.model_dump(mode="json") if run.event else None
            row.context = run.context.model_dump(mode="json")
            row.error = run.error.model_dump(mode="json") if run.error else None
            row.created_at = _to_db(run.created_at)
            row.started_at = _to_db(run.started_at)
            row.completed_at = _to_db(run.completed_at)

            if is_new:
                for outcome in run.outcomes:
                    row.outcomes.append(self._outcome_to_row(run.id, outcome))

    @with_retry(_STORAGE_RETRY)
    def append_outcome(self, run_id: str, outcome: NodeOutcome) -> None:
        with self._session("append_outcome", "node_outcomes") as session:
            if session.get(RunModel, run_id) is None:
                raise NotFoundError(f"Run {run_id} not found", resource="run", resource_id=run_id)
            session.add(self._outcome_to_row(run_id, outcome))

    def get_run(self, run_id: str) -> Optional[Run]:
        with self._session("get_run", "workflow_runs") as session:
            row = session.get(RunModel, run_id)
            return self._run_to_domain(row) if row else None

    def _list_runs(self, operation: str, criterion, limit: Optional[int]) -> List[Run]:
        with self._session(operation, "workflow_runs") as session:
            query = session.query(RunModel).filter(criterion).order_by(RunModel.created_at.desc())
            if limit is not None:
                query = query.limit(limit)
            rows = list(reversed(query.all()))
            return [self._run_to_domain(row) for row in rows]

    def list_runs(self, definition_id: str, limit: Optional[int] = None) -> List[Run]:
        return self._list_runs("list_runs", RunModel.definition_id == definition_id, limit)

    def list_runs_by_tenant(self, tenant_id: str, limit: Optional[int] = None) -> List[Run]:
        return self._list_runs("list_runs_by_tenant", RunModel.tenant_id == tenant_id, limit)

    # Continuations

    @with_retry(_STORAGE_RETRY)
    def save_continuation(self, continuation: Continuation) -> None:
        with self._session("save_continuation", "continuations") as session:
            row = session.get(ContinuationModel, (continuation.run_id, continuation.node_id))
            if row is None:
                row = ContinuationModel(run_id=continuation.run_id, node_id=continuation.node_id)
                session.add(row)
            row.fire_at = _to_db(continuation.fire_at)
            row.state = continuation.state.value
            row.detail = continuation.detail
            row.created_at = _to_db(continuation.created_at)

    def get_continuation(self, run_id: str, node_id: str) -> Optional[Continuation]:
        with self._session("get_continuation", "continuations") as session:
            row = session.get(ContinuationModel, (run_id, node_id))
            return self._continuation_to_domain(row) if row else None

    def list_continuations(
        self,
        run_id: Optional[str] = None,
        state: Optional[ContinuationState] = None
    ) -> List[Continuation]:
        with self._session("list_continuations", "continuations") as session:
            query = session.query(ContinuationModel)
            if run_id is not None:
                query = query.filter(ContinuationModel.run_id == run_id)
            if state is not None:
                query = query.filter(ContinuationModel.state == state.value)
            rows = query.order_by(ContinuationModel.fire_at).all()
            return [self._continuation_to_domain(row) for row in rows]

    def due_continuations(self, now: datetime) -> List[Continuation]:
        with self._session("due_continuations", "continuations") as session:
            rows = (
                session.query(ContinuationModel)
                .filter(
                    ContinuationModel.state == ContinuationState.PENDING.value,
                    ContinuationModel.fire_at <= _to_db(now if now.tzinfo else now.replace(tzinfo=timezone.utc))
                )
                .order_by(ContinuationModel.fire_at)
                .all()
            )
            return [self._continuation_to_domain(row) for row in rows]

    def transition_continuation(
        self,
        run_id: str,
        node_id: str,
        expected: ContinuationState,
        new_state: ContinuationState,
        detail: Optional[str] = None
    ) -> bool:
        values = {ContinuationModel.state: new_state.value}
        if detail is not None:
            values[ContinuationModel.detail] = detail

        with self._session("transition_continuation", "continuations") as session:
            updated = (
                session.query(ContinuationModel)
                .filter(
                    ContinuationModel.run_id == run_id,
                    ContinuationModel.node_id == node_id,
                    ContinuationModel.state == expected.value
                )
                .update(values, synchronize_session=False)
            )
        return updated == 1

    # Processed events

    def record_event(self, event_id: str) -> bool:
        try:
            with self._session("record_event", "processed_events") as session:
                if session.get(ProcessedEventModel, event_id) is not None:
                    return False
                session.add(ProcessedEventModel(event_id=event_id, processed_at=_to_db(utc_now())))
                session.flush()
        except StorageError as e:
            if isinstance(e.__cause__, IntegrityError):
                logger.info(f"Event {event_id} was recorded concurrently")
                return False
            raise
        return True

    def forget_event(self, event_id: str) -> None:
        with self._session("forget_event", "processed_events") as session:
            session.query(ProcessedEventModel).filter(ProcessedEventModel.event_id == event_id).delete()
