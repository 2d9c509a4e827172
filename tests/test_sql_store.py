"""Tests for the SQLAlchemy-backed stores."""

from datetime import timedelta, timezone

import pytest
from sqlalchemy import text

from socialflow.core.definition_manager import DefinitionManager
from socialflow.core.exceptions import ErrorKind, ErrorRecord, NotFoundError, StorageError
from socialflow.core.execution_engine import ExecutionEngine
from socialflow.core.scheduler import Scheduler
from socialflow.models.configs import NodeType
from socialflow.models.core import (
    Continuation,
    ContinuationState,
    DefinitionState,
    EvaluationContext,
    NodeOutcome,
    OutcomeStatus,
    Run,
    RunStatus,
    Sentiment,
)
from socialflow.storage import (
    SqlDefinitionStore,
    SqlRunStore,
    build_engine,
    create_tables,
    drop_tables,
    get_session_factory,
)
from socialflow.storage.migrations import run_migrations

from conftest import (
    BASE_TIME,
    RecordingPublisher,
    content_node,
    make_definition,
    make_event,
    price_reply_definition,
    schedule_node,
    trigger_node,
)


@pytest.fixture
def db_engine(sqlite_url):
    engine = build_engine(sqlite_url)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sql_definitions(db_engine):
    return SqlDefinitionStore(get_session_factory(db_engine))


@pytest.fixture
def sql_runs(db_engine):
    return SqlRunStore(get_session_factory(db_engine))


def make_run(definition_id="def-1", **kwargs):
    fields = dict(
        definition_id=definition_id,
        definition_version=1,
        tenant_id="acme",
        event=make_event(),
        created_at=BASE_TIME
    )
    fields.update(kwargs)
    return Run(**fields)


class TestSqlDefinitionStore:

    def test_save_and_get_versions(self, sql_definitions):
        v1 = price_reply_definition(tenant_id="acme")
        sql_definitions.save(v1)
        v2 = v1.clone_as_draft(2)
        sql_definitions.save(v2)

        latest = sql_definitions.get(v1.id)
        assert latest.version == 2
        assert latest.nodes == v1.nodes
        assert latest.edges == v1.edges
        assert sql_definitions.get(v1.id, 1).version == 1
        assert sql_definitions.get(v1.id, 3) is None
        assert sql_definitions.get("missing") is None
        assert [d.version for d in sql_definitions.list_versions(v1.id)] == [1, 2]

    def test_save_replaces_existing_version(self, sql_definitions):
        definition = price_reply_definition()
        sql_definitions.save(definition)

        sql_definitions.save(definition.model_copy(update={"state": DefinitionState.ACTIVE}))

        assert sql_definitions.get(definition.id).state == DefinitionState.ACTIVE
        assert len(sql_definitions.list_versions(definition.id)) == 1

    def test_list_by_tenant_and_active(self, sql_definitions):
        acme = price_reply_definition(tenant_id="acme", state=DefinitionState.ACTIVE)
        globex = price_reply_definition(tenant_id="globex")
        sql_definitions.save(acme)
        sql_definitions.save(globex)
        sql_definitions.save(acme.clone_as_draft(2))

        assert [(d.id, d.version) for d in sql_definitions.list_by_tenant("acme")] == [(acme.id, 2)]
        assert len(sql_definitions.list_by_tenant()) == 2
        assert [(d.id, d.version) for d in sql_definitions.list_active()] == [(acme.id, 1)]
        assert sql_definitions.list_active("globex") == []

    def test_missing_tables_raise_storage_error(self, sql_definitions, db_engine):
        drop_tables(db_engine)

        with pytest.raises(StorageError):
            sql_definitions.get("anything")


class TestSqlRunStore:

    def test_save_and_get_run(self, sql_runs):
        run = make_run(
            context=EvaluationContext(sentiment=Sentiment.POSITIVE, attributes={"campaign": "june"}),
            outcomes=[NodeOutcome(node_id="trigger", node_type=NodeType.TRIGGER,
                                  status=OutcomeStatus.MATCHED, timestamp=BASE_TIME)]
        )
        sql_runs.save_run(run)

        loaded = sql_runs.get_run(run.id)

        assert loaded.event == run.event
        assert loaded.context == run.context
        assert loaded.created_at == BASE_TIME
        assert loaded.created_at.tzinfo is not None
        assert [o.node_id for o in loaded.outcomes] == ["trigger"]
        assert sql_runs.get_run("missing") is None

    def test_update_keeps_outcomes(self, sql_runs):
        run = make_run()
        sql_runs.save_run(run)
        sql_runs.append_outcome(run.id, NodeOutcome(
            node_id="content", node_type=NodeType.CONTENT, status=OutcomeStatus.FAILED,
            error=ErrorRecord(kind=ErrorKind.ACTION_ERROR, reason="rejected", node_id="content")
        ))

        run.status = RunStatus.FAILED
        run.completed_at = BASE_TIME + timedelta(seconds=5)
        sql_runs.save_run(run)

        loaded = sql_runs.get_run(run.id)
        assert loaded.status == RunStatus.FAILED
        assert loaded.completed_at == BASE_TIME + timedelta(seconds=5)
        assert loaded.outcomes[0].error.kind == ErrorKind.ACTION_ERROR

    def test_outcomes_keep_append_order(self, sql_runs):
        run = make_run()
        sql_runs.save_run(run)
        for node_id in ("trigger", "filter", "content"):
            sql_runs.append_outcome(run.id, NodeOutcome(
                node_id=node_id, node_type=NodeType.FILTER, status=OutcomeStatus.MATCHED
            ))

        assert [o.node_id for o in sql_runs.get_run(run.id).outcomes] == ["trigger", "filter", "content"]

    def test_append_to_missing_run(self, sql_runs):
        with pytest.raises(NotFoundError):
            sql_runs.append_outcome("missing", NodeOutcome(
                node_id="trigger", node_type=NodeType.TRIGGER, status=OutcomeStatus.MATCHED
            ))

    def test_list_runs_oldest_first_with_limit(self, sql_runs):
        runs = [make_run(created_at=BASE_TIME + timedelta(minutes=i)) for i in range(4)]
        for run in runs:
            sql_runs.save_run(run)
        sql_runs.save_run(make_run(definition_id="def-2", tenant_id="globex"))

        assert [r.id for r in sql_runs.list_runs("def-1")] == [r.id for r in runs]
        assert [r.id for r in sql_runs.list_runs("def-1", limit=2)] == [runs[2].id, runs[3].id]
        assert len(sql_runs.list_runs_by_tenant("acme")) == 4
        assert len(sql_runs.list_runs_by_tenant("globex")) == 1

    def test_due_continuations(self, sql_runs):
        run = make_run()
        sql_runs.save_run(run)
        sql_runs.save_continuation(Continuation(run_id=run.id, node_id="later", fire_at=BASE_TIME + timedelta(hours=1)))
        sql_runs.save_continuation(Continuation(run_id=run.id, node_id="now", fire_at=BASE_TIME))

        due = sql_runs.due_continuations(BASE_TIME)
        assert [c.node_id for c in due] == ["now"]
        assert due[0].fire_at == BASE_TIME

        eastern = timezone(timedelta(hours=-4))
        later = (BASE_TIME + timedelta(hours=1)).astimezone(eastern)
        assert [c.node_id for c in sql_runs.due_continuations(later)] == ["now", "later"]

    def test_transition_is_conditional(self, sql_runs):
        run = make_run()
        sql_runs.save_run(run)
        sql_runs.save_continuation(Continuation(run_id=run.id, node_id="schedule", fire_at=BASE_TIME))

        assert sql_runs.claim_continuation(run.id, "schedule") is True
        assert sql_runs.claim_continuation(run.id, "schedule") is False
        assert sql_runs.transition_continuation(
            run.id, "schedule", ContinuationState.PENDING, ContinuationState.CANCELLED
        ) is False
        assert sql_runs.transition_continuation("missing", "schedule",
                                                ContinuationState.PENDING, ContinuationState.RESUMED) is False

        continuation = sql_runs.get_continuation(run.id, "schedule")
        assert continuation.state == ContinuationState.RESUMED
        assert sql_runs.list_continuations(run.id, ContinuationState.PENDING) == []

    def test_record_event(self, sql_runs):
        assert sql_runs.record_event("evt-1") is True
        assert sql_runs.record_event("evt-1") is False
        assert sql_runs.record_event("evt-2") is True

    def test_forget_event(self, sql_runs):
        sql_runs.record_event("evt-1")

        sql_runs.forget_event("evt-1")
        sql_runs.forget_event("never-seen")

        assert sql_runs.record_event("evt-1") is True
        assert sql_runs.record_event("evt-1") is False


class TestMigrations:

    def test_run_migrations_creates_indexes(self, db_engine):
        run_migrations(db_engine)
        run_migrations(db_engine)

        with db_engine.connect() as connection:
            names = {
                row[0] for row in connection.execute(
                    text("SELECT name FROM sqlite_master WHERE type = 'index'")
                )
            }
        assert "idx_continuations_state_fire_at" in names
        assert "idx_workflow_runs_definition_created" in names


class TestEngineOnSql:

    @pytest.fixture
    def sql_engine(self, sql_definitions, sql_runs, clock, retry_config, publisher):
        execution_engine = ExecutionEngine(
            sql_definitions,
            sql_runs,
            scheduler=Scheduler("UTC"),
            retry_config=retry_config,
            clock=clock,
            max_concurrent_runs=2,
            max_branch_workers=2,
            max_action_workers=2
        )
        execution_engine.register_collaborator(NodeType.CONTENT, publisher)
        yield execution_engine
        execution_engine.shutdown(wait=False)

    def test_price_reply(self, sql_engine, sql_definitions, publisher):
        manager = DefinitionManager(sql_definitions)
        definition = manager.create_definition(price_reply_definition())
        manager.activate(definition.id)

        run = sql_engine.handle_event(make_event())[0]

        assert run.status == RunStatus.COMPLETED
        assert [o.status for o in run.outcomes] == [
            OutcomeStatus.MATCHED, OutcomeStatus.MATCHED, OutcomeStatus.EXECUTED
        ]
        assert sql_engine.handle_event(make_event(event_id=run.event.event_id)) == []
        assert len(publisher.calls) == 1

    def test_suspended_branch_survives_in_database(self, sql_engine, sql_definitions, sql_runs, clock, publisher):
        manager = DefinitionManager(sql_definitions)
        definition = manager.create_definition(make_definition(
            [trigger_node(), schedule_node(scheduleType="Queue", queueSlot="Evening"), content_node()],
            [("trigger", "schedule"), ("schedule", "content")]
        ))
        manager.activate(definition.id)

        run = sql_engine.handle_event(make_event())[0]
        assert sql_runs.get_continuation(run.id, "schedule").state == ContinuationState.PENDING

        clock.advance(hours=8)
        assert sql_engine.resume_due() == 1

        run = sql_engine.get_run(run.id)
        assert run.status == RunStatus.COMPLETED
        assert run.outcome_for("content").status == OutcomeStatus.EXECUTED
        assert len(publisher.calls) == 1
