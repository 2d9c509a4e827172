"""Execution Engine: runs active workflow definitions against platform events."""

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Union

from pydantic import ValidationError

from ..models.configs import Frequency, NodeType, ScheduleConfig, parse_config
from ..models.core import (
    ACTION_NODE_TYPES,
    Continuation,
    ContinuationState,
    DefinitionState,
    EvaluationContext,
    EvaluationOutcome,
    Event,
    Node,
    NodeOutcome,
    OutcomeStatus,
    Run,
    RunOrigin,
    RunStatus,
    WorkflowDefinition,
    utc_now,
)
from .collaborators import ActionCollaborator, ActionResult, AudienceMetricsReader, SentimentAnalyzer
from .error_recovery import RetryConfig, call_with_retry
from .evaluator import ConditionEvaluator
from .exceptions import (
    ActionError,
    ActionTimeoutError,
    ConfigurationError,
    ErrorKind,
    ErrorRecord,
    ExecutionEngineError,
    InvalidStateError,
    NotFoundError,
    ScheduleError,
    TypeMismatchError,
    WorkflowEngineError,
)
from .logging import clear_logging_context, get_logger, set_logging_context
from .scheduler import Scheduler
from .stores import DefinitionStore, RunStore, as_utc

logger = get_logger(__name__)

Collaborator = Union[ActionCollaborator, AudienceMetricsReader]


class _RunTracker:
    """In-process bookkeeping for one run while it has walks in flight."""

    def __init__(self, run: Run):
        self.lock = threading.RLock()
        self.status = run.status
        self.context = run.context
        self.event = run.event
        self.visited: Set[str] = {outcome.node_id for outcome in run.outcomes}
        self.active_walks = 0
        self.recurrences_armed = False


class ExecutionEngine:
    """Walks active definitions from firing triggers to terminal actions.

    Each run is walked breadth-first, one level at a time, with the sibling
    nodes of a level visited concurrently on the branch pool. A node is
    visited at most once per run, the first time any parent reaches it.
    Schedule nodes whose fire time lies in the future persist a continuation
    and end their branch; ``resume`` (usually via the sweeper) picks the
    branch up again once the continuation is due. A run finishes when no
    walk is in flight and no continuation is pending.
    """

    def __init__(
        self,
        definition_store: DefinitionStore,
        run_store: RunStore,
        evaluator: Optional[ConditionEvaluator] = None,
        scheduler: Optional[Scheduler] = None,
        sentiment_analyzer: Optional[SentimentAnalyzer] = None,
        retry_config: Optional[RetryConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        max_concurrent_runs: int = 10,
        max_branch_workers: int = 20,
        max_action_workers: int = 20,
        action_timeout: float = 30.0,
        sweep_interval: float = 30.0,
        enforce_trigger_preconditions: bool = False
    ):
        """Initialize the execution engine.

        Args:
            definition_store: Source of workflow definitions
            run_store: Durable run history and continuations
            evaluator: Condition evaluator for trigger/filter/audience nodes
            scheduler: Fire time resolution for schedule nodes
            sentiment_analyzer: Optional sentiment capability for filterNegative triggers
            retry_config: Retry policy for action collaborator calls
            clock: Source of the current time
            max_concurrent_runs: Worker threads for submitted events and sweeps
            max_branch_workers: Worker threads for sibling node visits
            max_action_workers: Worker threads for action collaborator calls
            action_timeout: Deadline in seconds for one collaborator call
            sweep_interval: Seconds between continuation sweeps
            enforce_trigger_preconditions: Skip triggers whose keywords/sentiment do not match
        """
        self.definition_store = definition_store
        self.run_store = run_store
        self.evaluator = evaluator or ConditionEvaluator()
        self.scheduler = scheduler or Scheduler()
        self.sentiment_analyzer = sentiment_analyzer
        self.retry_config = retry_config or RetryConfig(
            max_attempts=3, base_delay=1.0, max_delay=30.0, retryable_exceptions=[Exception]
        )
        self.clock = clock
        self.action_timeout = action_timeout
        self.sweep_interval = sweep_interval
        self.enforce_trigger_preconditions = enforce_trigger_preconditions

        self._collaborators: Dict[NodeType, Collaborator] = {}

        self._run_executor = ThreadPoolExecutor(max_workers=max_concurrent_runs, thread_name_prefix="socialflow-run")
        self._branch_executor = ThreadPoolExecutor(max_workers=max_branch_workers, thread_name_prefix="socialflow-branch")
        self._action_executor = ThreadPoolExecutor(max_workers=max_action_workers, thread_name_prefix="socialflow-action")

        self._trackers: Dict[str, _RunTracker] = {}
        self._tracker_lock = threading.RLock()

        self._sweeper_stop = threading.Event()
        self._sweeper_thread: Optional[threading.Thread] = None

        logger.info(
            f"ExecutionEngine initialized with max_concurrent_runs={max_concurrent_runs}, "
            f"max_branch_workers={max_branch_workers}, action_timeout={action_timeout}s"
        )

    # Collaborators

    def register_collaborator(self, node_type: NodeType, collaborator: Collaborator) -> None:
        """
        Register the external capability used by a node type.

        Content and analytics nodes take an ActionCollaborator; audience nodes
        take an AudienceMetricsReader used to look up missing actor profiles.
        """
        if node_type in ACTION_NODE_TYPES:
            if not isinstance(collaborator, ActionCollaborator):
                raise ConfigurationError(f"{node_type.value} nodes need an ActionCollaborator")
        elif node_type == NodeType.AUDIENCE:
            if not isinstance(collaborator, AudienceMetricsReader):
                raise ConfigurationError("audience nodes need an AudienceMetricsReader")
        else:
            raise ConfigurationError(f"{node_type.value} nodes do not use collaborators")

        self._collaborators[node_type] = collaborator
        logger.info(f"Registered {type(collaborator).__name__} for {node_type.value} nodes")

    # Event ingestion

    def submit_event(self, event: Event, context: Optional[EvaluationContext] = None) -> Optional[Future]:
        """
        Enqueue an event for trigger matching.

        Returns:
            Future resolving to the runs created, or None if the event id was
            already processed
        """
        if not self.run_store.record_event(event.event_id):
            logger.info(f"Ignoring duplicate event {event.event_id}")
            return None
        return self._run_executor.submit(self._ingest, event, context or EvaluationContext())

    def handle_event(self, event: Event, context: Optional[EvaluationContext] = None) -> List[Run]:
        """Synchronous form of ``submit_event``; returns the runs created."""
        if not self.run_store.record_event(event.event_id):
            logger.info(f"Ignoring duplicate event {event.event_id}")
            return []
        return self._ingest(event, context or EvaluationContext())

    def _ingest(self, event: Event, context: EvaluationContext) -> List[Run]:
        try:
            return self._process_event(event, context)
        except Exception:
            # Let a redelivery of the event try again
            self.run_store.forget_event(event.event_id)
            logger.warning(f"Processing of event {event.event_id} failed; it will be accepted again")
            raise

    def _process_event(self, event: Event, context: EvaluationContext) -> List[Run]:
        runs = []
        for definition in self.definition_store.list_active(event.tenant_id):
            triggers = [node for node in definition.trigger_nodes() if self.evaluator.matches_source(node, event)]
            if not triggers:
                continue

            run = Run(
                definition_id=definition.id,
                definition_version=definition.version,
                tenant_id=definition.tenant_id,
                origin=RunOrigin.EVENT,
                event=event,
                context=context,
                created_at=self.clock()
            )
            self.run_store.save_run(run)
            logger.info(
                f"Event {event.event_id} fired {len(triggers)} trigger(s) of "
                f"definition {definition.id} v{definition.version}: run {run.id}"
            )

            start_ids = [node.id for node in triggers]
            self._execute(run.id, definition, lambda: self._walk(run.id, definition, start_ids))
            runs.append(self.run_store.get_run(run.id))

        if not runs:
            logger.debug(f"Event {event.event_id} ({event.platform}/{event.event_type}) matched no active trigger")
        return runs

    # Continuations

    def resume(self, run_id: str, node_id: str, now: Optional[datetime] = None) -> bool:
        """
        Resume a suspended schedule branch.

        Returns:
            True if the branch was resumed; False for cancelled or finished
            runs and for continuations that are not pending or not yet due

        Raises:
            NotFoundError: If the continuation does not exist
        """
        now = now or self.clock()
        continuation = self.run_store.get_continuation(run_id, node_id)
        if continuation is None:
            raise NotFoundError(
                f"No continuation for run {run_id} at node {node_id}",
                resource="continuation",
                resource_id=f"{run_id}:{node_id}"
            )
        if continuation.state != ContinuationState.PENDING:
            return False
        if as_utc(continuation.fire_at) > as_utc(now):
            return False

        run = self.run_store.get_run(run_id)
        if run is None or run.is_terminal:
            return False

        if not self.run_store.claim_continuation(run_id, node_id):
            logger.debug(f"Continuation {run_id}:{node_id} already claimed")
            return False

        logger.info(f"Resuming run {run_id} at node {node_id}")
        definition = self.definition_store.get(run.definition_id, run.definition_version)
        if not self._execute(run_id, definition, lambda: self._continue_from(run_id, definition, node_id, continuation)):
            self._skip_claimed(run_id, definition, continuation)
            return False
        return True

    def _skip_claimed(
        self,
        run_id: str,
        definition: Optional[WorkflowDefinition],
        continuation: Continuation
    ) -> None:
        """Record a claimed continuation whose run was cancelled before the branch resumed."""
        if self.get_run(run_id).status != RunStatus.CANCELLED:
            return
        if not self.run_store.transition_continuation(
            run_id, continuation.node_id,
            ContinuationState.RESUMED, ContinuationState.CANCELLED,
            detail="Run cancelled"
        ):
            return
        node = definition.get_node(continuation.node_id) if definition else None
        self.run_store.append_outcome(run_id, NodeOutcome(
            node_id=continuation.node_id,
            node_type=node.type if node else NodeType.SCHEDULE,
            status=OutcomeStatus.SKIPPED,
            timestamp=self.clock(),
            detail="Run cancelled while waiting for fire time",
            fire_at=continuation.fire_at
        ))
        logger.info(f"Run {run_id} was cancelled before node {continuation.node_id} resumed")

    def resume_due(self, now: Optional[datetime] = None) -> int:
        """Resume every due continuation; returns how many branches resumed."""
        now = now or self.clock()
        due = self.run_store.due_continuations(now)
        if not due:
            return 0

        futures = [self._run_executor.submit(self.resume, c.run_id, c.node_id, now) for c in due]
        resumed = 0
        for continuation, future in zip(due, futures):
            try:
                if future.result():
                    resumed += 1
            except WorkflowEngineError as e:
                logger.error(f"Failed to resume {continuation.run_id}:{continuation.node_id}: {e.message}")

        logger.info(f"Continuation sweep resumed {resumed} of {len(due)} due branch(es)")
        return resumed

    def retry_continuation(self, run_id: str, node_id: str) -> Continuation:
        """
        Re-arm a recurrence whose fire time could not be resolved.

        Raises:
            NotFoundError: If the continuation does not exist
            InvalidStateError: If the continuation is not in error state
            ScheduleError: If the fire time still cannot be resolved
        """
        continuation = self.run_store.get_continuation(run_id, node_id)
        if continuation is None:
            raise NotFoundError(
                f"No continuation for run {run_id} at node {node_id}",
                resource="continuation",
                resource_id=f"{run_id}:{node_id}"
            )
        if continuation.state != ContinuationState.ERROR:
            raise InvalidStateError(
                f"Continuation is {continuation.state.value}, only failed continuations can be retried",
                current_state=continuation.state.value
            )

        run = self.get_run(run_id)
        definition = self.definition_store.get(run.definition_id, run.definition_version)
        node = definition.get_node(node_id) if definition else None
        if node is None:
            raise ScheduleError(f"Schedule node {node_id} no longer exists", node_id=node_id)

        try:
            fire_at = self.scheduler.next_fire_time(node, continuation.fire_at, self.clock())
            if fire_at is None:
                raise ScheduleError("Schedule no longer recurs", node_id=node_id)
        except ScheduleError as e:
            continuation.detail = e.message
            self.run_store.save_continuation(continuation)
            raise

        continuation.fire_at = fire_at
        continuation.state = ContinuationState.PENDING
        continuation.detail = None
        self.run_store.save_continuation(continuation)
        logger.info(f"Re-armed continuation {run_id}:{node_id} for {fire_at.isoformat()}")
        return continuation

    def start_sweeper(self) -> None:
        """Start the timer thread that resumes due continuations."""
        if self._sweeper_thread and self._sweeper_thread.is_alive():
            return
        self._sweeper_stop.clear()
        self._sweeper_thread = threading.Thread(target=self._sweep_loop, daemon=True, name="ContinuationSweeper")
        self._sweeper_thread.start()
        logger.info(f"Continuation sweeper started (interval {self.sweep_interval}s)")

    def _sweep_loop(self) -> None:
        while not self._sweeper_stop.wait(self.sweep_interval):
            try:
                self.resume_due()
            except Exception as e:
                logger.error(f"Error in continuation sweep: {str(e)}")

    # Cancellation and queries

    def cancel_run(self, run_id: str) -> Run:
        """
        Cancel a run before it finishes.

        Pending continuations are cancelled and their nodes recorded as
        skipped; walks in flight stop at their next level.

        Raises:
            NotFoundError: If the run does not exist
            InvalidStateError: If the run already finished
        """
        tracker = self._tracker(run_id)
        with tracker.lock:
            run = self.get_run(run_id)
            if run.is_terminal:
                raise InvalidStateError(f"Run {run_id} is already {run.status.value}", current_state=run.status.value)

            run.status = RunStatus.CANCELLED
            run.completed_at = self.clock()
            self.run_store.save_run(run)
            tracker.status = RunStatus.CANCELLED

            definition = self.definition_store.get(run.definition_id, run.definition_version)
            for continuation in self.run_store.list_continuations(run_id, ContinuationState.PENDING):
                if self.run_store.transition_continuation(
                    run_id, continuation.node_id,
                    ContinuationState.PENDING, ContinuationState.CANCELLED,
                    detail="Run cancelled"
                ):
                    node = definition.get_node(continuation.node_id) if definition else None
                    self.run_store.append_outcome(run_id, NodeOutcome(
                        node_id=continuation.node_id,
                        node_type=node.type if node else NodeType.SCHEDULE,
                        status=OutcomeStatus.SKIPPED,
                        timestamp=self.clock(),
                        detail="Run cancelled while waiting for fire time",
                        fire_at=continuation.fire_at
                    ))

            if tracker.active_walks == 0:
                self._drop_tracker(run_id)

        logger.info(f"Cancelled run {run_id}")
        return self.get_run(run_id)

    def get_run(self, run_id: str) -> Run:
        run = self.run_store.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found", resource="run", resource_id=run_id)
        return run

    def list_runs(
        self,
        definition_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Run]:
        if definition_id is not None:
            runs = self.run_store.list_runs(definition_id, limit)
            return [r for r in runs if tenant_id is None or r.tenant_id == tenant_id]
        if tenant_id is not None:
            return self.run_store.list_runs_by_tenant(tenant_id, limit)
        raise ValueError("list_runs needs a definition_id or a tenant_id")

    def get_statistics(self) -> Dict[str, Any]:
        """Engine health figures."""
        with self._tracker_lock:
            active_runs = len(self._trackers)
        return {
            "active_runs": active_runs,
            "pending_continuations": len(self.run_store.list_continuations(state=ContinuationState.PENDING)),
            "collaborators": sorted(node_type.value for node_type in self._collaborators),
            "sweeper_running": bool(self._sweeper_thread and self._sweeper_thread.is_alive())
        }

    # Run lifecycle

    def _tracker(self, run_id: str) -> _RunTracker:
        with self._tracker_lock:
            tracker = self._trackers.get(run_id)
            if tracker is None:
                run = self.get_run(run_id)
                tracker = _RunTracker(run)
                # Finished runs get a throwaway tracker
                if not run.is_terminal:
                    self._trackers[run_id] = tracker
            return tracker

    def _drop_tracker(self, run_id: str) -> None:
        with self._tracker_lock:
            self._trackers.pop(run_id, None)

    def _execute(self, run_id: str, definition: Optional[WorkflowDefinition], body: Callable[[], None]) -> bool:
        """Run one walk of a run: start bookkeeping, contain fatal errors, finish.

        Returns False without walking when the run already finished.
        """
        tracker = self._tracker(run_id)
        with tracker.lock:
            if tracker.status in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED):
                return False
            if tracker.status == RunStatus.PENDING:
                run = self.get_run(run_id)
                run.status = RunStatus.EVALUATING
                run.started_at = self.clock()
                self.run_store.save_run(run)
                tracker.status = RunStatus.EVALUATING
            tracker.active_walks += 1

        set_logging_context(run_id=run_id, definition_id=definition.id if definition else None)
        try:
            if definition is None:
                run = self.get_run(run_id)
                raise ExecutionEngineError(
                    f"Definition {run.definition_id} v{run.definition_version} not found",
                    run_id=run_id,
                    definition_id=run.definition_id
                )
            body()
        except Exception as e:
            self._fail_run(run_id, e)
        finally:
            self._finish_walk(run_id)
            clear_logging_context()
        return True

    def _fail_run(self, run_id: str, error: Exception) -> None:
        if isinstance(error, WorkflowEngineError):
            record = error.to_record()
        else:
            record = ErrorRecord(kind=ErrorKind.ENGINE_INTERNAL, reason=f"{type(error).__name__}: {error}")
        logger.error(f"Run {run_id} failed: {record}", exc_info=not isinstance(error, WorkflowEngineError))

        tracker = self._tracker(run_id)
        with tracker.lock:
            run = self.get_run(run_id)
            if run.is_terminal:
                return
            run.status = RunStatus.FAILED
            run.error = record
            run.completed_at = self.clock()
            self.run_store.save_run(run)
            tracker.status = RunStatus.FAILED

            for continuation in self.run_store.list_continuations(run_id, ContinuationState.PENDING):
                self.run_store.transition_continuation(
                    run_id, continuation.node_id,
                    ContinuationState.PENDING, ContinuationState.CANCELLED,
                    detail="Run failed"
                )

    def _finish_walk(self, run_id: str) -> None:
        tracker = self._tracker(run_id)
        with tracker.lock:
            tracker.active_walks -= 1
            if tracker.active_walks > 0:
                return

            if tracker.status == RunStatus.EVALUATING:
                if self.run_store.list_continuations(run_id, ContinuationState.PENDING):
                    return
                run = self.get_run(run_id)
                failed_actions = [
                    o for o in run.outcomes
                    if o.status == OutcomeStatus.FAILED and o.node_type in ACTION_NODE_TYPES
                ]
                run.status = RunStatus.FAILED if failed_actions else RunStatus.COMPLETED
                run.completed_at = self.clock()
                self.run_store.save_run(run)
                tracker.status = run.status
                logger.info(f"Run {run_id} finished with status {run.status.value}")

            arm = tracker.status in (RunStatus.COMPLETED, RunStatus.FAILED) and not tracker.recurrences_armed
            tracker.recurrences_armed = True
            self._drop_tracker(run_id)

        if arm:
            try:
                self._arm_recurrences(self.get_run(run_id))
            except WorkflowEngineError as e:
                logger.error(f"Failed to arm recurrences of run {run_id}: {e.message}")

    def _arm_recurrences(self, run: Run) -> List[Run]:
        """Create the next run of every recurring schedule node the run fired."""
        definition = self.definition_store.get(run.definition_id, run.definition_version)
        if definition is None or definition.state != DefinitionState.ACTIVE:
            return []

        recurrences = []
        now = self.clock()
        for outcome in run.outcomes:
            if outcome.node_type != NodeType.SCHEDULE or outcome.status != OutcomeStatus.MATCHED:
                continue
            node = definition.get_node(outcome.node_id)
            if node is None:
                continue
            try:
                config: ScheduleConfig = parse_config(node.type, node.config)
            except ValidationError:
                config = None
            if config is not None and config.frequency == Frequency.ONCE:
                continue

            previous = outcome.fire_at or outcome.timestamp
            recurrence = Run(
                definition_id=run.definition_id,
                definition_version=run.definition_version,
                tenant_id=run.tenant_id,
                origin=RunOrigin.SCHEDULE,
                parent_run_id=run.id,
                event=run.event,
                context=run.context,
                created_at=now
            )
            try:
                fire_at = self.scheduler.next_fire_time(node, previous, now)
                continuation = Continuation(run_id=recurrence.id, node_id=node.id, fire_at=fire_at, created_at=now)
                logger.info(f"Armed recurrence {recurrence.id} of run {run.id} at {fire_at.isoformat()}")
            except ScheduleError as e:
                continuation = Continuation(
                    run_id=recurrence.id,
                    node_id=node.id,
                    fire_at=previous,
                    state=ContinuationState.ERROR,
                    detail=e.message,
                    created_at=now
                )
                logger.error(f"Could not resolve recurrence of node {node.id} for run {run.id}: {e.message}")

            self.run_store.save_run(recurrence)
            self.run_store.save_continuation(continuation)
            recurrences.append(recurrence)

        return recurrences

    # Walking

    def _walk(self, run_id: str, definition: WorkflowDefinition, start_ids: List[str]) -> None:
        frontier = list(start_ids)
        while frontier:
            tracker = self._tracker(run_id)
            with tracker.lock:
                level = [node_id for node_id in dict.fromkeys(frontier) if node_id not in tracker.visited]
                tracker.visited.update(level)
                cancelled = tracker.status == RunStatus.CANCELLED

            if cancelled:
                for node_id in level:
                    node = definition.get_node(node_id)
                    if node is not None:
                        self._record(run_id, node, OutcomeStatus.SKIPPED, detail="Run cancelled")
                return

            if len(level) == 1:
                results = [self._visit(run_id, definition, level[0])]
            else:
                futures = [self._branch_executor.submit(self._visit, run_id, definition, node_id) for node_id in level]
                # Let every sibling finish before a fatal error fails the run
                wait(futures)
                results = [future.result() for future in futures]

            frontier = [child for children in results for child in children]

    def _continue_from(
        self,
        run_id: str,
        definition: WorkflowDefinition,
        node_id: str,
        continuation: Continuation
    ) -> None:
        node = self._node(definition, node_id)
        tracker = self._tracker(run_id)
        with tracker.lock:
            tracker.visited.add(node_id)

        self._record(
            run_id, node, OutcomeStatus.MATCHED,
            detail=continuation.detail or "Fire time reached",
            fire_at=continuation.fire_at
        )
        self._walk(run_id, definition, definition.successors(node_id))

    def _node(self, definition: WorkflowDefinition, node_id: str) -> Node:
        node = definition.get_node(node_id)
        if node is None:
            raise ExecutionEngineError(
                f"Node {node_id} does not exist in definition {definition.id} v{definition.version}",
                definition_id=definition.id,
                node_id=node_id
            )
        return node

    def _visit(self, run_id: str, definition: WorkflowDefinition, node_id: str) -> List[str]:
        """Visit one node; returns the successors the walk continues to."""
        node = self._node(definition, node_id)
        run_event = self._event(run_id)

        try:
            if node.type == NodeType.TRIGGER:
                matched = self._visit_trigger(run_id, node, run_event)
            elif node.type in (NodeType.FILTER, NodeType.AUDIENCE):
                matched = self._visit_condition(run_id, node, run_event)
            elif node.type == NodeType.SCHEDULE:
                matched = self._visit_schedule(run_id, node)
            else:
                matched = self._visit_action(run_id, node, run_event)
        except (TypeMismatchError, ScheduleError) as e:
            logger.warning(f"Node {node.id} failed: {e.message}")
            self._record(run_id, node, OutcomeStatus.FAILED, detail=e.message, error=e.to_record(node.id))
            return []
        except ValidationError as e:
            raise ExecutionEngineError(
                f"Malformed config on node {node.id}: {e.errors()[0]['msg']}",
                run_id=run_id,
                definition_id=definition.id,
                node_id=node.id
            ) from e

        return definition.successors(node.id) if matched else []

    def _event(self, run_id: str) -> Event:
        event = self._tracker(run_id).event
        if event is None:
            raise ExecutionEngineError(f"Run {run_id} has no event to evaluate", run_id=run_id)
        return event

    def _context(self, run_id: str) -> EvaluationContext:
        tracker = self._tracker(run_id)
        with tracker.lock:
            return tracker.context

    def _enrich_context(self, run_id: str, **updates: Any) -> EvaluationContext:
        tracker = self._tracker(run_id)
        with tracker.lock:
            tracker.context = tracker.context.model_copy(update=updates)
            run = self.get_run(run_id)
            run.context = tracker.context
            self.run_store.save_run(run)
            return tracker.context

    def _visit_trigger(self, run_id: str, node: Node, event: Event) -> bool:
        config = parse_config(node.type, node.config)
        context = self._context(run_id)

        if config.filter_negative and context.sentiment is None and self.sentiment_analyzer is not None:
            try:
                sentiment = self.sentiment_analyzer.analyze(event)
            except Exception as e:
                logger.warning(f"Sentiment analysis failed for event {event.event_id}: {e}")
                sentiment = None
            if sentiment is not None:
                context = self._enrich_context(run_id, sentiment=sentiment)

        detail = f"Fired on {event.platform} / {event.event_type}"
        if self.evaluator.evaluate(node, event, context) == EvaluationOutcome.NO_MATCH:
            if self.enforce_trigger_preconditions:
                self._record(run_id, node, OutcomeStatus.SKIPPED, detail="Keyword or sentiment precondition not met")
                return False
            detail += "; keyword or sentiment precondition not met"

        self._record(run_id, node, OutcomeStatus.MATCHED, detail=detail)
        return True

    def _visit_condition(self, run_id: str, node: Node, event: Event) -> bool:
        context = self._context(run_id)

        if node.type == NodeType.AUDIENCE and context.actor is None:
            reader = self._collaborators.get(NodeType.AUDIENCE)
            if reader is not None:
                try:
                    profile = reader.profile_for(event)
                except Exception as e:
                    logger.warning(f"Audience metrics lookup failed for event {event.event_id}: {e}")
                    profile = None
                if profile is not None:
                    context = self._enrich_context(run_id, actor=profile)

        if self.evaluator.evaluate(node, event, context) == EvaluationOutcome.MATCH:
            self._record(run_id, node, OutcomeStatus.MATCHED)
            return True

        self._record(run_id, node, OutcomeStatus.SKIPPED, detail="Condition not met")
        return False

    def _visit_schedule(self, run_id: str, node: Node) -> bool:
        parse_config(node.type, node.config)
        now = self.clock()
        fire_time = self.scheduler.resolve(node, now)

        if as_utc(fire_time.fire_at) <= as_utc(now):
            self._record(
                run_id, node, OutcomeStatus.MATCHED,
                detail=fire_time.detail or "Due immediately",
                fire_at=fire_time.fire_at
            )
            return True

        self.run_store.save_continuation(Continuation(
            run_id=run_id,
            node_id=node.id,
            fire_at=fire_time.fire_at,
            detail=fire_time.detail,
            created_at=now
        ))
        logger.info(f"Run {run_id} suspended at node {node.id} until {fire_time.fire_at.isoformat()}")
        return False

    def _visit_action(self, run_id: str, node: Node, event: Event) -> bool:
        config = parse_config(node.type, node.config)
        collaborator = self._collaborators.get(node.type)

        if collaborator is None:
            error = ActionError(f"No collaborator registered for {node.type.value} nodes", recoverable=False)
            self._record(run_id, node, OutcomeStatus.FAILED, detail=error.message, error=error.to_record(node.id))
            return False

        context = self._context(run_id)
        try:
            result = call_with_retry(
                self._call_action, self.retry_config, collaborator, config, event, context,
                operation=f"{node.type.value}:{node.id}"
            )
        except ActionError as e:
            self._record(run_id, node, OutcomeStatus.FAILED, detail=e.message, error=e.to_record(node.id))
            return False
        except Exception as e:
            error = ActionError(f"{type(e).__name__}: {e}", recoverable=False)
            self._record(run_id, node, OutcomeStatus.FAILED, detail=error.message, error=error.to_record(node.id))
            return False

        self._record(run_id, node, OutcomeStatus.EXECUTED, detail=result.detail, result=result.data or None)
        return True

    def _call_action(
        self,
        collaborator: ActionCollaborator,
        config: Any,
        event: Event,
        context: EvaluationContext
    ) -> ActionResult:
        """Call a collaborator on the action pool with a deadline."""
        future = self._action_executor.submit(collaborator.execute, config, event, context)
        try:
            result = future.result(timeout=self.action_timeout)
        except FutureTimeoutError:
            future.cancel()
            raise ActionTimeoutError(
                f"Action timed out after {self.action_timeout} seconds",
                timeout=self.action_timeout
            )

        if result is None:
            return ActionResult()
        if isinstance(result, dict):
            return ActionResult(data=result)
        return result

    def _record(
        self,
        run_id: str,
        node: Node,
        status: OutcomeStatus,
        detail: Optional[str] = None,
        fire_at: Optional[datetime] = None,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[ErrorRecord] = None
    ) -> None:
        outcome = NodeOutcome(
            node_id=node.id,
            node_type=node.type,
            status=status,
            timestamp=self.clock(),
            detail=detail,
            fire_at=fire_at,
            result=result,
            error=error
        )
        tracker = self._tracker(run_id)
        with tracker.lock:
            if tracker.status in (RunStatus.COMPLETED, RunStatus.FAILED):
                logger.warning(f"Discarding {status.value} outcome of node {node.id}: run {run_id} already finished")
                return
            self.run_store.append_outcome(run_id, outcome)
        logger.debug(f"Run {run_id} node {node.id} ({node.type.value}): {status.value}")

    # Shutdown

    def shutdown(self, wait: bool = True) -> None:
        """Stop the sweeper and the worker pools."""
        self._sweeper_stop.set()
        if self._sweeper_thread and self._sweeper_thread.is_alive():
            self._sweeper_thread.join(timeout=5.0)
            logger.info("Continuation sweeper stopped")

        self._run_executor.shutdown(wait=wait)
        self._branch_executor.shutdown(wait=wait)
        self._action_executor.shutdown(wait=wait)
        logger.info("ExecutionEngine shutdown completed")
