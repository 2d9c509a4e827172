"""FastAPI REST endpoints for the automation engine."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ..core.definition_manager import DefinitionManager
from ..core.exceptions import WorkflowEngineError, create_error_response
from ..core.execution_engine import ExecutionEngine
from ..core.logging import get_logger
from ..core.middleware import status_code_for
from ..models.configs import NODE_SCHEMAS, NodeSchema
from ..models.core import (
    Continuation,
    DefinitionSummary,
    EvaluationContext,
    Event,
    Run,
    ValidationResult,
    WorkflowDefinition,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["automation"])

# Global instances (initialized by the application factory)
_definition_manager: Optional[DefinitionManager] = None
_execution_engine: Optional[ExecutionEngine] = None


def init_dependencies(definition_manager: DefinitionManager, execution_engine: ExecutionEngine):
    """Initialize the global dependencies."""
    global _definition_manager, _execution_engine
    _definition_manager = definition_manager
    _execution_engine = execution_engine


def get_definition_manager() -> DefinitionManager:
    if _definition_manager is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Definition manager not initialized"
        )
    return _definition_manager


def get_execution_engine() -> ExecutionEngine:
    if _execution_engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Execution engine not initialized"
        )
    return _execution_engine


def _http_error(error: WorkflowEngineError) -> HTTPException:
    """Translate an engine error into an HTTP error carrying the structured response."""
    status_code = status_code_for(error)
    if status_code >= 500:
        logger.error(f"{error.error_code}: {error.message}")
    else:
        logger.warning(f"{error.error_code}: {error.message}")
    return HTTPException(status_code=status_code, detail=create_error_response(error))


# Request/Response models

class CreateDefinitionRequest(BaseModel):
    """Request model for creating a definition."""
    definition: WorkflowDefinition = Field(..., description="Definition to store as draft version 1")


class UpdateDefinitionRequest(BaseModel):
    """Request model for replacing the content of a draft."""
    definition: WorkflowDefinition = Field(..., description="New content of the draft version")


class DefinitionResponse(BaseModel):
    definition: WorkflowDefinition
    message: str


class EventRequest(BaseModel):
    """Request model for ingesting a platform event."""
    event: Event = Field(..., description="Normalized platform event")
    context: Optional[EvaluationContext] = Field(None, description="Pre-resolved actor profile, sentiment and attributes")
    wait: bool = Field(True, description="Process the event before responding")


class EventResponse(BaseModel):
    """Response model for event ingestion."""
    event_id: str
    duplicate: bool = Field(False, description="The event id was already processed")
    accepted: bool = Field(True, description="The event was queued or processed")
    runs: List[Run] = Field(default_factory=list, description="Runs created, when processed synchronously")


# Schema registry

@router.get(
    "/schema",
    response_model=Dict[str, NodeSchema],
    summary="Node schema registry",
    description="Field declarations of every node type, as used by the editor and the validator"
)
async def get_schema() -> Dict[str, Any]:
    return {node_type.value: schema for node_type, schema in NODE_SCHEMAS.items()}


# Definitions

@router.post(
    "/definitions",
    response_model=DefinitionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow definition"
)
async def create_definition(
    request: CreateDefinitionRequest,
    manager: DefinitionManager = Depends(get_definition_manager)
) -> DefinitionResponse:
    try:
        definition = manager.create_definition(request.definition)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return DefinitionResponse(definition=definition, message=f"Definition '{definition.name}' created as draft")


@router.get("/definitions", response_model=List[DefinitionSummary], summary="List definitions")
async def list_definitions(
    tenant_id: Optional[str] = Query(None, description="Limit to one tenant"),
    manager: DefinitionManager = Depends(get_definition_manager)
) -> List[DefinitionSummary]:
    try:
        return [DefinitionSummary.from_definition(d) for d in manager.list_definitions(tenant_id)]
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/definitions/{definition_id}", response_model=WorkflowDefinition, summary="Get a definition version")
async def get_definition(
    definition_id: str,
    version: Optional[int] = Query(None, ge=1, description="Version to fetch; latest when omitted"),
    manager: DefinitionManager = Depends(get_definition_manager)
) -> WorkflowDefinition:
    try:
        return manager.get_definition(definition_id, version)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get(
    "/definitions/{definition_id}/versions",
    response_model=List[DefinitionSummary],
    summary="List every version of a definition"
)
async def list_versions(
    definition_id: str,
    manager: DefinitionManager = Depends(get_definition_manager)
) -> List[DefinitionSummary]:
    try:
        return [DefinitionSummary.from_definition(d) for d in manager.list_versions(definition_id)]
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.put("/definitions/{definition_id}", response_model=DefinitionResponse, summary="Replace a draft")
async def update_definition(
    definition_id: str,
    request: UpdateDefinitionRequest,
    manager: DefinitionManager = Depends(get_definition_manager)
) -> DefinitionResponse:
    """Only draft versions can be edited; clone an active version to get a new draft."""
    definition = request.definition.model_copy(update={"id": definition_id})
    try:
        updated = manager.update_definition(definition)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return DefinitionResponse(definition=updated, message=f"Draft v{updated.version} updated")


@router.post(
    "/definitions/{definition_id}/validate",
    response_model=ValidationResult,
    summary="Validate a definition version"
)
async def validate_definition(
    definition_id: str,
    version: Optional[int] = Query(None, ge=1),
    manager: DefinitionManager = Depends(get_definition_manager)
) -> ValidationResult:
    try:
        return manager.validate_definition(definition_id, version)
    except WorkflowEngineError as e:
        raise _http_error(e)


def _lifecycle_route(action: str, summary: str):
    @router.post(
        f"/definitions/{{definition_id}}/{action}",
        response_model=DefinitionResponse,
        summary=summary,
        name=f"{action}_definition"
    )
    async def transition(
        definition_id: str,
        version: Optional[int] = Query(None, ge=1),
        manager: DefinitionManager = Depends(get_definition_manager)
    ) -> DefinitionResponse:
        try:
            definition = getattr(manager, action)(definition_id, version)
        except WorkflowEngineError as e:
            raise _http_error(e)
        return DefinitionResponse(
            definition=definition,
            message=f"Definition {definition_id} v{definition.version} is {definition.state.value}"
        )

    return transition


activate_definition = _lifecycle_route("activate", "Activate a draft or paused version")
pause_definition = _lifecycle_route("pause", "Pause an active version")
archive_definition = _lifecycle_route("archive", "Archive a version")


@router.post(
    "/definitions/{definition_id}/clone",
    response_model=DefinitionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Copy a version into a new draft"
)
async def clone_definition(
    definition_id: str,
    version: Optional[int] = Query(None, ge=1),
    manager: DefinitionManager = Depends(get_definition_manager)
) -> DefinitionResponse:
    try:
        draft = manager.clone_to_draft(definition_id, version)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return DefinitionResponse(definition=draft, message=f"Created draft v{draft.version}")


@router.get("/definitions/{definition_id}/runs", response_model=List[Run], summary="Run history of a definition")
async def list_definition_runs(
    definition_id: str,
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Most recent runs to return"),
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[Run]:
    try:
        return engine.list_runs(definition_id=definition_id, limit=limit)
    except WorkflowEngineError as e:
        raise _http_error(e)


# Events and runs

@router.post(
    "/events",
    response_model=EventResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Ingest a platform event",
    description="Match the event against active triggers; duplicate event ids are ignored"
)
def ingest_event(
    request: EventRequest,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> EventResponse:
    try:
        future = engine.submit_event(request.event, request.context)
        if future is None:
            return EventResponse(event_id=request.event.event_id, duplicate=True, accepted=False)
        runs = future.result() if request.wait else []
    except WorkflowEngineError as e:
        raise _http_error(e)

    logger.info(f"Event {request.event.event_id} accepted; {len(runs)} run(s) created")
    return EventResponse(event_id=request.event.event_id, runs=runs)


@router.get("/runs/{run_id}", response_model=Run, summary="Get a run with its outcome history")
async def get_run(run_id: str, engine: ExecutionEngine = Depends(get_execution_engine)) -> Run:
    try:
        return engine.get_run(run_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post("/runs/{run_id}/cancel", response_model=Run, summary="Cancel a run")
async def cancel_run(run_id: str, engine: ExecutionEngine = Depends(get_execution_engine)) -> Run:
    try:
        return engine.cancel_run(run_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post(
    "/runs/{run_id}/continuations/{node_id}/retry",
    response_model=Continuation,
    summary="Re-arm a recurrence whose fire time could not be resolved"
)
async def retry_continuation(
    run_id: str,
    node_id: str,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> Continuation:
    try:
        return engine.retry_continuation(run_id, node_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
