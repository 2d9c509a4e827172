"""Definition manager: CRUD and lifecycle of versioned workflow definitions."""

import threading
from typing import List, Optional

from ..models.core import DefinitionState, ValidationResult, WorkflowDefinition, utc_now
from .exceptions import InvalidStateError, NotFoundError
from .logging import get_logger
from .stores import DefinitionStore
from .validator import Validator

logger = get_logger(__name__)


class DefinitionManager:
    """Manages workflow definitions, their versions, and activation.

    Lifecycle per version::

        draft -> active      (only with zero violations)
        active -> paused
        paused -> active     (re-validated)
        draft/active/paused -> archived

    Only drafts are editable. Activating a version archives any other active
    or paused version of the same definition, so at most one version runs.
    """

    def __init__(self, store: DefinitionStore, validator: Optional[Validator] = None):
        self.store = store
        self.validator = validator or Validator()
        self._lock = threading.RLock()

    def create_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """
        Store a new definition as draft version 1.

        Raises:
            InvalidStateError: If a definition with the same id already exists
        """
        with self._lock:
            if self.store.get(definition.id) is not None:
                raise InvalidStateError(f"Definition {definition.id} already exists")

            now = utc_now()
            draft = definition.model_copy(
                deep=True,
                update={"version": 1, "state": DefinitionState.DRAFT, "created_at": now, "updated_at": now}
            )
            self.store.save(draft)

        logger.info(f"Created definition '{draft.name}' with ID: {draft.id}")
        return draft

    def get_definition(self, definition_id: str, version: Optional[int] = None) -> WorkflowDefinition:
        """
        Retrieve a definition version (the latest when ``version`` is None).

        Raises:
            NotFoundError: If the definition or version does not exist
        """
        definition = self.store.get(definition_id, version)
        if definition is None:
            label = definition_id if version is None else f"{definition_id} v{version}"
            raise NotFoundError(f"Definition {label} not found", resource="definition", resource_id=definition_id)
        return definition

    def list_definitions(self, tenant_id: Optional[str] = None) -> List[WorkflowDefinition]:
        return self.store.list_by_tenant(tenant_id)

    def list_versions(self, definition_id: str) -> List[WorkflowDefinition]:
        versions = self.store.list_versions(definition_id)
        if not versions:
            raise NotFoundError(f"Definition {definition_id} not found", resource="definition", resource_id=definition_id)
        return versions

    def list_active(self, tenant_id: Optional[str] = None) -> List[WorkflowDefinition]:
        return self.store.list_active(tenant_id)

    def update_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """
        Replace the content of a draft version.

        Raises:
            NotFoundError: If the version does not exist
            InvalidStateError: If the stored version is not a draft
        """
        with self._lock:
            existing = self.get_definition(definition.id, definition.version)
            if existing.state != DefinitionState.DRAFT:
                raise InvalidStateError(
                    f"Definition {definition.id} v{definition.version} is {existing.state.value}; "
                    "clone it to a draft to edit",
                    current_state=existing.state.value
                )

            updated = definition.model_copy(
                deep=True,
                update={"state": DefinitionState.DRAFT, "created_at": existing.created_at, "updated_at": utc_now()}
            )
            self.store.save(updated)

        logger.info(f"Updated draft {updated.id} v{updated.version}")
        return updated

    def validate_definition(self, definition_id: str, version: Optional[int] = None) -> ValidationResult:
        return self.validator.validate(self.get_definition(definition_id, version))

    def activate(self, definition_id: str, version: Optional[int] = None) -> WorkflowDefinition:
        """
        Activate a draft or paused version.

        Raises:
            InvalidStateError: If the version is not draft/paused or has violations
        """
        with self._lock:
            definition = self.get_definition(definition_id, version)
            if definition.state not in (DefinitionState.DRAFT, DefinitionState.PAUSED):
                raise InvalidStateError(
                    f"Cannot activate definition in state {definition.state.value}",
                    current_state=definition.state.value
                )

            result = self.validator.validate(definition)
            if not result.is_valid:
                logger.warning(
                    f"Activation of {definition_id} v{definition.version} blocked: {'; '.join(result.errors)}"
                )
                raise InvalidStateError(
                    f"Definition has {len(result.violations)} unresolved violation(s)",
                    current_state=definition.state.value,
                    violations=result.violations
                )

            for other in self.store.list_versions(definition_id):
                if other.version != definition.version and other.state in (DefinitionState.ACTIVE, DefinitionState.PAUSED):
                    self._set_state(other, DefinitionState.ARCHIVED)
                    logger.info(f"Archived superseded version {definition_id} v{other.version}")

            activated = self._set_state(definition, DefinitionState.ACTIVE)

        logger.info(f"Activated definition {definition_id} v{activated.version}")
        return activated

    def pause(self, definition_id: str, version: Optional[int] = None) -> WorkflowDefinition:
        with self._lock:
            definition = self.get_definition(definition_id, version)
            if definition.state != DefinitionState.ACTIVE:
                raise InvalidStateError(
                    f"Only active definitions can be paused (state is {definition.state.value})",
                    current_state=definition.state.value
                )
            paused = self._set_state(definition, DefinitionState.PAUSED)

        logger.info(f"Paused definition {definition_id} v{paused.version}")
        return paused

    def archive(self, definition_id: str, version: Optional[int] = None) -> WorkflowDefinition:
        with self._lock:
            definition = self.get_definition(definition_id, version)
            if definition.state == DefinitionState.ARCHIVED:
                raise InvalidStateError("Definition is already archived", current_state=definition.state.value)
            archived = self._set_state(definition, DefinitionState.ARCHIVED)

        logger.info(f"Archived definition {definition_id} v{archived.version}")
        return archived

    def clone_to_draft(self, definition_id: str, version: Optional[int] = None) -> WorkflowDefinition:
        """Copy a version into a new draft with the next free version number."""
        with self._lock:
            source = self.get_definition(definition_id, version)
            next_version = max(d.version for d in self.store.list_versions(definition_id)) + 1
            draft = source.clone_as_draft(next_version)
            self.store.save(draft)

        logger.info(f"Cloned {definition_id} v{source.version} to draft v{next_version}")
        return draft

    def _set_state(self, definition: WorkflowDefinition, state: DefinitionState) -> WorkflowDefinition:
        updated = definition.model_copy(update={"state": state, "updated_at": utc_now()})
        self.store.save(updated)
        return updated
