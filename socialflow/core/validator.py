"""Structural and configuration validation of workflow definitions."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from pydantic import TypeAdapter, ValidationError

from ..models.configs import NODE_SCHEMAS, FieldSpec, FieldType, NodeType, is_blank
from ..models.core import ACTION_NODE_TYPES, Node, ValidationResult, WorkflowDefinition
from .exceptions import ErrorKind, ErrorRecord
from .logging import get_logger

logger = get_logger(__name__)

_datetime_adapter = TypeAdapter(datetime)


class Validator:
    """Checks a definition before it may be activated.

    Checks run in a fixed order and never stop early, so the editor sees
    every problem at once:

    1. node configs against the schema registry
    2. cycles and reachability from the triggers
    3. edge topology (incoming edges, dangling endpoints)
    4. presence of a terminal action
    """

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        violations: List[ErrorRecord] = []

        for node in definition.nodes:
            violations.extend(self.validate_config(node))

        node_ids = {node.id for node in definition.nodes}
        adjacency = self._adjacency(definition, node_ids)

        violations.extend(self._check_cycles(definition, adjacency))
        violations.extend(self._check_reachability(definition))
        violations.extend(self._check_topology(definition, node_ids))
        violations.extend(self._check_terminal_action(definition))

        result = ValidationResult.from_violations(violations)
        logger.debug(
            f"Validated definition {definition.id} v{definition.version}: "
            f"valid={result.is_valid}, violations={len(result.violations)}"
        )
        return result

    # Schema

    def validate_config(self, node: Node) -> List[ErrorRecord]:
        """Check one node's config against its type's schema."""
        schema = NODE_SCHEMAS[node.type]
        config = node.config or {}
        violations = []

        for key in config:
            if schema.field(key) is None:
                violations.append(self._schema_violation(node, key, f"Unknown field for {node.type.value} node"))

        for spec in schema.fields:
            value = config.get(spec.name)
            if is_blank(value):
                if self._is_required(spec, config):
                    violations.append(self._schema_violation(node, spec.name, f"Missing required field '{spec.label}'"))
                continue

            reason = self._check_value(spec, value)
            if reason:
                violations.append(self._schema_violation(node, spec.name, reason))

        return violations

    @staticmethod
    def _is_required(spec: FieldSpec, config: Dict[str, Any]) -> bool:
        if spec.required:
            return True
        if spec.required_when:
            return any(config.get(other) in values for other, values in spec.required_when.items())
        return False

    def _check_value(self, spec: FieldSpec, value: Any) -> Optional[str]:
        """Return the reason a present value is invalid, or None."""
        if spec.field_type == FieldType.TEXT:
            if not isinstance(value, str):
                return f"Expected text, got {type(value).__name__}"
            if spec.value_format == "datetime":
                try:
                    _datetime_adapter.validate_python(value)
                except ValidationError:
                    return f"'{value}' is not an ISO-8601 datetime"
            return None

        if spec.field_type == FieldType.SELECT:
            if not isinstance(value, str) or value not in (spec.options or []):
                return f"'{value}' is not one of: {', '.join(spec.options or [])}"
            return None

        if spec.field_type == FieldType.BOOLEAN:
            if not isinstance(value, bool):
                return f"Expected boolean, got {type(value).__name__}"
            return None

        if spec.field_type == FieldType.NUMBER:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return f"Expected number, got {type(value).__name__}"
            if spec.integer and not float(value).is_integer():
                return f"Expected a whole number, got {value}"
            if spec.minimum is not None and value < spec.minimum:
                return f"Must be at least {spec.minimum:g}, got {value}"
            return None

        if spec.field_type == FieldType.TAGS:
            if isinstance(value, str):
                return None
            if not isinstance(value, list) or not all(isinstance(tag, str) for tag in value):
                return "Expected a list of strings or comma-separated text"
            return None

        return f"Unsupported field type {spec.field_type}"

    @staticmethod
    def _schema_violation(node: Node, field: str, reason: str) -> ErrorRecord:
        return ErrorRecord(kind=ErrorKind.SCHEMA_VIOLATION, node_id=node.id, field=field, reason=reason)

    # Structure

    @staticmethod
    def _adjacency(definition: WorkflowDefinition, node_ids: Set[str]) -> Dict[str, List[str]]:
        adjacency: Dict[str, List[str]] = {node_id: [] for node_id in node_ids}
        for edge in definition.edges:
            if edge.source in node_ids and edge.target in node_ids:
                adjacency[edge.source].append(edge.target)
        return adjacency

    def _check_cycles(self, definition: WorkflowDefinition, adjacency: Dict[str, List[str]]) -> List[ErrorRecord]:
        cyclic = self._nodes_on_cycles(adjacency)
        if not cyclic:
            return []

        ordered = [node.id for node in definition.nodes if node.id in cyclic]
        return [ErrorRecord(
            kind=ErrorKind.CYCLE_DETECTED,
            reason=f"Graph contains a cycle through: {', '.join(ordered)}"
        )]

    @staticmethod
    def _nodes_on_cycles(adjacency: Dict[str, List[str]]) -> Set[str]:
        """Nodes in a strongly connected component of size > 1, or with a self-loop."""
        index_of: Dict[str, int] = {}
        lowlink: Dict[str, int] = {}
        stack: List[str] = []
        on_stack: Set[str] = set()
        cyclic: Set[str] = set()
        counter = [0]

        def strongconnect(node_id: str):
            index_of[node_id] = lowlink[node_id] = counter[0]
            counter[0] += 1
            stack.append(node_id)
            on_stack.add(node_id)

            for neighbor in adjacency[node_id]:
                if neighbor not in index_of:
                    strongconnect(neighbor)
                    lowlink[node_id] = min(lowlink[node_id], lowlink[neighbor])
                elif neighbor in on_stack:
                    lowlink[node_id] = min(lowlink[node_id], index_of[neighbor])

            if lowlink[node_id] == index_of[node_id]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node_id:
                        break
                if len(component) > 1 or node_id in adjacency[node_id]:
                    cyclic.update(component)

        for node_id in adjacency:
            if node_id not in index_of:
                strongconnect(node_id)

        return cyclic

    @staticmethod
    def _check_reachability(definition: WorkflowDefinition) -> List[ErrorRecord]:
        triggers = definition.trigger_nodes()
        violations = []
        if definition.nodes and not triggers:
            violations.append(ErrorRecord(kind=ErrorKind.UNREACHABLE, reason="Definition has no trigger node"))

        reachable = definition.reachable_from(node.id for node in triggers)
        for node in definition.nodes:
            if node.id not in reachable:
                violations.append(ErrorRecord(
                    kind=ErrorKind.UNREACHABLE,
                    node_id=node.id,
                    reason="Node is not reachable from any trigger"
                ))
        return violations

    @staticmethod
    def _check_topology(definition: WorkflowDefinition, node_ids: Set[str]) -> List[ErrorRecord]:
        violations = []

        for edge in definition.edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in node_ids:
                    violations.append(ErrorRecord(
                        kind=ErrorKind.TOPOLOGY_VIOLATION,
                        node_id=endpoint,
                        reason=f"Edge {edge.source} -> {edge.target} references missing node '{endpoint}'"
                    ))

        for node in definition.nodes:
            incoming = [e for e in definition.incoming_edges(node.id) if e.source in node_ids]
            if node.type == NodeType.TRIGGER and incoming:
                violations.append(ErrorRecord(
                    kind=ErrorKind.TOPOLOGY_VIOLATION,
                    node_id=node.id,
                    reason="Trigger nodes cannot have incoming edges"
                ))
            elif node.type != NodeType.TRIGGER and not incoming:
                violations.append(ErrorRecord(
                    kind=ErrorKind.TOPOLOGY_VIOLATION,
                    node_id=node.id,
                    reason=f"{node.type.value.capitalize()} node has no incoming edge"
                ))

        return violations

    @staticmethod
    def _check_terminal_action(definition: WorkflowDefinition) -> List[ErrorRecord]:
        if any(node.type in ACTION_NODE_TYPES for node in definition.terminal_nodes()):
            return []
        return [ErrorRecord(
            kind=ErrorKind.NO_TERMINAL_ACTION,
            reason="Definition needs at least one content or analytics node without outgoing edges"
        )]