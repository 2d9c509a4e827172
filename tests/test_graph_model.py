"""Tests for the workflow graph model and node configs."""

import pytest
from pydantic import ValidationError

from socialflow.core.exceptions import GraphValidationError, InvalidStateError
from socialflow.models.configs import (
    NODE_SCHEMAS,
    NodeType,
    ScheduleType,
    TriggerConfig,
    parse_config,
)
from socialflow.models.core import DefinitionState, Node, WorkflowDefinition

from conftest import content_node, filter_node, make_definition, price_reply_definition, trigger_node


class TestNode:
    """Node construction rules."""

    def test_node_id_is_stripped(self):
        node = Node(id="  trigger-1 ", type=NodeType.TRIGGER)
        assert node.id == "trigger-1"

    @pytest.mark.parametrize("node_id", ["", "   ", "has space", "semi;colon"])
    def test_invalid_node_ids_are_rejected(self, node_id):
        with pytest.raises(ValidationError):
            Node(id=node_id, type=NodeType.TRIGGER)

    def test_unknown_node_type_is_rejected(self):
        with pytest.raises(ValidationError):
            Node(id="x", type="webhook")


class TestWorkflowDefinition:
    """Graph edits and queries."""

    def test_duplicate_node_ids_are_rejected(self):
        with pytest.raises(ValidationError):
            make_definition([trigger_node("a"), content_node("a")], [])

    def test_empty_name_is_rejected(self):
        with pytest.raises(ValidationError):
            WorkflowDefinition(name="   ")

    def test_new_definition_is_draft_version_one(self):
        definition = WorkflowDefinition(name="Fresh")
        assert definition.state == DefinitionState.DRAFT
        assert definition.version == 1
        assert definition.nodes == []

    def test_add_node_and_edge(self):
        definition = make_definition([trigger_node()], [])
        definition.add_node(content_node())
        definition.add_edge("trigger", "content")

        assert [n.id for n in definition.nodes] == ["trigger", "content"]
        assert definition.successors("trigger") == ["content"]
        assert definition.predecessors("content") == ["trigger"]

    def test_add_duplicate_node_fails(self):
        definition = make_definition([trigger_node()], [])
        with pytest.raises(GraphValidationError):
            definition.add_node(trigger_node())

    def test_add_edge_to_missing_node_fails(self):
        definition = make_definition([trigger_node()], [])
        with pytest.raises(GraphValidationError):
            definition.add_edge("trigger", "ghost")

    def test_add_duplicate_edge_fails(self):
        definition = price_reply_definition()
        with pytest.raises(GraphValidationError):
            definition.add_edge("trigger", "filter")

    def test_remove_node_drops_its_edges(self):
        definition = price_reply_definition()
        definition.remove_node("filter")

        assert definition.get_node("filter") is None
        assert definition.edges == []

    def test_remove_missing_edge_fails(self):
        definition = price_reply_definition()
        with pytest.raises(GraphValidationError):
            definition.remove_edge("trigger", "content")

    def test_update_node_config_merges_by_default(self):
        definition = price_reply_definition()
        definition.update_node_config("filter", {"value": "cost"})

        config = definition.get_node("filter").config
        assert config["value"] == "cost"
        assert config["condition"] == "Contains"

    def test_update_node_config_can_replace(self):
        definition = price_reply_definition()
        definition.update_node_config("filter", {"condition": "Equals"}, replace=True)
        assert definition.get_node("filter").config == {"condition": "Equals"}

    @pytest.mark.parametrize("state", [DefinitionState.ACTIVE, DefinitionState.PAUSED, DefinitionState.ARCHIVED])
    def test_non_draft_definitions_are_immutable(self, state):
        definition = price_reply_definition(state=state)

        with pytest.raises(InvalidStateError):
            definition.add_node(content_node("other"))
        with pytest.raises(InvalidStateError):
            definition.remove_edge("trigger", "filter")
        with pytest.raises(InvalidStateError):
            definition.update_node_config("filter", {"value": "x"})

    def test_reachability_and_terminals(self):
        definition = make_definition(
            [trigger_node(), filter_node(), content_node(), content_node("orphan")],
            [("trigger", "filter"), ("filter", "content")]
        )
        assert definition.reachable_from(["trigger"]) == {"trigger", "filter", "content"}
        assert {n.id for n in definition.terminal_nodes()} == {"content", "orphan"}
        assert [n.id for n in definition.trigger_nodes()] == ["trigger"]

    def test_clone_as_draft_copies_graph(self):
        active = price_reply_definition(state=DefinitionState.ACTIVE)
        draft = active.clone_as_draft(2)

        assert draft.version == 2
        assert draft.state == DefinitionState.DRAFT
        draft.update_node_config("filter", {"value": "cost"})
        assert active.get_node("filter").config["value"] == "price"

    def test_get_config_returns_typed_model(self):
        definition = price_reply_definition()
        config = definition.get_config("trigger")
        assert isinstance(config, TriggerConfig)
        assert config.keywords == ["price"]


class TestNodeConfigs:
    """Typed config parsing."""

    def test_every_node_type_has_a_schema(self):
        assert set(NODE_SCHEMAS) == set(NodeType)

    def test_keywords_accept_comma_separated_text(self):
        config = parse_config(NodeType.TRIGGER, {
            "platform": "Instagram", "eventType": "New Comment", "keywords": "price, cost ,,help"
        })
        assert config.keywords == ["price", "cost", "help"]

    def test_blank_values_fall_back_to_defaults(self):
        config = parse_config(NodeType.SCHEDULE, {
            "scheduleType": "Immediate", "frequency": "Once", "queueSlot": "", "delayMinutes": None
        })
        assert config.schedule_type == ScheduleType.IMMEDIATE
        assert config.queue_slot is None
        assert config.delay_minutes == 0

    def test_unknown_fields_are_rejected(self):
        with pytest.raises(ValidationError):
            parse_config(NodeType.ANALYTICS, {"metricType": "Reach", "timeRange": "Last 7 Days", "color": "red"})
