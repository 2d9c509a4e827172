"""Tests for definition validation."""

import pytest

from socialflow.core.exceptions import ErrorKind
from socialflow.core.validator import Validator
from socialflow.models.configs import NodeType
from socialflow.models.core import Node

from conftest import (
    analytics_node,
    audience_node,
    content_node,
    filter_node,
    make_definition,
    price_reply_definition,
    schedule_node,
    trigger_node,
)


@pytest.fixture
def validator():
    return Validator()


def kinds(result):
    return [violation.kind for violation in result.violations]


class TestSchemaChecks:
    """Node configs against the schema registry."""

    def test_valid_definition_has_no_violations(self, validator):
        result = validator.validate(price_reply_definition())
        assert result.is_valid
        assert result.violations == []

    def test_missing_required_field(self, validator):
        node = Node(id="c", type=NodeType.CONTENT, config={"contentType": "Text"})
        violations = validator.validate_config(node)

        assert len(violations) == 1
        assert violations[0].kind == ErrorKind.SCHEMA_VIOLATION
        assert violations[0].node_id == "c"
        assert violations[0].field == "message"

    def test_blank_required_field_counts_as_missing(self, validator):
        node = content_node(message="   ")
        violations = validator.validate_config(node)
        assert [v.field for v in violations] == ["message"]

    def test_unknown_field(self, validator):
        violations = validator.validate_config(trigger_node(color="blue"))
        assert [(v.kind, v.field) for v in violations] == [(ErrorKind.SCHEMA_VIOLATION, "color")]

    def test_select_value_outside_options(self, validator):
        violations = validator.validate_config(trigger_node(platform="MySpace"))
        assert [v.field for v in violations] == ["platform"]

    def test_number_constraints(self, validator):
        assert validator.validate_config(schedule_node(delayMinutes=-5))[0].field == "delayMinutes"
        assert validator.validate_config(schedule_node(delayMinutes=2.5))[0].field == "delayMinutes"
        assert validator.validate_config(schedule_node(delayMinutes=True))[0].field == "delayMinutes"
        assert validator.validate_config(schedule_node(delayMinutes=15)) == []

    def test_boolean_must_be_boolean(self, validator):
        violations = validator.validate_config(filter_node(caseSensitive="yes"))
        assert [v.field for v in violations] == ["caseSensitive"]

    def test_tags_accept_list_or_text(self, validator):
        assert validator.validate_config(trigger_node(keywords=["a", "b"])) == []
        assert validator.validate_config(trigger_node(keywords="a, b")) == []
        assert validator.validate_config(trigger_node(keywords=[1, 2]))[0].field == "keywords"

    def test_queue_slot_required_for_queue_schedules(self, validator):
        violations = validator.validate_config(schedule_node(scheduleType="Queue"))
        assert [v.field for v in violations] == ["queueSlot"]
        assert validator.validate_config(schedule_node(scheduleType="Queue", queueSlot="Evening")) == []

    def test_specific_time_required_and_parsed(self, validator):
        assert [v.field for v in validator.validate_config(schedule_node(scheduleType="Specific Time"))] == ["specificTime"]
        bad = validator.validate_config(schedule_node(scheduleType="Specific Time", specificTime="next tuesday"))
        assert [v.field for v in bad] == ["specificTime"]
        good = validator.validate_config(schedule_node(scheduleType="Specific Time", specificTime="2024-06-01T09:30:00"))
        assert good == []

    def test_audience_minimum_engagement(self, validator):
        assert validator.validate_config(audience_node(minEngagement=-1))[0].field == "minEngagement"
        assert validator.validate_config(audience_node(minEngagement=2.5, includePrivate=True)) == []


class TestStructureChecks:
    """Cycles, reachability, topology and terminal actions."""

    def test_cycle_is_reported_once_with_all_members(self, validator):
        definition = make_definition(
            [trigger_node(), filter_node(), audience_node(), content_node()],
            [("trigger", "filter"), ("filter", "audience"), ("audience", "filter"), ("audience", "content")]
        )
        result = validator.validate(definition)

        cycles = [v for v in result.violations if v.kind == ErrorKind.CYCLE_DETECTED]
        assert len(cycles) == 1
        assert "filter" in cycles[0].reason and "audience" in cycles[0].reason
        assert "trigger" not in cycles[0].reason

    def test_self_loop_is_a_cycle(self, validator):
        definition = make_definition(
            [trigger_node(), filter_node(), content_node()],
            [("trigger", "filter"), ("filter", "filter"), ("filter", "content")]
        )
        assert ErrorKind.CYCLE_DETECTED in kinds(validator.validate(definition))

    def test_unreachable_node(self, validator):
        definition = make_definition(
            [trigger_node(), content_node(), content_node("island"), analytics_node()],
            [("trigger", "content"), ("island", "analytics")]
        )
        result = validator.validate(definition)

        unreachable = {v.node_id for v in result.violations if v.kind == ErrorKind.UNREACHABLE}
        assert unreachable == {"island", "analytics"}

    def test_definition_without_trigger(self, validator):
        definition = make_definition([content_node()], [])
        result = validator.validate(definition)

        unreachable = [v for v in result.violations if v.kind == ErrorKind.UNREACHABLE]
        assert any(v.node_id is None for v in unreachable)
        assert any(v.node_id == "content" for v in unreachable)

    def test_trigger_with_incoming_edge(self, validator):
        definition = make_definition(
            [trigger_node(), trigger_node("second", platform="Facebook"), content_node()],
            [("trigger", "second"), ("second", "content")]
        )
        result = validator.validate(definition)

        topology = [v for v in result.violations if v.kind == ErrorKind.TOPOLOGY_VIOLATION]
        assert [v.node_id for v in topology] == ["second"]

    def test_non_trigger_without_incoming_edge(self, validator):
        definition = make_definition([trigger_node(), content_node(), analytics_node()], [("trigger", "content")])
        topology = [v for v in validator.validate(definition).violations if v.kind == ErrorKind.TOPOLOGY_VIOLATION]
        assert [v.node_id for v in topology] == ["analytics"]

    def test_dangling_edge_endpoint(self, validator):
        definition = make_definition(
            [trigger_node(), content_node()],
            [("trigger", "content"), ("content", "ghost")]
        )
        result = validator.validate(definition)

        topology = [v for v in result.violations if v.kind == ErrorKind.TOPOLOGY_VIOLATION]
        assert [v.node_id for v in topology] == ["ghost"]

    def test_no_terminal_action(self, validator):
        definition = make_definition(
            [trigger_node(), filter_node()],
            [("trigger", "filter")]
        )
        assert ErrorKind.NO_TERMINAL_ACTION in kinds(validator.validate(definition))

    def test_action_with_outgoing_edge_is_not_terminal(self, validator):
        definition = make_definition(
            [trigger_node(), content_node(), filter_node()],
            [("trigger", "content"), ("content", "filter")]
        )
        assert ErrorKind.NO_TERMINAL_ACTION in kinds(validator.validate(definition))

    def test_empty_definition_needs_a_terminal_action(self, validator):
        result = validator.validate(make_definition([], []))
        assert kinds(result) == [ErrorKind.NO_TERMINAL_ACTION]

    def test_all_violations_are_collected(self, validator):
        definition = make_definition(
            [trigger_node(platform="MySpace"), filter_node(), filter_node("orphan", value="")],
            [("trigger", "filter"), ("filter", "filter")]
        )
        found = set(kinds(validator.validate(definition)))
        assert found == {
            ErrorKind.SCHEMA_VIOLATION,
            ErrorKind.CYCLE_DETECTED,
            ErrorKind.UNREACHABLE,
            ErrorKind.TOPOLOGY_VIOLATION,
            ErrorKind.NO_TERMINAL_ACTION,
        }
