"""Condition evaluation for trigger, filter and audience nodes.

Evaluation is a pure function of (node, event, context): nothing here mutates
its inputs or reads the clock, so replaying a run gives the same outcomes.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from ..models.configs import (
    AudienceConfig,
    FilterCondition,
    FilterConfig,
    NodeType,
    Platform,
    SegmentType,
    TriggerConfig,
    parse_config,
)
from ..models.core import (
    ActorProfile,
    EvaluationContext,
    EvaluationOutcome,
    Event,
    Node,
    Sentiment,
)
from .exceptions import TypeMismatchError
from .logging import get_logger

logger = get_logger(__name__)

MATCH = EvaluationOutcome.MATCH
NO_MATCH = EvaluationOutcome.NO_MATCH

_MISSING = object()

_PAYLOAD_FIELDS = {"message", "payload", "text", "content"}
_ACTOR_FIELDS = {"username", "actor", "user"}
_EVENT_TYPE_FIELDS = {"eventtype", "event_type"}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None or value is _MISSING:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _fold(value: str, case_sensitive: bool) -> str:
    return value if case_sensitive else value.casefold()


def resolve_field(name: str, event: Event, context: EvaluationContext) -> Any:
    """Look up a filter field on the event first, then on the context.

    Returns the module-level ``_MISSING`` sentinel when nothing matches.
    """
    key = name.strip()
    lowered = key.lower()

    if lowered in _PAYLOAD_FIELDS:
        return event.payload
    if lowered in _ACTOR_FIELDS:
        return event.actor if event.actor is not None else _MISSING
    if lowered == "platform":
        return event.platform
    if lowered in _EVENT_TYPE_FIELDS:
        return event.event_type
    if key in event.metadata:
        return event.metadata[key]
    if key in context.attributes:
        return context.attributes[key]
    if context.actor is not None and key in ActorProfile.model_fields:
        value = getattr(context.actor, key)
        return value if value is not None else _MISSING
    return _MISSING


class ConditionEvaluator:
    """Evaluates node predicates against an event and its context."""

    def __init__(
        self,
        new_follower_window: timedelta = timedelta(days=7),
        engagement_window: timedelta = timedelta(days=30)
    ):
        self.new_follower_window = new_follower_window
        self.engagement_window = engagement_window

    def evaluate(self, node: Node, event: Event, context: Optional[EvaluationContext] = None) -> EvaluationOutcome:
        """
        Evaluate a node against an event.

        Args:
            node: Node to evaluate
            event: Event being processed
            context: Actor profile, sentiment and extra attributes

        Returns:
            EvaluationOutcome: MATCH or NO_MATCH

        Raises:
            TypeMismatchError: If an ordering filter gets a non-numeric operand
        """
        context = context or EvaluationContext()

        if node.type == NodeType.TRIGGER:
            return self._evaluate_trigger(parse_config(node.type, node.config), event, context)
        if node.type == NodeType.FILTER:
            return self._evaluate_filter(node, event, context)
        if node.type == NodeType.AUDIENCE:
            return self._evaluate_audience(node, event, context)

        return MATCH

    # Triggers

    @staticmethod
    def matches_source(node: Node, event: Event) -> bool:
        """Whether a trigger node fires for the event's platform and event type."""
        if node.type != NodeType.TRIGGER:
            return False
        platform = node.config.get("platform")
        if platform != Platform.ALL.value and platform != event.platform:
            return False
        return node.config.get("eventType") == event.event_type

    def _evaluate_trigger(self, config: TriggerConfig, event: Event, context: EvaluationContext) -> EvaluationOutcome:
        if config.platform != Platform.ALL and config.platform.value != event.platform:
            return NO_MATCH
        if config.event_type.value != event.event_type:
            return NO_MATCH

        if config.keywords:
            payload = event.payload.casefold()
            if not any(keyword.casefold() in payload for keyword in config.keywords):
                return NO_MATCH

        if config.filter_negative and context.sentiment == Sentiment.NEGATIVE:
            return NO_MATCH

        return MATCH

    # Filters

    def _evaluate_filter(self, node: Node, event: Event, context: EvaluationContext) -> EvaluationOutcome:
        config: FilterConfig = parse_config(node.type, node.config)
        actual = resolve_field(config.field, event, context)
        condition = config.condition

        if condition in (FilterCondition.GREATER_THAN, FilterCondition.LESS_THAN):
            left = _to_number(actual)
            right = _to_number(config.value)
            if left is None or right is None:
                shown = "missing" if actual is _MISSING else repr(actual)
                raise TypeMismatchError(
                    f"'{condition.value}' needs numbers, got field {config.field}={shown} and value {config.value!r}",
                    node_id=node.id,
                    field=config.field
                )
            matched = left > right if condition == FilterCondition.GREATER_THAN else left < right
            return MATCH if matched else NO_MATCH

        if condition in (FilterCondition.EQUALS, FilterCondition.NOT_EQUALS):
            left = _to_number(actual)
            right = _to_number(config.value)
            if left is not None and right is not None:
                equal = left == right
            else:
                text = "" if actual is _MISSING or actual is None else str(actual)
                equal = _fold(text, config.case_sensitive) == _fold(config.value, config.case_sensitive)
            matched = equal if condition == FilterCondition.EQUALS else not equal
            return MATCH if matched else NO_MATCH

        text = "" if actual is _MISSING or actual is None else str(actual)
        contains = _fold(config.value, config.case_sensitive) in _fold(text, config.case_sensitive)
        matched = contains if condition == FilterCondition.CONTAINS else not contains
        return MATCH if matched else NO_MATCH

    # Audiences

    def _evaluate_audience(self, node: Node, event: Event, context: EvaluationContext) -> EvaluationOutcome:
        config: AudienceConfig = parse_config(node.type, node.config)
        profile = context.actor
        if profile is None:
            logger.debug(f"Audience node {node.id}: no actor profile in context")
            return NO_MATCH

        if not self._in_segment(config.segment_type, profile, _as_utc(event.timestamp)):
            return NO_MATCH

        if profile.is_private and not config.include_private:
            return NO_MATCH

        if config.min_engagement is not None:
            if profile.engagement_rate is None or profile.engagement_rate < config.min_engagement:
                return NO_MATCH

        if config.location and config.location.strip().casefold() != "global":
            if not profile.location or config.location.strip().casefold() not in profile.location.casefold():
                return NO_MATCH

        return MATCH

    def _in_segment(self, segment: SegmentType, profile: ActorProfile, reference: datetime) -> bool:
        if segment == SegmentType.ALL_FOLLOWERS:
            return profile.is_follower

        if segment == SegmentType.NEW_FOLLOWERS:
            if not profile.is_follower or profile.followed_at is None:
                return False
            return _as_utc(profile.followed_at) >= reference - self.new_follower_window

        engaged = (
            profile.last_engagement_at is not None
            and _as_utc(profile.last_engagement_at) >= reference - self.engagement_window
        )
        if segment == SegmentType.ENGAGED:
            return engaged
        if segment == SegmentType.INACTIVE:
            return not engaged

        return True
