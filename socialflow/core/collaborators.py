"""Interfaces of the external capabilities the engine calls out to.

Publishing posts, reading metrics, classifying sentiment and picking the best
posting time all live outside the engine. Implementations are registered on
the engine (or handed to the scheduler) and treated as black boxes.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..models.configs import NodeConfig, ScheduleConfig
from ..models.core import ActorProfile, EvaluationContext, Event, Sentiment
from .logging import get_logger

logger = get_logger(__name__)


class ActionResult(BaseModel):
    """What an action collaborator reports back."""
    detail: Optional[str] = Field(None, description="Human readable summary")
    data: Dict[str, Any] = Field(default_factory=dict, description="Collaborator specific output")


class ActionCollaborator(ABC):
    """Performs the side effect of a content or analytics node."""

    @abstractmethod
    def execute(self, config: NodeConfig, event: Optional[Event], context: EvaluationContext) -> ActionResult:
        """Run the action; raise ActionError(recoverable=...) on failure."""


class AudienceMetricsReader(ABC):
    """Looks up aggregate facts about the account behind an event."""

    @abstractmethod
    def profile_for(self, event: Event) -> Optional[ActorProfile]:
        """Return the actor's profile, or None if unknown."""


class SentimentAnalyzer(ABC):
    """Classifies the sentiment of an event's text."""

    @abstractmethod
    def analyze(self, event: Event) -> Optional[Sentiment]:
        """Return the sentiment, or None if it cannot be determined."""


class BestTimeProvider(ABC):
    """Picks the best moment to publish for a schedule."""

    @abstractmethod
    def best_time(self, config: ScheduleConfig, now: datetime) -> datetime:
        """Return the fire time to use; any exception triggers the queue fallback."""


class LoggingContentPublisher(ActionCollaborator):
    """Publisher that only logs what it would post."""

    def execute(self, config: NodeConfig, event: Optional[Event], context: EvaluationContext) -> ActionResult:
        logger.info(
            f"Publishing {config.content_type.value} post to {config.platform.value} "
            f"(template {config.template.value}): {config.message}"
        )
        return ActionResult(
            detail=f"Logged {config.content_type.value} post for {config.platform.value}",
            data={"message": config.message}
        )


class LoggingAnalyticsReporter(ActionCollaborator):
    """Analytics reporter that only logs the requested report."""

    def execute(self, config: NodeConfig, event: Optional[Event], context: EvaluationContext) -> ActionResult:
        logger.info(f"Reporting {config.metric_type.value} for {config.time_range.value}")
        return ActionResult(detail=f"Logged {config.metric_type.value} report ({config.time_range.value})")
