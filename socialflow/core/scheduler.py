"""Resolution of schedule nodes to fire times, and recurrence stepping."""

import calendar
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Dict, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError

from ..models.configs import Frequency, NodeType, QueueSlot, ScheduleConfig, ScheduleType, parse_config
from ..models.core import FireTime, Node
from .collaborators import BestTimeProvider
from .exceptions import ConfigurationError, ScheduleError
from .logging import get_logger

logger = get_logger(__name__)


# Local-time windows [start, end) of each queue slot
QUEUE_WINDOWS: Dict[QueueSlot, Tuple[time, time]] = {
    QueueSlot.MORNING: (time(6, 0), time(12, 0)),
    QueueSlot.MIDDAY: (time(12, 0), time(15, 0)),
    QueueSlot.AFTERNOON: (time(15, 0), time(18, 0)),
    QueueSlot.EVENING: (time(18, 0), time(22, 0)),
}

DEFAULT_QUEUE_SLOT = QueueSlot.MORNING


def load_timezone(value: Union[str, tzinfo]) -> tzinfo:
    if isinstance(value, tzinfo):
        return value
    try:
        return ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown timezone '{value}'", config_key="timezone") from e


def _add_months(value: date, months: int, day: int) -> date:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


class Scheduler:
    """Turns schedule node configs into concrete fire times.

    All wall-clock reasoning (queue windows, daily/weekly/monthly steps)
    happens in the configured local timezone. Naive datetimes are read as
    local time, and every result keeps the awareness of the ``now`` it was
    computed from.
    """

    def __init__(self, timezone: Union[str, tzinfo] = "UTC", best_time_provider: Optional[BestTimeProvider] = None):
        self.timezone = load_timezone(timezone)
        self.best_time_provider = best_time_provider

    # Local time helpers

    def _to_local(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=self.timezone)
        return value.astimezone(self.timezone)

    @staticmethod
    def _like(value: datetime, reference: datetime) -> datetime:
        """Express an aware local datetime the way ``reference`` is expressed."""
        if reference.tzinfo is None:
            return value.replace(tzinfo=None)
        return value.astimezone(reference.tzinfo)

    def _at_local(self, day: date, at: time) -> datetime:
        return datetime.combine(day, at, tzinfo=self.timezone)

    # Resolution

    def _config(self, node: Node) -> ScheduleConfig:
        if node.type != NodeType.SCHEDULE:
            raise ScheduleError(f"Node {node.id} is a {node.type.value} node, not a schedule", node_id=node.id)
        try:
            return parse_config(node.type, node.config)
        except ValidationError as e:
            raise ScheduleError(f"Malformed schedule config: {e.errors()[0]['msg']}", node_id=node.id) from e

    def resolve(self, node: Node, now: datetime, target_time: Optional[datetime] = None) -> FireTime:
        """
        Resolve when a schedule node fires.

        Args:
            node: Schedule node
            now: Current time
            target_time: Externally supplied target for Specific Time schedules

        Returns:
            FireTime: Fire time, flagged as degraded when Best Time fell back to the queue

        Raises:
            ScheduleError: If the fire time cannot be determined
        """
        config = self._config(node)

        if config.schedule_type == ScheduleType.IMMEDIATE:
            return FireTime(fire_at=now)

        if config.schedule_type == ScheduleType.QUEUE:
            return FireTime(fire_at=self.next_queue_time(config.queue_slot or DEFAULT_QUEUE_SLOT, now))

        if config.schedule_type == ScheduleType.SPECIFIC_TIME:
            target = target_time or config.specific_time
            if target is None:
                raise ScheduleError("Specific Time schedule has no target time", node_id=node.id)
            target = self._like(self._to_local(target), now)
            return FireTime(fire_at=target + timedelta(minutes=config.delay_minutes))

        return self._resolve_best_time(node, config, now)

    def _resolve_best_time(self, node: Node, config: ScheduleConfig, now: datetime) -> FireTime:
        slot = config.queue_slot or DEFAULT_QUEUE_SLOT

        if self.best_time_provider is None:
            reason = "no best-time provider configured"
        else:
            try:
                best = self.best_time_provider.best_time(config, now)
                best = self._like(self._to_local(best), now)
                return FireTime(fire_at=max(best, now))
            except Exception as e:
                logger.warning(f"Best-time provider failed for node {node.id}: {e}")
                reason = f"best-time provider failed: {e}"

        return FireTime(
            fire_at=self.next_queue_time(slot, now),
            degraded=True,
            detail=f"Degraded to {slot.value} queue slot; {reason}"
        )

    def next_queue_time(self, slot: QueueSlot, now: datetime) -> datetime:
        """Now if it lies inside the slot window, else the next start of the slot."""
        start, end = QUEUE_WINDOWS[slot]
        local_now = self._to_local(now)

        if start <= local_now.time() < end:
            return now

        candidate = self._at_local(local_now.date(), start)
        if candidate <= local_now:
            candidate = self._at_local(local_now.date() + timedelta(days=1), start)
        return self._like(candidate, now)

    # Recurrence

    def next_fire_time(self, node: Node, previous: datetime, now: datetime) -> Optional[datetime]:
        """
        Next occurrence of a recurring schedule strictly after ``now``.

        Returns None for ``Once`` schedules. Monthly steps keep the day of
        month of ``previous``, clamped to the length of shorter months.
        """
        config = self._config(node)
        if config.frequency == Frequency.ONCE:
            return None
        if previous is None:
            raise ScheduleError("Cannot compute recurrence without a previous fire time", node_id=node.id)

        local_previous = self._to_local(previous)
        local_now = self._to_local(now)
        wall_clock = local_previous.timetz().replace(tzinfo=None)
        anchor_day = local_previous.date()

        step = 1
        while True:
            if config.frequency == Frequency.DAILY:
                day = anchor_day + timedelta(days=step)
            elif config.frequency == Frequency.WEEKLY:
                day = anchor_day + timedelta(weeks=step)
            else:
                day = _add_months(anchor_day, step, anchor_day.day)

            candidate = self._at_local(day, wall_clock)
            if candidate > local_now:
                return self._like(candidate, now)
            step += 1
