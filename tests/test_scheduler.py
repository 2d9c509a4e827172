"""Tests for schedule resolution and recurrence stepping."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from socialflow.core.collaborators import BestTimeProvider
from socialflow.core.exceptions import ConfigurationError, ScheduleError
from socialflow.core.scheduler import Scheduler
from socialflow.models.configs import QueueSlot

from conftest import BASE_TIME, content_node, schedule_node

UTC = timezone.utc
NEW_YORK = ZoneInfo("America/New_York")


class FixedBestTime(BestTimeProvider):
    def __init__(self, value):
        self.value = value

    def best_time(self, config, now):
        return self.value


class BrokenBestTime(BestTimeProvider):
    def best_time(self, config, now):
        raise RuntimeError("analytics offline")


@pytest.fixture
def scheduler():
    return Scheduler("UTC")


class TestResolve:

    def test_immediate_fires_now(self, scheduler):
        fire = scheduler.resolve(schedule_node(), BASE_TIME)
        assert fire.fire_at == BASE_TIME
        assert not fire.degraded

    def test_immediate_ignores_delay(self, scheduler):
        fire = scheduler.resolve(schedule_node(delayMinutes=30), BASE_TIME)
        assert fire.fire_at == BASE_TIME

    def test_queue_inside_window_fires_now(self, scheduler):
        node = schedule_node(scheduleType="Queue", queueSlot="Morning")
        assert scheduler.resolve(node, BASE_TIME).fire_at == BASE_TIME

    def test_queue_after_window_fires_next_day(self, scheduler):
        node = schedule_node(scheduleType="Queue", queueSlot="Morning")
        now = datetime(2024, 6, 5, 13, 0, tzinfo=UTC)
        assert scheduler.resolve(node, now).fire_at == datetime(2024, 6, 6, 6, 0, tzinfo=UTC)

    def test_queue_before_window_fires_same_day(self, scheduler):
        node = schedule_node(scheduleType="Queue", queueSlot="Evening")
        assert scheduler.resolve(node, BASE_TIME).fire_at == datetime(2024, 6, 5, 18, 0, tzinfo=UTC)

    def test_queue_window_end_is_exclusive(self, scheduler):
        now = datetime(2024, 6, 5, 22, 0, tzinfo=UTC)
        assert scheduler.next_queue_time(QueueSlot.EVENING, now) == datetime(2024, 6, 6, 18, 0, tzinfo=UTC)

    def test_queue_in_local_timezone(self):
        scheduler = Scheduler("America/New_York")
        node = schedule_node(scheduleType="Queue", queueSlot="Morning")
        # 05:00 in New York
        now = datetime(2024, 6, 5, 9, 0, tzinfo=UTC)

        fire_at = scheduler.resolve(node, now).fire_at
        assert fire_at == datetime(2024, 6, 5, 10, 0, tzinfo=UTC)
        assert fire_at.astimezone(NEW_YORK).hour == 6

    def test_specific_time_with_delay(self, scheduler):
        node = schedule_node(scheduleType="Specific Time", specificTime="2024-06-05T12:00:00", delayMinutes=30)
        assert scheduler.resolve(node, BASE_TIME).fire_at == datetime(2024, 6, 5, 12, 30, tzinfo=UTC)

    def test_specific_time_override(self, scheduler):
        node = schedule_node(scheduleType="Specific Time", specificTime="2024-06-05T12:00:00")
        target = datetime(2024, 6, 7, 8, 15, tzinfo=UTC)
        assert scheduler.resolve(node, BASE_TIME, target_time=target).fire_at == target

    def test_specific_time_in_the_past_is_returned_as_is(self, scheduler):
        node = schedule_node(scheduleType="Specific Time", specificTime="2024-06-01T09:00:00+00:00")
        assert scheduler.resolve(node, BASE_TIME).fire_at == datetime(2024, 6, 1, 9, 0, tzinfo=UTC)

    def test_specific_time_missing_raises(self, scheduler):
        with pytest.raises(ScheduleError):
            scheduler.resolve(schedule_node(scheduleType="Specific Time"), BASE_TIME)

    def test_best_time_from_provider(self):
        best = datetime(2024, 6, 5, 19, 45, tzinfo=UTC)
        scheduler = Scheduler("UTC", best_time_provider=FixedBestTime(best))

        fire = scheduler.resolve(schedule_node(scheduleType="Best Time"), BASE_TIME)
        assert fire.fire_at == best
        assert not fire.degraded

    def test_best_time_in_the_past_is_clamped_to_now(self):
        scheduler = Scheduler("UTC", best_time_provider=FixedBestTime(BASE_TIME - timedelta(hours=2)))
        assert scheduler.resolve(schedule_node(scheduleType="Best Time"), BASE_TIME).fire_at == BASE_TIME

    def test_best_time_without_provider_degrades_to_queue(self, scheduler):
        node = schedule_node(scheduleType="Best Time", queueSlot="Evening")
        fire = scheduler.resolve(node, BASE_TIME)

        assert fire.degraded
        assert fire.fire_at == datetime(2024, 6, 5, 18, 0, tzinfo=UTC)
        assert "Evening" in fire.detail

    def test_best_time_provider_failure_degrades_to_default_slot(self):
        scheduler = Scheduler("UTC", best_time_provider=BrokenBestTime())
        now = datetime(2024, 6, 5, 13, 0, tzinfo=UTC)
        fire = scheduler.resolve(schedule_node(scheduleType="Best Time"), now)

        assert fire.degraded
        assert fire.fire_at == datetime(2024, 6, 6, 6, 0, tzinfo=UTC)
        assert "analytics offline" in fire.detail

    def test_non_schedule_node_raises(self, scheduler):
        with pytest.raises(ScheduleError):
            scheduler.resolve(content_node(), BASE_TIME)

    def test_malformed_config_raises_schedule_error(self, scheduler):
        with pytest.raises(ScheduleError):
            scheduler.resolve(schedule_node(scheduleType="Sometime"), BASE_TIME)

    def test_unknown_timezone(self):
        with pytest.raises(ConfigurationError):
            Scheduler("Mars/Olympus_Mons")


class TestRecurrence:

    def test_once_does_not_recur(self, scheduler):
        assert scheduler.next_fire_time(schedule_node(), BASE_TIME, BASE_TIME) is None

    def test_daily(self, scheduler):
        node = schedule_node(frequency="Daily")
        assert scheduler.next_fire_time(node, BASE_TIME, BASE_TIME) == BASE_TIME + timedelta(days=1)

    def test_daily_skips_missed_occurrences(self, scheduler):
        node = schedule_node(frequency="Daily")
        now = BASE_TIME + timedelta(days=3, hours=1)
        assert scheduler.next_fire_time(node, BASE_TIME, now) == BASE_TIME + timedelta(days=4)

    def test_weekly(self, scheduler):
        node = schedule_node(frequency="Weekly")
        assert scheduler.next_fire_time(node, BASE_TIME, BASE_TIME) == BASE_TIME + timedelta(weeks=1)

    def test_monthly_clamps_to_month_end(self, scheduler):
        node = schedule_node(frequency="Monthly")
        previous = datetime(2024, 1, 31, 9, 0, tzinfo=UTC)

        assert scheduler.next_fire_time(node, previous, previous) == datetime(2024, 2, 29, 9, 0, tzinfo=UTC)
        later = datetime(2024, 3, 1, tzinfo=UTC)
        assert scheduler.next_fire_time(node, previous, later) == datetime(2024, 3, 31, 9, 0, tzinfo=UTC)

    def test_daily_keeps_wall_clock_across_dst(self):
        scheduler = Scheduler("America/New_York")
        node = schedule_node(frequency="Daily")
        # 09:00 EST, the day before clocks move forward
        previous = datetime(2024, 3, 9, 14, 0, tzinfo=UTC)

        fire_at = scheduler.next_fire_time(node, previous, previous)
        assert fire_at == datetime(2024, 3, 10, 13, 0, tzinfo=UTC)
        assert fire_at.astimezone(NEW_YORK).hour == 9

