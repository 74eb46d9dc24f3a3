"""
Tests for cohort_ttl/scheduler/schedule.py — interval and cron next-fire times.
"""

from datetime import datetime, timedelta, timezone

import pytest

from cohort_ttl.config import ConfigurationError
from cohort_ttl.scheduler.schedule import Schedule


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestIntervalSchedules:
    """Numeric schedules fire a fixed number of seconds after the last tick."""

    def test_number(self) -> None:
        schedule = Schedule.parse(30)
        assert schedule.is_interval
        assert schedule.next_fire_time(_utc(2026, 2, 16, 12, 0, 0)) == _utc(2026, 2, 16, 12, 0, 30)

    def test_numeric_string(self) -> None:
        schedule = Schedule.parse("2.5")
        after = _utc(2026, 2, 16, 12, 0, 0)
        assert schedule.next_fire_time(after) == after + timedelta(seconds=2.5)

    @pytest.mark.parametrize("value", [0, -5, "0"])
    def test_non_positive_rejected(self, value: object) -> None:
        with pytest.raises(ConfigurationError, match="positive"):
            Schedule.parse(value)  # type: ignore[arg-type]


class TestCronSchedules:
    """Cron expressions are evaluated in UTC."""

    def test_six_field_seconds(self) -> None:
        schedule = Schedule.parse("*/10 * * * * *")
        assert not schedule.is_interval
        assert schedule.next_fire_time(_utc(2026, 2, 16, 12, 0, 3)) == _utc(2026, 2, 16, 12, 0, 10)

    def test_strictly_after_boundary(self) -> None:
        schedule = Schedule.parse("*/10 * * * * *")
        assert schedule.next_fire_time(_utc(2026, 2, 16, 12, 0, 10)) == _utc(2026, 2, 16, 12, 0, 20)

    def test_five_field_minutes(self) -> None:
        schedule = Schedule.parse("*/10 * * * *")
        assert schedule.next_fire_time(_utc(2026, 2, 16, 12, 3, 30)) == _utc(2026, 2, 16, 12, 10)

    def test_hourly(self) -> None:
        schedule = Schedule.parse("0 * * * *")
        assert schedule.next_fire_time(_utc(2026, 2, 16, 12, 0, 1)) == _utc(2026, 2, 16, 13, 0)

    def test_daily_midnight(self) -> None:
        schedule = Schedule.parse("0 0 * * *")
        assert schedule.next_fire_time(_utc(2026, 2, 16, 12, 0)) == _utc(2026, 2, 17, 0, 0)

    def test_sunday_is_day_zero(self) -> None:
        """2026-02-16 is a Monday; the next Sunday is the 22nd."""
        schedule = Schedule.parse("0 0 * * 0")
        assert schedule.next_fire_time(_utc(2026, 2, 16, 12, 0)) == _utc(2026, 2, 22, 0, 0)

    def test_weekday_range(self) -> None:
        schedule = Schedule.parse("0 9 * * 1-5")
        saturday = _utc(2026, 2, 21, 10, 0)
        assert schedule.next_fire_time(saturday) == _utc(2026, 2, 23, 9, 0)

    def test_shortcut(self) -> None:
        assert Schedule.parse("@weekly").next_fire_time(_utc(2026, 2, 16, 12, 0)) == _utc(
            2026, 2, 22, 0, 0
        )

    def test_naive_after_taken_as_utc(self) -> None:
        schedule = Schedule.parse("0 * * * *")
        assert schedule.next_fire_time(datetime(2026, 2, 16, 12, 30)) == _utc(2026, 2, 16, 13, 0)

    @pytest.mark.parametrize("expression", ["not a cron", "* * *", "61 * * * *", "* * * * * * *"])
    def test_invalid_expression_rejected(self, expression: str) -> None:
        with pytest.raises(ConfigurationError, match="Invalid cron expression"):
            Schedule.parse(expression)

    def test_schedule_without_interval_or_trigger(self) -> None:
        with pytest.raises(ConfigurationError, match="no interval or cron trigger"):
            Schedule("manual").next_fire_time(_utc(2026, 2, 16, 12, 0))
