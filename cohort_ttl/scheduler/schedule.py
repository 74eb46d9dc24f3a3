"""
Next-fire-time calculation for scan schedules.

A schedule is either a fixed interval in seconds or a cron expression. Cron
expressions use five fields (minute hour day month weekday) or six fields with
a leading seconds field, plus the @hourly/@daily/@weekly/@monthly/@yearly
shortcuts. Evaluation is delegated to APScheduler's CronTrigger.

Usage:
    schedule = Schedule.parse("*/10 * * * * *")
    next_at = schedule.next_fire_time(now)     # next 10-second boundary after now
"""

import re
from datetime import datetime, timedelta, timezone

from apscheduler.triggers.cron import CronTrigger

from cohort_ttl.config import ConfigurationError

CRON_SHORTCUTS: dict[str, str] = {
    "@hourly": "0 * * * *",
    "@daily": "0 0 * * *",
    "@weekly": "0 0 * * 0",
    "@monthly": "0 0 1 * *",
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
}

# Cron counts weekdays from Sunday=0; APScheduler from Monday=0.
_CRON_WEEKDAYS = ["sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun"]
_WEEKDAY_NUMBER = re.compile(r"(?<![/\d])([0-7])(?!\d)")


def _weekday_names(field: str) -> str:
    return _WEEKDAY_NUMBER.sub(lambda m: _CRON_WEEKDAYS[int(m.group(1))], field)


class Schedule:
    """Firing rule of one scan loop.

    Usage:
        Schedule.parse(30).next_fire_time(now)            # now + 30s
        Schedule.parse("0 * * * *").next_fire_time(now)   # next full hour
    """

    def __init__(
        self,
        expression: str,
        interval: timedelta | None = None,
        trigger: CronTrigger | None = None,
    ) -> None:
        self.expression = expression
        self._interval = interval
        self._trigger = trigger

    @classmethod
    def parse(cls, value: str | float | int) -> "Schedule":
        """Build a schedule from an interval or cron expression.

        Raises:
            ConfigurationError: If the expression is not a valid schedule.
        """
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return cls._interval_schedule(float(value), str(value))

        text = str(value).strip()
        try:
            return cls._interval_schedule(float(text), text)
        except ValueError:
            pass

        fields = CRON_SHORTCUTS.get(text, text).split()
        if len(fields) == 5:
            fields = ["0", *fields]
        if len(fields) != 6:
            raise ConfigurationError(
                f"Invalid cron expression {text!r}: expected 5 or 6 fields"
            )
        second, minute, hour, day, month, day_of_week = fields
        try:
            trigger = CronTrigger(
                second=second,
                minute=minute,
                hour=hour,
                day=day,
                month=month,
                day_of_week=_weekday_names(day_of_week),
                timezone=timezone.utc,
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid cron expression {text!r}: {e}") from e
        return cls(text, trigger=trigger)

    @classmethod
    def _interval_schedule(cls, seconds: float, expression: str) -> "Schedule":
        if seconds <= 0:
            raise ConfigurationError(f"Schedule interval must be positive, got {expression}")
        return cls(expression, interval=timedelta(seconds=seconds))

    @property
    def is_interval(self) -> bool:
        return self._interval is not None

    def next_fire_time(self, after: datetime) -> datetime:
        """Return the first fire time strictly after ``after`` (UTC)."""
        if after.tzinfo is None:
            after = after.replace(tzinfo=timezone.utc)
        if self._interval is not None:
            return after + self._interval

        if self._trigger is None:
            raise ConfigurationError(
                f"Schedule {self.expression!r} has no interval or cron trigger"
            )
        fire_at = self._trigger.get_next_fire_time(None, after + timedelta(microseconds=1))
        if fire_at is None:
            raise ConfigurationError(f"Schedule {self.expression!r} never fires again")
        return fire_at.astimezone(timezone.utc)

    def __repr__(self) -> str:
        return f"Schedule({self.expression!r})"
