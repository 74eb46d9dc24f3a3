"""
Cohort calculator — maps expiry instants to time-bucket labels.

A cohort is the label of the granularity bucket an expiry instant falls into.
Cohort labels are the partition key of the expiration index, so a cleanup pass
can find "records expiring now" by reading one partition per bucket instead of
scanning every record.

All functions are pure: no I/O, no clock reads.

Usage:
    granularity = derive_granularity(1800)              # "minute"
    cohort = cohort_for(expires_at, granularity)        # "2026-02-16T06:30"
    cohorts = cohorts_between("2026-02-16T06:28", cohort, granularity)
"""

from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from typing import Literal

Granularity = Literal["minute", "hour", "day", "week"]

GRANULARITIES: tuple[Granularity, ...] = ("minute", "hour", "day", "week")

# ── Thresholds ──────────────────────────────────────────────────────────────

ONE_HOUR_SECONDS = 3600
ONE_DAY_SECONDS = 86400

GRANULARITY_STEPS: dict[str, timedelta] = {
    "minute": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
}

_LABEL_FORMATS: dict[str, str] = {
    "minute": "%Y-%m-%dT%H:%M",
    "hour": "%Y-%m-%dT%H",
    "day": "%Y-%m-%d",
}


class CohortError(ValueError):
    """Raised for malformed cohort labels or unknown granularities."""


# ── Granularity ─────────────────────────────────────────────────────────────


def derive_granularity(ttl_seconds: float | None) -> Granularity:
    """Pick the bucket size for a TTL duration.

    Short TTLs need fine buckets so records are disposed of close to their
    expiry; long TTLs use coarse buckets so fewer partitions are read.

    Args:
        ttl_seconds: Rule TTL in seconds. None for absolute-expiry rules.

    Returns:
        "minute" below one hour, "hour" below one day, "day" otherwise.
        "week" is never derived; rules opt into it explicitly.
    """
    if ttl_seconds is None:
        return "day"
    if ttl_seconds < ONE_HOUR_SECONDS:
        return "minute"
    if ttl_seconds < ONE_DAY_SECONDS:
        return "hour"
    return "day"


def _check_granularity(granularity: str) -> None:
    if granularity not in GRANULARITY_STEPS:
        raise CohortError(f"Unknown granularity: {granularity!r}")


# ── Truncation ──────────────────────────────────────────────────────────────


def to_utc(instant: datetime) -> datetime:
    """Normalize a datetime to aware UTC. Naive values are taken as UTC."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def truncate(instant: datetime, granularity: str) -> datetime:
    """Truncate an instant down to the start of its granularity bucket."""
    _check_granularity(granularity)
    instant = to_utc(instant)
    if granularity == "minute":
        return instant.replace(second=0, microsecond=0)
    if granularity == "hour":
        return instant.replace(minute=0, second=0, microsecond=0)
    day_start = instant.replace(hour=0, minute=0, second=0, microsecond=0)
    if granularity == "day":
        return day_start
    # ISO weeks start on Monday
    return day_start - timedelta(days=day_start.weekday())


def cohort_for(instant: datetime, granularity: str) -> str:
    """Return the cohort label of the bucket containing ``instant``.

    Labels:
        minute → ``YYYY-MM-DDTHH:MM``
        hour   → ``YYYY-MM-DDTHH``
        day    → ``YYYY-MM-DD``
        week   → ``YYYY-Www`` (ISO year and week number)
    """
    start = truncate(instant, granularity)
    if granularity == "week":
        iso_year, iso_week, _ = start.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    return start.strftime(_LABEL_FORMATS[granularity])


def cohort_start(cohort: str, granularity: str) -> datetime:
    """Parse a cohort label back to the UTC instant its bucket starts at."""
    _check_granularity(granularity)
    try:
        if granularity == "week":
            year_part, week_part = cohort.split("-W")
            start = datetime.fromisocalendar(int(year_part), int(week_part), 1)
        else:
            start = datetime.strptime(cohort, _LABEL_FORMATS[granularity])
    except ValueError as e:
        raise CohortError(f"Malformed {granularity} cohort {cohort!r}: {e}") from e
    return start.replace(tzinfo=timezone.utc)


def cohort_end(cohort: str, granularity: str) -> datetime:
    """Return the exclusive end instant of a cohort bucket."""
    return cohort_start(cohort, granularity) + GRANULARITY_STEPS[granularity]


def next_cohort(cohort: str, granularity: str, steps: int = 1) -> str:
    """Return the label ``steps`` buckets after ``cohort``."""
    start = cohort_start(cohort, granularity)
    return cohort_for(start + GRANULARITY_STEPS[granularity] * steps, granularity)


def compare_cohorts(a: str, b: str, granularity: str) -> int:
    """Three-way comparison of two labels by bucket start (-1, 0, 1)."""
    start_a = cohort_start(a, granularity)
    start_b = cohort_start(b, granularity)
    return (start_a > start_b) - (start_a < start_b)


# ── Ranges ──────────────────────────────────────────────────────────────────


def iter_cohorts(after: str | None, upto: str, granularity: str) -> Iterator[str]:
    """Lazily yield cohorts in ``(after, upto]``, oldest first.

    Args:
        after: Exclusive lower bound (last processed cohort). None means
            start at ``upto``.
        upto: Inclusive upper bound (usually the current cohort).
        granularity: Bucket size of both labels.
    """
    step = GRANULARITY_STEPS[granularity]
    end = cohort_start(upto, granularity)
    current = end if after is None else cohort_start(after, granularity) + step
    while current <= end:
        yield cohort_for(current, granularity)
        current += step


def cohorts_between(after: str | None, upto: str, granularity: str) -> list[str]:
    """List cohorts in ``(after, upto]``, oldest first. Empty when ``after >= upto``."""
    return list(iter_cohorts(after, upto, granularity))


def lookback_cohorts(upto: str, granularity: str, count: int) -> list[str]:
    """Return the ``count`` cohorts ending at ``upto`` (inclusive), oldest first."""
    first = next_cohort(upto, granularity, steps=-(max(count, 1) - 1))
    return cohorts_between(next_cohort(first, granularity, steps=-1), upto, granularity)
