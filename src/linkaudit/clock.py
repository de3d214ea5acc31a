"""Wall-clock helpers shared by the cache, scheduler and calendar loop.

Components take a ``clock`` callable so tests can drive time explicitly.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_clock_time(value: str) -> tuple[int, int]:
    """``"02:30"`` → ``(2, 30)``. Format is validated by SchedulerSettings."""
    hours, minutes = value.split(":")
    return int(hours), int(minutes)


def next_occurrence(now: datetime, clock_time: str, weekday: int | None = None) -> datetime:
    """Return the next instant strictly after ``now`` matching ``clock_time``.

    ``weekday`` uses the cron convention (0 = Sunday … 6 = Saturday). When
    omitted, the next matching time on any day is returned.
    """
    hour, minute = parse_clock_time(clock_time)
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)

    if weekday is None:
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    # Python's weekday(): Monday = 0 … Sunday = 6
    target = (weekday - 1) % 7
    days_ahead = (target - candidate.weekday()) % 7
    candidate += timedelta(days=days_ahead)
    if candidate <= now:
        candidate += timedelta(days=7)
    return candidate
