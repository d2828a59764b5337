"""Day, week and period boundaries used by the collector statistics.

All windows are computed in UTC. A day is ``[00:00, 24:00)`` of the UTC date,
a week is the ISO calendar week (Monday 00:00 UTC up to the next Monday) and
performance periods are rolling windows ending at ``now``.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import StrEnum


class PerformancePeriod(StrEnum):
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


PERIOD_LENGTHS: dict[PerformancePeriod, timedelta] = {
    PerformancePeriod.WEEK: timedelta(days=7),
    PerformancePeriod.MONTH: timedelta(days=30),
    PerformancePeriod.YEAR: timedelta(days=365),
}


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def day_window(now: datetime) -> tuple[datetime, datetime]:
    now = ensure_utc(now)
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def week_window(now: datetime) -> tuple[datetime, datetime]:
    day_start, _ = day_window(now)
    start = day_start - timedelta(days=day_start.weekday())
    return start, start + timedelta(days=7)


def period_window(now: datetime, period: PerformancePeriod) -> tuple[datetime, datetime]:
    now = ensure_utc(now)
    return now - PERIOD_LENGTHS[period], now


def in_window(value: datetime | None, window: tuple[datetime, datetime]) -> bool:
    """Half-open membership test, ``start <= value < end``."""
    if value is None:
        return False
    start, end = window
    return start <= ensure_utc(value) < end


def iso_week_label(value: datetime) -> str:
    year, week, _ = ensure_utc(value).isocalendar()
    return f"{year}-W{week:02d}"


def iso_weeks_between(start: datetime, end: datetime) -> list[str]:
    labels: list[str] = []
    cursor, _ = week_window(start)
    end = ensure_utc(end)
    while cursor <= end:
        labels.append(iso_week_label(cursor))
        cursor += timedelta(days=7)
    return labels
