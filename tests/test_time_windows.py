from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

from wastewise.domain.time_windows import (
    PerformancePeriod,
    day_window,
    ensure_utc,
    in_window,
    iso_week_label,
    iso_weeks_between,
    period_window,
    week_window,
)


def test_ensure_utc_handles_naive_and_offset_values() -> None:
    naive = datetime(2026, 3, 4, 10, 0)
    assert ensure_utc(naive) == datetime(2026, 3, 4, 10, 0, tzinfo=UTC)
    shifted = datetime(2026, 3, 4, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    assert ensure_utc(shifted) == datetime(2026, 3, 4, 10, 0, tzinfo=UTC)


def test_day_window_is_the_utc_date() -> None:
    start, end = day_window(datetime(2026, 3, 4, 23, 30, tzinfo=timezone(timedelta(hours=-3))))
    assert start == datetime(2026, 3, 5, tzinfo=UTC)
    assert end == datetime(2026, 3, 6, tzinfo=UTC)


def test_week_window_runs_monday_to_monday() -> None:
    start, end = week_window(datetime(2026, 3, 8, 22, 0, tzinfo=UTC))
    assert start == datetime(2026, 3, 2, tzinfo=UTC)
    assert end == datetime(2026, 3, 9, tzinfo=UTC)
    assert start.weekday() == 0


def test_in_window_is_half_open() -> None:
    window = (datetime(2026, 3, 2, tzinfo=UTC), datetime(2026, 3, 9, tzinfo=UTC))
    assert in_window(datetime(2026, 3, 2), window)
    assert not in_window(datetime(2026, 3, 9, tzinfo=UTC), window)
    assert not in_window(None, window)


def test_period_window_is_rolling() -> None:
    now = datetime(2026, 3, 4, 10, 0, tzinfo=UTC)
    assert period_window(now, PerformancePeriod.WEEK) == (now - timedelta(days=7), now)
    assert period_window(now, PerformancePeriod.MONTH)[0] == now - timedelta(days=30)
    assert period_window(now, PerformancePeriod.YEAR)[0] == now - timedelta(days=365)


def test_iso_week_labels_cross_year_boundary() -> None:
    assert iso_week_label(datetime(2026, 1, 1, tzinfo=UTC)) == "2026-W01"
    assert iso_week_label(datetime(2027, 1, 1, tzinfo=UTC)) == "2026-W53"
    labels = iso_weeks_between(datetime(2026, 12, 24, tzinfo=UTC), datetime(2027, 1, 6, tzinfo=UTC))
    assert labels == ["2026-W52", "2026-W53", "2027-W01"]
