from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from wastewise.domain.models import (
    HIGH_PRIORITIES,
    CollectorPerformanceRead,
    CollectorStatsRead,
    EfficiencyRead,
    PickupTask,
    PriorityBreakdownRead,
    ReportPriority,
    StatusBreakdownRead,
    TodayStatsRead,
    WasteReport,
    WeeklyBucketRead,
    WeekStatsRead,
)
from wastewise.domain.state_machine import PickupTaskStatus
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
from wastewise.infra.db import get_engine

logger = structlog.get_logger(__name__)


def _rate(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    return round(part / whole * 100, 2)


def _minutes_worked(task: PickupTask) -> float | None:
    if task.status != PickupTaskStatus.COMPLETED:
        return None
    if task.actual_start_time is None or task.actual_end_time is None:
        return None
    delta = ensure_utc(task.actual_end_time) - ensure_utc(task.actual_start_time)
    return delta.total_seconds() / 60


def _mean(values: list[float]) -> float:
    if not values:
        return 0.0
    return round(sum(values) / len(values), 2)


def _is_on_time(task: PickupTask) -> bool:
    if task.actual_end_time is None:
        return False
    deadline = ensure_utc(task.scheduled_date) + timedelta(minutes=task.estimated_duration)
    return ensure_utc(task.actual_end_time) <= deadline


class CollectorStatsService:
    """Read-only workload and performance figures for one collector.

    Both entry points degrade to an all-zero result when the store fails, so
    a dashboard never breaks on a statistics query.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    def _load_tasks(
        self,
        collector_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> tuple[list[PickupTask], dict[str, ReportPriority]]:
        with self._session() as session:
            statement = select(PickupTask).where(PickupTask.collector_id == collector_id)
            if start is not None:
                statement = statement.where(col(PickupTask.scheduled_date) >= start)
            if end is not None:
                statement = statement.where(col(PickupTask.scheduled_date) <= end)
            tasks = list(session.exec(statement).all())
            report_ids = sorted({task.report_id for task in tasks})
            priorities: dict[str, ReportPriority] = {}
            if report_ids:
                rows = session.exec(
                    select(WasteReport.id, WasteReport.priority).where(col(WasteReport.id).in_(report_ids))
                ).all()
                priorities = {report_id: priority for report_id, priority in rows}
        return tasks, priorities

    def collector_stats(self, collector_id: str) -> CollectorStatsRead:
        now = self._now()
        try:
            tasks, priorities = self._load_tasks(collector_id)
        except SQLAlchemyError:
            logger.warning("stats.query_failed", collector_id=collector_id, query="collector_stats", exc_info=True)
            return CollectorStatsRead()

        def count(rows: list[PickupTask], status: PickupTaskStatus) -> int:
            return sum(1 for row in rows if row.status == status)

        today = day_window(now)
        this_week = week_window(now)
        today_tasks = [task for task in tasks if in_window(task.scheduled_date, today)]
        week_tasks = [task for task in tasks if in_window(task.scheduled_date, this_week)]

        completed = count(tasks, PickupTaskStatus.COMPLETED)
        week_completed = count(week_tasks, PickupTaskStatus.COMPLETED)
        return CollectorStatsRead(
            total=len(tasks),
            completed=completed,
            in_progress=count(tasks, PickupTaskStatus.IN_PROGRESS),
            scheduled=count(tasks, PickupTaskStatus.SCHEDULED),
            cancelled=count(tasks, PickupTaskStatus.CANCELLED),
            completion_rate=_rate(completed, len(tasks)),
            today=TodayStatsRead(
                total=len(today_tasks),
                completed=count(today_tasks, PickupTaskStatus.COMPLETED),
                in_progress=count(today_tasks, PickupTaskStatus.IN_PROGRESS),
                scheduled=count(today_tasks, PickupTaskStatus.SCHEDULED),
                total_duration=sum(task.estimated_duration for task in today_tasks),
                high_priority=sum(1 for task in today_tasks if priorities.get(task.report_id) in HIGH_PRIORITIES),
            ),
            this_week=WeekStatsRead(
                total=len(week_tasks),
                completed=week_completed,
                completion_rate=_rate(week_completed, len(week_tasks)),
            ),
        )

    def collector_performance(
        self,
        collector_id: str,
        period: PerformancePeriod = PerformancePeriod.MONTH,
    ) -> CollectorPerformanceRead:
        now = self._now()
        start, end = period_window(now, period)
        week_labels = iso_weeks_between(start, end)
        try:
            tasks, priorities = self._load_tasks(collector_id, start, end)
        except SQLAlchemyError:
            logger.warning(
                "stats.query_failed",
                collector_id=collector_id,
                query="collector_performance",
                period=period.value,
                exc_info=True,
            )
            return CollectorPerformanceRead(
                period=period,
                weekly_data=[WeeklyBucketRead(week=label) for label in week_labels],
            )

        tasks = [task for task in tasks if start <= ensure_utc(task.scheduled_date) <= end]
        completed_tasks = [task for task in tasks if task.status == PickupTaskStatus.COMPLETED]
        durations = [minutes for minutes in map(_minutes_worked, completed_tasks) if minutes is not None]

        by_priority = PriorityBreakdownRead()
        for task in tasks:
            priority = priorities.get(task.report_id)
            if priority in HIGH_PRIORITIES:
                by_priority.high += 1
            elif priority == ReportPriority.MEDIUM:
                by_priority.medium += 1
            elif priority == ReportPriority.LOW:
                by_priority.low += 1

        by_status = StatusBreakdownRead()
        for task in tasks:
            setattr(by_status, task.status.value, getattr(by_status, task.status.value) + 1)

        buckets: dict[str, list[PickupTask]] = {label: [] for label in week_labels}
        for task in completed_tasks:
            buckets.setdefault(iso_week_label(task.scheduled_date), []).append(task)
        weekly_data = [
            WeeklyBucketRead(
                week=label,
                tasks_completed=len(buckets[label]),
                average_time=_mean(
                    [minutes for minutes in map(_minutes_worked, buckets[label]) if minutes is not None]
                ),
            )
            for label in sorted(buckets)
        ]

        on_time = sum(1 for task in completed_tasks if _is_on_time(task))
        return CollectorPerformanceRead(
            period=period,
            total_tasks=len(tasks),
            completed_tasks=len(completed_tasks),
            completion_rate=_rate(len(completed_tasks), len(tasks)),
            average_completion_time=_mean(durations),
            tasks_by_priority=by_priority,
            tasks_by_status=by_status,
            weekly_data=weekly_data,
            efficiency=EfficiencyRead(
                on_time_completions=on_time,
                total_completions=len(completed_tasks),
                on_time_rate=_rate(on_time, len(completed_tasks)),
            ),
        )
