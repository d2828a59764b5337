from __future__ import annotations

import math
import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, ClassVar

import sqlalchemy as sa
import structlog
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import Session, col, func, select

from wastewise.domain.models import (
    NotificationDraft,
    NotificationPriority,
    PickupCancelledData,
    PickupCompletedData,
    PickupRescheduledData,
    PickupScheduledData,
    PickupScheduleRequest,
    PickupStartedData,
    PickupTask,
    PickupTaskHistory,
    PickupTaskRead,
    ReconcileRead,
    ReportRead,
    TaskListFilter,
    User,
    UserRead,
    WasteReport,
)
from wastewise.domain.roles import TASK_MUTATING_ROLES, UserRole
from wastewise.domain.state_machine import (
    ACTIVE_TASK_STATUSES,
    PickupTaskStatus,
    ReportStatus,
    can_pickup_transition,
    report_status_for_task,
)
from wastewise.domain.time_windows import ensure_utc
from wastewise.infra import events
from wastewise.infra.db import get_engine
from wastewise.infra.events import EventBroadcaster
from wastewise.services.notification_service import NotificationService

SCHEDULE_PAST_TOLERANCE_MIN = int(os.getenv("SCHEDULE_PAST_TOLERANCE_MIN", "5"))
MIN_ESTIMATED_DURATION = 5
MAX_NOTES_LENGTH = 200
MAX_COMPLETION_NOTES_LENGTH = 300
MAX_REASON_LENGTH = 200
MAX_PAGE_LIMIT = 100

CLAIMED_REPORT_STATUSES = frozenset({ReportStatus.ASSIGNED, ReportStatus.IN_PROGRESS, ReportStatus.COMPLETED})

EVENT_ASSIGN_TASK = "assign_task"
EVENT_TASK_UPDATE = "task_update"

Clock = Callable[[], datetime]

logger = structlog.get_logger(__name__)


class PickupError(Exception):
    code: ClassVar[str] = "pickup_error"


class NotFoundError(PickupError):
    code = "not_found"


class ForbiddenError(PickupError):
    code = "forbidden"


class InvalidStateError(PickupError):
    code = "invalid_state"


class InvalidInputError(PickupError):
    code = "invalid_input"


class CollectorUnavailableError(PickupError):
    code = "collector_unavailable"


@dataclass
class PickupTaskPage:
    items: list[PickupTask]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def _utc_now() -> datetime:
    return datetime.now(UTC)


class PickupService:
    """Pickup-task lifecycle: schedule, start, complete, cancel and reschedule.

    Every command validates the actor and the current status, writes the task
    and its report in one transaction, then notifies and broadcasts. The last
    two steps are best effort and never undo a committed transition.
    """

    _START_PRECONDITION: ClassVar[str] = "task is not in scheduled status"
    _COMPLETE_PRECONDITION: ClassVar[str] = "task is not in progress"
    _RESCHEDULE_PRECONDITION: ClassVar[str] = "only scheduled tasks can be rescheduled"

    def __init__(
        self,
        broadcaster: EventBroadcaster | None = None,
        notifications: NotificationService | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._broadcaster = broadcaster if broadcaster is not None else events.broadcaster
        self._notifications = notifications if notifications is not None else NotificationService()
        self._clock = clock or _utc_now

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    def _get_task(self, session: Session, task_id: str) -> PickupTask:
        task = session.get(PickupTask, task_id)
        if task is None:
            raise NotFoundError("pickup task not found")
        return task

    def _find_active_task(self, session: Session, report_id: str) -> PickupTask | None:
        return session.exec(
            select(PickupTask)
            .where(PickupTask.report_id == report_id)
            .where(col(PickupTask.status).in_(list(ACTIVE_TASK_STATUSES)))
        ).first()

    def _ensure_mutating_role(self, actor_role: UserRole) -> None:
        if actor_role not in TASK_MUTATING_ROLES:
            raise ForbiddenError(f"role {actor_role} cannot modify pickup tasks")

    def _ensure_owner(self, task: PickupTask, actor_id: str, actor_role: UserRole, action: str) -> None:
        if actor_role == UserRole.ADMIN:
            return
        if task.collector_id != actor_id:
            raise ForbiddenError(f"only the assigned collector may {action} this task")

    def _ensure_visible(self, session: Session, task: PickupTask, viewer_id: str, viewer_role: UserRole) -> None:
        if viewer_role == UserRole.ADMIN:
            return
        if viewer_role == UserRole.COLLECTOR and task.collector_id == viewer_id:
            return
        if viewer_role == UserRole.RESIDENT:
            report = session.get(WasteReport, task.report_id)
            if report is not None and report.user_id == viewer_id:
                return
        raise ForbiddenError("access denied")

    def _ensure_not_past(self, value: datetime, now: datetime) -> datetime:
        value = ensure_utc(value)
        if value < now - timedelta(minutes=SCHEDULE_PAST_TOLERANCE_MIN):
            raise InvalidInputError("scheduled date cannot be in the past")
        return value

    @staticmethod
    def _clean_text(value: str | None, *, limit: int, field: str) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        if len(cleaned) > limit:
            raise InvalidInputError(f"{field} cannot exceed {limit} characters")
        return cleaned or None

    def _record_history(
        self,
        session: Session,
        *,
        task_id: str,
        action: str,
        from_status: PickupTaskStatus | None,
        to_status: PickupTaskStatus,
        actor_id: str | None,
        note: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        session.add(
            PickupTaskHistory(
                task_id=task_id,
                action=action,
                from_status=from_status,
                to_status=to_status,
                actor_id=actor_id,
                note=note,
                detail=detail or {},
                created_at=self._now(),
            )
        )

    def _guarded_update(
        self,
        session: Session,
        task: PickupTask,
        *,
        expected: PickupTaskStatus,
        values: dict[str, Any],
        precondition: str,
    ) -> None:
        statement = (
            sa.update(PickupTask)
            .where(col(PickupTask.id) == task.id)
            .where(col(PickupTask.status) == expected)
            .where(col(PickupTask.version) == task.version)
            .values(**values, version=task.version + 1)
            .execution_options(synchronize_session=False)
        )
        result = session.execute(statement)
        if int(getattr(result, "rowcount", 0) or 0) == 1:
            return
        session.rollback()
        current = session.get(PickupTask, task.id, populate_existing=True)
        if current is not None and current.status == expected:
            raise InvalidStateError("task was modified concurrently, reload and retry")
        raise InvalidStateError(precondition)

    def _claim_report(
        self,
        session: Session,
        report: WasteReport,
        collector_id: str,
        scheduled_date: datetime,
        now: datetime,
    ) -> None:
        # Reports in these statuses already belong to a task; a concurrent schedule matches 0 rows.
        statement = (
            sa.update(WasteReport)
            .where(col(WasteReport.id) == report.id)
            .where(col(WasteReport.status).not_in(list(CLAIMED_REPORT_STATUSES)))
            .values(
                status=report_status_for_task(PickupTaskStatus.SCHEDULED),
                assigned_collector_id=collector_id,
                scheduled_pickup_date=scheduled_date,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = session.execute(statement)
        if int(getattr(result, "rowcount", 0) or 0) == 1:
            return
        session.rollback()
        current = session.get(WasteReport, report.id, populate_existing=True)
        if current is not None and current.status == ReportStatus.COMPLETED:
            raise InvalidStateError("cannot schedule pickup for completed report")
        raise InvalidStateError("report already has an active pickup task")

    def _sync_report(
        self,
        session: Session,
        task: PickupTask,
        values: dict[str, Any],
    ) -> WasteReport | None:
        report = session.get(WasteReport, task.report_id)
        if report is None:
            return None
        for key, value in values.items():
            setattr(report, key, value)
        session.add(report)
        return report

    def _log_divergence(self, task: PickupTask, action: str) -> None:
        logger.error(
            "pickup.report_divergence",
            task_id=task.id,
            report_id=task.report_id,
            action=action,
            task_status=task.status.value,
        )

    def _notify(self, drafts: list[NotificationDraft], task: PickupTask) -> None:
        try:
            self._notifications.notify_many(drafts)
        except Exception:
            logger.exception("pickup.notification_failed", task_id=task.id, count=len(drafts))

    def _broadcast(self, event_type: str, payload: dict[str, Any], task: PickupTask, actor_id: str) -> None:
        try:
            self._broadcaster.emit(event_type, payload, actor_id=actor_id)
        except Exception:
            logger.exception("pickup.broadcast_failed", task_id=task.id, event_type=event_type)

    def _task_update_payload(self, task: PickupTask) -> dict[str, Any]:
        return {
            "pickupTask": PickupTaskRead.model_validate(task).model_dump(mode="json"),
            "status": task.status.value,
        }

    def _active_admin_ids(self) -> list[str]:
        with self._session() as session:
            rows = session.exec(
                select(User.id)
                .where(User.role == UserRole.ADMIN)
                .where(User.is_active == True)  # noqa: E712
            ).all()
            return list(rows)

    def schedule(self, actor_id: str, payload: PickupScheduleRequest) -> PickupTask:
        now = self._now()
        if payload.estimated_duration < MIN_ESTIMATED_DURATION:
            raise InvalidInputError(f"estimated duration must be at least {MIN_ESTIMATED_DURATION} minutes")
        notes = self._clean_text(payload.notes, limit=MAX_NOTES_LENGTH, field="notes")
        scheduled_date = self._ensure_not_past(payload.scheduled_date, now)

        with self._session() as session:
            report = session.get(WasteReport, payload.report_id)
            if report is None:
                raise NotFoundError("report not found")
            if report.status == ReportStatus.COMPLETED:
                raise InvalidStateError("cannot schedule pickup for completed report")
            if self._find_active_task(session, report.id) is not None:
                raise InvalidStateError("report already has an active pickup task")
            collector = session.get(User, payload.collector_id)
            if collector is None:
                raise NotFoundError("collector not found")
            if collector.role != UserRole.COLLECTOR:
                raise CollectorUnavailableError("user is not a collector")
            if not collector.is_active:
                raise CollectorUnavailableError("collector is inactive")

            self._claim_report(session, report, collector.id, scheduled_date, now)
            task = PickupTask(
                report_id=report.id,
                collector_id=collector.id,
                status=PickupTaskStatus.SCHEDULED,
                scheduled_date=scheduled_date,
                estimated_duration=payload.estimated_duration,
                notes=notes,
                created_by=actor_id,
                created_at=now,
                updated_at=now,
            )
            session.add(task)
            session.flush()
            self._record_history(
                session,
                task_id=task.id,
                action="scheduled",
                from_status=None,
                to_status=PickupTaskStatus.SCHEDULED,
                actor_id=actor_id,
                note=notes,
                detail={"collector_id": collector.id, "scheduled_date": scheduled_date.isoformat()},
            )
            session.commit()
            session.refresh(task)
            session.refresh(report)

        logger.info("pickup.scheduled", task_id=task.id, report_id=report.id, collector_id=collector.id)
        date_label = scheduled_date.date().isoformat()
        data = PickupScheduledData(pickup_task_id=task.id, report_id=report.id, scheduled_date=scheduled_date)
        self._notify(
            [
                NotificationDraft(
                    user_id=collector.id,
                    title="New Pickup Task",
                    message=f"You have been assigned a new pickup task scheduled for {date_label}",
                    data=data,
                    priority=NotificationPriority.HIGH,
                ),
                NotificationDraft(
                    user_id=report.user_id,
                    title="Pickup Scheduled",
                    message=f"Your waste report has been scheduled for pickup on {date_label}",
                    data=data,
                    priority=NotificationPriority.MEDIUM,
                ),
            ],
            task,
        )
        self._broadcast(
            EVENT_ASSIGN_TASK,
            {
                "pickupTask": PickupTaskRead.model_validate(task).model_dump(mode="json"),
                "report": ReportRead.model_validate(report).model_dump(mode="json"),
                "collector": UserRead.model_validate(collector).model_dump(mode="json"),
            },
            task,
            actor_id,
        )
        return task

    def start(self, task_id: str, actor_id: str) -> PickupTask:
        now = self._now()
        with self._session() as session:
            task = self._get_task(session, task_id)
            self._ensure_owner(task, actor_id, UserRole.COLLECTOR, "start")
            if task.status != PickupTaskStatus.SCHEDULED:
                raise InvalidStateError(self._START_PRECONDITION)
            self._guarded_update(
                session,
                task,
                expected=PickupTaskStatus.SCHEDULED,
                values={
                    "status": PickupTaskStatus.IN_PROGRESS,
                    "actual_start_time": now,
                    "updated_at": now,
                },
                precondition=self._START_PRECONDITION,
            )
            report = self._sync_report(
                session,
                task,
                {"status": report_status_for_task(PickupTaskStatus.IN_PROGRESS), "updated_at": now},
            )
            self._record_history(
                session,
                task_id=task.id,
                action="started",
                from_status=PickupTaskStatus.SCHEDULED,
                to_status=PickupTaskStatus.IN_PROGRESS,
                actor_id=actor_id,
            )
            session.commit()
            session.refresh(task)

        logger.info("pickup.started", task_id=task.id, collector_id=actor_id)
        if report is None:
            self._log_divergence(task, "start")
        else:
            self._notify(
                [
                    NotificationDraft(
                        user_id=report.user_id,
                        title="Pickup Started",
                        message="Your waste pickup has started",
                        data=PickupStartedData(pickup_task_id=task.id, report_id=report.id),
                        priority=NotificationPriority.MEDIUM,
                    )
                ],
                task,
            )
        self._broadcast(EVENT_TASK_UPDATE, self._task_update_payload(task), task, actor_id)
        return task

    def complete(self, task_id: str, actor_id: str, completion_notes: str | None = None) -> PickupTask:
        now = self._now()
        notes = self._clean_text(completion_notes, limit=MAX_COMPLETION_NOTES_LENGTH, field="completion notes")
        with self._session() as session:
            task = self._get_task(session, task_id)
            self._ensure_owner(task, actor_id, UserRole.COLLECTOR, "complete")
            if task.status != PickupTaskStatus.IN_PROGRESS:
                raise InvalidStateError(self._COMPLETE_PRECONDITION)
            started_at = ensure_utc(task.actual_start_time) if task.actual_start_time is not None else now
            ended_at = max(now, started_at)
            self._guarded_update(
                session,
                task,
                expected=PickupTaskStatus.IN_PROGRESS,
                values={
                    "status": PickupTaskStatus.COMPLETED,
                    "actual_end_time": ended_at,
                    "completion_notes": notes,
                    "updated_at": now,
                },
                precondition=self._COMPLETE_PRECONDITION,
            )
            report = self._sync_report(
                session,
                task,
                {
                    "status": report_status_for_task(PickupTaskStatus.COMPLETED),
                    "completed_at": ended_at,
                    "updated_at": now,
                },
            )
            self._record_history(
                session,
                task_id=task.id,
                action="completed",
                from_status=PickupTaskStatus.IN_PROGRESS,
                to_status=PickupTaskStatus.COMPLETED,
                actor_id=actor_id,
                note=notes,
            )
            session.commit()
            session.refresh(task)
            collector = session.get(User, task.collector_id)

        logger.info("pickup.completed", task_id=task.id, collector_id=actor_id)
        if report is None:
            self._log_divergence(task, "complete")
        else:
            collector_name = collector.full_name if collector is not None else "collector"
            data = PickupCompletedData(pickup_task_id=task.id, report_id=report.id)
            drafts = [
                NotificationDraft(
                    user_id=report.user_id,
                    title="Pickup Completed",
                    message="Your waste pickup has been completed successfully",
                    data=data,
                    priority=NotificationPriority.MEDIUM,
                )
            ]
            try:
                admin_ids = self._active_admin_ids()
            except Exception:
                logger.exception("pickup.notification_failed", task_id=task.id, stage="admin_lookup")
                admin_ids = []
            drafts.extend(
                NotificationDraft(
                    user_id=admin_id,
                    title="Task Completed",
                    message=f"Pickup task completed by {collector_name}",
                    data=data,
                    priority=NotificationPriority.LOW,
                )
                for admin_id in admin_ids
            )
            self._notify(drafts, task)
        self._broadcast(EVENT_TASK_UPDATE, self._task_update_payload(task), task, actor_id)
        return task

    def cancel(self, task_id: str, actor_id: str, actor_role: UserRole, reason: str) -> PickupTask:
        self._ensure_mutating_role(actor_role)
        cleaned_reason = (reason or "").strip()
        if not cleaned_reason or len(cleaned_reason) > MAX_REASON_LENGTH:
            raise InvalidInputError(f"reason is required and cannot exceed {MAX_REASON_LENGTH} characters")
        now = self._now()
        with self._session() as session:
            task = self._get_task(session, task_id)
            self._ensure_owner(task, actor_id, actor_role, "cancel")
            source = task.status
            if source == PickupTaskStatus.COMPLETED:
                raise InvalidStateError("cannot cancel completed task")
            if source == PickupTaskStatus.CANCELLED:
                raise InvalidStateError("task is already cancelled")
            if not can_pickup_transition(source, PickupTaskStatus.CANCELLED):
                raise InvalidStateError(f"cannot cancel task in {source} status")
            self._guarded_update(
                session,
                task,
                expected=source,
                values={
                    "status": PickupTaskStatus.CANCELLED,
                    "cancellation_reason": cleaned_reason,
                    "updated_at": now,
                },
                precondition="task is no longer cancellable",
            )
            report = self._sync_report(
                session,
                task,
                {
                    "status": report_status_for_task(PickupTaskStatus.CANCELLED),
                    "assigned_collector_id": None,
                    "scheduled_pickup_date": None,
                    "updated_at": now,
                },
            )
            self._record_history(
                session,
                task_id=task.id,
                action="cancelled",
                from_status=source,
                to_status=PickupTaskStatus.CANCELLED,
                actor_id=actor_id,
                note=cleaned_reason,
                detail={"actor_role": actor_role.value},
            )
            session.commit()
            session.refresh(task)

        logger.info("pickup.cancelled", task_id=task.id, from_status=source.value, actor_role=actor_role.value)
        if report is None:
            self._log_divergence(task, "cancel")
        else:
            self._notify(
                [
                    NotificationDraft(
                        user_id=report.user_id,
                        title="Pickup Cancelled",
                        message=f"Pickup Cancelled: {cleaned_reason}",
                        data=PickupCancelledData(pickup_task_id=task.id, report_id=report.id, reason=cleaned_reason),
                        priority=NotificationPriority.MEDIUM,
                    )
                ],
                task,
            )
        self._broadcast(EVENT_TASK_UPDATE, self._task_update_payload(task), task, actor_id)
        return task

    def reschedule(
        self,
        task_id: str,
        actor_id: str,
        actor_role: UserRole,
        new_date: datetime,
        reason: str | None = None,
    ) -> PickupTask:
        self._ensure_mutating_role(actor_role)
        cleaned_reason = self._clean_text(reason, limit=MAX_REASON_LENGTH, field="reason")
        now = self._now()
        scheduled_date = self._ensure_not_past(new_date, now)
        with self._session() as session:
            task = self._get_task(session, task_id)
            self._ensure_owner(task, actor_id, actor_role, "reschedule")
            if task.status != PickupTaskStatus.SCHEDULED:
                raise InvalidStateError(self._RESCHEDULE_PRECONDITION)
            previous_date = ensure_utc(task.scheduled_date)
            audit_line = f"[rescheduled {scheduled_date.isoformat()}] {cleaned_reason or 'no reason given'}"
            notes = f"{task.notes}\n{audit_line}" if task.notes else audit_line
            self._guarded_update(
                session,
                task,
                expected=PickupTaskStatus.SCHEDULED,
                values={"scheduled_date": scheduled_date, "notes": notes, "updated_at": now},
                precondition=self._RESCHEDULE_PRECONDITION,
            )
            report = self._sync_report(
                session,
                task,
                {"scheduled_pickup_date": scheduled_date, "updated_at": now},
            )
            self._record_history(
                session,
                task_id=task.id,
                action="rescheduled",
                from_status=PickupTaskStatus.SCHEDULED,
                to_status=PickupTaskStatus.SCHEDULED,
                actor_id=actor_id,
                note=cleaned_reason,
                detail={
                    "previous_date": previous_date.isoformat(),
                    "scheduled_date": scheduled_date.isoformat(),
                },
            )
            session.commit()
            session.refresh(task)

        logger.info("pickup.rescheduled", task_id=task.id, scheduled_date=scheduled_date.isoformat())
        if report is None:
            self._log_divergence(task, "reschedule")
        else:
            self._notify(
                [
                    NotificationDraft(
                        user_id=report.user_id,
                        title="Pickup Rescheduled",
                        message=f"Your pickup has been moved to {scheduled_date.date().isoformat()}",
                        data=PickupRescheduledData(
                            pickup_task_id=task.id,
                            report_id=report.id,
                            previous_date=previous_date,
                            scheduled_date=scheduled_date,
                        ),
                        priority=NotificationPriority.MEDIUM,
                    )
                ],
                task,
            )
        self._broadcast(EVENT_TASK_UPDATE, self._task_update_payload(task), task, actor_id)
        return task

    def list_tasks(self, task_filter: TaskListFilter, page: int = 1, limit: int = 10) -> PickupTaskPage:
        if page < 1:
            raise InvalidInputError("page must be a positive integer")
        if limit < 1 or limit > MAX_PAGE_LIMIT:
            raise InvalidInputError(f"limit must be between 1 and {MAX_PAGE_LIMIT}")
        if task_filter.report_ids is not None and not task_filter.report_ids:
            return PickupTaskPage(items=[], page=page, limit=limit, total=0)

        clauses: list[ColumnElement[bool]] = []
        if task_filter.status is not None:
            clauses.append(col(PickupTask.status) == task_filter.status)
        if task_filter.collector_id is not None:
            clauses.append(col(PickupTask.collector_id) == task_filter.collector_id)
        if task_filter.report_ids is not None:
            clauses.append(col(PickupTask.report_id).in_(task_filter.report_ids))

        with self._session() as session:
            total = session.exec(select(func.count()).select_from(PickupTask).where(*clauses)).one()
            rows = session.exec(
                select(PickupTask)
                .where(*clauses)
                .order_by(col(PickupTask.scheduled_date), col(PickupTask.id))
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
        return PickupTaskPage(items=list(rows), page=page, limit=limit, total=int(total))

    def get_task(self, task_id: str, viewer_id: str, viewer_role: UserRole) -> PickupTask:
        with self._session() as session:
            task = self._get_task(session, task_id)
            self._ensure_visible(session, task, viewer_id, viewer_role)
            return task

    def list_history(self, task_id: str, viewer_id: str, viewer_role: UserRole) -> list[PickupTaskHistory]:
        with self._session() as session:
            task = self._get_task(session, task_id)
            self._ensure_visible(session, task, viewer_id, viewer_role)
            rows = session.exec(select(PickupTaskHistory).where(PickupTaskHistory.task_id == task_id)).all()
            return sorted(rows, key=lambda item: item.created_at)

    def collector_schedule(
        self,
        collector_id: str,
        start: datetime,
        end: datetime,
        viewer_id: str,
        viewer_role: UserRole,
    ) -> list[PickupTask]:
        if viewer_role == UserRole.COLLECTOR and collector_id != viewer_id:
            raise ForbiddenError("collectors can only view their own schedule")
        if viewer_role == UserRole.RESIDENT:
            raise ForbiddenError("access denied")
        start = ensure_utc(start)
        end = ensure_utc(end)
        if start > end:
            raise InvalidInputError("start date must not be after end date")
        with self._session() as session:
            rows = session.exec(
                select(PickupTask)
                .where(PickupTask.collector_id == collector_id)
                .where(col(PickupTask.scheduled_date) >= start)
                .where(col(PickupTask.scheduled_date) <= end)
                .order_by(col(PickupTask.scheduled_date))
            ).all()
            return list(rows)

    def reconcile_reports(self) -> ReconcileRead:
        """Realign every task-referenced report with the status mapping table."""
        now = self._now()
        repaired: list[str] = []
        with self._session() as session:
            tasks = session.exec(select(PickupTask).order_by(col(PickupTask.updated_at))).all()
            governing: dict[str, PickupTask] = {}
            for task in tasks:
                current = governing.get(task.report_id)
                if current is not None and current.status in ACTIVE_TASK_STATUSES:
                    continue
                governing[task.report_id] = task

            for report_id, task in governing.items():
                report = session.get(WasteReport, report_id)
                if report is None:
                    continue
                expected_status = report_status_for_task(task.status)
                expected_collector = None if task.status == PickupTaskStatus.CANCELLED else task.collector_id
                if report.status == expected_status and report.assigned_collector_id == expected_collector:
                    continue
                logger.warning(
                    "pickup.report_reconciled",
                    report_id=report_id,
                    task_id=task.id,
                    report_status=report.status.value,
                    expected_status=expected_status.value,
                )
                report.status = expected_status
                report.assigned_collector_id = expected_collector
                if task.status == PickupTaskStatus.CANCELLED:
                    report.scheduled_pickup_date = None
                elif task.status in ACTIVE_TASK_STATUSES:
                    report.scheduled_pickup_date = task.scheduled_date
                if task.status == PickupTaskStatus.COMPLETED and report.completed_at is None:
                    report.completed_at = task.actual_end_time or now
                report.updated_at = now
                session.add(report)
                repaired.append(report_id)
            session.commit()
        return ReconcileRead(repaired=len(repaired), report_ids=repaired)
