from __future__ import annotations

from enum import StrEnum


class PickupTaskStatus(StrEnum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"


class ReportStatus(StrEnum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Rescheduling keeps a task in SCHEDULED; RESCHEDULED is a stored value only.
PICKUP_ALLOWED_TRANSITIONS: dict[PickupTaskStatus, set[PickupTaskStatus]] = {
    PickupTaskStatus.SCHEDULED: {
        PickupTaskStatus.SCHEDULED,
        PickupTaskStatus.IN_PROGRESS,
        PickupTaskStatus.CANCELLED,
    },
    PickupTaskStatus.IN_PROGRESS: {
        PickupTaskStatus.COMPLETED,
        PickupTaskStatus.CANCELLED,
    },
    PickupTaskStatus.COMPLETED: set(),
    PickupTaskStatus.CANCELLED: set(),
    PickupTaskStatus.RESCHEDULED: set(),
}

ACTIVE_TASK_STATUSES: frozenset[PickupTaskStatus] = frozenset(
    {PickupTaskStatus.SCHEDULED, PickupTaskStatus.IN_PROGRESS}
)

REPORT_STATUS_FOR_TASK: dict[PickupTaskStatus, ReportStatus] = {
    PickupTaskStatus.SCHEDULED: ReportStatus.ASSIGNED,
    PickupTaskStatus.RESCHEDULED: ReportStatus.ASSIGNED,
    PickupTaskStatus.IN_PROGRESS: ReportStatus.IN_PROGRESS,
    PickupTaskStatus.COMPLETED: ReportStatus.COMPLETED,
    PickupTaskStatus.CANCELLED: ReportStatus.PENDING,
}


def can_pickup_transition(source: PickupTaskStatus, target: PickupTaskStatus) -> bool:
    return target in PICKUP_ALLOWED_TRANSITIONS.get(source, set())


def report_status_for_task(status: PickupTaskStatus | None) -> ReportStatus:
    """Report status implied by the report's governing task.

    ``None`` means the report has no task at all and sits in the unassigned pool.
    """
    if status is None:
        return ReportStatus.PENDING
    return REPORT_STATUS_FOR_TASK[status]
