from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel

from wastewise.domain.roles import UserRole
from wastewise.domain.state_machine import PickupTaskStatus, ReportStatus
from wastewise.domain.time_windows import PerformancePeriod


def now_utc() -> datetime:
    return datetime.now(UTC)


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    audience: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    email: str = Field(index=True, unique=True)
    password_hash: str
    full_name: str
    role: UserRole = Field(index=True)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class WasteType(StrEnum):
    ORGANIC = "organic"
    RECYCLABLE = "recyclable"
    HAZARDOUS = "hazardous"
    ELECTRONIC = "electronic"
    OTHER = "other"


class ReportPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


HIGH_PRIORITIES: frozenset[ReportPriority] = frozenset({ReportPriority.HIGH, ReportPriority.URGENT})


class WasteReport(SQLModel, table=True):
    __tablename__ = "waste_reports"
    __table_args__ = (
        Index("ix_waste_reports_user_status", "user_id", "status"),
        Index("ix_waste_reports_collector_status", "assigned_collector_id", "status"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    type: WasteType
    description: str
    address: str
    lat: float
    lng: float
    priority: ReportPriority = Field(default=ReportPriority.MEDIUM, index=True)
    estimated_volume: float
    status: ReportStatus = Field(default=ReportStatus.PENDING, index=True)
    assigned_collector_id: str | None = Field(default=None, foreign_key="users.id", index=True)
    scheduled_pickup_date: datetime | None = None
    notes: str | None = None
    admin_notes: str | None = None
    images: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class PickupTask(SQLModel, table=True):
    __tablename__ = "pickup_tasks"
    __table_args__ = (
        Index("ix_pickup_tasks_collector_status", "collector_id", "status"),
        Index("ix_pickup_tasks_report_status", "report_id", "status"),
        Index("ix_pickup_tasks_collector_scheduled", "collector_id", "scheduled_date"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    report_id: str = Field(index=True)
    collector_id: str = Field(foreign_key="users.id", index=True)
    status: PickupTaskStatus = Field(default=PickupTaskStatus.SCHEDULED, index=True)
    scheduled_date: datetime = Field(index=True)
    estimated_duration: int
    actual_start_time: datetime | None = None
    actual_end_time: datetime | None = None
    completion_notes: str | None = None
    cancellation_reason: str | None = None
    notes: str | None = None
    version: int = Field(default=1)
    created_by: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class PickupTaskHistory(SQLModel, table=True):
    __tablename__ = "pickup_task_history"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    task_id: str = Field(foreign_key="pickup_tasks.id", index=True)
    action: str = Field(index=True)
    from_status: PickupTaskStatus | None = None
    to_status: PickupTaskStatus
    actor_id: str | None = Field(default=None, index=True)
    note: str | None = None
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=now_utc, index=True)


class NotificationType(StrEnum):
    PICKUP_SCHEDULED = "pickup_scheduled"
    PICKUP_REMINDER = "pickup_reminder"
    REPORT_COMPLETED = "report_completed"
    SYSTEM_ALERT = "system_alert"
    PICKUP_RESCHEDULED = "pickup_rescheduled"


class NotificationPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Notification(SQLModel, table=True):
    __tablename__ = "notifications"
    __table_args__ = (Index("ix_notifications_user_created", "user_id", "created_at"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    type: NotificationType = Field(index=True)
    title: str
    message: str
    data: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    priority: NotificationPriority = Field(default=NotificationPriority.MEDIUM)
    created_at: datetime = Field(default_factory=now_utc, index=True)


# Notification payloads, keyed by the notification type they travel with.


class PickupScheduledData(BaseModel):
    kind: Literal["pickup_scheduled"] = "pickup_scheduled"
    pickup_task_id: str
    report_id: str
    scheduled_date: datetime


class PickupStartedData(BaseModel):
    kind: Literal["pickup_reminder"] = "pickup_reminder"
    pickup_task_id: str
    report_id: str


class PickupCompletedData(BaseModel):
    kind: Literal["report_completed"] = "report_completed"
    pickup_task_id: str
    report_id: str


class PickupCancelledData(BaseModel):
    kind: Literal["system_alert"] = "system_alert"
    pickup_task_id: str
    report_id: str
    reason: str


class PickupRescheduledData(BaseModel):
    kind: Literal["pickup_rescheduled"] = "pickup_rescheduled"
    pickup_task_id: str
    report_id: str
    previous_date: datetime
    scheduled_date: datetime


NotificationData = Annotated[
    PickupScheduledData
    | PickupStartedData
    | PickupCompletedData
    | PickupCancelledData
    | PickupRescheduledData,
    PydanticField(discriminator="kind"),
]


class NotificationDraft(BaseModel):
    user_id: str
    title: str
    message: str
    data: NotificationData
    priority: NotificationPriority = NotificationPriority.MEDIUM


class AudienceKind(StrEnum):
    ALL = "all"
    USER = "user"
    ROLE = "role"


class Audience(BaseModel):
    kind: AudienceKind = AudienceKind.ALL
    target: str | None = None

    @classmethod
    def everyone(cls) -> Audience:
        return cls(kind=AudienceKind.ALL)

    @classmethod
    def user(cls, user_id: str) -> Audience:
        return cls(kind=AudienceKind.USER, target=user_id)

    @classmethod
    def role(cls, role: UserRole) -> Audience:
        return cls(kind=AudienceKind.ROLE, target=role.value)

    def room(self) -> str:
        if self.kind == AudienceKind.ALL:
            return "all"
        return f"{self.kind.value}:{self.target}"


class BroadcastEvent(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    audience: Audience = PydanticField(default_factory=Audience.everyone)
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class RegisterRequest(BaseModel):
    email: str
    password: str
    full_name: str


class BootstrapAdminRequest(BaseModel):
    email: str
    password: str
    full_name: str


class UserCreate(BaseModel):
    email: str
    password: str
    full_name: str
    role: UserRole
    is_active: bool = True


class UserUpdate(BaseModel):
    full_name: str | None = None
    is_active: bool | None = None


class UserRead(ORMReadModel):
    id: str
    email: str
    full_name: str
    role: UserRole
    is_active: bool
    created_at: datetime


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str
    role: UserRole


class ReportCreate(BaseModel):
    type: WasteType
    description: str = PydanticField(min_length=1, max_length=500)
    address: str = PydanticField(min_length=1)
    lat: float = PydanticField(ge=-90, le=90)
    lng: float = PydanticField(ge=-180, le=180)
    priority: ReportPriority = ReportPriority.MEDIUM
    estimated_volume: float = PydanticField(gt=0)
    notes: str | None = PydanticField(default=None, max_length=300)
    images: list[str] = PydanticField(default_factory=list)


class ReportUpdate(BaseModel):
    description: str | None = PydanticField(default=None, min_length=1, max_length=500)
    notes: str | None = PydanticField(default=None, max_length=300)


class ReportStatusOverride(BaseModel):
    status: ReportStatus
    admin_notes: str | None = PydanticField(default=None, max_length=500)


class ReportRead(ORMReadModel):
    id: str
    user_id: str
    type: WasteType
    description: str
    address: str
    lat: float
    lng: float
    priority: ReportPriority
    estimated_volume: float
    status: ReportStatus
    assigned_collector_id: str | None
    scheduled_pickup_date: datetime | None
    notes: str | None
    admin_notes: str | None
    images: list[str]
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class PickupScheduleRequest(BaseModel):
    report_id: str
    collector_id: str
    scheduled_date: datetime
    estimated_duration: int
    notes: str | None = None


class PickupCompleteRequest(BaseModel):
    completion_notes: str | None = None


class PickupCancelRequest(BaseModel):
    reason: str


class PickupRescheduleRequest(BaseModel):
    scheduled_date: datetime
    reason: str | None = None


class TaskListFilter(BaseModel):
    status: PickupTaskStatus | None = None
    collector_id: str | None = None
    report_ids: list[str] | None = None


class PickupTaskRead(ORMReadModel):
    id: str
    report_id: str
    collector_id: str
    status: PickupTaskStatus
    scheduled_date: datetime
    estimated_duration: int
    actual_start_time: datetime | None
    actual_end_time: datetime | None
    completion_notes: str | None
    cancellation_reason: str | None
    notes: str | None
    version: int
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class PickupTaskHistoryRead(ORMReadModel):
    id: str
    task_id: str
    action: str
    from_status: PickupTaskStatus | None
    to_status: PickupTaskStatus
    actor_id: str | None
    note: str | None
    detail: dict[str, Any]
    created_at: datetime


class PaginationRead(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class PickupTaskPageRead(BaseModel):
    items: list[PickupTaskRead]
    pagination: PaginationRead


class ReconcileRead(BaseModel):
    repaired: int
    report_ids: list[str]


class NotificationRead(ORMReadModel):
    id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    data: NotificationData
    priority: NotificationPriority
    created_at: datetime


class TodayStatsRead(BaseModel):
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    scheduled: int = 0
    total_duration: int = 0
    high_priority: int = 0


class WeekStatsRead(BaseModel):
    total: int = 0
    completed: int = 0
    completion_rate: float = 0.0


class CollectorStatsRead(BaseModel):
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    scheduled: int = 0
    cancelled: int = 0
    completion_rate: float = 0.0
    today: TodayStatsRead = PydanticField(default_factory=TodayStatsRead)
    this_week: WeekStatsRead = PydanticField(default_factory=WeekStatsRead)


class PriorityBreakdownRead(BaseModel):
    high: int = 0
    medium: int = 0
    low: int = 0


class StatusBreakdownRead(BaseModel):
    scheduled: int = 0
    in_progress: int = 0
    completed: int = 0
    cancelled: int = 0
    rescheduled: int = 0


class WeeklyBucketRead(BaseModel):
    week: str
    tasks_completed: int = 0
    average_time: float = 0.0


class EfficiencyRead(BaseModel):
    on_time_completions: int = 0
    total_completions: int = 0
    on_time_rate: float = 0.0


class CollectorPerformanceRead(BaseModel):
    period: PerformancePeriod
    total_tasks: int = 0
    completed_tasks: int = 0
    completion_rate: float = 0.0
    average_completion_time: float = 0.0
    tasks_by_priority: PriorityBreakdownRead = PydanticField(default_factory=PriorityBreakdownRead)
    tasks_by_status: StatusBreakdownRead = PydanticField(default_factory=StatusBreakdownRead)
    weekly_data: list[WeeklyBucketRead] = PydanticField(default_factory=list)
    efficiency: EfficiencyRead = PydanticField(default_factory=EfficiencyRead)
