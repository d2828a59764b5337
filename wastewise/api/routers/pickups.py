from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from wastewise.api.deps import get_current_claims, require_role
from wastewise.domain.models import (
    CollectorPerformanceRead,
    CollectorStatsRead,
    PaginationRead,
    PickupCancelRequest,
    PickupCompleteRequest,
    PickupRescheduleRequest,
    PickupScheduleRequest,
    PickupTaskHistoryRead,
    PickupTaskPageRead,
    PickupTaskRead,
    ReconcileRead,
    TaskListFilter,
)
from wastewise.domain.roles import UserRole
from wastewise.domain.state_machine import PickupTaskStatus
from wastewise.domain.time_windows import PerformancePeriod
from wastewise.infra.audit import set_audit_context
from wastewise.services.pickup_service import (
    CollectorUnavailableError,
    ForbiddenError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    PickupError,
    PickupService,
    PickupTaskPage,
)
from wastewise.services.report_service import ReportService
from wastewise.services.stats_service import CollectorStatsService

router = APIRouter()

_ERROR_STATUS: dict[type[PickupError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ForbiddenError: status.HTTP_403_FORBIDDEN,
    InvalidStateError: status.HTTP_409_CONFLICT,
    InvalidInputError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    CollectorUnavailableError: status.HTTP_409_CONFLICT,
}


def get_pickup_service() -> PickupService:
    return PickupService()


def get_stats_service() -> CollectorStatsService:
    return CollectorStatsService()


def get_report_service() -> ReportService:
    return ReportService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[PickupService, Depends(get_pickup_service)]
StatsService = Annotated[CollectorStatsService, Depends(get_stats_service)]
Reports = Annotated[ReportService, Depends(get_report_service)]


def _handle_pickup_error(exc: PickupError) -> None:
    status_code = _ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    raise HTTPException(status_code=status_code, detail={"code": exc.code, "message": str(exc)}) from exc


def _role(claims: dict[str, Any]) -> UserRole:
    return UserRole(claims["role"])


def _page_read(page: PickupTaskPage) -> PickupTaskPageRead:
    return PickupTaskPageRead(
        items=[PickupTaskRead.model_validate(item) for item in page.items],
        pagination=PaginationRead(
            page=page.page,
            limit=page.limit,
            total=page.total,
            total_pages=page.total_pages,
        ),
    )


@router.post(
    "/tasks",
    response_model=PickupTaskRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_role(UserRole.ADMIN))],
)
def schedule_pickup(
    payload: PickupScheduleRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> PickupTaskRead:
    set_audit_context(
        request,
        action="pickups.task.schedule",
        detail={"what": {"report_id": payload.report_id, "collector_id": payload.collector_id}},
    )
    try:
        return PickupTaskRead.model_validate(service.schedule(claims["sub"], payload))
    except PickupError as exc:
        _handle_pickup_error(exc)
        raise


@router.get("/tasks", response_model=PickupTaskPageRead)
def list_pickup_tasks(
    claims: Claims,
    service: Service,
    reports: Reports,
    task_status: Annotated[PickupTaskStatus | None, Query(alias="status")] = None,
    collector_id: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> PickupTaskPageRead:
    role = _role(claims)
    task_filter = TaskListFilter(status=task_status, collector_id=collector_id)
    if role == UserRole.COLLECTOR:
        task_filter.collector_id = claims["sub"]
    elif role == UserRole.RESIDENT:
        task_filter.report_ids = reports.report_ids_for_owner(claims["sub"])
    try:
        return _page_read(service.list_tasks(task_filter, page=page, limit=limit))
    except PickupError as exc:
        _handle_pickup_error(exc)
        raise


@router.get(
    "/my-tasks",
    response_model=PickupTaskPageRead,
    dependencies=[Depends(require_role(UserRole.COLLECTOR))],
)
def list_my_tasks(
    claims: Claims,
    service: Service,
    task_status: Annotated[PickupTaskStatus | None, Query(alias="status")] = None,
    page: int = 1,
    limit: int = 10,
) -> PickupTaskPageRead:
    task_filter = TaskListFilter(status=task_status, collector_id=claims["sub"])
    try:
        return _page_read(service.list_tasks(task_filter, page=page, limit=limit))
    except PickupError as exc:
        _handle_pickup_error(exc)
        raise


@router.get("/tasks/{task_id}", response_model=PickupTaskRead)
def get_pickup_task(task_id: str, claims: Claims, service: Service) -> PickupTaskRead:
    try:
        return PickupTaskRead.model_validate(service.get_task(task_id, claims["sub"], _role(claims)))
    except PickupError as exc:
        _handle_pickup_error(exc)
        raise


@router.get("/tasks/{task_id}/history", response_model=list[PickupTaskHistoryRead])
def get_pickup_task_history(task_id: str, claims: Claims, service: Service) -> list[PickupTaskHistoryRead]:
    try:
        rows = service.list_history(task_id, claims["sub"], _role(claims))
    except PickupError as exc:
        _handle_pickup_error(exc)
        raise
    return [PickupTaskHistoryRead.model_validate(item) for item in rows]


@router.post(
    "/tasks/{task_id}/start",
    response_model=PickupTaskRead,
    dependencies=[Depends(require_role(UserRole.COLLECTOR))],
)
def start_pickup(task_id: str, request: Request, claims: Claims, service: Service) -> PickupTaskRead:
    set_audit_context(request, action="pickups.task.start", detail={"what": {"task_id": task_id}})
    try:
        return PickupTaskRead.model_validate(service.start(task_id, claims["sub"]))
    except PickupError as exc:
        _handle_pickup_error(exc)
        raise


@router.post(
    "/tasks/{task_id}/complete",
    response_model=PickupTaskRead,
    dependencies=[Depends(require_role(UserRole.COLLECTOR))],
)
def complete_pickup(
    task_id: str,
    payload: PickupCompleteRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> PickupTaskRead:
    set_audit_context(request, action="pickups.task.complete", detail={"what": {"task_id": task_id}})
    try:
        return PickupTaskRead.model_validate(service.complete(task_id, claims["sub"], payload.completion_notes))
    except PickupError as exc:
        _handle_pickup_error(exc)
        raise


@router.post("/tasks/{task_id}/cancel", response_model=PickupTaskRead)
def cancel_pickup(
    task_id: str,
    payload: PickupCancelRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> PickupTaskRead:
    set_audit_context(
        request,
        action="pickups.task.cancel",
        detail={"what": {"task_id": task_id, "reason": payload.reason}},
    )
    try:
        return PickupTaskRead.model_validate(service.cancel(task_id, claims["sub"], _role(claims), payload.reason))
    except PickupError as exc:
        _handle_pickup_error(exc)
        raise


@router.post("/tasks/{task_id}/reschedule", response_model=PickupTaskRead)
def reschedule_pickup(
    task_id: str,
    payload: PickupRescheduleRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> PickupTaskRead:
    set_audit_context(
        request,
        action="pickups.task.reschedule",
        detail={"what": {"task_id": task_id, "scheduled_date": payload.scheduled_date.isoformat()}},
    )
    try:
        row = service.reschedule(
            task_id,
            claims["sub"],
            _role(claims),
            payload.scheduled_date,
            payload.reason,
        )
        return PickupTaskRead.model_validate(row)
    except PickupError as exc:
        _handle_pickup_error(exc)
        raise


@router.get(
    "/collectors/{collector_id}/schedule",
    response_model=list[PickupTaskRead],
    dependencies=[Depends(require_role(UserRole.ADMIN, UserRole.COLLECTOR))],
)
def get_collector_schedule(
    collector_id: str,
    claims: Claims,
    service: Service,
    start_date: datetime,
    end_date: datetime,
) -> list[PickupTaskRead]:
    try:
        rows = service.collector_schedule(collector_id, start_date, end_date, claims["sub"], _role(claims))
    except PickupError as exc:
        _handle_pickup_error(exc)
        raise
    return [PickupTaskRead.model_validate(item) for item in rows]


@router.get(
    "/collector/stats",
    response_model=CollectorStatsRead,
    dependencies=[Depends(require_role(UserRole.COLLECTOR))],
)
def get_my_stats(claims: Claims, stats: StatsService) -> CollectorStatsRead:
    return stats.collector_stats(claims["sub"])


@router.get(
    "/collector/performance",
    response_model=CollectorPerformanceRead,
    dependencies=[Depends(require_role(UserRole.COLLECTOR))],
)
def get_my_performance(
    claims: Claims,
    stats: StatsService,
    period: PerformancePeriod = PerformancePeriod.MONTH,
) -> CollectorPerformanceRead:
    return stats.collector_performance(claims["sub"], period)


@router.get(
    "/collectors/{collector_id}/stats",
    response_model=CollectorStatsRead,
    dependencies=[Depends(require_role(UserRole.ADMIN))],
)
def get_collector_stats(collector_id: str, stats: StatsService) -> CollectorStatsRead:
    return stats.collector_stats(collector_id)


@router.get(
    "/collectors/{collector_id}/performance",
    response_model=CollectorPerformanceRead,
    dependencies=[Depends(require_role(UserRole.ADMIN))],
)
def get_collector_performance(
    collector_id: str,
    stats: StatsService,
    period: PerformancePeriod = PerformancePeriod.MONTH,
) -> CollectorPerformanceRead:
    return stats.collector_performance(collector_id, period)


@router.post(
    "/reconcile",
    response_model=ReconcileRead,
    dependencies=[Depends(require_role(UserRole.ADMIN))],
)
def reconcile_reports(request: Request, service: Service) -> ReconcileRead:
    set_audit_context(request, action="pickups.reconcile")
    return service.reconcile_reports()
