from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from wastewise.api.deps import get_current_claims, require_role
from wastewise.domain.models import ReportCreate, ReportRead, ReportStatusOverride, ReportUpdate
from wastewise.domain.roles import UserRole
from wastewise.domain.state_machine import ReportStatus
from wastewise.infra.audit import set_audit_context
from wastewise.services.report_service import ConflictError, ForbiddenError, NotFoundError, ReportService

router = APIRouter()


def get_report_service() -> ReportService:
    return ReportService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[ReportService, Depends(get_report_service)]


def _handle_report_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ForbiddenError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    raise exc


@router.post(
    "",
    response_model=ReportRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_role(UserRole.RESIDENT))],
)
def create_report(payload: ReportCreate, request: Request, claims: Claims, service: Service) -> ReportRead:
    set_audit_context(
        request,
        action="reports.create",
        detail={"what": {"type": payload.type.value, "priority": payload.priority.value}},
    )
    try:
        return ReportRead.model_validate(service.create_report(claims["sub"], payload))
    except (NotFoundError, ForbiddenError, ConflictError) as exc:
        _handle_report_error(exc)
        raise


@router.get("", response_model=list[ReportRead])
def list_reports(claims: Claims, service: Service, status: ReportStatus | None = None) -> list[ReportRead]:
    rows = service.list_reports(claims["sub"], UserRole(claims["role"]), status=status)
    return [ReportRead.model_validate(item) for item in rows]


@router.get("/{report_id}", response_model=ReportRead)
def get_report(report_id: str, claims: Claims, service: Service) -> ReportRead:
    try:
        return ReportRead.model_validate(service.get_report(report_id, claims["sub"], UserRole(claims["role"])))
    except (NotFoundError, ForbiddenError, ConflictError) as exc:
        _handle_report_error(exc)
        raise


@router.patch("/{report_id}", response_model=ReportRead)
def update_report(
    report_id: str,
    payload: ReportUpdate,
    request: Request,
    claims: Claims,
    service: Service,
) -> ReportRead:
    set_audit_context(request, action="reports.update", detail={"what": {"report_id": report_id}})
    try:
        return ReportRead.model_validate(service.update_report(report_id, claims["sub"], payload))
    except (NotFoundError, ForbiddenError, ConflictError) as exc:
        _handle_report_error(exc)
        raise


@router.patch(
    "/{report_id}/status",
    response_model=ReportRead,
    dependencies=[Depends(require_role(UserRole.ADMIN))],
)
def override_report_status(
    report_id: str,
    payload: ReportStatusOverride,
    request: Request,
    service: Service,
) -> ReportRead:
    set_audit_context(
        request,
        action="reports.status_override",
        detail={"what": {"report_id": report_id, "status": payload.status.value}},
    )
    try:
        return ReportRead.model_validate(service.override_status(report_id, payload))
    except (NotFoundError, ForbiddenError, ConflictError) as exc:
        _handle_report_error(exc)
        raise


@router.delete("/{report_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_report(report_id: str, request: Request, claims: Claims, service: Service) -> Response:
    set_audit_context(request, action="reports.delete", detail={"what": {"report_id": report_id}})
    try:
        service.delete_report(report_id, claims["sub"], UserRole(claims["role"]))
    except (NotFoundError, ForbiddenError, ConflictError) as exc:
        _handle_report_error(exc)
        raise
    return Response(status_code=status.HTTP_204_NO_CONTENT)
