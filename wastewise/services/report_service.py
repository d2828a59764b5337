from __future__ import annotations

from datetime import UTC, datetime

from sqlmodel import Session, col, select

from wastewise.domain.models import (
    PickupTask,
    ReportCreate,
    ReportStatusOverride,
    ReportUpdate,
    User,
    WasteReport,
)
from wastewise.domain.roles import UserRole
from wastewise.domain.state_machine import ACTIVE_TASK_STATUSES, ReportStatus
from wastewise.infra.db import get_engine


class ReportError(Exception):
    pass


class NotFoundError(ReportError):
    pass


class ForbiddenError(ReportError):
    pass


class ConflictError(ReportError):
    pass


class ReportService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_report(self, session: Session, report_id: str) -> WasteReport:
        report = session.get(WasteReport, report_id)
        if report is None:
            raise NotFoundError("report not found")
        return report

    def _ensure_visible(self, report: WasteReport, viewer_id: str, viewer_role: UserRole) -> None:
        if viewer_role == UserRole.ADMIN:
            return
        if viewer_role == UserRole.RESIDENT and report.user_id == viewer_id:
            return
        if viewer_role == UserRole.COLLECTOR and report.assigned_collector_id == viewer_id:
            return
        raise ForbiddenError("access denied")

    def create_report(self, owner_id: str, payload: ReportCreate) -> WasteReport:
        with self._session() as session:
            owner = session.get(User, owner_id)
            if owner is None:
                raise NotFoundError("user not found")
            report = WasteReport(
                user_id=owner_id,
                type=payload.type,
                description=payload.description.strip(),
                address=payload.address.strip(),
                lat=payload.lat,
                lng=payload.lng,
                priority=payload.priority,
                estimated_volume=payload.estimated_volume,
                notes=payload.notes,
                images=list(payload.images),
                status=ReportStatus.PENDING,
            )
            session.add(report)
            session.commit()
            session.refresh(report)
            return report

    def get_report(self, report_id: str, viewer_id: str, viewer_role: UserRole) -> WasteReport:
        with self._session() as session:
            report = self._get_report(session, report_id)
            self._ensure_visible(report, viewer_id, viewer_role)
            return report

    def list_reports(
        self,
        viewer_id: str,
        viewer_role: UserRole,
        *,
        status: ReportStatus | None = None,
    ) -> list[WasteReport]:
        with self._session() as session:
            statement = select(WasteReport)
            if viewer_role == UserRole.RESIDENT:
                statement = statement.where(WasteReport.user_id == viewer_id)
            elif viewer_role == UserRole.COLLECTOR:
                statement = statement.where(WasteReport.assigned_collector_id == viewer_id)
            if status is not None:
                statement = statement.where(WasteReport.status == status)
            statement = statement.order_by(col(WasteReport.created_at).desc())
            return list(session.exec(statement).all())

    def report_ids_for_owner(self, owner_id: str) -> list[str]:
        with self._session() as session:
            rows = session.exec(select(WasteReport.id).where(WasteReport.user_id == owner_id)).all()
            return list(rows)

    def update_report(self, report_id: str, owner_id: str, payload: ReportUpdate) -> WasteReport:
        with self._session() as session:
            report = self._get_report(session, report_id)
            if report.user_id != owner_id:
                raise ForbiddenError("only the report owner may edit this report")
            if report.status == ReportStatus.COMPLETED:
                raise ConflictError("completed reports cannot be edited")
            if payload.description is not None:
                report.description = payload.description.strip()
            if payload.notes is not None:
                report.notes = payload.notes
            report.updated_at = datetime.now(UTC)
            session.add(report)
            session.commit()
            session.refresh(report)
            return report

    def override_status(self, report_id: str, payload: ReportStatusOverride) -> WasteReport:
        with self._session() as session:
            report = self._get_report(session, report_id)
            now = datetime.now(UTC)
            report.status = payload.status
            if payload.admin_notes is not None:
                report.admin_notes = payload.admin_notes
            if payload.status == ReportStatus.COMPLETED and report.completed_at is None:
                report.completed_at = now
            report.updated_at = now
            session.add(report)
            session.commit()
            session.refresh(report)
            return report

    def delete_report(self, report_id: str, actor_id: str, actor_role: UserRole) -> None:
        with self._session() as session:
            report = self._get_report(session, report_id)
            if actor_role != UserRole.ADMIN and report.user_id != actor_id:
                raise ForbiddenError("only the owner or an admin may delete this report")
            active_task = session.exec(
                select(PickupTask)
                .where(PickupTask.report_id == report_id)
                .where(col(PickupTask.status).in_(list(ACTIVE_TASK_STATUSES)))
            ).first()
            if active_task is not None:
                raise ConflictError("report has an active pickup task")
            session.delete(report)
            session.commit()
