from __future__ import annotations

from sqlmodel import Session, col, select

from wastewise.domain.models import Notification, NotificationDraft, NotificationType
from wastewise.infra.db import get_engine


class NotificationService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def notify_many(self, drafts: list[NotificationDraft]) -> list[Notification]:
        if not drafts:
            return []
        rows = [
            Notification(
                user_id=draft.user_id,
                type=NotificationType(draft.data.kind),
                title=draft.title,
                message=draft.message,
                data=draft.data.model_dump(mode="json"),
                priority=draft.priority,
            )
            for draft in drafts
        ]
        with self._session() as session:
            session.add_all(rows)
            session.commit()
            for row in rows:
                session.refresh(row)
        return rows

    def list_for_user(self, user_id: str, limit: int = 50) -> list[Notification]:
        with self._session() as session:
            statement = (
                select(Notification)
                .where(Notification.user_id == user_id)
                .order_by(col(Notification.created_at).desc())
                .limit(limit)
            )
            return list(session.exec(statement).all())
