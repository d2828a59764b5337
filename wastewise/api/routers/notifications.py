from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query

from wastewise.api.deps import get_current_claims
from wastewise.domain.models import NotificationRead
from wastewise.services.notification_service import NotificationService

router = APIRouter()


def get_notification_service() -> NotificationService:
    return NotificationService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[NotificationService, Depends(get_notification_service)]


@router.get("", response_model=list[NotificationRead])
def list_notifications(
    claims: Claims,
    service: Service,
    limit: int = Query(default=50, ge=1, le=200),
) -> list[NotificationRead]:
    rows = service.list_for_user(claims["sub"], limit=limit)
    return [NotificationRead.model_validate(item) for item in rows]
