from __future__ import annotations

import structlog


def set_request_context(user_id: str | None, role: str | None) -> None:
    structlog.contextvars.bind_contextvars(user_id=user_id, role=role)
