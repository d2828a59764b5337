from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog
from sqlmodel import Session

from wastewise.domain.models import Audience, BroadcastEvent, EventRecord
from wastewise.infra.db import engine

EventHandler = Callable[[BroadcastEvent], None]

logger = structlog.get_logger(__name__)


class EventBroadcaster:
    """Persists every event, then fans it out to the registered subscribers.

    Subscribers must not block: the WebSocket hub only schedules delivery on its
    own loop. A failing subscriber is logged and skipped.
    """

    def __init__(self) -> None:
        self._subscribers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        if handler not in self._subscribers:
            self._subscribers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._subscribers:
            self._subscribers.remove(handler)

    def publish(self, event: BroadcastEvent, session: Session | None = None) -> None:
        should_commit = session is None
        if session is None:
            session = Session(engine)
        try:
            record = EventRecord(
                event_id=event.event_id,
                event_type=event.event_type,
                audience=event.audience.room(),
                ts=event.ts,
                actor_id=event.actor_id,
                payload=event.payload,
            )
            session.add(record)
            if should_commit:
                session.commit()
        finally:
            if should_commit:
                session.close()

        for handler in list(self._subscribers):
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "events.handler_failed",
                    event_type=event.event_type,
                    event_id=event.event_id,
                )

    def emit(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        audience: Audience | None = None,
        actor_id: str | None = None,
    ) -> BroadcastEvent:
        event = BroadcastEvent(
            event_type=event_type,
            audience=audience or Audience.everyone(),
            actor_id=actor_id,
            payload=payload,
        )
        self.publish(event)
        return event


broadcaster = EventBroadcaster()
