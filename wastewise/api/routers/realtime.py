from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import Any

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from wastewise.domain.models import BroadcastEvent
from wastewise.domain.roles import claims_role, role_room, user_room
from wastewise.infra.auth import decode_access_token

ws_router = APIRouter()

ALL_ROOM = "all"

logger = structlog.get_logger(__name__)


class EventHub:
    """Room-based fan-out of broadcaster events to WebSocket clients.

    ``handle_event`` is called from whatever thread emitted the event; it only
    schedules delivery on the loop that accepted the sockets.
    """

    def __init__(self) -> None:
        self._rooms: dict[str, set[WebSocket]] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

    def register(self, websocket: WebSocket, rooms: Iterable[str]) -> None:
        self._loop = asyncio.get_running_loop()
        for room in rooms:
            self._rooms.setdefault(room, set()).add(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        for room in list(self._rooms):
            members = self._rooms[room]
            members.discard(websocket)
            if not members:
                del self._rooms[room]

    def connection_count(self) -> int:
        return len(self._rooms.get(ALL_ROOM, set()))

    async def deliver(self, room: str, frame: dict[str, Any]) -> None:
        for connection in list(self._rooms.get(room, set())):
            try:
                await connection.send_json(frame)
            except Exception:
                logger.warning("ws.send_failed", room=room, event=frame.get("event"), exc_info=True)
                self.disconnect(connection)

    def handle_event(self, event: BroadcastEvent) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        frame = {"event": event.event_type, "data": event.payload}
        asyncio.run_coroutine_threadsafe(self.deliver(event.audience.room(), frame), loop)


event_hub = EventHub()


def _extract_ws_token(websocket: WebSocket, token: str | None) -> str | None:
    if token:
        return token
    auth_header = websocket.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip()
    return None


@ws_router.websocket("/ws/events")
async def ws_events(websocket: WebSocket, token: str | None = Query(default=None)) -> None:
    resolved_token = _extract_ws_token(websocket, token)
    if not resolved_token:
        await websocket.close(code=4401)
        return
    try:
        claims = decode_access_token(resolved_token)
    except Exception:
        await websocket.close(code=4401)
        return
    user_id = claims.get("sub")
    role = claims_role(claims)
    if not isinstance(user_id, str) or not user_id or role is None:
        await websocket.close(code=4401)
        return

    await websocket.accept()
    event_hub.register(websocket, [ALL_ROOM, user_room(user_id), role_room(role)])
    logger.info("ws.connected", user_id=user_id, role=role.value)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("ws.disconnected", user_id=user_id)
    finally:
        event_hub.disconnect(websocket)
