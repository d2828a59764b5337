from __future__ import annotations

import time
from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, create_engine
from starlette.websockets import WebSocketDisconnect

from wastewise import main as app_main
from wastewise.api.routers.realtime import event_hub
from wastewise.domain.models import Audience
from wastewise.infra import audit, db, events
from wastewise.infra.events import broadcaster


@pytest.fixture()
def realtime_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "realtime_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(events, "engine", test_engine)
    client = TestClient(app_main.app)
    yield client
    client.close()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _wait_for_connections(expected: int, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while event_hub.connection_count() != expected:
        assert time.monotonic() < deadline, f"expected {expected} hub connections, have {event_hub.connection_count()}"
        time.sleep(0.01)


def _login(client: TestClient, email: str, password: str) -> str:
    response = client.post("/api/identity/login", json={"email": email, "password": password})
    assert response.status_code == 200
    return response.json()["access_token"]


def test_ws_receives_assign_task_broadcast(realtime_client: TestClient) -> None:
    realtime_client.post(
        "/api/identity/bootstrap-admin",
        json={"email": "admin@example.com", "password": "pw", "full_name": "Ada Admin"},
    )
    admin_token = _login(realtime_client, "admin@example.com", "pw")
    collector = realtime_client.post(
        "/api/identity/users",
        json={"email": "c@example.com", "password": "pw", "full_name": "Casey", "role": "collector"},
        headers=_auth_header(admin_token),
    ).json()
    collector_token = _login(realtime_client, "c@example.com", "pw")
    realtime_client.post(
        "/api/identity/register",
        json={"email": "r@example.com", "password": "pw", "full_name": "Rosa"},
    )
    resident_token = _login(realtime_client, "r@example.com", "pw")
    report = realtime_client.post(
        "/api/reports",
        json={
            "type": "electronic",
            "description": "broken monitor",
            "address": "1 Pine Court",
            "lat": 48.8,
            "lng": 2.3,
            "estimated_volume": 0.2,
        },
        headers=_auth_header(resident_token),
    ).json()

    with realtime_client.websocket_connect(f"/ws/events?token={collector_token}") as websocket:
        _wait_for_connections(1)
        scheduled = realtime_client.post(
            "/api/pickups/tasks",
            json={
                "report_id": report["id"],
                "collector_id": collector["id"],
                "scheduled_date": (datetime.now(UTC) + timedelta(hours=3)).isoformat(),
                "estimated_duration": 20,
            },
            headers=_auth_header(admin_token),
        )
        assert scheduled.status_code == 201

        message = websocket.receive_json()
        assert message["event"] == "assign_task"
        assert message["data"]["pickupTask"]["id"] == scheduled.json()["id"]
        assert message["data"]["collector"]["id"] == collector["id"]
        assert message["data"]["report"]["status"] == "assigned"

        started = realtime_client.post(
            f"/api/pickups/tasks/{scheduled.json()['id']}/start",
            headers=_auth_header(collector_token),
        )
        assert started.status_code == 200
        update = websocket.receive_json()
        assert update["event"] == "task_update"
        assert update["data"]["status"] == "in_progress"


def test_ws_rooms_target_single_user(realtime_client: TestClient) -> None:
    realtime_client.post(
        "/api/identity/bootstrap-admin",
        json={"email": "admin@example.com", "password": "pw", "full_name": "Ada Admin"},
    )
    login = realtime_client.post("/api/identity/login", json={"email": "admin@example.com", "password": "pw"})
    token = login.json()["access_token"]
    admin_id = login.json()["user_id"]

    with realtime_client.websocket_connect(f"/ws/events?token={token}") as websocket:
        _wait_for_connections(1)
        broadcaster.emit("system_notice", {"text": "other user"}, audience=Audience.user("someone-else"))
        broadcaster.emit("system_notice", {"text": "for you"}, audience=Audience.user(admin_id))

        message = websocket.receive_json()
        assert message == {"event": "system_notice", "data": {"text": "for you"}}


def test_ws_rejects_missing_or_bad_token(realtime_client: TestClient) -> None:
    with pytest.raises(WebSocketDisconnect):
        with realtime_client.websocket_connect("/ws/events"):
            pass
    with pytest.raises(WebSocketDisconnect):
        with realtime_client.websocket_connect("/ws/events?token=not-a-jwt"):
            pass


def test_ws_leaves_rooms_when_client_disconnects(realtime_client: TestClient) -> None:
    realtime_client.post(
        "/api/identity/bootstrap-admin",
        json={"email": "admin@example.com", "password": "pw", "full_name": "Ada Admin"},
    )
    token = _login(realtime_client, "admin@example.com", "pw")

    with realtime_client.websocket_connect(f"/ws/events?token={token}"):
        _wait_for_connections(1)
    _wait_for_connections(0)

    broadcaster.emit("system_notice", {"text": "nobody listening"})
    assert event_hub.connection_count() == 0
