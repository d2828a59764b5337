from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from wastewise import main as app_main
from wastewise.domain.models import AuditLog, EventRecord
from wastewise.infra import audit, db, events


@pytest.fixture()
def pickups_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "pickups_api_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(events, "engine", test_engine)
    client = TestClient(app_main.app)
    yield client
    client.close()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _login(client: TestClient, email: str, password: str) -> str:
    response = client.post("/api/identity/login", json={"email": email, "password": password})
    assert response.status_code == 200
    return response.json()["access_token"]


def _bootstrap_admin(client: TestClient) -> str:
    response = client.post(
        "/api/identity/bootstrap-admin",
        json={"email": "admin@example.com", "password": "admin-pass", "full_name": "Ada Admin"},
    )
    assert response.status_code == 201
    return _login(client, "admin@example.com", "admin-pass")


def _create_collector(client: TestClient, admin_token: str, email: str, full_name: str) -> tuple[str, str]:
    response = client.post(
        "/api/identity/users",
        json={"email": email, "password": "collector-pass", "full_name": full_name, "role": "collector"},
        headers=_auth_header(admin_token),
    )
    assert response.status_code == 201
    return response.json()["id"], _login(client, email, "collector-pass")


def _register_resident(client: TestClient, email: str) -> str:
    response = client.post(
        "/api/identity/register",
        json={"email": email, "password": "resident-pass", "full_name": "Rosa Resident"},
    )
    assert response.status_code == 201
    return _login(client, email, "resident-pass")


def _create_report(client: TestClient, resident_token: str, priority: str = "medium") -> str:
    response = client.post(
        "/api/reports",
        json={
            "type": "hazardous",
            "description": "old paint cans",
            "address": "7 Birch Road",
            "lat": 51.5,
            "lng": -0.12,
            "priority": priority,
            "estimated_volume": 0.4,
        },
        headers=_auth_header(resident_token),
    )
    assert response.status_code == 201
    return response.json()["id"]


def _schedule(client: TestClient, admin_token: str, report_id: str, collector_id: str, **overrides: Any) -> Any:
    payload: dict[str, Any] = {
        "report_id": report_id,
        "collector_id": collector_id,
        "scheduled_date": (datetime.now(UTC) + timedelta(days=1)).isoformat(),
        "estimated_duration": 30,
    }
    payload.update(overrides)
    return client.post("/api/pickups/tasks", json=payload, headers=_auth_header(admin_token))


@pytest.fixture()
def actors(pickups_client: TestClient) -> dict[str, Any]:
    admin_token = _bootstrap_admin(pickups_client)
    c1_id, c1_token = _create_collector(pickups_client, admin_token, "c1@example.com", "Casey Collector")
    c2_id, c2_token = _create_collector(pickups_client, admin_token, "c2@example.com", "Drew Collector")
    resident_token = _register_resident(pickups_client, "resident@example.com")
    return {
        "admin": admin_token,
        "c1": (c1_id, c1_token),
        "c2": (c2_id, c2_token),
        "resident": resident_token,
    }


def test_pickup_lifecycle_over_http(pickups_client: TestClient, actors: dict[str, Any]) -> None:
    c1_id, c1_token = actors["c1"]
    report_id = _create_report(pickups_client, actors["resident"], priority="urgent")

    scheduled = _schedule(pickups_client, actors["admin"], report_id, c1_id)
    assert scheduled.status_code == 201
    task_id = scheduled.json()["id"]
    assert scheduled.json()["status"] == "scheduled"

    report = pickups_client.get(f"/api/reports/{report_id}", headers=_auth_header(actors["resident"]))
    assert report.json()["status"] == "assigned"
    assert report.json()["assigned_collector_id"] == c1_id

    started = pickups_client.post(f"/api/pickups/tasks/{task_id}/start", headers=_auth_header(c1_token))
    assert started.status_code == 200
    assert started.json()["status"] == "in_progress"

    completed = pickups_client.post(
        f"/api/pickups/tasks/{task_id}/complete",
        json={"completion_notes": "done"},
        headers=_auth_header(c1_token),
    )
    assert completed.status_code == 200
    assert completed.json()["status"] == "completed"
    assert completed.json()["completion_notes"] == "done"

    again = pickups_client.post(f"/api/pickups/tasks/{task_id}/start", headers=_auth_header(c1_token))
    assert again.status_code == 409
    assert again.json()["detail"] == {"code": "invalid_state", "message": "task is not in scheduled status"}

    history = pickups_client.get(f"/api/pickups/tasks/{task_id}/history", headers=_auth_header(actors["admin"]))
    assert [row["action"] for row in history.json()] == ["scheduled", "started", "completed"]

    resident_notes = pickups_client.get("/api/notifications", headers=_auth_header(actors["resident"]))
    assert resident_notes.status_code == 200
    assert {row["type"] for row in resident_notes.json()} == {
        "pickup_scheduled",
        "pickup_reminder",
        "report_completed",
    }
    assert all(row["data"]["report_id"] == report_id for row in resident_notes.json())

    stats = pickups_client.get("/api/pickups/collector/stats", headers=_auth_header(c1_token))
    assert stats.status_code == 200
    assert stats.json()["completed"] == 1
    assert stats.json()["completion_rate"] == 100.0

    performance = pickups_client.get(
        f"/api/pickups/collectors/{c1_id}/performance",
        params={"period": "week"},
        headers=_auth_header(actors["admin"]),
    )
    assert performance.status_code == 200
    assert performance.json()["period"] == "week"

    with Session(db.engine) as session:
        event_types = [row.event_type for row in session.exec(select(EventRecord)).all()]
        audit_actions = {row.action for row in session.exec(select(AuditLog)).all()}
    assert event_types.count("assign_task") == 1
    assert event_types.count("task_update") == 2
    assert {"pickups.task.schedule", "pickups.task.start", "pickups.task.complete"} <= audit_actions


def test_error_codes_map_to_http_status(pickups_client: TestClient, actors: dict[str, Any]) -> None:
    c1_id, _c1_token = actors["c1"]
    _c2_id, c2_token = actors["c2"]
    report_id = _create_report(pickups_client, actors["resident"])

    missing = _schedule(pickups_client, actors["admin"], "missing-report", c1_id)
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "not_found"

    past = _schedule(
        pickups_client,
        actors["admin"],
        report_id,
        c1_id,
        scheduled_date=(datetime.now(UTC) - timedelta(days=1)).isoformat(),
    )
    assert past.status_code == 422
    assert past.json()["detail"] == {"code": "invalid_input", "message": "scheduled date cannot be in the past"}

    deactivate = pickups_client.patch(
        f"/api/identity/users/{c1_id}",
        json={"is_active": False},
        headers=_auth_header(actors["admin"]),
    )
    assert deactivate.status_code == 200
    unavailable = _schedule(pickups_client, actors["admin"], report_id, c1_id)
    assert unavailable.status_code == 409
    assert unavailable.json()["detail"]["code"] == "collector_unavailable"

    c2_id, _ = actors["c2"]
    task_id = _schedule(pickups_client, actors["admin"], report_id, c2_id).json()["id"]
    duplicate = _schedule(pickups_client, actors["admin"], report_id, c2_id)
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"]["code"] == "invalid_state"

    resident_cancel = pickups_client.post(
        f"/api/pickups/tasks/{task_id}/cancel",
        json={"reason": "no longer needed"},
        headers=_auth_header(actors["resident"]),
    )
    assert resident_cancel.status_code == 403
    assert resident_cancel.json()["detail"]["code"] == "forbidden"

    resident_schedule = _schedule(pickups_client, actors["resident"], report_id, c2_id)
    assert resident_schedule.status_code == 403

    cancelled = pickups_client.post(
        f"/api/pickups/tasks/{task_id}/cancel",
        json={"reason": "truck broke down"},
        headers=_auth_header(c2_token),
    )
    assert cancelled.status_code == 200
    report = pickups_client.get(f"/api/reports/{report_id}", headers=_auth_header(actors["resident"]))
    assert report.json()["status"] == "pending"
    assert report.json()["assigned_collector_id"] is None


def test_task_listing_is_scoped_by_role(pickups_client: TestClient, actors: dict[str, Any]) -> None:
    c1_id, c1_token = actors["c1"]
    c2_id, c2_token = actors["c2"]
    other_resident = _register_resident(pickups_client, "neighbour@example.com")
    own_report = _create_report(pickups_client, actors["resident"])
    other_report = _create_report(pickups_client, other_resident)
    own_task = _schedule(pickups_client, actors["admin"], own_report, c1_id).json()["id"]
    other_task = _schedule(pickups_client, actors["admin"], other_report, c2_id).json()["id"]

    def listed(token: str, **params: Any) -> list[str]:
        response = pickups_client.get("/api/pickups/tasks", params=params, headers=_auth_header(token))
        assert response.status_code == 200
        return [item["id"] for item in response.json()["items"]]

    assert sorted(listed(actors["admin"])) == sorted([own_task, other_task])
    assert listed(actors["admin"], collector_id=c2_id) == [other_task]
    assert listed(c1_token) == [own_task]
    assert listed(c1_token, collector_id=c2_id) == [own_task]
    assert listed(actors["resident"]) == [own_task]
    assert listed(other_resident, status="in_progress") == []

    mine = pickups_client.get("/api/pickups/my-tasks", headers=_auth_header(c2_token))
    assert [item["id"] for item in mine.json()["items"]] == [other_task]
    assert mine.json()["pagination"] == {"page": 1, "limit": 10, "total": 1, "total_pages": 1}

    too_many = pickups_client.get("/api/pickups/tasks", params={"limit": 500}, headers=_auth_header(actors["admin"]))
    assert too_many.status_code == 422

    hidden = pickups_client.get(f"/api/pickups/tasks/{other_task}", headers=_auth_header(c1_token))
    assert hidden.status_code == 403

    start = datetime.now(UTC).isoformat()
    end = (datetime.now(UTC) + timedelta(days=3)).isoformat()
    schedule = pickups_client.get(
        f"/api/pickups/collectors/{c1_id}/schedule",
        params={"start_date": start, "end_date": end},
        headers=_auth_header(c1_token),
    )
    assert [item["id"] for item in schedule.json()] == [own_task]
    foreign = pickups_client.get(
        f"/api/pickups/collectors/{c2_id}/schedule",
        params={"start_date": start, "end_date": end},
        headers=_auth_header(c1_token),
    )
    assert foreign.status_code == 403


def test_reschedule_and_reconcile_endpoints(pickups_client: TestClient, actors: dict[str, Any]) -> None:
    c1_id, c1_token = actors["c1"]
    report_id = _create_report(pickups_client, actors["resident"])
    task_id = _schedule(pickups_client, actors["admin"], report_id, c1_id).json()["id"]
    new_date = datetime.now(UTC) + timedelta(days=4)

    moved = pickups_client.post(
        f"/api/pickups/tasks/{task_id}/reschedule",
        json={"scheduled_date": new_date.isoformat(), "reason": "access blocked"},
        headers=_auth_header(c1_token),
    )
    assert moved.status_code == 200
    assert moved.json()["status"] == "scheduled"
    assert "access blocked" in moved.json()["notes"]

    override = pickups_client.patch(
        f"/api/reports/{report_id}/status",
        json={"status": "pending"},
        headers=_auth_header(actors["admin"]),
    )
    assert override.status_code == 200

    forbidden = pickups_client.post("/api/pickups/reconcile", headers=_auth_header(c1_token))
    assert forbidden.status_code == 403

    repaired = pickups_client.post("/api/pickups/reconcile", headers=_auth_header(actors["admin"]))
    assert repaired.status_code == 200
    assert repaired.json() == {"repaired": 1, "report_ids": [report_id]}
    report = pickups_client.get(f"/api/reports/{report_id}", headers=_auth_header(actors["admin"]))
    assert report.json()["status"] == "assigned"


def test_stats_endpoints_require_roles(pickups_client: TestClient, actors: dict[str, Any]) -> None:
    c1_id, c1_token = actors["c1"]

    own = pickups_client.get("/api/pickups/collector/performance", headers=_auth_header(c1_token))
    assert own.status_code == 200
    assert own.json()["period"] == "month"
    assert own.json()["total_tasks"] == 0

    by_admin = pickups_client.get(f"/api/pickups/collectors/{c1_id}/stats", headers=_auth_header(actors["admin"]))
    assert by_admin.status_code == 200
    assert by_admin.json()["total"] == 0

    denied = pickups_client.get(f"/api/pickups/collectors/{c1_id}/stats", headers=_auth_header(c1_token))
    assert denied.status_code == 403
    unauthenticated = pickups_client.get("/api/pickups/collector/stats")
    assert unauthenticated.status_code == 401
    bad_period = pickups_client.get(
        "/api/pickups/collector/performance",
        params={"period": "decade"},
        headers=_auth_header(c1_token),
    )
    assert bad_period.status_code == 422
