from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
import structlog
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from wastewise import main as app_main
from wastewise.domain.models import AuditLog
from wastewise.infra import audit, db, events
from wastewise.infra.context import set_request_context


@pytest.fixture()
def identity_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "identity_test.db"
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


def _bootstrap_admin(client: TestClient) -> str:
    response = client.post(
        "/api/identity/bootstrap-admin",
        json={"email": "Admin@Example.com", "password": "admin-pass", "full_name": "Ada Admin"},
    )
    assert response.status_code == 201
    login = client.post("/api/identity/login", json={"email": "admin@example.com", "password": "admin-pass"})
    assert login.status_code == 200
    return login.json()["access_token"]


def test_identity_bootstrap_only_once(identity_client: TestClient) -> None:
    _bootstrap_admin(identity_client)
    second = identity_client.post(
        "/api/identity/bootstrap-admin",
        json={"email": "other@example.com", "password": "pw", "full_name": "Other"},
    )
    assert second.status_code == 409
    assert second.json()["detail"] == "admin already bootstrapped"


def test_identity_register_login_and_me(identity_client: TestClient) -> None:
    registered = identity_client.post(
        "/api/identity/register",
        json={"email": "rosa@example.com", "password": "secret", "full_name": " Rosa Resident "},
    )
    assert registered.status_code == 201
    assert registered.json()["role"] == "resident"
    assert registered.json()["full_name"] == "Rosa Resident"
    assert "password_hash" not in registered.json()

    duplicate = identity_client.post(
        "/api/identity/register",
        json={"email": "ROSA@example.com", "password": "other", "full_name": "Copy"},
    )
    assert duplicate.status_code == 409

    bad = identity_client.post("/api/identity/login", json={"email": "rosa@example.com", "password": "wrong"})
    assert bad.status_code == 401

    login = identity_client.post("/api/identity/login", json={"email": "rosa@example.com", "password": "secret"})
    assert login.status_code == 200
    assert login.json()["token_type"] == "bearer"
    assert login.json()["role"] == "resident"

    me = identity_client.get("/api/identity/me", headers=_auth_header(login.json()["access_token"]))
    assert me.status_code == 200
    assert me.json()["email"] == "rosa@example.com"

    invalid = identity_client.get("/api/identity/me", headers=_auth_header("garbage"))
    assert invalid.status_code == 401


def test_identity_admin_manages_collectors(identity_client: TestClient) -> None:
    admin_token = _bootstrap_admin(identity_client)
    ids = []
    for name in ("Zed Collector", "Amy Collector"):
        created = identity_client.post(
            "/api/identity/users",
            json={
                "email": f"{name.split()[0].lower()}@example.com",
                "password": "pw",
                "full_name": name,
                "role": "collector",
            },
            headers=_auth_header(admin_token),
        )
        assert created.status_code == 201
        ids.append(created.json()["id"])

    listed = identity_client.get("/api/identity/collectors", headers=_auth_header(admin_token))
    assert [item["full_name"] for item in listed.json()] == ["Amy Collector", "Zed Collector"]

    disabled = identity_client.patch(
        f"/api/identity/users/{ids[0]}",
        json={"is_active": False},
        headers=_auth_header(admin_token),
    )
    assert disabled.status_code == 200
    assert disabled.json()["is_active"] is False

    active = identity_client.get("/api/identity/collectors", headers=_auth_header(admin_token))
    assert [item["id"] for item in active.json()] == [ids[1]]
    everyone = identity_client.get(
        "/api/identity/collectors",
        params={"active_only": False},
        headers=_auth_header(admin_token),
    )
    assert len(everyone.json()) == 2

    blocked = identity_client.post("/api/identity/login", json={"email": "zed@example.com", "password": "pw"})
    assert blocked.status_code == 401
    assert blocked.json()["detail"] == "user disabled"

    missing = identity_client.patch(
        "/api/identity/users/missing",
        json={"is_active": True},
        headers=_auth_header(admin_token),
    )
    assert missing.status_code == 404

    collector_token = identity_client.post(
        "/api/identity/login",
        json={"email": "amy@example.com", "password": "pw"},
    ).json()["access_token"]
    denied = identity_client.get("/api/identity/collectors", headers=_auth_header(collector_token))
    assert denied.status_code == 403

    with Session(db.engine) as session:
        actions = {row.action for row in session.exec(select(AuditLog)).all()}
    assert {"identity.bootstrap_admin", "identity.user.create", "identity.user.update"} <= actions


def test_request_context_is_bound_to_log_context() -> None:
    structlog.contextvars.clear_contextvars()
    try:
        set_request_context("user-1", "collector")
        assert structlog.contextvars.get_contextvars() == {"user_id": "user-1", "role": "collector"}
    finally:
        structlog.contextvars.clear_contextvars()
