from __future__ import annotations

import asyncio
import json
import os
import time
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlsplit, urlunsplit
from uuid import uuid4

import httpx
import websockets


def _assert_status(response: httpx.Response, expected: int | tuple[int, ...]) -> None:
    expected_codes = (expected,) if isinstance(expected, int) else expected
    if response.status_code not in expected_codes:
        raise RuntimeError(
            f"{response.request.method} {response.request.url} expected {expected_codes}, "
            f"got {response.status_code}: {response.text}"
        )


def _auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _to_ws_base_url(http_base_url: str) -> str:
    parsed = urlsplit(http_base_url)
    if parsed.scheme not in {"http", "https"}:
        raise RuntimeError(f"unsupported APP_BASE_URL scheme: {parsed.scheme}")
    ws_scheme = "wss" if parsed.scheme == "https" else "ws"
    return urlunsplit((ws_scheme, parsed.netloc, "", "", ""))


async def _wait_ok(client: httpx.AsyncClient, path: str, timeout_seconds: float = 60.0) -> None:
    deadline = time.monotonic() + timeout_seconds
    last_status = "n/a"
    last_body = ""
    while time.monotonic() < deadline:
        try:
            response = await client.get(path)
            if response.status_code == 200:
                return
            last_status = str(response.status_code)
            last_body = response.text
        except httpx.HTTPError as exc:
            last_status = "http_error"
            last_body = str(exc)
        await asyncio.sleep(1.0)
    raise RuntimeError(f"timeout waiting for {path}, last_status={last_status}, detail={last_body}")


async def _login(client: httpx.AsyncClient, email: str, password: str) -> str:
    response = await client.post("/api/identity/login", json={"email": email, "password": password})
    _assert_status(response, 200)
    return str(response.json()["access_token"])


async def _next_event(websocket: Any, expected: str) -> dict[str, Any]:
    while True:
        message = await asyncio.wait_for(websocket.recv(), timeout=10.0)
        raw_message = message.decode() if isinstance(message, bytes) else message
        frame = json.loads(raw_message)
        if frame.get("event") == expected:
            return frame


async def _run() -> None:
    base_url = os.getenv("APP_BASE_URL", "http://app:8000").rstrip("/")
    ws_base_url = _to_ws_base_url(base_url)
    admin_email = os.getenv("SMOKE_ADMIN_EMAIL", "admin@wastewise.local")
    admin_password = os.getenv("SMOKE_ADMIN_PASSWORD", "change-me")
    run_id = uuid4().hex[:8]

    timeout = httpx.Timeout(20.0)
    async with httpx.AsyncClient(base_url=base_url, timeout=timeout) as client:
        await _wait_ok(client, "/healthz")
        await _wait_ok(client, "/readyz")

        bootstrap_resp = await client.post(
            "/api/identity/bootstrap-admin",
            json={"email": admin_email, "password": admin_password, "full_name": "Smoke Admin"},
        )
        _assert_status(bootstrap_resp, (201, 409))
        admin_token = await _login(client, admin_email, admin_password)

        collector_email = f"smoke-collector-{run_id}@wastewise.local"
        collector_resp = await client.post(
            "/api/identity/users",
            json={
                "email": collector_email,
                "password": f"pass-{run_id}",
                "full_name": f"Smoke Collector {run_id}",
                "role": "collector",
            },
            headers=_auth_headers(admin_token),
        )
        _assert_status(collector_resp, 201)
        collector_id = collector_resp.json()["id"]
        collector_token = await _login(client, collector_email, f"pass-{run_id}")

        resident_email = f"smoke-resident-{run_id}@wastewise.local"
        register_resp = await client.post(
            "/api/identity/register",
            json={"email": resident_email, "password": f"pass-{run_id}", "full_name": "Smoke Resident"},
        )
        _assert_status(register_resp, 201)
        resident_token = await _login(client, resident_email, f"pass-{run_id}")

        report_resp = await client.post(
            "/api/reports",
            json={
                "type": "recyclable",
                "description": f"smoke report {run_id}",
                "address": "1 Smoke Street",
                "lat": 0.0,
                "lng": 0.0,
                "priority": "high",
                "estimated_volume": 1.0,
            },
            headers=_auth_headers(resident_token),
        )
        _assert_status(report_resp, 201)
        report_id = report_resp.json()["id"]

        ws_url = f"{ws_base_url}/ws/events?token={collector_token}"
        async with websockets.connect(ws_url, open_timeout=10.0, close_timeout=5.0) as websocket:
            schedule_resp = await client.post(
                "/api/pickups/tasks",
                json={
                    "report_id": report_id,
                    "collector_id": collector_id,
                    "scheduled_date": (datetime.now(UTC) + timedelta(hours=2)).isoformat(),
                    "estimated_duration": 20,
                },
                headers=_auth_headers(admin_token),
            )
            _assert_status(schedule_resp, 201)
            task_id = schedule_resp.json()["id"]

            assigned = await _next_event(websocket, "assign_task")
            if assigned["data"]["pickupTask"]["id"] != task_id:
                raise RuntimeError(f"unexpected assign_task payload: {assigned}")

            start_resp = await client.post(
                f"/api/pickups/tasks/{task_id}/start",
                headers=_auth_headers(collector_token),
            )
            _assert_status(start_resp, 200)
            started = await _next_event(websocket, "task_update")
            if started["data"]["status"] != "in_progress":
                raise RuntimeError(f"unexpected task_update payload: {started}")

        complete_resp = await client.post(
            f"/api/pickups/tasks/{task_id}/complete",
            json={"completion_notes": "smoke"},
            headers=_auth_headers(collector_token),
        )
        _assert_status(complete_resp, 200)

        report_after = await client.get(f"/api/reports/{report_id}", headers=_auth_headers(resident_token))
        _assert_status(report_after, 200)
        if report_after.json()["status"] != "completed":
            raise RuntimeError("report status did not follow the completed pickup")

        stats_resp = await client.get("/api/pickups/collector/stats", headers=_auth_headers(collector_token))
        _assert_status(stats_resp, 200)
        if stats_resp.json()["completed"] < 1:
            raise RuntimeError("collector stats missing the completed pickup")

    print("verify_smoke: healthz/readyz + pickup lifecycle + ws events + collector stats ok")


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
