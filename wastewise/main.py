from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException

from wastewise.api.routers import identity, notifications, pickups, realtime, reports
from wastewise.infra.audit import AuditMiddleware
from wastewise.infra.db import check_db_ready
from wastewise.infra.events import broadcaster
from wastewise.infra.logging import configure_logging
from wastewise.infra.redis_state import (
    EVENT_RELAY_REDIS,
    RedisEventListener,
    RedisEventRelay,
    check_redis_ready,
)

configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    listener = RedisEventListener(realtime.event_hub.handle_event) if EVENT_RELAY_REDIS else None
    if listener is not None:
        listener.start()
    try:
        yield
    finally:
        if listener is not None:
            listener.stop()


app = FastAPI(
    title="wastewise",
    description="Waste report pickup coordination: scheduling, collector workflow and live updates.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(AuditMiddleware)

app.include_router(identity.router, prefix="/api/identity", tags=["identity"])
app.include_router(reports.router, prefix="/api/reports", tags=["reports"])
app.include_router(pickups.router, prefix="/api/pickups", tags=["pickups"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["notifications"])
app.include_router(realtime.ws_router, tags=["realtime-ws"])

broadcaster.subscribe(realtime.event_hub.handle_event)
if EVENT_RELAY_REDIS:
    broadcaster.subscribe(RedisEventRelay())


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    redis_ok = check_redis_ready()
    checks = {
        "db": "ok" if db_ok else "fail",
        "redis": "ok" if redis_ok else "fail",
    }
    if not (db_ok and redis_ok):
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
