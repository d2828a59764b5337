from __future__ import annotations

import os
from collections.abc import Callable
from functools import lru_cache
from typing import Any
from uuid import uuid4

import structlog
from pydantic import BaseModel, ValidationError
from redis import Redis

from wastewise.domain.models import BroadcastEvent

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
EVENT_RELAY_REDIS = os.getenv("EVENT_RELAY_REDIS", "0") == "1"
EVENT_RELAY_CHANNEL = os.getenv("EVENT_RELAY_CHANNEL", "wastewise:events")

# One id per worker process; relayed events carry it so a worker skips its own.
RELAY_ORIGIN = uuid4().hex

logger = structlog.get_logger(__name__)


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True)


def check_redis_ready() -> bool:
    if not EVENT_RELAY_REDIS:
        return True
    try:
        return bool(get_redis().ping())
    except Exception:
        return False


class RelayEnvelope(BaseModel):
    origin: str
    event: BroadcastEvent


class RedisEventRelay:
    """Broadcaster subscriber that republishes events on a Redis channel.

    Every worker runs a ``RedisEventListener`` on the same channel and feeds the
    events published by the other workers into its own sockets.
    """

    def __init__(self, channel: str = EVENT_RELAY_CHANNEL, origin: str = RELAY_ORIGIN) -> None:
        self.channel = channel
        self.origin = origin

    def __call__(self, event: BroadcastEvent) -> None:
        envelope = RelayEnvelope(origin=self.origin, event=event)
        receivers = get_redis().publish(self.channel, envelope.model_dump_json())
        logger.debug(
            "events.relayed",
            event_type=event.event_type,
            channel=self.channel,
            receivers=receivers,
        )


class RedisEventListener:
    def __init__(
        self,
        handler: Callable[[BroadcastEvent], None],
        channel: str = EVENT_RELAY_CHANNEL,
        origin: str = RELAY_ORIGIN,
    ) -> None:
        self.channel = channel
        self.origin = origin
        self._handler = handler
        self._worker: Any = None

    def start(self) -> None:
        pubsub = get_redis().pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(**{self.channel: self.handle_message})
        self._worker = pubsub.run_in_thread(sleep_time=0.5, daemon=True)
        logger.info("events.relay_listening", channel=self.channel, origin=self.origin)

    def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.stop()
        self._worker = None
        logger.info("events.relay_stopped", channel=self.channel)

    def handle_message(self, message: dict[str, Any]) -> None:
        try:
            envelope = RelayEnvelope.model_validate_json(message["data"])
        except (KeyError, ValidationError):
            logger.warning("events.relay_malformed", channel=self.channel)
            return
        if envelope.origin == self.origin:
            return
        try:
            self._handler(envelope.event)
        except Exception:
            logger.exception(
                "events.handler_failed",
                event_type=envelope.event.event_type,
                event_id=envelope.event.event_id,
            )
