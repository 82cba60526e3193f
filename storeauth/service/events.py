from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

import redis.asyncio as aioredis

from storeauth.logging import get_logger

logger = get_logger(__name__)

EVENT_SOURCE = "auth-service"

USER_CREATED = "user.created"
USER_DEACTIVATED = "user.deactivated"
PASSWORD_RESET_REQUESTED = "user.password.reset.requested"
EMAIL_VERIFICATION_REQUESTED = "user.email.verification.requested"


def event_payload(user_id: str, email: str, **context: Any) -> Dict[str, Any]:
    """Common envelope: who, plus when and from where."""
    payload: Dict[str, Any] = {"userId": user_id, "email": email}
    payload.update(context)
    payload["timestamp"] = datetime.now(timezone.utc).isoformat()
    payload["source"] = EVENT_SOURCE
    return payload


class EventPublisher(Protocol):
    async def publish(self, topic: str, payload: Dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class InMemoryEventPublisher:
    """Records events in process; used for local development and tests."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        logger.info("event_published", topic=topic, user_id=payload.get("userId"))
        self.events.append((topic, dict(payload)))

    def get_events(self, topic: Optional[str] = None) -> List[Tuple[str, Dict[str, Any]]]:
        return [(t, p) for t, p in self.events if topic is None or t == topic]

    def clear(self) -> None:
        self.events.clear()

    async def close(self) -> None:
        return None


class RedisEventPublisher:
    """Publishes JSON events on Redis pub/sub channels named ``<prefix>:<topic>``."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        channel_prefix: str = "events",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        self.redis_url = redis_url
        self.channel_prefix = channel_prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def channel(self, topic: str) -> str:
        return f"{self.channel_prefix}:{topic}" if self.channel_prefix else topic

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        message = json.dumps(payload, separators=(",", ":"), default=str)
        receivers = await self.client.publish(self.channel(topic), message)
        logger.info("event_published", topic=topic, receivers=receivers)

    async def close(self) -> None:
        await self.client.aclose()


class EventDispatcher:
    """Fire-and-forget delivery on top of an :class:`EventPublisher`.

    ``dispatch`` schedules delivery and returns at once. Delivery errors are
    logged here and never reach the use case that emitted the event. Pending
    tasks are held so they are not garbage collected mid-flight; ``drain``
    waits for them on shutdown.
    """

    def __init__(self, publisher: EventPublisher) -> None:
        self.publisher = publisher
        self._pending: Set[asyncio.Task] = set()

    async def _deliver(self, topic: str, payload: Dict[str, Any]) -> None:
        try:
            await self.publisher.publish(topic, payload)
        except Exception as exc:
            logger.warning("event_publish_failed", topic=topic, error=str(exc))

    def dispatch(self, topic: str, payload: Dict[str, Any]) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(topic, payload))
        except RuntimeError as exc:
            logger.warning("event_dispatch_failed", topic=topic, error=str(exc))
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


__all__ = [
    "EMAIL_VERIFICATION_REQUESTED",
    "EVENT_SOURCE",
    "EventDispatcher",
    "EventPublisher",
    "InMemoryEventPublisher",
    "PASSWORD_RESET_REQUESTED",
    "RedisEventPublisher",
    "USER_CREATED",
    "USER_DEACTIVATED",
    "event_payload",
]
