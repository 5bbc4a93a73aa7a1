"""In-process publish/subscribe bus and typed change events.

Producers (the persistence layer, the task state machine, the alert engine)
publish typed events on named topics; consumers subscribe per topic. The
optional :class:`RedisChangeRelay` forwards persisted changes to Redis so that
out-of-process dashboards can follow them.
"""

import inspect
import json
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

import redis.asyncio as redis
import structlog

from .constants import Channels
from .enums import AlertStatus, ChangeKind, TaskStatus
from .models import utcnow

logger = structlog.get_logger()

Handler = Callable[[Any], Awaitable[None] | None]


def change_topic(table: str) -> str:
    """Bus topic carrying :class:`ChangeEvent` for one table."""
    return f"changes:{table}"


@dataclass(frozen=True)
class ChangeEvent:
    """A persisted insert, update or delete."""

    table: str
    kind: ChangeKind
    record: dict[str, Any] | None
    previous: dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def entity_id(self) -> str | None:
        source = self.record or self.previous or {}
        return source.get("id")

    def to_json(self) -> str:
        payload = asdict(self)
        payload["kind"] = self.kind.value
        payload["timestamp"] = self.timestamp.isoformat()
        return json.dumps(payload, default=str)


@dataclass(frozen=True)
class TaskTransition:
    """A task moved between two states of the lifecycle."""

    task_id: str
    previous: TaskStatus | None
    current: TaskStatus
    agent_id: str | None = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AlertEvent:
    """An alert was opened, acknowledged or resolved."""

    alert_id: str
    rule_id: str
    agent_id: str | None
    status: AlertStatus
    severity: str
    timestamp: datetime = field(default_factory=utcnow)


class EventBus:
    """Topic based fan-out to sync or async handlers.

    A failing handler is logged and skipped; it never fails the publisher.
    """

    def __init__(self):
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)
        self.published = 0

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register a handler and return a callable that removes it."""
        self._subscribers[topic].append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))

    async def publish(self, topic: str, event: Any) -> int:
        """Deliver an event to every current subscriber of ``topic``.

        Returns the number of handlers that ran without raising.
        """
        self.published += 1
        delivered = 0
        for handler in list(self._subscribers.get(topic, [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.error(
                    "Event handler failed",
                    topic=topic,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(e),
                )
        return delivered


class RedisChangeRelay:
    """Forward change events for the given tables to Redis pub/sub."""

    def __init__(
        self,
        bus: EventBus,
        client: Any,
        tables: list[str] | tuple[str, ...],
        prefix: str = Channels.REDIS_CHANGE_PREFIX,
    ):
        self.bus = bus
        self.client = client
        self.tables = tuple(tables)
        self.prefix = prefix
        self.forwarded = 0
        self._unsubscribers: list[Callable[[], None]] = []
        self._owns_client = False

    @classmethod
    def from_url(
        cls, bus: EventBus, redis_url: str, tables: list[str] | tuple[str, ...]
    ) -> "RedisChangeRelay":
        relay = cls(bus, redis.from_url(redis_url, decode_responses=True), tables)
        relay._owns_client = True
        return relay

    def channel_for(self, table: str) -> str:
        return f"{self.prefix}:{table}"

    @property
    def is_running(self) -> bool:
        return bool(self._unsubscribers)

    async def start(self) -> None:
        if self.is_running:
            return
        for table in self.tables:
            self._unsubscribers.append(
                self.bus.subscribe(change_topic(table), self._forward)
            )
        logger.info("Change relay started", tables=list(self.tables))

    async def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        if self._owns_client:
            await self.client.aclose()
        logger.info("Change relay stopped", forwarded=self.forwarded)

    async def _forward(self, event: ChangeEvent) -> None:
        try:
            await self.client.publish(self.channel_for(event.table), event.to_json())
            self.forwarded += 1
        except Exception as e:
            logger.error(
                "Failed to relay change",
                table=event.table,
                entity_id=event.entity_id,
                error=str(e),
            )
