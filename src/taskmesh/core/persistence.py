"""Persistence collaborator interface and the in-memory store."""

import asyncio
import copy
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import structlog

from .enums import ChangeKind
from .events import ChangeEvent, EventBus, Handler, change_topic
from .exceptions import PersistenceError

logger = structlog.get_logger()

TABLES = (
    "agents",
    "tasks",
    "messages",
    "shared_resources",
    "monitoring_rules",
    "alerts",
    "metrics_history",
    "performance_reports",
    "collaboration_sessions",
    "workflows",
)


def matches(record: dict[str, Any], equals: dict[str, Any]) -> bool:
    """True when every given field equals the record's value."""
    return all(record.get(key) == value for key, value in equals.items())


class Store(ABC):
    """Durable CRUD over JSON records plus a per-table change feed.

    Records are plain dicts with an ``id`` key. Every successful write publishes
    a :class:`ChangeEvent` on the bus.
    """

    def __init__(self, bus: EventBus | None = None):
        self.bus = bus or EventBus()

    @staticmethod
    def _check_table(table: str) -> None:
        if table not in TABLES:
            raise PersistenceError(f"Unknown table: {table}")

    def subscribe(self, table: str, handler: Handler) -> Callable[[], None]:
        """Follow changes to one table. Returns an unsubscribe callable."""
        self._check_table(table)
        return self.bus.subscribe(change_topic(table), handler)

    async def _emit(
        self,
        table: str,
        kind: ChangeKind,
        record: dict[str, Any] | None,
        previous: dict[str, Any] | None = None,
    ) -> None:
        await self.bus.publish(
            change_topic(table),
            ChangeEvent(table=table, kind=kind, record=record, previous=previous),
        )

    async def initialize(self) -> None:
        """Prepare the backing storage."""

    async def close(self) -> None:
        """Release the backing storage."""

    async def health_check(self) -> bool:
        return True

    @abstractmethod
    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        """Store a new record and return it."""

    @abstractmethod
    async def update(
        self, table: str, record_id: str, changes: dict[str, Any]
    ) -> dict[str, Any]:
        """Merge top-level ``changes`` into a record and return the result."""

    @abstractmethod
    async def delete(self, table: str, record_id: str) -> bool:
        """Remove a record. Returns False if it did not exist."""

    @abstractmethod
    async def get(self, table: str, record_id: str) -> dict[str, Any] | None:
        """Fetch one record by id."""

    @abstractmethod
    async def query(self, table: str, **equals: Any) -> list[dict[str, Any]]:
        """Records whose fields equal the given values, in insertion order."""


class InMemoryStore(Store):
    """Dict backed store. Reads and writes copy so callers never alias state."""

    def __init__(self, bus: EventBus | None = None):
        super().__init__(bus)
        self._tables: dict[str, dict[str, dict[str, Any]]] = {
            table: {} for table in TABLES
        }
        self._lock = asyncio.Lock()

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        self._check_table(table)
        if "id" not in record:
            raise PersistenceError(f"Record for {table} has no id")
        async with self._lock:
            rows = self._tables[table]
            if record["id"] in rows:
                raise PersistenceError(f"Duplicate id {record['id']} in {table}")
            rows[record["id"]] = copy.deepcopy(record)
            stored = copy.deepcopy(rows[record["id"]])
        await self._emit(table, ChangeKind.INSERT, stored)
        return copy.deepcopy(stored)

    async def update(
        self, table: str, record_id: str, changes: dict[str, Any]
    ) -> dict[str, Any]:
        self._check_table(table)
        async with self._lock:
            rows = self._tables[table]
            if record_id not in rows:
                raise PersistenceError(f"{table} record {record_id} does not exist")
            previous = copy.deepcopy(rows[record_id])
            rows[record_id].update(copy.deepcopy(changes))
            rows[record_id]["id"] = record_id
            stored = copy.deepcopy(rows[record_id])
        await self._emit(table, ChangeKind.UPDATE, stored, previous)
        return copy.deepcopy(stored)

    async def delete(self, table: str, record_id: str) -> bool:
        self._check_table(table)
        async with self._lock:
            previous = self._tables[table].pop(record_id, None)
        if previous is None:
            return False
        await self._emit(table, ChangeKind.DELETE, None, previous)
        return True

    async def get(self, table: str, record_id: str) -> dict[str, Any] | None:
        self._check_table(table)
        record = self._tables[table].get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def query(self, table: str, **equals: Any) -> list[dict[str, Any]]:
        self._check_table(table)
        return [
            copy.deepcopy(record)
            for record in self._tables[table].values()
            if matches(record, equals)
        ]

    def count(self, table: str) -> int:
        self._check_table(table)
        return len(self._tables[table])
