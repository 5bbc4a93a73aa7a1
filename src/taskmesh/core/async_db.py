"""SQLAlchemy backed store for TaskMesh.

Entities are kept document-shaped: a single ``entities`` table keyed by
(table, id) holds each record as JSON alongside bookkeeping timestamps.
"""

import copy
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import JSON, DateTime, Integer, String, UniqueConstraint, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .enums import ChangeKind
from .events import EventBus
from .exceptions import PersistenceError
from .persistence import Store, matches

logger = structlog.get_logger()


class Base(DeclarativeBase):
    pass


class EntityRecord(Base):
    __tablename__ = "entities"
    __table_args__ = (UniqueConstraint("table_name", "entity_id"),)

    pk: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    table_name: Mapped[str] = mapped_column(String(64), index=True)
    entity_id: Mapped[str] = mapped_column(String(64))
    data: Mapped[dict[str, Any]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )


class SQLAlchemyStore(Store):
    """Async SQLAlchemy implementation of :class:`Store`."""

    def __init__(self, database_url: str, bus: EventBus | None = None, echo: bool = False):
        super().__init__(bus)
        self.database_url = database_url
        # Ensure we use asyncpg for async operations
        if database_url.startswith("postgresql://"):
            self.database_url = database_url.replace(
                "postgresql://", "postgresql+asyncpg://", 1
            )

        try:
            self.engine = create_async_engine(self.database_url, echo=echo)
            self.async_session_maker = async_sessionmaker(
                self.engine, class_=AsyncSession, expire_on_commit=False
            )
        except Exception as e:
            logger.error("Failed to initialize database engine", error=str(e))
            raise PersistenceError(f"Failed to initialize database: {e}") from e

    async def initialize(self) -> None:
        """Create the entity table if it does not exist."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables created successfully")
        except SQLAlchemyError as e:
            logger.error("Failed to create database tables", error=str(e))
            raise PersistenceError(f"Failed to create tables: {e}") from e

    async def close(self) -> None:
        await self.engine.dispose()

    async def health_check(self) -> bool:
        try:
            async with self.async_session_maker() as session:
                result = await session.execute(text("SELECT 1"))
                return result.scalar() == 1
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False

    async def _fetch(
        self, session: AsyncSession, table: str, record_id: str
    ) -> EntityRecord | None:
        stmt = select(EntityRecord).where(
            EntityRecord.table_name == table, EntityRecord.entity_id == record_id
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        self._check_table(table)
        if "id" not in record:
            raise PersistenceError(f"Record for {table} has no id")
        stored = copy.deepcopy(record)
        try:
            async with self.async_session_maker() as session:
                if await self._fetch(session, table, record["id"]) is not None:
                    raise PersistenceError(f"Duplicate id {record['id']} in {table}")
                session.add(
                    EntityRecord(table_name=table, entity_id=record["id"], data=stored)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Insert failed", table=table, entity_id=record["id"], error=str(e))
            raise PersistenceError(f"Failed to insert into {table}: {e}") from e

        await self._emit(table, ChangeKind.INSERT, copy.deepcopy(stored))
        return stored

    async def update(
        self, table: str, record_id: str, changes: dict[str, Any]
    ) -> dict[str, Any]:
        self._check_table(table)
        try:
            async with self.async_session_maker() as session:
                row = await self._fetch(session, table, record_id)
                if row is None:
                    raise PersistenceError(f"{table} record {record_id} does not exist")
                previous = copy.deepcopy(row.data)
                merged = {**previous, **copy.deepcopy(changes), "id": record_id}
                row.data = merged
                row.updated_at = datetime.now(UTC)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Update failed", table=table, entity_id=record_id, error=str(e))
            raise PersistenceError(f"Failed to update {table}: {e}") from e

        await self._emit(table, ChangeKind.UPDATE, copy.deepcopy(merged), previous)
        return merged

    async def delete(self, table: str, record_id: str) -> bool:
        self._check_table(table)
        try:
            async with self.async_session_maker() as session:
                row = await self._fetch(session, table, record_id)
                if row is None:
                    return False
                previous = copy.deepcopy(row.data)
                await session.delete(row)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Delete failed", table=table, entity_id=record_id, error=str(e))
            raise PersistenceError(f"Failed to delete from {table}: {e}") from e

        await self._emit(table, ChangeKind.DELETE, None, previous)
        return True

    async def get(self, table: str, record_id: str) -> dict[str, Any] | None:
        self._check_table(table)
        try:
            async with self.async_session_maker() as session:
                row = await self._fetch(session, table, record_id)
                return copy.deepcopy(row.data) if row is not None else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read {table}: {e}") from e

    async def query(self, table: str, **equals: Any) -> list[dict[str, Any]]:
        self._check_table(table)
        stmt = (
            select(EntityRecord.data)
            .where(EntityRecord.table_name == table)
            .order_by(EntityRecord.pk)
        )
        try:
            async with self.async_session_maker() as session:
                result = await session.execute(stmt)
                records = [copy.deepcopy(data) for data in result.scalars().all()]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to query {table}: {e}") from e
        return [record for record in records if matches(record, equals)]
