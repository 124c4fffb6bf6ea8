"""SQLAlchemy-backed record store."""

from collections.abc import Mapping, Sequence
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import Table, delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from botflow_billing.config import BillingSettings
from botflow_billing.exceptions import DuplicateRecordError, StoreError
from botflow_billing.store.base import Filters, Record
from botflow_billing.store.tables import metadata

logger = structlog.get_logger()


def create_engine_from_settings(settings: BillingSettings) -> AsyncEngine:
    """Create the async engine for the configured database."""
    return create_async_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_pre_ping=True,
    )


async def init_models(engine: AsyncEngine) -> None:
    """Create billing tables if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    logger.info("Billing tables ready", tables=sorted(metadata.tables))


def _coerce(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _coerce_record(record: Mapping[str, Any]) -> dict[str, Any]:
    return {column: _coerce(value) for column, value in record.items()}


class SQLRecordStore:
    """RecordStore over SQLAlchemy Core tables.

    Each call runs in its own short transaction; the store makes no
    multi-statement atomicity promises beyond a single batch insert.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    def _table(self, name: str) -> Table:
        try:
            return metadata.tables[name]
        except KeyError:
            raise StoreError(f"Unknown table '{name}'") from None

    def _where(self, table: Table, filters: Filters | None) -> list[Any]:
        if not filters:
            return []
        clauses = []
        for column, value in filters.items():
            if column not in table.c:
                raise StoreError(f"Unknown column '{column}' on '{table.name}'")
            clauses.append(table.c[column] == _coerce(value))
        return clauses

    def _project(self, table: Table, record: Mapping[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in _coerce_record(record).items() if k in table.c}

    async def insert(self, table: str, record: Record) -> Record:
        return (await self.insert_batch(table, [record]))[0]

    async def insert_batch(self, table: str, records: Sequence[Record]) -> list[Record]:
        if not records:
            return []
        target = self._table(table)
        rows = [self._project(target, record) for record in records]
        try:
            async with self._session_factory() as session, session.begin():
                await session.execute(insert(target), rows)
        except IntegrityError as e:
            if "unique" in str(e.orig).lower():
                logger.info("Uniqueness constraint hit", table=table, error=str(e.orig))
                raise DuplicateRecordError(table, {"rows": len(rows)}) from e
            raise StoreError(f"Insert into '{table}' failed: {e.orig}") from e
        except SQLAlchemyError as e:
            raise StoreError(f"Insert into '{table}' failed: {e}") from e
        return [dict(record) for record in records]

    async def query(
        self,
        table: str,
        filters: Filters | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Record]:
        target = self._table(table)
        stmt = select(target).where(*self._where(target, filters))
        if order_by:
            column = target.c[order_by]
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [dict(row._mapping) for row in result]
        except SQLAlchemyError as e:
            raise StoreError(f"Query on '{table}' failed: {e}") from e

    async def update(self, table: str, filters: Filters, patch: Mapping[str, Any]) -> int:
        target = self._table(table)
        stmt = (
            update(target)
            .where(*self._where(target, filters))
            .values(**self._project(target, patch))
        )
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(stmt)
                return int(result.rowcount or 0)
        except IntegrityError as e:
            raise DuplicateRecordError(table, dict(filters)) from e
        except SQLAlchemyError as e:
            raise StoreError(f"Update on '{table}' failed: {e}") from e

    async def delete(self, table: str, filters: Filters) -> int:
        target = self._table(table)
        stmt = delete(target).where(*self._where(target, filters))
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(stmt)
                return int(result.rowcount or 0)
        except SQLAlchemyError as e:
            raise StoreError(f"Delete on '{table}' failed: {e}") from e
