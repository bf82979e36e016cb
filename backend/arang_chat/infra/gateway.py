from __future__ import annotations

import asyncio
import copy
import logging
from datetime import datetime
from typing import Dict, List, Protocol, Sequence

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from arang_chat.infra.change_feed import ChangeFeed, LocalChangeFeed, OnError, OnInsert, Subscription
from arang_chat.infra.query import Filters, In, Order, Row, normalize_order, row_matches, sort_rows
from arang_chat.shared.clock import Clock, ensure_utc, new_id, utcnow

logger = logging.getLogger(__name__)


class GatewayError(RuntimeError):
    pass


class GatewayConflict(GatewayError):
    """A write was rejected by a uniqueness rule of the store."""


class PersistenceGateway(Protocol):
    async def find(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        order: Order | Sequence[Order] | None = None,
        limit: int | None = None,
    ) -> List[Row]: ...

    async def insert(self, table: str, row: Row) -> Row | None: ...

    async def update(self, table: str, filters: Filters, patch: Row) -> Row | None: ...

    async def update_many(self, table: str, filters: Filters, patch: Row) -> List[Row]: ...

    def subscribe(
        self,
        table: str,
        filters: Filters | None,
        on_insert: OnInsert,
        *,
        on_error: OnError | None = None,
    ) -> Subscription: ...

    def unsubscribe(self, handle: Subscription) -> None: ...


class InMemoryGateway(PersistenceGateway):
    """Dict-backed store. Every filter is evaluated under one lock, so
    ``update`` behaves as an atomic compare-and-set on its filter."""

    def __init__(self, *, clock: Clock = utcnow, feed: ChangeFeed | None = None) -> None:
        self.clock = clock
        self.feed = feed or LocalChangeFeed()
        self._tables: Dict[str, Dict[str, Row]] = {}
        self._lock = asyncio.Lock()

    async def find(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        order: Order | Sequence[Order] | None = None,
        limit: int | None = None,
    ) -> List[Row]:
        async with self._lock:
            rows = [copy.deepcopy(row) for row in self._tables.get(table, {}).values() if row_matches(filters, row)]
        rows = sort_rows(rows, order)
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def insert(self, table: str, row: Row) -> Row | None:
        async with self._lock:
            record = copy.deepcopy(row)
            record.setdefault("id", new_id())
            record.setdefault("created_at", self.clock())
            rows = self._tables.setdefault(table, {})
            if record["id"] in rows:
                raise GatewayConflict(f"duplicate id in {table}")
            rows[record["id"]] = record
            created = copy.deepcopy(record)
        await self.feed.publish(table, created)
        return copy.deepcopy(created)

    async def update(self, table: str, filters: Filters, patch: Row) -> Row | None:
        async with self._lock:
            for row in self._tables.get(table, {}).values():
                if row_matches(filters, row):
                    self._apply(row, patch)
                    return copy.deepcopy(row)
        return None

    async def update_many(self, table: str, filters: Filters, patch: Row) -> List[Row]:
        updated: List[Row] = []
        async with self._lock:
            for row in self._tables.get(table, {}).values():
                if row_matches(filters, row):
                    self._apply(row, patch)
                    updated.append(copy.deepcopy(row))
        return updated

    def subscribe(
        self,
        table: str,
        filters: Filters | None,
        on_insert: OnInsert,
        *,
        on_error: OnError | None = None,
    ) -> Subscription:
        return self.feed.subscribe(table, filters, on_insert, on_error=on_error)

    def unsubscribe(self, handle: Subscription) -> None:
        self.feed.unsubscribe(handle)

    def _apply(self, row: Row, patch: Row) -> None:
        row.update(copy.deepcopy(patch))
        if "updated_at" in row and "updated_at" not in patch:
            row["updated_at"] = self.clock()


class SqlGateway(PersistenceGateway):
    """SQLAlchemy Core over the registered ORM tables."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        feed: ChangeFeed | None = None,
        metadata: sa.MetaData | None = None,
    ) -> None:
        if metadata is None:
            import arang_chat.infra.db_models_all  # noqa: F401
            from arang_chat.infra.db import Base

            metadata = Base.metadata
        self.session_factory = session_factory
        self.feed = feed or LocalChangeFeed()
        self.metadata = metadata

    def _table(self, name: str) -> sa.Table:
        table = self.metadata.tables.get(name)
        if table is None:
            raise GatewayError(f"unknown table {name}")
        return table

    @staticmethod
    def _where(table: sa.Table, filters: Filters | None) -> list:
        clauses = []
        for column_name, expected in (filters or {}).items():
            column = table.c[column_name]
            if expected is None:
                clauses.append(column.is_(None))
            elif isinstance(expected, In):
                clauses.append(column.in_(expected.values))
            else:
                clauses.append(column == expected)
        return clauses

    @staticmethod
    def _to_row(mapping) -> Row:
        return {
            key: ensure_utc(value) if isinstance(value, datetime) else value
            for key, value in dict(mapping).items()
        }

    async def find(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        order: Order | Sequence[Order] | None = None,
        limit: int | None = None,
    ) -> List[Row]:
        target = self._table(table)
        stmt = sa.select(target).where(*self._where(target, filters))
        for term in normalize_order(order):
            column = target.c[term.column]
            clause = column.desc() if term.descending else column.asc()
            stmt = stmt.order_by(clause.nulls_last() if term.nulls_last else clause.nulls_first())
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return [self._to_row(mapping) for mapping in result.mappings().all()]
        except SQLAlchemyError as exc:
            logger.warning("gateway_find_failed", extra={"extra": {"table": table, "error": type(exc).__name__}})
            raise GatewayError(f"find on {table} failed") from exc

    async def insert(self, table: str, row: Row) -> Row | None:
        target = self._table(table)
        stmt = sa.insert(target).values(**row).returning(*target.c)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    created = result.mappings().first()
        except IntegrityError as exc:
            logger.info("gateway_insert_conflict", extra={"extra": {"table": table}})
            raise GatewayConflict(f"insert into {table} rejected") from exc
        except SQLAlchemyError as exc:
            logger.warning("gateway_insert_failed", extra={"extra": {"table": table, "error": type(exc).__name__}})
            raise GatewayError(f"insert into {table} failed") from exc
        if created is None:
            return None
        record = self._to_row(created)
        await self.feed.publish(table, record)
        return record

    async def update(self, table: str, filters: Filters, patch: Row) -> Row | None:
        rows = await self._update(table, filters, patch)
        return rows[0] if rows else None

    async def update_many(self, table: str, filters: Filters, patch: Row) -> List[Row]:
        return await self._update(table, filters, patch)

    async def _update(self, table: str, filters: Filters, patch: Row) -> List[Row]:
        target = self._table(table)
        stmt = sa.update(target).where(*self._where(target, filters)).values(**patch).returning(*target.c)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    return [self._to_row(mapping) for mapping in result.mappings().all()]
        except IntegrityError as exc:
            raise GatewayConflict(f"update of {table} rejected") from exc
        except SQLAlchemyError as exc:
            logger.warning("gateway_update_failed", extra={"extra": {"table": table, "error": type(exc).__name__}})
            raise GatewayError(f"update of {table} failed") from exc

    def subscribe(
        self,
        table: str,
        filters: Filters | None,
        on_insert: OnInsert,
        *,
        on_error: OnError | None = None,
    ) -> Subscription:
        self._table(table)
        return self.feed.subscribe(table, filters, on_insert, on_error=on_error)

    def unsubscribe(self, handle: Subscription) -> None:
        self.feed.unsubscribe(handle)
