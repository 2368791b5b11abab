"""Relational implementation of the storage protocol."""

import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Collection, Sequence
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, TypeVar

from pydantic import BaseModel
from sqlalchemy import TextClause, bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from typing_extensions import override

from polystore.core.errors import (
    DuplicateKeyError,
    NotFoundError,
    StorageIOError,
)
from polystore.metadata import CodecTarget
from polystore.repositories.base import BaseStorage
from polystore.repositories.sql import schema_inspector
from polystore.repositories.sql.dialect import Dialect, quote
from polystore.repositories.sql.index_applier import ensure_indexes
from polystore.repositories.sql.schema_generator import bind_type, ensure_table
from polystore.repositories.sql.schema_inspector import SchemaDiff

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)
R = TypeVar("R")

# The connection of the transaction opened by transaction() in this task,
# together with the engine it belongs to.
_active_transaction: ContextVar[tuple[AsyncEngine, AsyncConnection] | None] = ContextVar(
    "polystore_sql_transaction", default=None
)


class SqlStorage(BaseStorage[T]):
    """Stores one entity type in one table of a PostgreSQL or SQLite database.

    Every operation runs on its own connection and transaction, except inside
    :meth:`transaction`, where operations of this task join the open one.
    """

    target = CodecTarget.RELATIONAL

    engine: AsyncEngine
    dialect: Dialect | None

    def __init__(
        self,
        entity_type: type[T],
        engine: AsyncEngine,
        *,
        max_workers: int | None = None,
        drop_unknown_columns: bool = False,
        owns_engine: bool = False,
    ):
        """Initialize the storage.

        Args:
            entity_type: The entity class stored in the table.
            engine: Async engine for the target database.
            max_workers: Bound of concurrent saves in save_all.
            drop_unknown_columns: Default for diff_schema; when True the diff
                also drops columns the entity no longer declares.
            owns_engine: Dispose the engine on close().
        """
        super().__init__(entity_type, max_workers)
        self.engine = engine
        self.dialect = None
        self.drop_unknown_columns = drop_unknown_columns
        self._owns_engine = owns_engine

    @property
    def table(self) -> str:
        return self.metadata.table_name

    # ---------- Lifecycle ----------

    @override
    async def init(self) -> None:
        """Create the table if needed and reconcile its indexes.

        Raises:
            UnsupportedDialectError: If the engine is neither PostgreSQL nor SQLite.
            StorageIOError: If the database cannot be reached.
        """
        self.dialect = Dialect.detect(self.engine.dialect.name)
        async with self._connection() as conn:
            created = await ensure_table(conn, self.metadata, self.dialect)
            statements = await ensure_indexes(conn, self.metadata)
        logger.info(
            "SQL storage ready: table=%s dialect=%s created=%s index_changes=%d",
            self.table,
            self.dialect.value,
            created,
            len(statements),
        )

    @override
    async def close(self) -> None:
        if self._owns_engine:
            await self.engine.dispose()
            logger.info("Disposed SQL engine of %s storage", self.table)

    # ---------- Transactions ----------

    def _current_connection(self) -> AsyncConnection | None:
        active = _active_transaction.get()
        if active is not None and active[0] is self.engine:
            return active[1]
        return None

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[AsyncConnection]:
        """Connection for one logical operation.

        Joins the task's open transaction when there is one; otherwise opens
        a connection whose transaction commits when the block exits cleanly.
        """
        current = self._current_connection()
        if current is not None:
            try:
                yield current
            except (SQLAlchemyError, OSError) as e:
                raise StorageIOError(f"{self.table}: {e}") from e
            return

        try:
            async with self.engine.begin() as conn:
                yield conn
        except (SQLAlchemyError, OSError) as e:
            raise StorageIOError(f"{self.table}: {e}") from e

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        """Run a unit of work in one transaction.

        Commits when the block exits cleanly, rolls back and re-raises on any
        exception. Nested use joins the outer transaction.
        """
        current = self._current_connection()
        if current is not None:
            yield current
            return

        async with self._connection() as conn:
            token = _active_transaction.set((self.engine, conn))
            try:
                yield conn
            finally:
                _active_transaction.reset(token)

    async def in_transaction(self, work: Callable[[AsyncConnection], Awaitable[R]]) -> R:
        """Await ``work`` inside :meth:`transaction` and return its result."""
        async with self.transaction() as conn:
            return await work(conn)

    # ---------- CRUD ----------

    def _pk_column(self) -> str:
        return quote(self.metadata.primary_key.name)

    def _statement(self, sql: str, fields: Collection[str] = (), by_key: bool = False) -> TextClause:
        """Text statement with typed binds for ``fields`` and, if ``by_key``, ``:pk``."""
        binds = [bindparam(name, type_=bind_type(self.metadata.field(name))) for name in fields]
        if by_key:
            binds.append(bindparam("pk", type_=bind_type(self.metadata.primary_key)))
        return text(sql).bindparams(*binds)

    async def _exists(self, conn: AsyncConnection, key: Any) -> bool:
        result = await conn.execute(
            self._statement(
                f"SELECT 1 FROM {quote(self.table)} WHERE {self._pk_column()} = :pk LIMIT 1",
                by_key=True,
            ),
            {"pk": self._marshal_id(key)},
        )
        return result.first() is not None

    @override
    async def insert(self, entity: T) -> T:
        """Insert a new row.

        Raises:
            MissingKeyError: If the primary key is unset.
            DuplicateKeyError: If a row with the same key exists.
        """
        key = self._require_id(entity, "insert")
        async with self._connection() as conn:
            if await self._exists(conn, key):
                raise DuplicateKeyError(self._entity_type, key)
            self._mark_created(entity)
            record = self._to_record(entity)
            columns = ", ".join(quote(name) for name in record)
            params = ", ".join(f":{name}" for name in record)
            sql = f"INSERT INTO {quote(self.table)} ({columns}) VALUES ({params})"
            logger.debug("Insert %s: %s", self.table, key)
            await conn.execute(self._statement(sql, record), record)
        return entity

    @override
    async def update(self, entity: T) -> T:
        """Overwrite every non-key column of an existing row.

        Raises:
            MissingKeyError: If the primary key is unset.
            NotFoundError: If no row has the entity's key.
        """
        key = self._require_id(entity, "update")
        self._mark_updated(entity)
        record = self._to_record(entity)
        pk = self.metadata.primary_key.name
        assignments = ", ".join(f"{quote(name)} = :{name}" for name in record if name != pk)
        if not assignments:
            # Key-only entity: nothing to overwrite, only existence matters.
            if not await self.exists_by_id(key):
                raise NotFoundError(self._entity_type, key)
            return entity
        sql = (
            f"UPDATE {quote(self.table)} SET {assignments} "
            f"WHERE {self._pk_column()} = :{pk}"
        )

        async with self._connection() as conn:
            logger.debug("Update %s: %s", self.table, key)
            result = await conn.execute(self._statement(sql, record), record)
        if result.rowcount == 0:
            raise NotFoundError(self._entity_type, key)
        return entity

    @override
    async def find_by_id(self, entity_id: Any) -> T | None:
        sql = f"SELECT * FROM {quote(self.table)} WHERE {self._pk_column()} = :pk LIMIT 1"
        async with self._connection() as conn:
            result = await conn.execute(
                self._statement(sql, by_key=True), {"pk": self._marshal_id(entity_id)}
            )
            row = result.mappings().first()
        if row is None:
            return None
        return self._from_record(row)

    @override
    async def find_all(self, limit: int | None = None, offset: int = 0) -> list[T]:
        """Rows ordered by primary key, ``offset`` skipped, at most ``limit``."""
        if offset < 0 or (limit is not None and limit < 0):
            raise ValueError("limit and offset must be non-negative")

        params: dict[str, Any] = {"offset": offset}
        if limit is not None:
            window = "LIMIT :limit"
            params["limit"] = limit
        elif self._dialect() is Dialect.POSTGRESQL:
            window = "LIMIT ALL"
        else:
            window = "LIMIT -1"
        sql = (
            f"SELECT * FROM {quote(self.table)} ORDER BY {self._pk_column()} "
            f"{window} OFFSET :offset"
        )
        async with self._connection() as conn:
            result = await conn.execute(text(sql), params)
            rows = result.mappings().all()
        return [self._from_record(row) for row in rows]

    @override
    async def delete_by_id(self, entity_id: Any) -> bool:
        sql = f"DELETE FROM {quote(self.table)} WHERE {self._pk_column()} = :pk"
        async with self._connection() as conn:
            result = await conn.execute(
                self._statement(sql, by_key=True), {"pk": self._marshal_id(entity_id)}
            )
        deleted = result.rowcount > 0
        if deleted:
            logger.debug("Deleted %s: %s", self.table, entity_id)
        return deleted

    @override
    async def count(self) -> int:
        async with self._connection() as conn:
            result = await conn.execute(text(f"SELECT COUNT(*) FROM {quote(self.table)}"))
            return int(result.scalar_one())

    @override
    async def exists_by_id(self, entity_id: Any) -> bool:
        async with self._connection() as conn:
            return await self._exists(conn, entity_id)

    # ---------- Batches ----------

    @override
    async def save_all_parallel(self, entities: Collection[T], workers: int) -> list[T]:
        """Parallel batch save; sequential when a transaction is open.

        Operations of one transaction share a single connection, which cannot
        run statements concurrently.
        """
        if self._current_connection() is not None:
            return await super().save_all_transactional(list(entities))
        return await super().save_all_parallel(entities, workers)

    @override
    async def save_all_transactional(self, entities: Sequence[T]) -> list[T]:
        """Save in the given order inside one transaction; all or nothing."""
        async with self.transaction():
            return await super().save_all_transactional(entities)

    # ---------- Schema maintenance ----------

    def _dialect(self) -> Dialect:
        if self.dialect is None:
            self.dialect = Dialect.detect(self.engine.dialect.name)
        return self.dialect

    async def diff_schema(self, drop_unknown_columns: bool | None = None) -> SchemaDiff:
        """Compare the live table with the entity.

        Args:
            drop_unknown_columns: Also drop columns the entity no longer has;
                defaults to the value given at construction.
        """
        if drop_unknown_columns is None:
            drop_unknown_columns = self.drop_unknown_columns
        async with self._connection() as conn:
            return await schema_inspector.diff(
                conn, self.metadata, self._dialect(), drop_unknown_columns
            )

    async def apply_schema_diff(self, schema_diff: SchemaDiff) -> None:
        """Apply a diff in one transaction; a failure leaves the table untouched."""
        async with self._connection() as conn:
            await schema_inspector.apply(conn, schema_diff)

    async def migrate(self, drop_unknown_columns: bool | None = None) -> SchemaDiff:
        """Diff and apply in one step. Returns the applied diff."""
        schema_diff = await self.diff_schema(drop_unknown_columns)
        await self.apply_schema_diff(schema_diff)
        return schema_diff

    async def reconcile_indexes(self) -> list[str]:
        """Bring the table's indexes in line with the entity; returns executed DDL."""
        async with self._connection() as conn:
            return await ensure_indexes(conn, self.metadata)
