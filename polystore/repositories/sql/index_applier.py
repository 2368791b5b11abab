"""Reconciliation of declared indexes against the live index catalog."""

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncConnection

from polystore.metadata import EntityMetadata, IndexDefinition
from polystore.repositories.sql.dialect import quote

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ExistingIndex:
    """An index as reported by the database catalog."""

    name: str
    unique: bool
    columns: tuple[str, ...]

    @property
    def shape(self) -> tuple[bool, tuple[str, ...]]:
        return self.unique, self.columns


def create_index_sql(table: str, definition: IndexDefinition) -> str:
    columns = ", ".join(quote(c) for c in definition.columns)
    keyword = "CREATE UNIQUE INDEX" if definition.unique else "CREATE INDEX"
    return f"{keyword} {quote(definition.name)} ON {quote(table)} ({columns})"


def drop_index_sql(name: str) -> str:
    # Both supported dialects drop indexes by name alone.
    return f"DROP INDEX {quote(name)}"


async def load_existing_indexes(
    conn: AsyncConnection, table: str
) -> dict[str, ExistingIndex]:
    """Read the table's indexes from the catalog, keyed by name."""

    def read(sync_conn: Any) -> list[dict[str, Any]]:
        return list(inspect(sync_conn).get_indexes(table))

    existing: dict[str, ExistingIndex] = {}
    for row in await conn.run_sync(read):
        name = row.get("name")
        if not name:
            continue
        existing[name] = ExistingIndex(
            name=name,
            unique=bool(row.get("unique")),
            columns=tuple(c for c in row.get("column_names", ()) if c is not None),
        )
    return existing


def plan_index_changes(
    table: str,
    desired: tuple[IndexDefinition, ...],
    existing: dict[str, ExistingIndex],
) -> list[str]:
    """Statements that bring the catalog in line with ``desired``.

    Indexes are matched by name. A same-named index with the same columns and
    uniqueness is kept; one with a different shape is dropped and recreated;
    a missing one is created. Indexes not declared on the entity are left alone.
    """
    statements: list[str] = []
    for definition in desired:
        current = existing.get(definition.name)
        if current is not None:
            if current.shape == definition.shape:
                continue
            logger.warning(
                "Index %s on %s changed from %s to %s; recreating",
                definition.name,
                table,
                current.shape,
                definition.shape,
            )
            statements.append(drop_index_sql(definition.name))
        statements.append(create_index_sql(table, definition))
    return statements


async def ensure_indexes(
    conn: AsyncConnection, metadata: EntityMetadata
) -> list[str]:
    """Create or recreate the entity's declared indexes.

    Returns:
        The statements that were executed; empty when nothing changed.
    """
    table = metadata.table_name
    existing = await load_existing_indexes(conn, table)
    statements = plan_index_changes(table, metadata.indexes, existing)
    for statement in statements:
        logger.info("Index change on %s: %s", table, statement)
        await conn.execute(text(statement))
    return statements
