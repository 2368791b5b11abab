"""Schema drift detection between live tables and entity metadata.

The diff compares the live column catalog with the columns an entity
expects and renders the ALTER statements that close the gap. Vendor type
spellings are normalized before comparison so that cosmetic differences
(``CHARACTER VARYING`` vs ``VARCHAR``, ``NUMERIC`` vs ``DECIMAL``) are not
reported as drift.
"""

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncConnection

from polystore.metadata import EntityMetadata, FieldSpec
from polystore.repositories.sql.dialect import Dialect, quote
from polystore.repositories.sql.index_applier import create_index_sql
from polystore.repositories.sql.schema_generator import (
    create_table_sql,
    is_column_nullable,
    literal_default,
    sql_type,
)

logger = logging.getLogger(__name__)

_DECLARED_TYPE = re.compile(
    r"^\s*([A-Za-z_ ]+?)\s*(?:\(\s*(\d+)\s*(?:,\s*(\d+)\s*)?\))?\s*$"
)

REBUILD_SUFFIX = "__rebuild"


@dataclass(frozen=True, slots=True)
class Column:
    """A column with its normalized type and reflected default clause."""

    name: str
    type: str
    nullable: bool
    default: str | None = None


@dataclass(frozen=True, slots=True)
class SchemaDiff:
    """Ordered ALTER statements plus the column names behind them."""

    table: str
    statements: tuple[str, ...] = ()
    added: tuple[str, ...] = ()
    modified: tuple[str, ...] = ()
    dropped: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.statements


def normalize_type(type_name: str, size: int | None = None, scale: int | None = None) -> str:
    """Collapse vendor type spellings to a canonical form."""
    t = " ".join(type_name.upper().replace("_", " ").split())
    if "CHAR" in t or t == "TEXT":
        return f"VARCHAR({size})" if size else "VARCHAR"
    if t.startswith(("DEC", "NUM")):
        return f"DECIMAL({size or 38},{scale or 0})"
    if t.startswith("BIGINT") or t == "INT8":
        return "BIGINT"
    if t.startswith(("INT", "SMALLINT")):
        return "INT"
    if t.startswith("BOOL"):
        return "BOOLEAN"
    if t.startswith("DOUBLE") or t == "FLOAT8":
        return "DOUBLE"
    if t.startswith(("REAL", "FLOAT")):
        return "REAL"
    if t.startswith(("TIMESTAMP", "DATETIME")):
        return "TIMESTAMP"
    return t


def normalize_declared_type(declared: str) -> str:
    """Normalize a DDL type string such as ``DECIMAL(38,10)``."""
    match = _DECLARED_TYPE.match(declared)
    if match is None:
        return normalize_type(declared)
    name, size, scale = match.groups()
    return normalize_type(
        name, int(size) if size else None, int(scale) if scale else None
    )


def normalize_reflected_type(column_type: Any) -> str:
    """Normalize a SQLAlchemy type object returned by the inspector."""
    name = type(column_type).__name__
    size = getattr(column_type, "length", None)
    if size is None:
        size = getattr(column_type, "precision", None)
    scale = getattr(column_type, "scale", None)
    return normalize_type(name, size, scale)


def expected_columns(metadata: EntityMetadata, dialect: Dialect) -> dict[str, Column]:
    """Columns the entity expects, keyed by name, with normalized types."""
    return {
        spec.name: Column(
            name=spec.name,
            type=normalize_declared_type(sql_type(spec, dialect)),
            nullable=is_column_nullable(spec, metadata),
        )
        for spec in metadata.fields
    }


async def describe_table(conn: AsyncConnection, table: str) -> dict[str, Column]:
    """Live columns of ``table`` keyed by name, with normalized types."""

    def read(sync_conn: Any) -> list[dict[str, Any]]:
        return list(inspect(sync_conn).get_columns(table))

    return {
        row["name"]: Column(
            name=row["name"],
            type=normalize_reflected_type(row["type"]),
            nullable=bool(row.get("nullable", True)),
            default=row.get("default"),
        )
        for row in await conn.run_sync(read)
    }


def _add_column_sql(table: str, spec: FieldSpec, metadata: EntityMetadata, dialect: Dialect) -> str:
    sql = f"ALTER TABLE {quote(table)} ADD COLUMN {quote(spec.name)} {sql_type(spec, dialect)}"
    if not is_column_nullable(spec, metadata):
        default = literal_default(spec)
        if default is not None:
            sql += f" DEFAULT {default}"
        sql += " NOT NULL"
    return sql


def _alter_column_sql(
    table: str,
    spec: FieldSpec,
    metadata: EntityMetadata,
    dialect: Dialect,
    type_changed: bool,
    nullability_changed: bool,
) -> str:
    column = quote(spec.name)
    declared = sql_type(spec, dialect)
    actions: list[str] = []
    if type_changed:
        actions.append(f"ALTER COLUMN {column} TYPE {declared} USING {column}::{declared}")
    if nullability_changed:
        verb = "DROP" if is_column_nullable(spec, metadata) else "SET"
        actions.append(f"ALTER COLUMN {column} {verb} NOT NULL")
    return f"ALTER TABLE {quote(table)} " + ", ".join(actions)


def _drop_column_sql(table: str, column: str) -> str:
    return f"ALTER TABLE {quote(table)} DROP COLUMN {quote(column)}"


def _carried_column_sql(column: Column) -> str:
    sql = f"{quote(column.name)} {column.type}"
    if column.default is not None:
        sql += f" DEFAULT {column.default}"
    if not column.nullable:
        sql += " NOT NULL"
    return sql


def _sqlite_rebuild(
    metadata: EntityMetadata,
    actual: dict[str, Column],
    dialect: Dialect,
    carried: Sequence[Column] = (),
) -> list[str]:
    """SQLite cannot alter columns in place; rebuild the table instead.

    ``carried`` are live columns the entity does not declare; they are
    recreated with their reflected type and their data is copied along.
    """
    table = metadata.table_name
    scratch = f"{table}{REBUILD_SUFFIX}"
    copied = [f.name for f in metadata.fields if f.name in actual]
    copied.extend(c.name for c in carried)
    shared = ", ".join(quote(name) for name in copied)
    statements = [
        f"DROP TABLE IF EXISTS {quote(scratch)}",
        create_table_sql(
            metadata,
            dialect,
            table_name=scratch,
            if_not_exists=False,
            extra_columns=[_carried_column_sql(c) for c in carried],
        ),
        f"INSERT INTO {quote(scratch)} ({shared}) SELECT {shared} FROM {quote(table)}",
        f"DROP TABLE {quote(table)}",
        f"ALTER TABLE {quote(scratch)} RENAME TO {quote(table)}",
    ]
    statements.extend(create_index_sql(table, d) for d in metadata.indexes)
    return statements


def build_diff(
    metadata: EntityMetadata,
    actual: dict[str, Column],
    dialect: Dialect,
    drop_unknown_columns: bool = False,
) -> SchemaDiff:
    """Compute the statements turning ``actual`` into the entity's columns.

    Order: ADD for missing columns, then MODIFY for changed type or
    nullability, then (opt-in) DROP for columns the entity no longer has.
    On SQLite a MODIFY rebuilds the table; columns the entity does not
    declare survive the rebuild unless ``drop_unknown_columns`` is set.
    """
    table = metadata.table_name
    expected = expected_columns(metadata, dialect)

    added = [name for name in expected if name not in actual]
    modified: list[tuple[str, bool, bool]] = []
    for name, want in expected.items():
        got = actual.get(name)
        if got is None:
            continue
        type_changed = got.type != want.type
        nullability_changed = got.nullable != want.nullable
        if type_changed or nullability_changed:
            modified.append((name, type_changed, nullability_changed))
    unknown = [name for name in actual if name not in expected]
    dropped = unknown if drop_unknown_columns else []

    if dialect is Dialect.SQLITE and modified:
        carried = [] if drop_unknown_columns else [actual[name] for name in unknown]
        statements = _sqlite_rebuild(metadata, actual, dialect, carried)
    else:
        statements = [
            _add_column_sql(table, metadata.field(name), metadata, dialect)
            for name in added
        ]
        statements.extend(
            _alter_column_sql(table, metadata.field(name), metadata, dialect, t, n)
            for name, t, n in modified
        )
        statements.extend(_drop_column_sql(table, name) for name in dropped)

    return SchemaDiff(
        table=table,
        statements=tuple(statements),
        added=tuple(added),
        modified=tuple(name for name, _, _ in modified),
        dropped=tuple(dropped),
    )


async def diff(
    conn: AsyncConnection,
    metadata: EntityMetadata,
    dialect: Dialect,
    drop_unknown_columns: bool = False,
) -> SchemaDiff:
    """Compare the live table with the entity and return the needed ALTERs."""
    actual = await describe_table(conn, metadata.table_name)
    result = build_diff(metadata, actual, dialect, drop_unknown_columns)
    if not result.is_empty:
        logger.warning(
            "Schema drift on %s: added=%s modified=%s dropped=%s",
            result.table,
            list(result.added),
            list(result.modified),
            list(result.dropped),
        )
    return result


async def apply(conn: AsyncConnection, schema_diff: SchemaDiff) -> None:
    """Run every statement of the diff on ``conn``.

    The caller owns the transaction; any failure rolls the whole batch back.
    """
    if schema_diff.is_empty:
        return
    for statement in schema_diff.statements:
        logger.debug("Migration on %s: %s", schema_diff.table, statement)
        await conn.execute(text(statement))
    logger.info(
        "Applied %d schema statements to %s",
        len(schema_diff.statements),
        schema_diff.table,
    )
