"""DDL generation for entity tables."""

import logging
from collections.abc import Sequence
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import BigInteger, Boolean, DateTime, Double, Numeric, String, inspect, text
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.types import NullType, TypeEngine

from polystore.metadata import EntityMetadata, FieldSpec, ValueKind
from polystore.repositories.sql.dialect import Dialect, quote

logger = logging.getLogger(__name__)

VARCHAR_DEFAULT = "VARCHAR(255)"


def sql_type(spec: FieldSpec, dialect: Dialect) -> str:
    """Column type for a persisted field. Unmapped types become VARCHAR(255)."""
    if spec.kind is ValueKind.IDENTIFIER:
        return "VARCHAR(36)"
    if spec.kind is ValueKind.INSTANT:
        return "TIMESTAMP"
    if spec.kind is ValueKind.ENUMERATION:
        return "VARCHAR(64)"
    if spec.kind is ValueKind.DECIMAL:
        return "DECIMAL(38,10)"

    declared = spec.declared
    # bool is a subclass of int, so it has to be checked first.
    if declared is bool:
        return "BOOLEAN"
    if declared is int:
        return "BIGINT"
    if declared is float:
        return "DOUBLE PRECISION" if dialect is Dialect.POSTGRESQL else "DOUBLE"
    return VARCHAR_DEFAULT


def bind_type(spec: FieldSpec) -> TypeEngine[Any]:
    """SQLAlchemy type used to bind values of ``spec`` in statements.

    Values of unmapped types are handed to the driver unchanged.
    """
    if spec.kind is ValueKind.IDENTIFIER:
        return String(36)
    if spec.kind is ValueKind.INSTANT:
        return DateTime()
    if spec.kind is ValueKind.ENUMERATION:
        return String(64)
    if spec.kind is ValueKind.DECIMAL:
        return Numeric(38, 10, asdecimal=True)

    declared = spec.declared
    if declared is bool:
        return Boolean()
    if declared is int:
        return BigInteger()
    if declared is float:
        return Double()
    if declared is str:
        return String()
    return NullType()


def is_column_nullable(spec: FieldSpec, metadata: EntityMetadata) -> bool:
    """The primary key is never nullable; other columns follow the annotation."""
    if spec.name == metadata.primary_key.name:
        return False
    return spec.nullable


def literal_default(spec: FieldSpec) -> str | None:
    """SQL literal for the field's declared default, if it is a plain literal."""
    if not spec.has_default or spec.default is None:
        return None
    value = spec.default
    if isinstance(value, Enum):
        value = value.name
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    return None


def column_definition(spec: FieldSpec, metadata: EntityMetadata, dialect: Dialect) -> str:
    """Column clause as used in CREATE TABLE."""
    parts = [quote(spec.name), sql_type(spec, dialect)]
    if not is_column_nullable(spec, metadata):
        parts.append("NOT NULL")
    if spec.name == metadata.primary_key.name:
        parts.append("PRIMARY KEY")
    return " ".join(parts)


def create_table_sql(
    metadata: EntityMetadata,
    dialect: Dialect,
    table_name: str | None = None,
    if_not_exists: bool = True,
    extra_columns: Sequence[str] = (),
) -> str:
    """CREATE TABLE statement with one column per persisted field.

    ``extra_columns`` are ready-made column clauses appended after the
    entity's own columns.
    """
    table = table_name or metadata.table_name
    clauses = [column_definition(f, metadata, dialect) for f in metadata.fields]
    clauses.extend(extra_columns)
    columns = ", ".join(clauses)
    guard = "IF NOT EXISTS " if if_not_exists else ""
    return f"CREATE TABLE {guard}{quote(table)} ({columns})"


async def table_exists(conn: AsyncConnection, table: str) -> bool:
    return await conn.run_sync(lambda sync_conn: inspect(sync_conn).has_table(table))


async def ensure_table(
    conn: AsyncConnection, metadata: EntityMetadata, dialect: Dialect
) -> bool:
    """Create the entity's table if it does not exist.

    Returns:
        True if the table was created.
    """
    if await table_exists(conn, metadata.table_name):
        return False
    ddl = create_table_sql(metadata, dialect)
    logger.info("Creating table %s", metadata.table_name)
    logger.debug("DDL: %s", ddl)
    await conn.execute(text(ddl))
    return True
