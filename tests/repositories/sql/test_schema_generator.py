"""Tests for DDL generation."""

from typing import Annotated

import pytest
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncEngine

from polystore.core.errors import UnsupportedDialectError
from polystore.metadata import resolve_metadata
from polystore.models import PrimaryKey
from polystore.repositories.sql.dialect import Dialect, quote
from polystore.repositories.sql.schema_generator import (
    create_table_sql,
    ensure_table,
    literal_default,
    sql_type,
    table_exists,
)
from tests.utils.entities import Counter, Player


class Gadget(BaseModel):
    id: Annotated[int | None, PrimaryKey()] = None
    tags: list[str] = []
    label: str = "it's"


class TestDialect:
    def test_detect(self) -> None:
        assert Dialect.detect("PostgreSQL") is Dialect.POSTGRESQL
        assert Dialect.detect("postgresql") is Dialect.POSTGRESQL
        assert Dialect.detect("sqlite") is Dialect.SQLITE

    def test_unsupported(self) -> None:
        with pytest.raises(UnsupportedDialectError, match="Unsupported DB dialect: mysql"):
            _ = Dialect.detect("mysql")

    def test_quote_escapes_quotes(self) -> None:
        assert quote('we"ird') == '"we""ird"'


class TestSqlType:
    """Tests for the field type to column type mapping."""

    def test_player_columns(self) -> None:
        metadata = resolve_metadata(Player)
        types = {f.name: sql_type(f, Dialect.POSTGRESQL) for f in metadata.fields}

        assert types == {
            "id": "VARCHAR(36)",
            "name": "VARCHAR(255)",
            "rank": "VARCHAR(64)",
            "score": "BIGINT",
            "balance": "DECIMAL(38,10)",
            "created_at": "TIMESTAMP",
            "updated_at": "TIMESTAMP",
        }

    def test_scalars_per_dialect(self) -> None:
        metadata = resolve_metadata(Counter)

        assert sql_type(metadata.field("active"), Dialect.SQLITE) == "BOOLEAN"
        assert sql_type(metadata.field("ratio"), Dialect.POSTGRESQL) == "DOUBLE PRECISION"
        assert sql_type(metadata.field("ratio"), Dialect.SQLITE) == "DOUBLE"

    def test_unmapped_type_is_varchar(self) -> None:
        metadata = resolve_metadata(Gadget)

        assert sql_type(metadata.field("tags"), Dialect.SQLITE) == "VARCHAR(255)"


class TestCreateTable:
    def test_statement(self) -> None:
        ddl = create_table_sql(resolve_metadata(Counter), Dialect.POSTGRESQL)

        assert ddl == (
            'CREATE TABLE IF NOT EXISTS "counters" ('
            '"key" VARCHAR(255) NOT NULL PRIMARY KEY, '
            '"value" BIGINT NOT NULL, '
            '"ratio" DOUBLE PRECISION NOT NULL, '
            '"active" BOOLEAN NOT NULL)'
        )

    def test_nullable_columns_have_no_constraint(self) -> None:
        ddl = create_table_sql(resolve_metadata(Player), Dialect.SQLITE)

        assert '"id" VARCHAR(36) NOT NULL PRIMARY KEY' in ddl
        assert '"created_at" TIMESTAMP,' in ddl
        assert '"name" VARCHAR(255) NOT NULL' in ddl

    def test_literal_defaults(self) -> None:
        metadata = resolve_metadata(Gadget)

        assert literal_default(metadata.field("label")) == "'it''s'"
        assert literal_default(metadata.field("tags")) is None
        assert literal_default(resolve_metadata(Counter).field("active")) == "TRUE"
        assert literal_default(resolve_metadata(Player).field("rank")) == "'BRONZE'"

    @pytest.mark.asyncio
    async def test_ensure_table_creates_once(self, sqlite_engine: AsyncEngine) -> None:
        """The table is created on the first call and left alone afterwards."""
        metadata = resolve_metadata(Player)

        # Act
        async with sqlite_engine.begin() as conn:
            first = await ensure_table(conn, metadata, Dialect.SQLITE)
            second = await ensure_table(conn, metadata, Dialect.SQLITE)
            exists = await table_exists(conn, "players")

        # Assert
        assert first is True
        assert second is False
        assert exists is True
