"""Tests for index reconciliation against the live catalog."""

from typing import Annotated

import pytest
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from polystore.metadata import IndexDefinition, resolve_metadata
from polystore.models import Index, PrimaryKey, Unique, data_class
from polystore.repositories.sql.dialect import Dialect
from polystore.repositories.sql.index_applier import (
    ExistingIndex,
    create_index_sql,
    ensure_indexes,
    load_existing_indexes,
    plan_index_changes,
)
from polystore.repositories.sql.schema_generator import ensure_table
from tests.utils.entities import Player


@data_class("orders")
class Order(BaseModel):
    id: Annotated[int | None, PrimaryKey()] = None
    reference: Annotated[str, Index(name="ix_orders_ref")] = ""
    customer: Annotated[str, Unique()] = ""


class TestPlanIndexChanges:
    """Tests for the name + shape comparison."""

    def test_create_when_missing(self) -> None:
        desired = (IndexDefinition("ix_a", False, ("a",)),)

        statements = plan_index_changes("t", desired, {})

        assert statements == ['CREATE INDEX "ix_a" ON "t" ("a")']

    def test_keep_when_identical(self) -> None:
        desired = (IndexDefinition("ix_a", True, ("a", "b")),)
        existing = {"ix_a": ExistingIndex("ix_a", True, ("a", "b"))}

        assert plan_index_changes("t", desired, existing) == []

    def test_recreate_when_shape_differs(self) -> None:
        desired = (IndexDefinition("ix_a", True, ("a",)),)
        existing = {"ix_a": ExistingIndex("ix_a", False, ("a",))}

        statements = plan_index_changes("t", desired, existing)

        assert statements == [
            'DROP INDEX "ix_a"',
            'CREATE UNIQUE INDEX "ix_a" ON "t" ("a")',
        ]

    def test_undeclared_indexes_are_left_alone(self) -> None:
        existing = {"ix_other": ExistingIndex("ix_other", False, ("z",))}

        assert plan_index_changes("t", (), existing) == []

    def test_create_unique_sql(self) -> None:
        definition = IndexDefinition("uq_players_rank_score", True, ("rank", "score"))

        assert create_index_sql("players", definition) == (
            'CREATE UNIQUE INDEX "uq_players_rank_score" ON "players" ("rank", "score")'
        )


class TestEnsureIndexes:
    """Reconciliation against a SQLite database."""

    @pytest.mark.asyncio
    async def test_second_run_changes_nothing(self, sqlite_engine: AsyncEngine) -> None:
        metadata = resolve_metadata(Player)

        # Act
        async with sqlite_engine.begin() as conn:
            _ = await ensure_table(conn, metadata, Dialect.SQLITE)
            first = await ensure_indexes(conn, metadata)
        async with sqlite_engine.begin() as conn:
            second = await ensure_indexes(conn, metadata)
            existing = await load_existing_indexes(conn, "players")

        # Assert
        assert len(first) == 3
        assert second == []
        assert existing["uq_players_name"] == ExistingIndex(
            "uq_players_name", True, ("name",)
        )
        assert existing["idx_players_rank_score"].columns == ("rank", "score")

    @pytest.mark.asyncio
    async def test_changed_index_is_recreated(self, sqlite_engine: AsyncEngine) -> None:
        """An index of the declared name but other columns is replaced."""
        metadata = resolve_metadata(Order)
        async with sqlite_engine.begin() as conn:
            _ = await ensure_table(conn, metadata, Dialect.SQLITE)
            await conn.execute(text('CREATE INDEX "ix_orders_ref" ON "orders" ("customer")'))

        # Act
        async with sqlite_engine.begin() as conn:
            statements = await ensure_indexes(conn, metadata)
            existing = await load_existing_indexes(conn, "orders")

        # Assert
        assert statements == [
            'DROP INDEX "ix_orders_ref"',
            'CREATE INDEX "ix_orders_ref" ON "orders" ("reference")',
            'CREATE UNIQUE INDEX "uq_orders_customer" ON "orders" ("customer")',
        ]
        assert existing["ix_orders_ref"].columns == ("reference",)
