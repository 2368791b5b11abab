"""Pytest configuration and shared fixtures for all tests.

This module provides function-scoped fixtures for:
- A temporary SQLite database and its async engine
- An in-memory MongoDB client
"""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from polystore.db.sql import create_engine
from tests.utils.fake_mongo import FakeMongoClient


@pytest.fixture(scope="function")
def sqlite_url(tmp_path: Path) -> str:
    """URL of a fresh SQLite database file."""
    return f"sqlite+aiosqlite:///{tmp_path / 'db' / 'polystore.db'}"


@pytest_asyncio.fixture(scope="function")
async def sqlite_engine(sqlite_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """Provide an async engine on a temporary SQLite database.

    Creates a fresh engine for each test to avoid event loop issues.
    """
    engine = create_engine(sqlite_url)
    yield engine
    await engine.dispose()


@pytest.fixture
def fake_mongo_client() -> FakeMongoClient:
    """Provide an in-memory MongoDB client."""
    return FakeMongoClient()
