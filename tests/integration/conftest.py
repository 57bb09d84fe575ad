"""
Shared pytest fixtures for integration tests.

Integration tests run against file-backed SQLite databases through
aiosqlite, so they need no external services.

This module provides:
- engine: destination database with the bookkeeping tables and an
  ``offices`` destination table
- source_engine: source database with ten office rows
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest_asyncio
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from bulkmigrate.schema import create_schema

OFFICE_COUNT = 10


def _sqlite_engine(path: Path) -> AsyncEngine:
    """
    Create an aiosqlite engine with working SAVEPOINT support.

    pysqlite's own transaction handling breaks SAVEPOINT, so the driver is
    put in autocommit mode and SQLAlchemy emits BEGIN itself.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Destination database with bookkeeping tables and an offices table."""
    engine = _sqlite_engine(tmp_path / "destination.db")
    await create_schema(engine)
    async with engine.begin() as conn:
        await conn.execute(
            text(
                "CREATE TABLE offices ("
                " pk INTEGER PRIMARY KEY AUTOINCREMENT,"
                " legacy_id INTEGER NOT NULL UNIQUE,"
                " name TEXT NOT NULL"
                ")"
            )
        )
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def source_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Source database with offices 1..10."""
    engine = _sqlite_engine(tmp_path / "source.db")
    async with engine.begin() as conn:
        await conn.execute(text("CREATE TABLE offices (id INTEGER PRIMARY KEY, name TEXT)"))
        await conn.execute(
            text("INSERT INTO offices (id, name) VALUES (:id, :name)"),
            [{"id": i, "name": f"Office {i}"} for i in range(1, OFFICE_COUNT + 1)],
        )
    yield engine
    await engine.dispose()
