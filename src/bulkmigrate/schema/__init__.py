"""
Bookkeeping tables used by the migration engine.

This module ships the SQL for the engine's own tables. It never creates or
alters tables of migrated entities; the destination schema must already
exist.

Tables:
    - migration_checkpoints: Checkpoint Store primary backup
    - migration_progress_snapshots: Latest progress per (session, entity)
    - migration_alerts: Alerts raised during execution

The DDL is portable between PostgreSQL and SQLite.

Usage:
    from bulkmigrate.schema import create_schema, get_schema

    checkpoints_sql = get_schema("checkpoints")

    async with engine.begin() as conn:
        await create_schema(conn)
"""

from pathlib import Path
from typing import Literal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from bulkmigrate.repositories._connection import execute_with_connection

SchemaName = Literal["checkpoints", "progress"]

_TEMPLATES_DIR = Path(__file__).parent / "templates"
_ALL_SCHEMAS: tuple[SchemaName, ...] = ("checkpoints", "progress")


def get_schema_path(name: SchemaName) -> Path:
    """
    Get the path to a SQL template file.

    Raises:
        FileNotFoundError: If the template file doesn't exist
    """
    path = _TEMPLATES_DIR / f"{name}.sql"
    if not path.exists():
        raise FileNotFoundError(f"Schema template not found: {path}")
    return path


def get_schema(name: SchemaName) -> str:
    """
    Get the SQL for one schema.

    Args:
        name: "checkpoints" or "progress"

    Returns:
        SQL text of the schema
    """
    return get_schema_path(name).read_text()


def get_all_schemas() -> str:
    """Get the SQL for every bookkeeping table, concatenated."""
    return "\n\n".join(get_schema(name) for name in _ALL_SCHEMAS)


def list_schemas() -> list[str]:
    return list(_ALL_SCHEMAS)


def split_statements(sql: str) -> list[str]:
    """
    Split SQL text into individual statements.

    Comment lines are dropped. Statements are separated by semicolons; the
    templates contain no semicolons inside literals.
    """
    lines = [line for line in sql.splitlines() if not line.lstrip().startswith("--")]
    return [stmt.strip() for stmt in "\n".join(lines).split(";") if stmt.strip()]


async def create_schema(conn: AsyncConnection | AsyncEngine) -> None:
    """
    Create all bookkeeping tables if they do not exist.

    Statements are executed one at a time because drivers such as asyncpg
    and aiosqlite reject multi-statement strings.

    Args:
        conn: Database connection or engine
    """
    async with execute_with_connection(conn, transactional=True) as connection:
        for statement in split_statements(get_all_schemas()):
            await connection.execute(text(statement))


__all__ = [
    "SchemaName",
    "create_schema",
    "get_all_schemas",
    "get_schema",
    "get_schema_path",
    "list_schemas",
    "split_statements",
]
