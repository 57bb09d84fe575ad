"""
Connection handling helper for database operations.

Stores and repositories accept either an ``AsyncEngine`` or an
``AsyncConnection``. ``execute_with_connection`` hides the difference.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Context manager for executing database operations.

    Args:
        conn: Database connection or engine
        transactional: If True, wrap in a transaction (engine.begin()).
                       If False, use a bare connection (engine.connect()).
                       Only applies when conn is an AsyncEngine.

    Yields:
        AsyncConnection ready for execute() calls

    Example:
        >>> async with execute_with_connection(self.conn) as conn:
        ...     await conn.execute(query, params)

    Note:
        When an AsyncConnection is passed, the caller owns transaction
        management and ``transactional`` has no effect.
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn


def dialect_name(conn: AsyncConnection | AsyncEngine) -> str:
    """Database system name for span attributes (e.g. "postgresql", "sqlite")."""
    return conn.dialect.name


def quote_identifier(conn: AsyncConnection | AsyncEngine, name: str) -> str:
    """
    Quote a table or column name for the connection's dialect.

    Table and column names of migrated entities come from task definitions
    and transform output, so they are always quoted before being
    interpolated into SQL text.
    """
    return conn.dialect.identifier_preparer.quote(name)
