"""
SQL source and destination stores on SQLAlchemy async engines.

Works with any dialect supporting ``INSERT ... ON CONFLICT ... DO UPDATE``
(PostgreSQL via asyncpg, SQLite 3.24+ via aiosqlite).

Error translation:
    - OperationalError / InterfaceError / connection errors
      -> SourceUnavailableError / DestinationUnavailableError (retried)
    - IntegrityError / DataError on a single row -> RecordFailure
      (that row's savepoint is rolled back, the batch continues)
    - Missing destination table or unknown columns -> FatalMigrationError
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from sqlalchemy import bindparam, inspect, text
from sqlalchemy.exc import (
    DataError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    ProgrammingError,
)
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from bulkmigrate.exceptions import (
    DestinationUnavailableError,
    FatalMigrationError,
    SourceUnavailableError,
)
from bulkmigrate.models import RecordId
from bulkmigrate.observability import Tracer, create_tracer
from bulkmigrate.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_DB_NAME,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
)
from bulkmigrate.repositories._connection import (
    dialect_name,
    execute_with_connection,
    quote_identifier,
)
from bulkmigrate.stores.interface import RecordFailure, Row, WriteOutcome

logger = logging.getLogger(__name__)

_CONNECTIVITY_ERRORS = (OperationalError, InterfaceError, ConnectionError, OSError)


class SQLSourceReader:
    """
    Reads source rows by id with a single ``SELECT ... WHERE id IN (...)``.

    Example:
        >>> reader = SQLSourceReader(source_engine, id_column="id")
        >>> rows = await reader.fetch_rows("offices", [1, 2, 3])
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        *,
        id_column: str = "id",
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the reader.

        Args:
            conn: Source database connection or engine
            id_column: Column holding the record identifier
            tracer: Optional tracer (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._conn = conn
        self._id_column = id_column

    async def fetch_rows(
        self,
        table: str,
        record_ids: Sequence[RecordId],
    ) -> dict[RecordId, Row]:
        """
        Read rows by id.

        Rows are keyed by the id exactly as passed in, matched on its
        string form so integer ids against text columns (and vice versa)
        still line up.

        Raises:
            SourceUnavailableError: If the source cannot be read.
            FatalMigrationError: If the query is rejected by the database.
        """
        if not record_ids:
            return {}

        with self._tracer.span(
            "bulkmigrate.source.fetch_rows",
            {
                ATTR_DB_SYSTEM: dialect_name(self._conn),
                ATTR_DB_NAME: table,
                ATTR_DB_OPERATION: "SELECT",
                ATTR_BATCH_SIZE: len(record_ids),
            },
        ):
            id_col = quote_identifier(self._conn, self._id_column)
            query = text(
                f"SELECT * FROM {quote_identifier(self._conn, table)} "  # nosec B608
                f"WHERE {id_col} IN :ids"
            ).bindparams(bindparam("ids", expanding=True))

            try:
                async with execute_with_connection(self._conn, transactional=False) as conn:
                    result = await conn.execute(query, {"ids": list(record_ids)})
                    fetched = [dict(row._mapping) for row in result.fetchall()]
            except ProgrammingError as e:
                raise FatalMigrationError(
                    f"Source query on '{table}' rejected: {e.orig}",
                    entity_type=table,
                ) from e
            except _CONNECTIVITY_ERRORS as e:
                raise SourceUnavailableError(
                    f"Failed to read from source table '{table}'",
                    entity_type=table,
                    original_error=str(e),
                ) from e

        by_key = {str(rid): rid for rid in record_ids}
        rows: dict[RecordId, Row] = {}
        for row in fetched:
            original = by_key.get(str(row.get(self._id_column)))
            if original is not None:
                rows[original] = row
        return rows


class SQLDestinationWriter:
    """
    Upserts rows keyed by the legacy identifier column.

    Each ``write_batch`` call runs in one transaction; each row is written
    under its own savepoint so a constraint violation on one row does not
    abort the batch. Re-running a batch updates the same rows in place.

    Example:
        >>> writer = SQLDestinationWriter(dest_engine, legacy_id_column="legacy_id")
        >>> await writer.verify_table("offices")
        >>> outcome = await writer.write_batch("offices", [(1, {"name": "Main"})])
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        *,
        legacy_id_column: str = "legacy_id",
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the writer.

        Args:
            conn: Destination database connection or engine
            legacy_id_column: Column with a unique constraint on the legacy id
            tracer: Optional tracer (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._conn = conn
        self._legacy_id_column = legacy_id_column
        self._columns: dict[str, frozenset[str]] = {}

    async def verify_table(self, table: str) -> None:
        """
        Check that the destination table exists and cache its columns.

        Raises:
            FatalMigrationError: If the table or its legacy id column is absent.
            DestinationUnavailableError: If the destination cannot be reached.
        """
        with self._tracer.span(
            "bulkmigrate.destination.verify_table",
            {ATTR_DB_SYSTEM: dialect_name(self._conn), ATTR_DB_NAME: table},
        ):
            try:
                async with execute_with_connection(self._conn, transactional=False) as conn:
                    columns = await conn.run_sync(_table_columns, table)
            except _CONNECTIVITY_ERRORS as e:
                raise DestinationUnavailableError(
                    f"Failed to inspect destination table '{table}'",
                    entity_type=table,
                    original_error=str(e),
                ) from e

        if columns is None:
            raise FatalMigrationError(
                f"Destination table '{table}' does not exist",
                entity_type=table,
            )
        if self._legacy_id_column not in columns:
            raise FatalMigrationError(
                f"Destination table '{table}' has no '{self._legacy_id_column}' column",
                entity_type=table,
            )
        self._columns[table] = columns

    async def write_batch(
        self,
        table: str,
        rows: Sequence[tuple[RecordId, Row]],
    ) -> WriteOutcome:
        """
        Upsert rows as one atomic unit.

        Raises:
            DestinationUnavailableError: If the batch could not be committed.
            FatalMigrationError: If rows contain columns the table lacks.
        """
        if not rows:
            return WriteOutcome()

        with self._tracer.span(
            "bulkmigrate.destination.write_batch",
            {
                ATTR_DB_SYSTEM: dialect_name(self._conn),
                ATTR_DB_NAME: table,
                ATTR_DB_OPERATION: "UPSERT",
                ATTR_BATCH_SIZE: len(rows),
            },
        ):
            prepared = [(rid, self._with_legacy_id(rid, row)) for rid, row in rows]
            self._check_columns(table, prepared)

            written: list[RecordId] = []
            failures: list[RecordFailure] = []
            try:
                async with execute_with_connection(self._conn, transactional=True) as conn:
                    for record_id, values in prepared:
                        query = self._upsert_query(table, list(values))
                        params = {f"p{i}": v for i, v in enumerate(values.values())}
                        try:
                            async with conn.begin_nested():
                                await conn.execute(query, params)
                        except (IntegrityError, DataError) as e:
                            failures.append(
                                RecordFailure(
                                    record_id=record_id,
                                    error_type="constraint_violation",
                                    message=str(e.orig),
                                    retryable=False,
                                )
                            )
                        else:
                            written.append(record_id)
            except ProgrammingError as e:
                raise FatalMigrationError(
                    f"Destination rejected upsert into '{table}': {e.orig}",
                    entity_type=table,
                ) from e
            except _CONNECTIVITY_ERRORS as e:
                raise DestinationUnavailableError(
                    f"Failed to write batch to destination table '{table}'",
                    entity_type=table,
                    original_error=str(e),
                ) from e

        if failures:
            logger.debug(
                "Batch into '%s': %d written, %d rejected",
                table,
                len(written),
                len(failures),
            )
        return WriteOutcome(written=tuple(written), failures=tuple(failures))

    def _with_legacy_id(self, record_id: RecordId, row: Row) -> Row:
        values = dict(row)
        values.setdefault(self._legacy_id_column, record_id)
        return values

    def _check_columns(self, table: str, prepared: list[tuple[RecordId, Row]]) -> None:
        known = self._columns.get(table)
        if known is None:
            return
        unknown: set[str] = set()
        for _, values in prepared:
            unknown.update(k for k in values if k not in known)
        if unknown:
            raise FatalMigrationError(
                f"Schema drift: destination table '{table}' has no columns "
                f"{sorted(unknown)}",
                entity_type=table,
            )

    def _upsert_query(self, table: str, columns: list[str]) -> Any:
        q = self._quote
        column_list = ", ".join(q(c) for c in columns)
        placeholders = ", ".join(f":p{i}" for i in range(len(columns)))
        updates = [c for c in columns if c != self._legacy_id_column]
        if updates:
            action = "DO UPDATE SET " + ", ".join(f"{q(c)} = excluded.{q(c)}" for c in updates)
        else:
            action = "DO NOTHING"
        return text(
            f"INSERT INTO {q(table)} ({column_list}) VALUES ({placeholders}) "  # nosec B608
            f"ON CONFLICT ({q(self._legacy_id_column)}) {action}"
        )

    def _quote(self, name: str) -> str:
        return quote_identifier(self._conn, name)


def _table_columns(sync_conn: Any, table: str) -> frozenset[str] | None:
    inspector = inspect(sync_conn)
    if not inspector.has_table(table):
        return None
    return frozenset(col["name"] for col in inspector.get_columns(table))


__all__ = [
    "SQLSourceReader",
    "SQLDestinationWriter",
]
