"""
In-memory source and destination stores.

Useful for tests and dry runs. Both support failure injection so retry,
timeout and partial-failure paths can be exercised without a database.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping, Sequence

from bulkmigrate.exceptions import (
    DestinationUnavailableError,
    FatalMigrationError,
    SourceUnavailableError,
)
from bulkmigrate.models import RecordId
from bulkmigrate.stores.interface import RecordFailure, Row, WriteOutcome

RowValidator = Callable[[str, RecordId, Row], RecordFailure | None]
"""Hook returning a RecordFailure to reject a row, or None to accept it."""


class InMemorySource:
    """
    Source store backed by dictionaries.

    Example:
        >>> source = InMemorySource({"offices": {i: {"id": i} for i in range(1, 11)}})
        >>> rows = await source.fetch_rows("offices", [1, 2])

    Args:
        tables: Rows by table name, keyed by record id.
    """

    def __init__(self, tables: Mapping[str, Mapping[RecordId, Row]] | None = None) -> None:
        self._tables: dict[str, dict[RecordId, Row]] = {
            name: dict(rows) for name, rows in (tables or {}).items()
        }
        self._failures_remaining = 0
        self.fetch_calls: list[tuple[str, tuple[RecordId, ...]]] = []
        self.delay_seconds = 0.0

    def add_table(self, table: str, rows: Mapping[RecordId, Row]) -> None:
        self._tables[table] = dict(rows)

    def fail_next(self, count: int = 1) -> None:
        """Make the next ``count`` fetches raise SourceUnavailableError."""
        self._failures_remaining = count

    async def fetch_rows(
        self,
        table: str,
        record_ids: Sequence[RecordId],
    ) -> dict[RecordId, Row]:
        self.fetch_calls.append((table, tuple(record_ids)))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self._failures_remaining > 0:
            self._failures_remaining -= 1
            raise SourceUnavailableError(
                f"Injected source failure reading '{table}'",
                entity_type=table,
            )
        rows = self._tables.get(table, {})
        return {rid: dict(rows[rid]) for rid in record_ids if rid in rows}


class InMemoryDestination:
    """
    Destination store backed by dictionaries keyed by legacy id.

    Upserts replace the stored row, so the row count only grows on first
    write of a record.

    Args:
        tables: Names of tables that exist. Writes to other tables fail
            verification as missing.
        validator: Optional hook to reject individual rows.
    """

    def __init__(
        self,
        tables: Iterable[str] = (),
        *,
        validator: RowValidator | None = None,
    ) -> None:
        self.tables: dict[str, dict[RecordId, Row]] = {name: {} for name in tables}
        self._validator = validator
        self._failures_remaining = 0
        self.write_log: list[tuple[str, tuple[RecordId, ...]]] = []
        self.delay_seconds = 0.0

    def fail_next(self, count: int = 1) -> None:
        """Make the next ``count`` writes raise DestinationUnavailableError."""
        self._failures_remaining = count

    def row_count(self, table: str) -> int:
        return len(self.tables.get(table, {}))

    async def verify_table(self, table: str) -> None:
        if table not in self.tables:
            raise FatalMigrationError(
                f"Destination table '{table}' does not exist",
                entity_type=table,
            )

    async def write_batch(
        self,
        table: str,
        rows: Sequence[tuple[RecordId, Row]],
    ) -> WriteOutcome:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self._failures_remaining > 0:
            self._failures_remaining -= 1
            raise DestinationUnavailableError(
                f"Injected destination failure writing '{table}'",
                entity_type=table,
            )
        if table not in self.tables:
            raise FatalMigrationError(
                f"Destination table '{table}' does not exist",
                entity_type=table,
            )

        # Stage first so a batch is applied as a unit.
        staged: dict[RecordId, Row] = {}
        failures: list[RecordFailure] = []
        for record_id, row in rows:
            failure = self._validator(table, record_id, row) if self._validator else None
            if failure is not None:
                failures.append(failure)
            else:
                staged[record_id] = dict(row)

        self.tables[table].update(staged)
        self.write_log.append((table, tuple(staged)))
        return WriteOutcome(written=tuple(staged), failures=tuple(failures))


__all__ = [
    "InMemorySource",
    "InMemoryDestination",
    "RowValidator",
]
