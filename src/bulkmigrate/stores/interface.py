"""
Source and destination store protocols.

The executor reads source rows by explicit id and writes transformed rows
to the destination keyed by the legacy identifier. Implementations:

- SQL (``bulkmigrate.stores.sql``): SQLAlchemy async engines
- In-memory (``bulkmigrate.stores.in_memory``): dictionaries, for tests

Store errors must be raised as ``SourceUnavailableError`` /
``DestinationUnavailableError`` for infrastructure problems (retried at
batch granularity) and ``FatalMigrationError`` for problems no retry can
fix. Per-record problems are reported in ``WriteOutcome.failures``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from bulkmigrate.models import RecordId

Row = dict[str, Any]
"""A single row as a column -> value mapping."""


@dataclass(frozen=True)
class RecordFailure:
    """
    A record the destination refused.

    Attributes:
        record_id: The legacy identifier of the record.
        error_type: Short failure category (e.g. "constraint_violation").
        message: Driver or validation message.
        retryable: Whether retrying the record may succeed.
    """

    record_id: RecordId
    error_type: str
    message: str
    retryable: bool = False


@dataclass(frozen=True)
class WriteOutcome:
    """
    Result of writing one batch.

    Every row passed to ``write_batch`` appears in exactly one of
    ``written`` or ``failures``.
    """

    written: tuple[RecordId, ...] = ()
    failures: tuple[RecordFailure, ...] = ()


@runtime_checkable
class SourceReader(Protocol):
    """Protocol for reading rows from the source store."""

    async def fetch_rows(
        self,
        table: str,
        record_ids: Sequence[RecordId],
    ) -> Mapping[RecordId, Row]:
        """
        Read rows by id.

        Args:
            table: Source table name.
            record_ids: Ids to read.

        Returns:
            Rows keyed by the id exactly as passed in. Ids with no row are
            absent from the mapping.

        Raises:
            SourceUnavailableError: If the source cannot be read.
        """
        ...


@runtime_checkable
class DestinationWriter(Protocol):
    """Protocol for upserting rows into the destination store."""

    async def verify_table(self, table: str) -> None:
        """
        Check that the destination table exists.

        Raises:
            FatalMigrationError: If the table is absent.
            DestinationUnavailableError: If the destination cannot be reached.
        """
        ...

    async def write_batch(
        self,
        table: str,
        rows: Sequence[tuple[RecordId, Row]],
    ) -> WriteOutcome:
        """
        Upsert rows keyed by legacy identifier as one atomic unit.

        Rows that fail individually are rolled back on their own and
        reported in the outcome; the rest commit together. Writing the same
        record twice leaves exactly one destination row.

        Args:
            table: Destination table name.
            rows: (legacy id, transformed row) pairs.

        Returns:
            WriteOutcome listing written and failed records.

        Raises:
            DestinationUnavailableError: If the batch could not be committed.
            FatalMigrationError: If rows do not fit the destination schema.
        """
        ...


__all__ = [
    "Row",
    "RecordFailure",
    "WriteOutcome",
    "SourceReader",
    "DestinationWriter",
]
