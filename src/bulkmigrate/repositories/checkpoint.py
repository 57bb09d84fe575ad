"""
Checkpoint repository: primary persistence for migration checkpoints.

Stores encoded checkpoint payloads in the ``migration_checkpoints`` table.
Payloads are opaque to the repository; encoding, checksums and validation
belong to ``CheckpointStore``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from bulkmigrate.models import CheckpointStatus
from bulkmigrate.observability import Tracer, create_tracer
from bulkmigrate.observability.attributes import (
    ATTR_CHECKPOINT_ID,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_ENTITY_TYPE,
    ATTR_SESSION_ID,
)
from bulkmigrate.repositories._connection import dialect_name, execute_with_connection
from bulkmigrate.serialization import format_timestamp, parse_timestamp


@dataclass(frozen=True)
class CheckpointRecord:
    """
    A stored checkpoint row.

    Attributes:
        checkpoint_id: Unique checkpoint identifier
        session_id: Execution session
        entity_type: Entity the checkpoint belongs to
        batch_number: Batches committed when the checkpoint was taken
        records_processed: Position within the entity's id list
        records_remaining: Ids after that position
        last_processed_record_id: Id at position records_processed - 1
        state_blob: Encoded payload
        compressed: Whether the payload is gzip + base64
        checksum: SHA-256 of the uncompressed payload
        status: active, superseded or corrupted
        size_bytes: Length of state_blob
        created_at: When the checkpoint was created
    """

    checkpoint_id: str
    session_id: str
    entity_type: str
    batch_number: int
    records_processed: int
    records_remaining: int
    last_processed_record_id: str | None
    state_blob: str
    compressed: bool
    checksum: str
    status: CheckpointStatus
    size_bytes: int
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "session_id": self.session_id,
            "entity_type": self.entity_type,
            "batch_number": self.batch_number,
            "records_processed": self.records_processed,
            "records_remaining": self.records_remaining,
            "last_processed_record_id": self.last_processed_record_id,
            "state_blob": self.state_blob,
            "compressed": self.compressed,
            "checksum": self.checksum,
            "status": self.status.value,
            "size_bytes": self.size_bytes,
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckpointRecord:
        return cls(
            checkpoint_id=data["checkpoint_id"],
            session_id=data["session_id"],
            entity_type=data["entity_type"],
            batch_number=int(data["batch_number"]),
            records_processed=int(data["records_processed"]),
            records_remaining=int(data["records_remaining"]),
            last_processed_record_id=data.get("last_processed_record_id"),
            state_blob=data["state_blob"],
            compressed=bool(data["compressed"]),
            checksum=data["checksum"],
            status=CheckpointStatus(data["status"]),
            size_bytes=int(data.get("size_bytes", 0)),
            created_at=parse_timestamp(data["created_at"]),
        )

    def sort_key(self) -> tuple[datetime, int, str]:
        """Chronological order; ties broken by batch number then id."""
        return (self.created_at, self.batch_number, self.checkpoint_id)


@runtime_checkable
class CheckpointRepository(Protocol):
    """
    Protocol for checkpoint persistence.

    Listing methods return records newest first.
    """

    async def save(self, record: CheckpointRecord) -> None:
        """Insert a checkpoint record."""
        ...

    async def get(self, checkpoint_id: str) -> CheckpointRecord | None:
        """Get a checkpoint record by id, or None."""
        ...

    async def list_checkpoints(
        self,
        session_id: str,
        entity_type: str | None = None,
    ) -> list[CheckpointRecord]:
        """List checkpoints of a session, optionally for one entity, newest first."""
        ...

    async def list_all(self) -> list[CheckpointRecord]:
        """List every checkpoint, newest first."""
        ...

    async def update_status(self, checkpoint_id: str, status: CheckpointStatus) -> None:
        """Change the status of one checkpoint."""
        ...

    async def supersede_active(
        self,
        session_id: str,
        entity_type: str,
        keep_checkpoint_id: str,
    ) -> int:
        """
        Mark every other active checkpoint of (session, entity) superseded.

        Returns:
            Number of checkpoints changed
        """
        ...

    async def delete(self, checkpoint_ids: Sequence[str]) -> int:
        """Delete checkpoints by id. Returns the number deleted."""
        ...

    async def list_created_before(self, cutoff: datetime) -> list[CheckpointRecord]:
        """List checkpoints created before ``cutoff``, oldest first."""
        ...


_COLUMNS = (
    "checkpoint_id, session_id, entity_type, batch_number, records_processed, "
    "records_remaining, last_processed_record_id, state_blob, compressed, checksum, "
    "status, size_bytes, created_at"
)


def _row_to_record(row: Any) -> CheckpointRecord:
    return CheckpointRecord.from_dict(dict(row._mapping))


class SQLCheckpointRepository:
    """
    SQL implementation of the checkpoint repository.

    Stores checkpoints in the ``migration_checkpoints`` table. Timestamps
    are stored as fixed-width ISO-8601 text, so the same queries run on
    PostgreSQL and SQLite.

    Example:
        >>> repo = SQLCheckpointRepository(engine)
        >>> await repo.save(record)
        >>> latest = (await repo.list_checkpoints(session_id, "offices"))[0]
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the checkpoint repository.

        Args:
            conn: Database connection or engine
            tracer: Optional tracer (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self.conn = conn

    async def save(self, record: CheckpointRecord) -> None:
        with self._tracer.span(
            "bulkmigrate.checkpoint_repository.save",
            {
                ATTR_CHECKPOINT_ID: record.checkpoint_id,
                ATTR_SESSION_ID: record.session_id,
                ATTR_ENTITY_TYPE: record.entity_type,
                ATTR_DB_SYSTEM: dialect_name(self.conn),
                ATTR_DB_OPERATION: "INSERT",
            },
        ):
            query = text("""
                INSERT INTO migration_checkpoints
                    (checkpoint_id, session_id, entity_type, batch_number,
                     records_processed, records_remaining, last_processed_record_id,
                     state_blob, compressed, checksum, status, size_bytes, created_at)
                VALUES
                    (:checkpoint_id, :session_id, :entity_type, :batch_number,
                     :records_processed, :records_remaining, :last_processed_record_id,
                     :state_blob, :compressed, :checksum, :status, :size_bytes, :created_at)
            """)
            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(query, record.to_dict())

    async def get(self, checkpoint_id: str) -> CheckpointRecord | None:
        with self._tracer.span(
            "bulkmigrate.checkpoint_repository.get",
            {ATTR_CHECKPOINT_ID: checkpoint_id, ATTR_DB_OPERATION: "SELECT"},
        ):
            query = text(f"""
                SELECT {_COLUMNS}
                FROM migration_checkpoints
                WHERE checkpoint_id = :checkpoint_id
            """)  # nosec B608 - fixed column list
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query, {"checkpoint_id": checkpoint_id})
                row = result.fetchone()
            return _row_to_record(row) if row else None

    async def list_checkpoints(
        self,
        session_id: str,
        entity_type: str | None = None,
    ) -> list[CheckpointRecord]:
        with self._tracer.span(
            "bulkmigrate.checkpoint_repository.list_checkpoints",
            {ATTR_SESSION_ID: session_id, ATTR_DB_OPERATION: "SELECT"},
        ):
            params: dict[str, Any] = {"session_id": session_id}
            entity_clause = ""
            if entity_type is not None:
                entity_clause = "AND entity_type = :entity_type"
                params["entity_type"] = entity_type
            query = text(f"""
                SELECT {_COLUMNS}
                FROM migration_checkpoints
                WHERE session_id = :session_id {entity_clause}
                ORDER BY created_at DESC, batch_number DESC, checkpoint_id DESC
            """)  # nosec B608 - fixed column list and clause
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query, params)
                return [_row_to_record(row) for row in result.fetchall()]

    async def list_all(self) -> list[CheckpointRecord]:
        query = text(f"""
            SELECT {_COLUMNS}
            FROM migration_checkpoints
            ORDER BY created_at DESC, batch_number DESC, checkpoint_id DESC
        """)  # nosec B608 - fixed column list
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query)
            return [_row_to_record(row) for row in result.fetchall()]

    async def update_status(self, checkpoint_id: str, status: CheckpointStatus) -> None:
        with self._tracer.span(
            "bulkmigrate.checkpoint_repository.update_status",
            {ATTR_CHECKPOINT_ID: checkpoint_id, ATTR_DB_OPERATION: "UPDATE"},
        ):
            query = text("""
                UPDATE migration_checkpoints
                SET status = :status
                WHERE checkpoint_id = :checkpoint_id
            """)
            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(
                    query, {"status": status.value, "checkpoint_id": checkpoint_id}
                )

    async def supersede_active(
        self,
        session_id: str,
        entity_type: str,
        keep_checkpoint_id: str,
    ) -> int:
        query = text("""
            UPDATE migration_checkpoints
            SET status = :superseded
            WHERE session_id = :session_id
              AND entity_type = :entity_type
              AND status = :active
              AND checkpoint_id <> :keep
        """)
        params = {
            "superseded": CheckpointStatus.SUPERSEDED.value,
            "active": CheckpointStatus.ACTIVE.value,
            "session_id": session_id,
            "entity_type": entity_type,
            "keep": keep_checkpoint_id,
        }
        async with execute_with_connection(self.conn, transactional=True) as conn:
            result = await conn.execute(query, params)
            return result.rowcount or 0

    async def delete(self, checkpoint_ids: Sequence[str]) -> int:
        if not checkpoint_ids:
            return 0
        with self._tracer.span(
            "bulkmigrate.checkpoint_repository.delete",
            {ATTR_DB_OPERATION: "DELETE"},
        ):
            query = text(
                "DELETE FROM migration_checkpoints WHERE checkpoint_id IN :ids"
            ).bindparams(bindparam("ids", expanding=True))
            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(query, {"ids": list(checkpoint_ids)})
                return result.rowcount or 0

    async def list_created_before(self, cutoff: datetime) -> list[CheckpointRecord]:
        query = text(f"""
            SELECT {_COLUMNS}
            FROM migration_checkpoints
            WHERE created_at < :cutoff
            ORDER BY created_at ASC
        """)  # nosec B608 - fixed column list
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"cutoff": format_timestamp(cutoff)})
            return [_row_to_record(row) for row in result.fetchall()]


class InMemoryCheckpointRepository:
    """
    In-memory implementation of the checkpoint repository for testing.

    All data is lost when the process terminates.

    Example:
        >>> repo = InMemoryCheckpointRepository()
        >>> await repo.save(record)
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._records: dict[str, CheckpointRecord] = {}
        self._lock: asyncio.Lock = asyncio.Lock()
        self.fail_writes = False
        self.fail_reads = False

    def _check_writable(self) -> None:
        if self.fail_writes:
            raise ConnectionError("checkpoint repository unavailable")

    def _check_readable(self) -> None:
        if self.fail_reads:
            raise ConnectionError("checkpoint repository unavailable")

    async def save(self, record: CheckpointRecord) -> None:
        with self._tracer.span(
            "bulkmigrate.checkpoint_repository.save",
            {ATTR_CHECKPOINT_ID: record.checkpoint_id, ATTR_SESSION_ID: record.session_id},
        ):
            async with self._lock:
                self._check_writable()
                self._records[record.checkpoint_id] = record

    async def get(self, checkpoint_id: str) -> CheckpointRecord | None:
        async with self._lock:
            self._check_readable()
            return self._records.get(checkpoint_id)

    async def list_checkpoints(
        self,
        session_id: str,
        entity_type: str | None = None,
    ) -> list[CheckpointRecord]:
        async with self._lock:
            self._check_readable()
            matches = [
                r
                for r in self._records.values()
                if r.session_id == session_id
                and (entity_type is None or r.entity_type == entity_type)
            ]
        return sorted(matches, key=CheckpointRecord.sort_key, reverse=True)

    async def list_all(self) -> list[CheckpointRecord]:
        async with self._lock:
            self._check_readable()
            records = list(self._records.values())
        return sorted(records, key=CheckpointRecord.sort_key, reverse=True)

    async def update_status(self, checkpoint_id: str, status: CheckpointStatus) -> None:
        async with self._lock:
            self._check_writable()
            record = self._records.get(checkpoint_id)
            if record is not None:
                self._records[checkpoint_id] = replace(record, status=status)

    async def supersede_active(
        self,
        session_id: str,
        entity_type: str,
        keep_checkpoint_id: str,
    ) -> int:
        changed = 0
        async with self._lock:
            self._check_writable()
            for cid, record in list(self._records.items()):
                if (
                    record.session_id == session_id
                    and record.entity_type == entity_type
                    and record.status == CheckpointStatus.ACTIVE
                    and cid != keep_checkpoint_id
                ):
                    self._records[cid] = replace(record, status=CheckpointStatus.SUPERSEDED)
                    changed += 1
        return changed

    async def delete(self, checkpoint_ids: Sequence[str]) -> int:
        deleted = 0
        async with self._lock:
            self._check_writable()
            for cid in checkpoint_ids:
                if self._records.pop(cid, None) is not None:
                    deleted += 1
        return deleted

    async def list_created_before(self, cutoff: datetime) -> list[CheckpointRecord]:
        async with self._lock:
            records = [r for r in self._records.values() if r.created_at < cutoff]
        return sorted(records, key=CheckpointRecord.sort_key)

    async def tamper(self, checkpoint_id: str, **changes: Any) -> None:
        """Overwrite fields of a stored record, bypassing validation. For tests."""
        async with self._lock:
            self._records[checkpoint_id] = replace(self._records[checkpoint_id], **changes)

    async def clear(self) -> None:
        async with self._lock:
            self._records.clear()


__all__ = [
    "CheckpointRecord",
    "CheckpointRepository",
    "SQLCheckpointRepository",
    "InMemoryCheckpointRepository",
]
