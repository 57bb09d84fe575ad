"""
Progress repository: cross-process mirror of progress snapshots and alerts.

The Progress Tracker keeps live state in memory and mirrors the latest
snapshot per (session, entity) and every alert here, so other processes
can observe a running migration.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from bulkmigrate.models import Alert, ProgressSnapshot
from bulkmigrate.observability import Tracer, create_tracer
from bulkmigrate.observability.attributes import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_ENTITY_TYPE,
    ATTR_SESSION_ID,
)
from bulkmigrate.repositories._connection import dialect_name, execute_with_connection
from bulkmigrate.serialization import format_timestamp, json_dumps, json_loads, parse_timestamp


@runtime_checkable
class ProgressRepository(Protocol):
    """Protocol for persisting progress snapshots and alerts."""

    async def save_snapshot(self, snapshot: ProgressSnapshot) -> None:
        """Upsert the latest snapshot for (session, entity)."""
        ...

    async def get_snapshots(self, session_id: str) -> list[ProgressSnapshot]:
        """Latest snapshot of every entity in a session, ordered by entity type."""
        ...

    async def save_alert(self, alert: Alert) -> None:
        """Insert an alert, or replace it when the id already exists."""
        ...

    async def get_alerts(self, session_id: str) -> list[Alert]:
        """All alerts of a session, newest first."""
        ...

    async def resolve_alert(self, alert_id: str, resolved_at: datetime) -> bool:
        """Mark an alert resolved. Returns False when the alert is unknown."""
        ...


class SQLProgressRepository:
    """
    SQL implementation of the progress repository.

    Uses the ``migration_progress_snapshots`` and ``migration_alerts``
    tables. Snapshot and alert details are stored as JSON text.
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self.conn = conn

    async def save_snapshot(self, snapshot: ProgressSnapshot) -> None:
        with self._tracer.span(
            "bulkmigrate.progress_repository.save_snapshot",
            {
                ATTR_SESSION_ID: snapshot.session_id,
                ATTR_ENTITY_TYPE: snapshot.entity_type,
                ATTR_DB_SYSTEM: dialect_name(self.conn),
                ATTR_DB_OPERATION: "UPSERT",
            },
        ):
            query = text("""
                INSERT INTO migration_progress_snapshots
                    (session_id, entity_type, status, records_processed,
                     records_remaining, records_failed, snapshot_json, updated_at)
                VALUES
                    (:session_id, :entity_type, :status, :records_processed,
                     :records_remaining, :records_failed, :snapshot_json, :updated_at)
                ON CONFLICT (session_id, entity_type) DO UPDATE
                SET status = excluded.status,
                    records_processed = excluded.records_processed,
                    records_remaining = excluded.records_remaining,
                    records_failed = excluded.records_failed,
                    snapshot_json = excluded.snapshot_json,
                    updated_at = excluded.updated_at
            """)
            params = {
                "session_id": snapshot.session_id,
                "entity_type": snapshot.entity_type,
                "status": snapshot.status.value,
                "records_processed": snapshot.records_processed,
                "records_remaining": snapshot.records_remaining,
                "records_failed": snapshot.records_failed,
                "snapshot_json": json_dumps(snapshot.to_dict()),
                "updated_at": format_timestamp(snapshot.timestamp),
            }
            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(query, params)

    async def get_snapshots(self, session_id: str) -> list[ProgressSnapshot]:
        query = text("""
            SELECT snapshot_json
            FROM migration_progress_snapshots
            WHERE session_id = :session_id
            ORDER BY entity_type
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"session_id": session_id})
            rows = result.fetchall()
        return [ProgressSnapshot.from_dict(json_loads(row[0])) for row in rows]

    async def save_alert(self, alert: Alert) -> None:
        with self._tracer.span(
            "bulkmigrate.progress_repository.save_alert",
            {ATTR_SESSION_ID: alert.session_id, ATTR_DB_OPERATION: "UPSERT"},
        ):
            query = text("""
                INSERT INTO migration_alerts
                    (alert_id, session_id, entity_type, severity, alert_type, message,
                     details_json, created_at, resolved, resolved_at)
                VALUES
                    (:alert_id, :session_id, :entity_type, :severity, :alert_type, :message,
                     :details_json, :created_at, :resolved, :resolved_at)
                ON CONFLICT (alert_id) DO UPDATE
                SET resolved = excluded.resolved,
                    resolved_at = excluded.resolved_at
            """)
            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(query, _alert_params(alert))

    async def get_alerts(self, session_id: str) -> list[Alert]:
        query = text("""
            SELECT alert_id, session_id, entity_type, severity, alert_type, message,
                   details_json, created_at, resolved, resolved_at
            FROM migration_alerts
            WHERE session_id = :session_id
            ORDER BY created_at DESC
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, {"session_id": session_id})
            rows = result.fetchall()
        return [_row_to_alert(dict(row._mapping)) for row in rows]

    async def resolve_alert(self, alert_id: str, resolved_at: datetime) -> bool:
        query = text("""
            UPDATE migration_alerts
            SET resolved = :resolved, resolved_at = :resolved_at
            WHERE alert_id = :alert_id
        """)
        params = {
            "resolved": True,
            "resolved_at": format_timestamp(resolved_at),
            "alert_id": alert_id,
        }
        async with execute_with_connection(self.conn, transactional=True) as conn:
            result = await conn.execute(query, params)
            return bool(result.rowcount)


def _alert_params(alert: Alert) -> dict[str, Any]:
    return {
        "alert_id": alert.alert_id,
        "session_id": alert.session_id,
        "entity_type": alert.entity_type,
        "severity": alert.severity.value,
        "alert_type": alert.alert_type.value,
        "message": alert.message,
        "details_json": json_dumps(alert.details),
        "created_at": format_timestamp(alert.timestamp),
        "resolved": alert.resolved,
        "resolved_at": format_timestamp(alert.resolved_at) if alert.resolved_at else None,
    }


def _row_to_alert(row: dict[str, Any]) -> Alert:
    return Alert.from_dict(
        {
            **row,
            "details": json_loads(row["details_json"]) if row["details_json"] else {},
            "timestamp": parse_timestamp(row["created_at"]),
            "resolved_at": parse_timestamp(row["resolved_at"]) if row["resolved_at"] else None,
        }
    )


class InMemoryProgressRepository:
    """In-memory progress repository for testing and single-process use."""

    def __init__(self) -> None:
        self._snapshots: dict[tuple[str, str], ProgressSnapshot] = {}
        self._alerts: dict[str, Alert] = {}
        self._lock: asyncio.Lock = asyncio.Lock()

    async def save_snapshot(self, snapshot: ProgressSnapshot) -> None:
        async with self._lock:
            self._snapshots[(snapshot.session_id, snapshot.entity_type)] = snapshot

    async def get_snapshots(self, session_id: str) -> list[ProgressSnapshot]:
        async with self._lock:
            matches = [s for (sid, _), s in self._snapshots.items() if sid == session_id]
        return sorted(matches, key=lambda s: s.entity_type)

    async def save_alert(self, alert: Alert) -> None:
        async with self._lock:
            self._alerts[alert.alert_id] = alert

    async def get_alerts(self, session_id: str) -> list[Alert]:
        async with self._lock:
            matches = [a for a in self._alerts.values() if a.session_id == session_id]
        return sorted(matches, key=lambda a: a.timestamp, reverse=True)

    async def resolve_alert(self, alert_id: str, resolved_at: datetime) -> bool:
        async with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return False
            self._alerts[alert_id] = replace(alert, resolved=True, resolved_at=resolved_at)
            return True


__all__ = [
    "ProgressRepository",
    "SQLProgressRepository",
    "InMemoryProgressRepository",
]
