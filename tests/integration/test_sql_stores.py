"""
Integration tests for the SQL stores and repositories on SQLite.

Tests cover:
- SQLCheckpointRepository persistence and queries
- CheckpointStore verification against tampered database rows
- SQLProgressRepository snapshots and alerts
- SQLSourceReader and SQLDestinationWriter, including per-row constraint
  failures and idempotent upserts
- An end-to-end executor run with resume after a crash
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from bulkmigrate.checkpoint_store import SOURCE_FILE, CheckpointStore
from bulkmigrate.config import BatchSizingConfig, ExecutorConfig
from bulkmigrate.exceptions import FatalMigrationError, RetryConfig
from bulkmigrate.executor import MigrationExecutor
from bulkmigrate.models import (
    Alert,
    AlertSeverity,
    AlertType,
    CheckpointData,
    CheckpointStatus,
    MigrationTask,
    ProcessingState,
    ProgressSnapshot,
    ProgressStatus,
    ResultStatus,
)
from bulkmigrate.progress import ProgressTracker
from bulkmigrate.repositories.checkpoint import CheckpointRecord, SQLCheckpointRepository
from bulkmigrate.repositories.file_backup import FileCheckpointBackup
from bulkmigrate.repositories.progress import SQLProgressRepository
from bulkmigrate.stores.sql import SQLDestinationWriter, SQLSourceReader

pytestmark = pytest.mark.integration

NO_DELAY = RetryConfig(max_attempts=3, base_delay_ms=0.0, max_delay_ms=0.0, jitter_factor=0.0)


def _record(checkpoint_id: str, batch_number: int, created_at: datetime) -> CheckpointRecord:
    return CheckpointRecord(
        checkpoint_id=checkpoint_id,
        session_id="s1",
        entity_type="offices",
        batch_number=batch_number,
        records_processed=batch_number * 3,
        records_remaining=10 - batch_number * 3,
        last_processed_record_id=str(batch_number * 3),
        state_blob="{}",
        compressed=False,
        checksum="0" * 64,
        status=CheckpointStatus.ACTIVE,
        size_bytes=2,
        created_at=created_at,
    )


async def _office_names(engine: AsyncEngine) -> dict[int, str]:
    async with engine.connect() as conn:
        result = await conn.execute(text("SELECT legacy_id, name FROM offices"))
        return {row.legacy_id: row.name for row in result.fetchall()}


class TestSQLCheckpointRepository:
    """Tests for SQLCheckpointRepository."""

    @pytest.fixture
    def repo(self, engine: AsyncEngine) -> SQLCheckpointRepository:
        return SQLCheckpointRepository(engine, enable_tracing=False)

    @pytest.mark.asyncio
    async def test_save_and_get(self, repo: SQLCheckpointRepository):
        """Test that a record round-trips through the table unchanged."""
        record = _record("cp-1", 1, datetime(2026, 3, 1, 12, 0, 0, 123456, tzinfo=UTC))

        await repo.save(record)

        assert await repo.get("cp-1") == record
        assert await repo.get("missing") is None

    @pytest.mark.asyncio
    async def test_list_newest_first_and_supersede(self, repo: SQLCheckpointRepository):
        base = datetime(2026, 3, 1, tzinfo=UTC)
        for i in (1, 2, 3):
            await repo.save(_record(f"cp-{i}", i, base + timedelta(seconds=i)))

        changed = await repo.supersede_active("s1", "offices", "cp-3")
        listed = await repo.list_checkpoints("s1", "offices")

        assert changed == 2
        assert [r.checkpoint_id for r in listed] == ["cp-3", "cp-2", "cp-1"]
        assert [r.status for r in listed] == [
            CheckpointStatus.ACTIVE,
            CheckpointStatus.SUPERSEDED,
            CheckpointStatus.SUPERSEDED,
        ]
        assert await repo.list_checkpoints("s1", "doctors") == []

    @pytest.mark.asyncio
    async def test_status_delete_and_expiry(self, repo: SQLCheckpointRepository):
        base = datetime(2026, 3, 1, tzinfo=UTC)
        await repo.save(_record("old", 1, base - timedelta(days=40)))
        await repo.save(_record("new", 2, base))

        await repo.update_status("new", CheckpointStatus.CORRUPTED)
        expired = await repo.list_created_before(base - timedelta(days=30))
        deleted = await repo.delete(["old", "missing"])

        assert (await repo.get("new")).status == CheckpointStatus.CORRUPTED
        assert [r.checkpoint_id for r in expired] == ["old"]
        assert deleted == 1
        assert [r.checkpoint_id for r in await repo.list_all()] == ["new"]


class TestCheckpointStoreOnSQL:
    """Tests for CheckpointStore backed by SQLite and files."""

    @pytest.mark.asyncio
    async def test_tampered_row_falls_back_to_file(self, engine: AsyncEngine, tmp_path: Path):
        """Test that a row edited behind the store's back is detected."""
        store = CheckpointStore(
            SQLCheckpointRepository(engine, enable_tracing=False),
            FileCheckpointBackup(tmp_path / "checkpoints"),
            enable_tracing=False,
        )
        created = await store.create_checkpoint(
            CheckpointData(
                session_id="s1",
                entity_type="offices",
                batch_number=2,
                records_processed=6,
                records_remaining=4,
                last_processed_record_id="6",
                processing_state=ProcessingState(batch_size=3),
            )
        )
        async with engine.begin() as conn:
            await conn.execute(
                text(
                    "UPDATE migration_checkpoints SET records_processed = 9 "
                    "WHERE checkpoint_id = :id"
                ),
                {"id": created.checkpoint_id},
            )

        loaded = await store.load_checkpoint(created.checkpoint_id)

        assert loaded.source == SOURCE_FILE
        assert loaded.checkpoint.records_processed == 6


class TestSQLProgressRepository:
    """Tests for SQLProgressRepository."""

    @pytest.fixture
    def repo(self, engine: AsyncEngine) -> SQLProgressRepository:
        return SQLProgressRepository(engine, enable_tracing=False)

    @pytest.mark.asyncio
    async def test_snapshot_upsert_keeps_latest(self, repo: SQLProgressRepository):
        for processed in (3, 6):
            await repo.save_snapshot(
                ProgressSnapshot(
                    session_id="s1",
                    entity_type="offices",
                    status=ProgressStatus.RUNNING,
                    records_processed=processed,
                    records_remaining=10 - processed,
                    percentage_complete=processed * 10.0,
                )
            )

        snapshots = await repo.get_snapshots("s1")

        assert len(snapshots) == 1
        assert snapshots[0].records_processed == 6
        assert snapshots[0].status == ProgressStatus.RUNNING

    @pytest.mark.asyncio
    async def test_alert_lifecycle(self, repo: SQLProgressRepository):
        alert = Alert.create(
            "s1",
            AlertSeverity.WARNING,
            AlertType.LOW_THROUGHPUT,
            "slow",
            entity_type="offices",
            details={"actual": 1.5},
        )

        await repo.save_alert(alert)
        resolved = await repo.resolve_alert(alert.alert_id, datetime.now(UTC))
        stored = await repo.get_alerts("s1")

        assert resolved
        assert not await repo.resolve_alert("missing", datetime.now(UTC))
        assert stored[0].alert_id == alert.alert_id
        assert stored[0].details == {"actual": 1.5}
        assert stored[0].resolved


class TestSQLSourceReader:
    @pytest.mark.asyncio
    async def test_fetch_rows_by_id(self, source_engine: AsyncEngine):
        reader = SQLSourceReader(source_engine, enable_tracing=False)

        rows = await reader.fetch_rows("offices", [2, 4, 99])

        assert sorted(rows) == [2, 4]
        assert rows[4] == {"id": 4, "name": "Office 4"}
        assert await reader.fetch_rows("offices", []) == {}

    @pytest.mark.asyncio
    async def test_string_ids_match_integer_column(self, source_engine: AsyncEngine):
        reader = SQLSourceReader(source_engine, enable_tracing=False)

        rows = await reader.fetch_rows("offices", ["3"])

        assert rows["3"]["name"] == "Office 3"


class TestSQLDestinationWriter:
    """Tests for SQLDestinationWriter."""

    @pytest.fixture
    async def writer(self, engine: AsyncEngine) -> SQLDestinationWriter:
        writer = SQLDestinationWriter(engine, enable_tracing=False)
        await writer.verify_table("offices")
        return writer

    @pytest.mark.asyncio
    async def test_missing_table_is_fatal(self, engine: AsyncEngine):
        writer = SQLDestinationWriter(engine, enable_tracing=False)

        with pytest.raises(FatalMigrationError, match="does not exist"):
            await writer.verify_table("patients")

    @pytest.mark.asyncio
    async def test_missing_legacy_column_is_fatal(self, engine: AsyncEngine):
        writer = SQLDestinationWriter(engine, legacy_id_column="old_id", enable_tracing=False)

        with pytest.raises(FatalMigrationError, match="old_id"):
            await writer.verify_table("offices")

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, writer: SQLDestinationWriter, engine: AsyncEngine):
        """Test that writing the same ids twice updates rows in place."""
        await writer.write_batch("offices", [(1, {"name": "A"}), (2, {"name": "B"})])
        outcome = await writer.write_batch("offices", [(1, {"name": "A2"}), (2, {"name": "B"})])

        assert outcome.written == (1, 2)
        assert await _office_names(engine) == {1: "A2", 2: "B"}

    @pytest.mark.asyncio
    async def test_constraint_violation_fails_only_that_row(
        self, writer: SQLDestinationWriter, engine: AsyncEngine
    ):
        """Test that a NOT NULL violation is reported while the rest commit."""
        outcome = await writer.write_batch(
            "offices",
            [(1, {"name": "A"}), (2, {"name": None}), (3, {"name": "C"})],
        )

        assert outcome.written == (1, 3)
        assert len(outcome.failures) == 1
        failure = outcome.failures[0]
        assert failure.record_id == 2
        assert failure.error_type == "constraint_violation"
        assert not failure.retryable
        assert await _office_names(engine) == {1: "A", 3: "C"}

    @pytest.mark.asyncio
    async def test_schema_drift_is_fatal(self, writer: SQLDestinationWriter):
        with pytest.raises(FatalMigrationError, match="Schema drift"):
            await writer.write_batch("offices", [(1, {"name": "A", "phone": "555"})])


class TestEndToEnd:
    """An executor run over SQLite source, destination and bookkeeping tables."""

    @pytest.fixture
    def config(self) -> ExecutorConfig:
        return ExecutorConfig(
            sizing=BatchSizingConfig(batch_size=3, min_batch_size=1),
            checkpoint_interval=1,
            record_retry=NO_DELAY,
            batch_retry=NO_DELAY,
        )

    def _executor(
        self,
        engine: AsyncEngine,
        source_engine: AsyncEngine,
        tmp_path: Path,
        config: ExecutorConfig,
        session_id: str,
        destination: SQLDestinationWriter | None = None,
    ) -> MigrationExecutor:
        progress = ProgressTracker(
            session_id,
            SQLProgressRepository(engine, enable_tracing=False),
            enable_tracing=False,
        )
        return MigrationExecutor(
            source=SQLSourceReader(source_engine, enable_tracing=False),
            destination=destination or SQLDestinationWriter(engine, enable_tracing=False),
            checkpoint_store=CheckpointStore(
                SQLCheckpointRepository(engine, enable_tracing=False),
                FileCheckpointBackup(tmp_path / "checkpoints"),
                enable_tracing=False,
            ),
            progress_tracker=progress,
            transforms={"offices": lambda row: {"name": row["name"]}},
            config=config,
            enable_tracing=False,
            memory_sampler=lambda: 100.0,
        )

    @pytest.mark.asyncio
    async def test_full_run(
        self,
        engine: AsyncEngine,
        source_engine: AsyncEngine,
        tmp_path: Path,
        config: ExecutorConfig,
    ):
        session_id = f"session-{uuid4()}"
        executor = self._executor(engine, source_engine, tmp_path, config, session_id)

        result = await executor.execute_migration_tasks(
            [MigrationTask("offices", list(range(1, 11)))]
        )

        assert result.overall_status == ResultStatus.COMPLETED
        names = await _office_names(engine)
        assert len(names) == 10
        assert names[7] == "Office 7"

        snapshots = await SQLProgressRepository(engine, enable_tracing=False).get_snapshots(
            session_id
        )
        assert snapshots[0].status == ProgressStatus.COMPLETED
        assert snapshots[0].percentage_complete == 100.0

    @pytest.mark.asyncio
    async def test_resume_after_crash(
        self,
        engine: AsyncEngine,
        source_engine: AsyncEngine,
        tmp_path: Path,
        config: ExecutorConfig,
    ):
        """Test that a restart continues from the last committed checkpoint."""

        class CrashingWriter(SQLDestinationWriter):
            calls = 0

            async def write_batch(self, table, rows):
                CrashingWriter.calls += 1
                if CrashingWriter.calls == 3:
                    raise RuntimeError("process killed")
                return await super().write_batch(table, rows)

        session_id = f"session-{uuid4()}"
        task = MigrationTask("offices", list(range(1, 11)))
        crashing = CrashingWriter(engine, enable_tracing=False)

        first = await self._executor(
            engine, source_engine, tmp_path, config, session_id, crashing
        ).execute_migration_tasks([task])
        assert first.overall_status == ResultStatus.PARTIAL
        assert len(await _office_names(engine)) == 6

        second = await self._executor(
            engine, source_engine, tmp_path, config, session_id
        ).execute_migration_tasks([task])

        assert second.overall_status == ResultStatus.COMPLETED
        assert [b.record_ids for b in second.batch_results] == [(7, 8, 9), (10,)]
        assert len(await _office_names(engine)) == 10
