"""
Unit tests for the data models.

Tests cover:
- MigrationTask normalization and validation
- TaskState transitions
- CheckpointData invariants
- Snapshot and alert dictionary round trips
"""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from bulkmigrate.exceptions import InvalidStateTransitionError
from bulkmigrate.models import (
    Alert,
    AlertSeverity,
    AlertType,
    CheckpointData,
    ExecutionSession,
    MigrationTask,
    Priority,
    ProcessingState,
    ProgressSnapshot,
    ProgressStatus,
    TaskState,
    TaskStatus,
)


class TestMigrationTask:
    """Tests for MigrationTask."""

    def test_record_ids_and_dependencies_are_normalized(self):
        """Test that list and set inputs become tuple and frozenset."""
        task = MigrationTask("doctors", [3, 1, 2], dependencies={"offices"})

        assert task.record_ids == (3, 1, 2)
        assert task.dependencies == frozenset({"offices"})
        assert task.total_records == 3

    def test_tables_default_to_entity_type(self):
        """Test that source and destination tables default to the entity type."""
        task = MigrationTask("offices", [1])

        assert task.source_table == "offices"
        assert task.destination_table == "offices"

    def test_explicit_tables_are_kept(self):
        task = MigrationTask("offices", [1], source_table="legacy_office", destination_table="office")

        assert task.source_table == "legacy_office"
        assert task.destination_table == "office"

    def test_empty_entity_type_rejected(self):
        """Test that an empty entity type is rejected."""
        with pytest.raises(ValueError, match="entity_type"):
            MigrationTask("", [1])

    def test_negative_estimate_rejected(self):
        with pytest.raises(ValueError, match="estimated_duration_ms"):
            MigrationTask("offices", [1], estimated_duration_ms=-1)

    def test_priority_rank_orders_critical_first(self):
        ranks = [p.rank for p in (Priority.CRITICAL, Priority.HIGH, Priority.MEDIUM, Priority.LOW)]
        assert ranks == sorted(ranks, reverse=True)


class TestTaskState:
    """Tests for the task state machine."""

    def test_happy_path(self):
        """Test PENDING -> RUNNING -> COMPLETED sets timestamps."""
        state = TaskState("offices", total_records=10)

        state.transition_to(TaskStatus.RUNNING)
        assert state.started_at is not None
        state.transition_to(TaskStatus.COMPLETED)

        assert state.status == TaskStatus.COMPLETED
        assert state.completed_at is not None

    def test_pause_and_resume(self):
        """Test that a paused task can run again."""
        state = TaskState("offices", total_records=10)
        state.transition_to(TaskStatus.RUNNING)
        state.transition_to(TaskStatus.PAUSED)
        state.transition_to(TaskStatus.RUNNING)

        assert state.status == TaskStatus.RUNNING

    @pytest.mark.parametrize(
        ("path", "target"),
        [
            ((), TaskStatus.COMPLETED),
            ((), TaskStatus.PAUSED),
            ((TaskStatus.RUNNING, TaskStatus.PAUSED), TaskStatus.FAILED),
            ((TaskStatus.RUNNING, TaskStatus.COMPLETED), TaskStatus.RUNNING),
            ((TaskStatus.RUNNING, TaskStatus.FAILED), TaskStatus.RUNNING),
        ],
    )
    def test_invalid_transitions_raise(self, path, target):
        """Test that transitions outside the state machine are rejected."""
        state = TaskState("offices", total_records=10)
        for status in path:
            state.transition_to(status)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            state.transition_to(target)

        assert exc_info.value.target_status == target
        assert exc_info.value.entity_type == "offices"

    def test_records_remaining(self):
        state = TaskState("offices", total_records=10, records_processed=4)
        assert state.records_remaining == 6

    def test_terminal_statuses(self):
        assert TaskStatus.COMPLETED.is_terminal
        assert TaskStatus.FAILED.is_terminal
        assert TaskStatus.CANCELLED.is_terminal
        assert not TaskStatus.PAUSED.is_terminal


class TestExecutionSession:
    def test_snapshot_is_independent(self):
        """Test that mutating a snapshot does not touch the session."""
        session = ExecutionSession("s1")
        session.tasks["offices"] = TaskState("offices", total_records=3)

        copy = session.snapshot()
        copy.tasks["offices"].records_processed = 3
        copy.completed_entities.add("offices")

        assert session.tasks["offices"].records_processed == 0
        assert session.completed_entities == set()

    def test_to_dict(self):
        session = ExecutionSession("s1", completed_entities={"b", "a"})
        data = session.to_dict()

        assert data["session_id"] == "s1"
        assert data["completed_entities"] == ["a", "b"]


class TestCheckpointData:
    """Tests for the checkpoint payload model."""

    def test_total_and_percentage(self):
        data = CheckpointData(
            session_id="s1",
            entity_type="offices",
            batch_number=2,
            records_processed=6,
            records_remaining=4,
            last_processed_record_id="6",
            processing_state=ProcessingState(batch_size=3),
        )

        assert data.total_records == 10
        assert data.progress_percentage == 60.0

    def test_empty_entity_is_complete(self):
        data = CheckpointData(
            session_id="s1",
            entity_type="offices",
            batch_number=0,
            records_processed=0,
            records_remaining=0,
            processing_state=ProcessingState(batch_size=3),
        )
        assert data.progress_percentage == 100.0

    def test_negative_counts_rejected(self):
        """Test that pydantic rejects negative positions."""
        with pytest.raises(ValidationError):
            CheckpointData(
                session_id="s1",
                entity_type="offices",
                batch_number=-1,
                records_processed=0,
                records_remaining=0,
                processing_state=ProcessingState(batch_size=3),
            )

    def test_payload_is_frozen(self):
        state = ProcessingState(batch_size=3)
        with pytest.raises(ValidationError):
            state.batch_size = 5  # type: ignore[misc]


class TestProgressSnapshot:
    def test_dict_round_trip(self):
        """Test that from_dict restores a snapshot produced by to_dict."""
        snapshot = ProgressSnapshot(
            session_id="s1",
            entity_type="offices",
            status=ProgressStatus.RUNNING,
            records_processed=3,
            records_remaining=7,
            percentage_complete=30.0,
            eta_ms=1200.0,
            batch_number=1,
            timestamp=datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC),
        )

        restored = ProgressSnapshot.from_dict(snapshot.to_dict())

        assert restored == snapshot
        assert restored.total_records == 10


class TestAlert:
    def test_create_assigns_id_and_timestamp(self):
        alert = Alert.create(
            "s1",
            AlertSeverity.WARNING,
            AlertType.LOW_THROUGHPUT,
            "slow",
            entity_type="offices",
        )

        assert alert.alert_id
        assert alert.timestamp.tzinfo is not None
        assert alert.details == {}
        assert not alert.resolved

    def test_dict_round_trip(self):
        alert = Alert.create(
            "s1",
            AlertSeverity.ERROR,
            AlertType.TASK_FAILED,
            "boom",
            details={"error_code": "X"},
        )

        assert Alert.from_dict(alert.to_dict()) == alert
