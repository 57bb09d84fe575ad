"""
Shared pytest fixtures for the bulkmigrate tests.

This module provides:
- Sample data fixtures (session_id, office_rows, doctor_rows)
- In-memory store fixtures (source, destination)
- Checkpoint fixtures (checkpoint_repo, checkpoint_backup, checkpoint_store)
- Progress fixtures (progress_repo, progress_tracker)
- Executor fixtures (fast_retry, executor_config, make_executor)
- A checkpoint payload factory (make_checkpoint_data)
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest

from bulkmigrate.checkpoint_store import CheckpointStore
from bulkmigrate.config import BatchSizingConfig, CheckpointStoreConfig, ExecutorConfig
from bulkmigrate.exceptions import RetryConfig
from bulkmigrate.executor import MigrationExecutor
from bulkmigrate.models import CheckpointData, ProcessingState
from bulkmigrate.progress import ProgressTracker
from bulkmigrate.repositories.checkpoint import InMemoryCheckpointRepository
from bulkmigrate.repositories.file_backup import FileCheckpointBackup
from bulkmigrate.repositories.progress import InMemoryProgressRepository
from bulkmigrate.stores.in_memory import InMemoryDestination, InMemorySource

# Process memory reported to executors under test; well below every alert threshold.
STEADY_MEMORY_MB = 100.0


# ============================================================================
# Sample data
# ============================================================================


@pytest.fixture
def session_id() -> str:
    """Provide a fresh session id."""
    return f"session-{uuid4()}"


@pytest.fixture
def office_rows() -> dict[int, dict[str, Any]]:
    """Ten office rows keyed by id 1..10."""
    return {i: {"id": i, "name": f"Office {i}"} for i in range(1, 11)}


@pytest.fixture
def doctor_rows() -> dict[int, dict[str, Any]]:
    """Six doctor rows keyed by id 101..106, each referencing an office."""
    return {i: {"id": i, "name": f"Dr. {i}", "office_id": i - 100} for i in range(101, 107)}


# ============================================================================
# Stores
# ============================================================================


@pytest.fixture
def source(
    office_rows: dict[int, dict[str, Any]],
    doctor_rows: dict[int, dict[str, Any]],
) -> InMemorySource:
    """In-memory source holding offices and doctors."""
    return InMemorySource({"offices": office_rows, "doctors": doctor_rows})


@pytest.fixture
def destination() -> InMemoryDestination:
    """In-memory destination with empty offices and doctors tables."""
    return InMemoryDestination(["offices", "doctors"])


# ============================================================================
# Checkpoints
# ============================================================================


@pytest.fixture
def checkpoint_repo() -> InMemoryCheckpointRepository:
    """Create a fresh checkpoint repository for each test."""
    return InMemoryCheckpointRepository(enable_tracing=False)


@pytest.fixture
def checkpoint_backup(tmp_path: Path) -> FileCheckpointBackup:
    """File backup rooted in a temporary directory."""
    return FileCheckpointBackup(tmp_path / "checkpoints")


@pytest.fixture
def checkpoint_store(
    checkpoint_repo: InMemoryCheckpointRepository,
    checkpoint_backup: FileCheckpointBackup,
) -> CheckpointStore:
    """Checkpoint store writing to the in-memory repository and the file backup."""
    return CheckpointStore(
        checkpoint_repo,
        checkpoint_backup,
        CheckpointStoreConfig(),
        enable_tracing=False,
    )


@pytest.fixture
def make_checkpoint_data(session_id: str) -> Callable[..., CheckpointData]:
    """
    Factory for checkpoint payloads over ids 1..total.

    The last processed id is the id at position ``records_processed``.
    """

    def _make(
        batch_number: int,
        records_processed: int,
        total: int = 10,
        *,
        entity_type: str = "offices",
        session: str | None = None,
        batch_size: int = 3,
    ) -> CheckpointData:
        return CheckpointData(
            session_id=session or session_id,
            entity_type=entity_type,
            batch_number=batch_number,
            records_processed=records_processed,
            records_remaining=total - records_processed,
            last_processed_record_id=str(records_processed) if records_processed else None,
            processing_state=ProcessingState(batch_size=batch_size),
        )

    return _make


# ============================================================================
# Progress
# ============================================================================


@pytest.fixture
def progress_repo() -> InMemoryProgressRepository:
    return InMemoryProgressRepository()


@pytest.fixture
def progress_tracker(
    session_id: str,
    progress_repo: InMemoryProgressRepository,
) -> ProgressTracker:
    """Tracker for the test session, mirroring to the in-memory repository."""
    return ProgressTracker(session_id, progress_repo, enable_tracing=False)


# ============================================================================
# Executor
# ============================================================================


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Retry policy with no backoff delay."""
    return RetryConfig(max_attempts=3, base_delay_ms=0.0, max_delay_ms=0.0, jitter_factor=0.0)


@pytest.fixture
def executor_config(fast_retry: RetryConfig) -> ExecutorConfig:
    """Batches of 3, a checkpoint after every batch, no retry delays."""
    return ExecutorConfig(
        sizing=BatchSizingConfig(batch_size=3, min_batch_size=1),
        checkpoint_interval=1,
        record_retry=fast_retry,
        batch_retry=fast_retry,
    )


@pytest.fixture
def make_executor(
    source: InMemorySource,
    destination: InMemoryDestination,
    checkpoint_store: CheckpointStore,
    executor_config: ExecutorConfig,
    session_id: str,
) -> Callable[..., MigrationExecutor]:
    """
    Factory for executors sharing the test's stores and session.

    Keyword arguments override the constructor defaults, so a test can build
    a second executor over the same checkpoint store to simulate a restart.
    """

    def _make(**overrides: Any) -> MigrationExecutor:
        kwargs: dict[str, Any] = {
            "source": source,
            "destination": destination,
            "checkpoint_store": checkpoint_store,
            "config": executor_config,
            "session_id": session_id,
            "enable_tracing": False,
            "memory_sampler": lambda: STEADY_MEMORY_MB,
        }
        kwargs.update(overrides)
        return MigrationExecutor(**kwargs)

    return _make
