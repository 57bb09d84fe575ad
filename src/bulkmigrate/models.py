"""
Data models for the bulk migration engine.

Models in this module:

Enums:
    - Priority: Task priority, used to order tasks inside a wave
    - TaskStatus: Per-task state machine
    - SessionStatus: Execution session status
    - ResultStatus: Aggregate status of an execution result
    - BatchStatus: Outcome of a single batch
    - CheckpointStatus: Lifecycle of a persisted checkpoint
    - ProgressStatus: Status reported in progress snapshots
    - AlertSeverity / AlertType: Alert classification
    - UpdateType: Kind of progress update delivered to subscribers

Tasks and execution:
    - MigrationTask: Immutable unit of work for one entity type
    - TaskState: Mutable state of a task inside a session
    - ExecutionSession: A logical run of the executor
    - BatchError / BatchResult: Outcome of one batch
    - FailureAnalysis / RecoveryInfo / PerformanceSummary
    - MigrationExecutionResult: Aggregate result of execute_migration_tasks
    - PauseResult / ResumeResult / CancelResult

Checkpoints:
    - ProcessingState / CheckpointData: Serialized checkpoint payload (pydantic)
    - Checkpoint: A persisted, verified checkpoint

Progress:
    - ProgressSnapshot, Alert, ProgressUpdate
    - ThroughputStats, MemoryStats, TimingStats, EfficiencyScores,
      PerformanceMetrics, ProgressReport
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from bulkmigrate.exceptions import InvalidStateTransitionError

RecordId = str | int
"""Opaque record identifier as assigned by the source system."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _parse_dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# =============================================================================
# Enums
# =============================================================================


class Priority(Enum):
    """
    Task priority.

    Within a dependency wave, tasks are started in descending priority
    order and then in submission order.
    """

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Numeric rank; higher runs first."""
        return {
            Priority.CRITICAL: 3,
            Priority.HIGH: 2,
            Priority.MEDIUM: 1,
            Priority.LOW: 0,
        }[self]


class TaskStatus(Enum):
    """
    Per-task lifecycle states.

    State machine transitions:
        PENDING -> RUNNING -> COMPLETED
                     |  ^
                     v  |
                    PAUSED
        RUNNING -> FAILED | CANCELLED
        PAUSED  -> CANCELLED

    COMPLETED is terminal. FAILED and CANCELLED are terminal for the
    submission that produced them; a later submission starts a fresh
    task state that may resume from a checkpoint.
    """

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)

    def can_transition_to(self, target: TaskStatus) -> bool:
        """
        Check if transition to target status is valid.

        Args:
            target: The target status.

        Returns:
            True if the transition is valid.
        """
        if self.is_terminal:
            return False

        valid_transitions: dict[TaskStatus, tuple[TaskStatus, ...]] = {
            TaskStatus.PENDING: (TaskStatus.RUNNING,),
            TaskStatus.RUNNING: (
                TaskStatus.COMPLETED,
                TaskStatus.PAUSED,
                TaskStatus.FAILED,
                TaskStatus.CANCELLED,
            ),
            TaskStatus.PAUSED: (TaskStatus.RUNNING, TaskStatus.CANCELLED),
        }
        return target in valid_transitions.get(self, ())


class SessionStatus(Enum):
    """Execution session status."""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ResultStatus(Enum):
    """
    Aggregate status of one execute_migration_tasks call.

    Attributes:
        COMPLETED: Every task completed.
        PARTIAL: Some forward progress was made but not every task completed.
        FAILED: No task made forward progress.
        PAUSED: Stopped at a batch boundary by pause_execution.
        CANCELLED: Stopped at a batch boundary by cancel_execution.
    """

    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class BatchStatus(Enum):
    """Outcome of a single batch."""

    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class CheckpointStatus(Enum):
    """
    Lifecycle of a persisted checkpoint.

    Only the newest ACTIVE checkpoint of a (session, entity) pair is
    authoritative. CORRUPTED checkpoints are never used for resume.
    """

    ACTIVE = "active"
    SUPERSEDED = "superseded"
    CORRUPTED = "corrupted"


class ProgressStatus(Enum):
    """Status reported in progress snapshots."""

    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ProgressStatus.COMPLETED,
            ProgressStatus.FAILED,
            ProgressStatus.CANCELLED,
        )


class AlertSeverity(Enum):
    """Alert severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class AlertType(Enum):
    """Kinds of alerts raised during execution."""

    LOW_THROUGHPUT = "low_throughput"
    HIGH_RETRY_RATE = "high_retry_rate"
    MEMORY_PRESSURE = "memory_pressure"
    BATCH_TIMEOUT = "batch_timeout"
    CHECKPOINT_CORRUPTED = "checkpoint_corrupted"
    TASK_FAILED = "task_failed"


class UpdateType(Enum):
    """
    Kinds of progress updates delivered to subscribers.

    PROGRESS_RESET starts a new tracking period at a lower position than the
    previous one, e.g. after resuming from an earlier fallback checkpoint.
    records_processed is non-decreasing between resets.
    """

    BATCH_STARTED = "batch_started"
    BATCH_COMPLETED = "batch_completed"
    ENTITY_COMPLETED = "entity_completed"
    PROGRESS = "progress"
    PROGRESS_RESET = "progress_reset"
    ALERT = "alert"


# =============================================================================
# Tasks and execution
# =============================================================================


@dataclass(frozen=True)
class MigrationTask:
    """
    A unit of migration work for one entity type.

    Immutable once submitted. ``record_ids`` is normalized to a tuple and
    ``dependencies`` to a frozenset. ``source_table`` and
    ``destination_table`` default to the entity type.

    Attributes:
        entity_type: Name of the entity being migrated (e.g. "offices").
        record_ids: Ordered identifiers of the records to migrate.
        priority: Ordering hint inside a dependency wave.
        dependencies: Entity types that must complete before this task starts.
        estimated_duration_ms: Caller's estimate, used for reporting only.
        source_table: Table to read from.
        destination_table: Table to upsert into.
        checkpoint_id: Resume from this checkpoint instead of the beginning.

    Example:
        >>> task = MigrationTask(
        ...     entity_type="doctors",
        ...     record_ids=[101, 102, 103],
        ...     priority=Priority.HIGH,
        ...     dependencies={"offices"},
        ... )
    """

    entity_type: str
    record_ids: tuple[RecordId, ...]
    priority: Priority = Priority.MEDIUM
    dependencies: frozenset[str] = frozenset()
    estimated_duration_ms: int = 0
    source_table: str | None = None
    destination_table: str | None = None
    checkpoint_id: str | None = None

    def __post_init__(self) -> None:
        if not self.entity_type:
            raise ValueError("entity_type must be a non-empty string")
        if self.estimated_duration_ms < 0:
            raise ValueError(
                f"estimated_duration_ms must be >= 0, got {self.estimated_duration_ms}"
            )
        object.__setattr__(self, "record_ids", tuple(self.record_ids))
        object.__setattr__(self, "dependencies", frozenset(self.dependencies))
        if self.source_table is None:
            object.__setattr__(self, "source_table", self.entity_type)
        if self.destination_table is None:
            object.__setattr__(self, "destination_table", self.entity_type)

    @property
    def total_records(self) -> int:
        return len(self.record_ids)


@dataclass
class TaskState:
    """
    Mutable state of one task inside an execution session.

    ``records_processed`` is the position within the task's id list: every
    id before it has either been committed or recorded as failed.

    Attributes:
        entity_type: Entity type of the task.
        total_records: Number of ids assigned to the task.
        status: Current state machine status.
        records_processed: Position within the id list.
        records_succeeded: Records written to the destination.
        records_failed: Records recorded as failed.
        batches_completed: Batches committed, equal to the checkpoint batch number.
        retry_count: Retries spent on this task so far.
        failed_record_ids: Ids recorded as failed, in order.
        last_checkpoint_id: Newest checkpoint written for this task.
        error: Last fatal error message, if the task failed.
    """

    entity_type: str
    total_records: int
    status: TaskStatus = TaskStatus.PENDING
    records_processed: int = 0
    records_succeeded: int = 0
    records_failed: int = 0
    batches_completed: int = 0
    retry_count: int = 0
    failed_record_ids: list[str] = field(default_factory=list)
    last_checkpoint_id: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def records_remaining(self) -> int:
        return self.total_records - self.records_processed

    def transition_to(self, target: TaskStatus) -> None:
        """
        Move the task to ``target``.

        Raises:
            InvalidStateTransitionError: If the transition is not allowed.
        """
        if not self.status.can_transition_to(target):
            raise InvalidStateTransitionError(self.entity_type, self.status, target)
        self.status = target
        if target == TaskStatus.RUNNING and self.started_at is None:
            self.started_at = _utcnow()
        if target.is_terminal:
            self.completed_at = _utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "status": self.status.value,
            "total_records": self.total_records,
            "records_processed": self.records_processed,
            "records_succeeded": self.records_succeeded,
            "records_failed": self.records_failed,
            "records_remaining": self.records_remaining,
            "batches_completed": self.batches_completed,
            "retry_count": self.retry_count,
            "last_checkpoint_id": self.last_checkpoint_id,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class ExecutionSession:
    """
    A logical run of the executor, spanning one or more submissions.

    Attributes:
        session_id: Unique session identifier.
        created_at: When the session was created.
        status: Session status, changed only by the executor.
        tasks: Task states by entity type.
        completed_entities: Entity types completed in this session, including
            ones declared completed when the executor was constructed.
    """

    session_id: str
    created_at: datetime = field(default_factory=_utcnow)
    status: SessionStatus = SessionStatus.RUNNING
    tasks: dict[str, TaskState] = field(default_factory=dict)
    completed_entities: set[str] = field(default_factory=set)

    def snapshot(self) -> ExecutionSession:
        """Return an independent copy safe to hand to readers."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "tasks": {name: state.to_dict() for name, state in self.tasks.items()},
            "completed_entities": sorted(self.completed_entities),
        }


@dataclass(frozen=True)
class BatchError:
    """A single record failure inside a batch."""

    record_id: str
    error_type: str
    message: str
    retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "error_type": self.error_type,
            "message": self.message,
            "retryable": self.retryable,
        }


@dataclass(frozen=True)
class BatchResult:
    """
    Outcome of one batch.

    Attributes:
        batch_number: One-based batch number within the entity.
        entity_type: Entity the batch belongs to.
        record_ids: Ids assigned to the batch.
        successful_records: Records written to the destination.
        failed_records: Records recorded as failed.
        errors: One entry per failed record.
        status: SUCCESS, PARTIAL_SUCCESS, FAILED or TIMED_OUT.
        attempts: Batch-level attempts used (1 when no retry was needed).
        duration_ms: Wall-clock duration of the batch.
        checkpoint_id: Checkpoint written right after this batch, if any.
    """

    batch_number: int
    entity_type: str
    record_ids: tuple[RecordId, ...]
    successful_records: int
    failed_records: int
    errors: tuple[BatchError, ...] = ()
    status: BatchStatus = BatchStatus.SUCCESS
    attempts: int = 1
    duration_ms: float = 0.0
    checkpoint_id: str | None = None
    started_at: datetime = field(default_factory=_utcnow)

    @property
    def size(self) -> int:
        return len(self.record_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_number": self.batch_number,
            "entity_type": self.entity_type,
            "record_ids": [str(r) for r in self.record_ids],
            "successful_records": self.successful_records,
            "failed_records": self.failed_records,
            "errors": [e.to_dict() for e in self.errors],
            "status": self.status.value,
            "attempts": self.attempts,
            "duration_ms": self.duration_ms,
            "checkpoint_id": self.checkpoint_id,
            "started_at": self.started_at.isoformat(),
        }


@dataclass(frozen=True)
class FailureAnalysis:
    """
    Categorized description of why a task did not complete.

    Attributes:
        entity_type: The failed entity.
        error_code: Code from the error classification.
        category: Category from the error classification.
        message: The error message.
        suggested_action: Operator guidance.
        failed_record_count: Records recorded as failed before the task stopped.
        error_counts: Record failures grouped by error type.
    """

    entity_type: str
    error_code: str
    category: str
    message: str
    suggested_action: str
    failed_record_count: int = 0
    error_counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "error_code": self.error_code,
            "category": self.category,
            "message": self.message,
            "suggested_action": self.suggested_action,
            "failed_record_count": self.failed_record_count,
            "error_counts": dict(self.error_counts),
        }


@dataclass(frozen=True)
class RecoveryInfo:
    """
    What an operator needs to continue an incomplete execution.

    Attributes:
        is_recoverable: True when a resume can make further progress.
        last_checkpoint_id: Newest checkpoint written during the execution.
        resume_from_batch: Batch number of that checkpoint.
        entity_checkpoints: Newest checkpoint id per incomplete entity.
        failure_analyses: One entry per failed task.
        recommended_actions: Human-readable next steps.
    """

    is_recoverable: bool
    last_checkpoint_id: str | None = None
    resume_from_batch: int | None = None
    entity_checkpoints: dict[str, str] = field(default_factory=dict)
    failure_analyses: tuple[FailureAnalysis, ...] = ()
    recommended_actions: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_recoverable": self.is_recoverable,
            "last_checkpoint_id": self.last_checkpoint_id,
            "resume_from_batch": self.resume_from_batch,
            "entity_checkpoints": dict(self.entity_checkpoints),
            "failure_analyses": [f.to_dict() for f in self.failure_analyses],
            "recommended_actions": list(self.recommended_actions),
        }


@dataclass(frozen=True)
class PerformanceSummary:
    """Timing and resource summary of one execution."""

    started_at: datetime
    completed_at: datetime
    duration_ms: float
    average_throughput: float
    peak_memory_mb: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_ms": self.duration_ms,
            "average_throughput": self.average_throughput,
            "peak_memory_mb": self.peak_memory_mb,
        }


@dataclass(frozen=True)
class MigrationExecutionResult:
    """
    Aggregate result of one execute_migration_tasks call.

    Attributes:
        execution_id: Identifier of this call.
        session_id: Session the call ran in.
        overall_status: Aggregate status.
        entities_processed: Entities that completed.
        entities_failed: Entities that failed.
        entities_blocked: Entities not started because a dependency did not complete.
        total_records_processed: Records written to the destination.
        total_records_failed: Records recorded as failed.
        batch_results: Every batch executed, in completion order.
        checkpoints: Checkpoint ids written during the call.
        recovery: Recovery information, None when every task completed.
        performance: Timing and resource summary.
    """

    execution_id: str
    session_id: str
    overall_status: ResultStatus
    entities_processed: tuple[str, ...]
    entities_failed: tuple[str, ...]
    entities_blocked: tuple[str, ...]
    total_records_processed: int
    total_records_failed: int
    batch_results: tuple[BatchResult, ...]
    checkpoints: tuple[str, ...]
    recovery: RecoveryInfo | None
    performance: PerformanceSummary

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "session_id": self.session_id,
            "overall_status": self.overall_status.value,
            "entities_processed": list(self.entities_processed),
            "entities_failed": list(self.entities_failed),
            "entities_blocked": list(self.entities_blocked),
            "total_records_processed": self.total_records_processed,
            "total_records_failed": self.total_records_failed,
            "batch_results": [b.to_dict() for b in self.batch_results],
            "checkpoints": list(self.checkpoints),
            "recovery": self.recovery.to_dict() if self.recovery else None,
            "performance": self.performance.to_dict(),
        }


@dataclass(frozen=True)
class PauseResult:
    """
    Result of pause_execution.

    Attributes:
        success: False when nothing was running.
        checkpoint_id: Newest checkpoint written by the pause.
        checkpoint_ids: Checkpoint written by each paused entity.
        message: Human-readable summary.
    """

    success: bool
    checkpoint_id: str | None = None
    checkpoint_ids: dict[str, str] = field(default_factory=dict)
    message: str = ""


@dataclass(frozen=True)
class ResumeResult:
    """
    Result of resume_execution.

    Attributes:
        success: True when a resume position was staged.
        resumed_from_batch: Batch number the entity continues after.
        checkpoint_id: Checkpoint actually used, which may be an earlier
            fallback rather than the requested one.
        entity_type: Entity the checkpoint belongs to.
        warnings: Problems encountered while validating the checkpoint.
    """

    success: bool
    resumed_from_batch: int = 0
    checkpoint_id: str | None = None
    entity_type: str | None = None
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class CancelResult:
    """Result of cancel_execution."""

    success: bool
    cancelled_entities: tuple[str, ...] = ()
    message: str = ""


# =============================================================================
# Checkpoints
# =============================================================================


class ProcessingState(BaseModel):
    """
    Executor state carried inside a checkpoint.

    Attributes:
        batch_size: Batch size in effect when the checkpoint was taken.
        retry_count: Retries spent on the entity so far.
        error_count: Records recorded as failed so far.
        failed_record_ids: Ids recorded as failed, in order.
        throughput_samples: Recent records-per-second samples.
        memory_samples_mb: Recent process memory samples.
        custom: Free-form extension data.
    """

    model_config = ConfigDict(frozen=True)

    batch_size: int = Field(ge=1)
    retry_count: int = Field(default=0, ge=0)
    error_count: int = Field(default=0, ge=0)
    failed_record_ids: tuple[str, ...] = ()
    throughput_samples: tuple[float, ...] = ()
    memory_samples_mb: tuple[float, ...] = ()
    custom: dict[str, Any] = Field(default_factory=dict)


class CheckpointData(BaseModel):
    """
    Checkpoint payload as serialized, checksummed and persisted.

    Invariant: ``records_processed + records_remaining`` equals the total
    number of records assigned to the entity, and
    ``last_processed_record_id`` is the id at position
    ``records_processed - 1`` of the task's id list.
    """

    model_config = ConfigDict(frozen=True)

    session_id: str
    entity_type: str
    batch_number: int = Field(ge=0)
    records_processed: int = Field(ge=0)
    records_remaining: int = Field(ge=0)
    last_processed_record_id: str | None = None
    processing_state: ProcessingState

    @property
    def total_records(self) -> int:
        return self.records_processed + self.records_remaining

    @property
    def progress_percentage(self) -> float:
        total = self.total_records
        if total == 0:
            return 100.0
        return self.records_processed / total * 100.0


@dataclass(frozen=True)
class Checkpoint:
    """
    A persisted checkpoint whose checksum has been verified.

    Attributes:
        checkpoint_id: Unique checkpoint identifier.
        data: The checkpoint payload.
        status: ACTIVE, SUPERSEDED or CORRUPTED.
        checksum: SHA-256 of the canonical serialized payload.
        created_at: When the checkpoint was created.
        compressed: Whether the stored payload is compressed.
        size_bytes: Size of the stored payload.
    """

    checkpoint_id: str
    data: CheckpointData
    status: CheckpointStatus
    checksum: str
    created_at: datetime
    compressed: bool = False
    size_bytes: int = 0

    @property
    def session_id(self) -> str:
        return self.data.session_id

    @property
    def entity_type(self) -> str:
        return self.data.entity_type

    @property
    def batch_number(self) -> int:
        return self.data.batch_number

    @property
    def records_processed(self) -> int:
        return self.data.records_processed

    @property
    def records_remaining(self) -> int:
        return self.data.records_remaining

    @property
    def last_processed_record_id(self) -> str | None:
        return self.data.last_processed_record_id


# =============================================================================
# Progress
# =============================================================================


@dataclass(frozen=True)
class ProgressSnapshot:
    """
    Point-in-time progress of one entity.

    Derived data, recomputed at every batch boundary; never used for resume.
    """

    session_id: str
    entity_type: str
    status: ProgressStatus
    records_processed: int
    records_remaining: int
    records_failed: int = 0
    percentage_complete: float = 0.0
    throughput_rps: float = 0.0
    memory_mb: float = 0.0
    elapsed_ms: float = 0.0
    eta_ms: float | None = None
    batch_number: int = 0
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def total_records(self) -> int:
        return self.records_processed + self.records_remaining

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "entity_type": self.entity_type,
            "status": self.status.value,
            "records_processed": self.records_processed,
            "records_remaining": self.records_remaining,
            "records_failed": self.records_failed,
            "percentage_complete": self.percentage_complete,
            "throughput_rps": self.throughput_rps,
            "memory_mb": self.memory_mb,
            "elapsed_ms": self.elapsed_ms,
            "eta_ms": self.eta_ms,
            "batch_number": self.batch_number,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProgressSnapshot:
        return cls(
            session_id=data["session_id"],
            entity_type=data["entity_type"],
            status=ProgressStatus(data["status"]),
            records_processed=data["records_processed"],
            records_remaining=data["records_remaining"],
            records_failed=data.get("records_failed", 0),
            percentage_complete=data.get("percentage_complete", 0.0),
            throughput_rps=data.get("throughput_rps", 0.0),
            memory_mb=data.get("memory_mb", 0.0),
            elapsed_ms=data.get("elapsed_ms", 0.0),
            eta_ms=data.get("eta_ms"),
            batch_number=data.get("batch_number", 0),
            timestamp=_parse_dt(data["timestamp"]) or _utcnow(),
        )


@dataclass(frozen=True)
class Alert:
    """
    A threshold or failure alert.

    Alerts are append-only; resolving one produces a resolved copy.
    """

    alert_id: str
    session_id: str
    severity: AlertSeverity
    alert_type: AlertType
    message: str
    entity_type: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)
    resolved: bool = False
    resolved_at: datetime | None = None

    @classmethod
    def create(
        cls,
        session_id: str,
        severity: AlertSeverity,
        alert_type: AlertType,
        message: str,
        *,
        entity_type: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> Alert:
        """Create a new alert with a generated id and the current time."""
        return cls(
            alert_id=str(uuid4()),
            session_id=session_id,
            severity=severity,
            alert_type=alert_type,
            message=message,
            entity_type=entity_type,
            details=details or {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "session_id": self.session_id,
            "severity": self.severity.value,
            "alert_type": self.alert_type.value,
            "message": self.message,
            "entity_type": self.entity_type,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "resolved": self.resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Alert:
        return cls(
            alert_id=data["alert_id"],
            session_id=data["session_id"],
            severity=AlertSeverity(data["severity"]),
            alert_type=AlertType(data["alert_type"]),
            message=data["message"],
            entity_type=data.get("entity_type"),
            details=data.get("details") or {},
            timestamp=_parse_dt(data["timestamp"]) or _utcnow(),
            resolved=bool(data.get("resolved", False)),
            resolved_at=_parse_dt(data.get("resolved_at")),
        )


@dataclass(frozen=True)
class ProgressUpdate:
    """
    One event delivered to progress subscribers.

    ``sequence`` strictly increases per entity, so subscribers can verify
    that updates for one entity arrive in order.
    """

    update_id: str
    session_id: str
    sequence: int
    update_type: UpdateType
    entity_type: str | None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ThroughputStats:
    current: float = 0.0
    average: float = 0.0
    peak: float = 0.0
    minimum: float = 0.0


@dataclass(frozen=True)
class MemoryStats:
    current_mb: float = 0.0
    average_mb: float = 0.0
    peak_mb: float = 0.0


@dataclass(frozen=True)
class TimingStats:
    average_batch_ms: float = 0.0
    fastest_batch_ms: float = 0.0
    slowest_batch_ms: float = 0.0
    variance: float = 0.0


@dataclass(frozen=True)
class EfficiencyScores:
    """Efficiency ratios in [0, 1] and an overall score in [0, 100]."""

    throughput_efficiency: float = 0.0
    memory_efficiency: float = 0.0
    overall_score: float = 0.0


@dataclass(frozen=True)
class PerformanceMetrics:
    """Performance metrics over a trailing window of batch samples."""

    entity_type: str
    sample_count: int
    throughput: ThroughputStats
    memory: MemoryStats
    timing: TimingStats
    efficiency: EfficiencyScores

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "sample_count": self.sample_count,
            "throughput": vars(self.throughput).copy(),
            "memory": vars(self.memory).copy(),
            "timing": vars(self.timing).copy(),
            "efficiency": vars(self.efficiency).copy(),
        }


@dataclass(frozen=True)
class ProgressReport:
    """Summary of all tracked entities, active alerts and recommendations."""

    session_id: str
    generated_at: datetime
    entities: tuple[ProgressSnapshot, ...]
    total_records: int
    records_processed: int
    records_failed: int
    overall_percentage: float
    active_alerts: tuple[Alert, ...]
    recommendations: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "generated_at": self.generated_at.isoformat(),
            "entities": [s.to_dict() for s in self.entities],
            "total_records": self.total_records,
            "records_processed": self.records_processed,
            "records_failed": self.records_failed,
            "overall_percentage": self.overall_percentage,
            "active_alerts": [a.to_dict() for a in self.active_alerts],
            "recommendations": list(self.recommendations),
        }


__all__ = [
    "RecordId",
    # Enums
    "Priority",
    "TaskStatus",
    "SessionStatus",
    "ResultStatus",
    "BatchStatus",
    "CheckpointStatus",
    "ProgressStatus",
    "AlertSeverity",
    "AlertType",
    "UpdateType",
    # Tasks and execution
    "MigrationTask",
    "TaskState",
    "ExecutionSession",
    "BatchError",
    "BatchResult",
    "FailureAnalysis",
    "RecoveryInfo",
    "PerformanceSummary",
    "MigrationExecutionResult",
    "PauseResult",
    "ResumeResult",
    "CancelResult",
    # Checkpoints
    "ProcessingState",
    "CheckpointData",
    "Checkpoint",
    # Progress
    "ProgressSnapshot",
    "Alert",
    "ProgressUpdate",
    "ThroughputStats",
    "MemoryStats",
    "TimingStats",
    "EfficiencyScores",
    "PerformanceMetrics",
    "ProgressReport",
]
