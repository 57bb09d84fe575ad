"""
bulkmigrate - Resumable, dependency-ordered batch migration between relational stores.

This library provides:
- Migration Executor running tasks in dependency waves with bounded concurrency
- Checkpoint Store with checksum verification and a redundant file backup
- Progress Tracker with ordered updates, performance metrics and alerts
- SQLAlchemy and in-memory source/destination stores
- SQL and in-memory persistence for checkpoints, progress snapshots and alerts
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("bulkmigrate")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from bulkmigrate.batching import BatchSizer, process_memory_mb
from bulkmigrate.checkpoint_store import (
    CheckpointCreateResult,
    CheckpointLoadResult,
    CheckpointRecoveryInfo,
    CheckpointStore,
    CheckpointSummary,
    StorageStatistics,
)
from bulkmigrate.config import (
    AlertThresholds,
    BatchingMode,
    BatchSizingConfig,
    CheckpointStoreConfig,
    ExecutorConfig,
    ProgressConfig,
)
from bulkmigrate.exceptions import (
    BATCH_RETRY_CONFIG,
    RECORD_RETRY_CONFIG,
    BatchExecutionError,
    BatchTimeoutError,
    CheckpointCorruptedError,
    CheckpointError,
    CheckpointNotFoundError,
    CheckpointPersistenceError,
    CheckpointValidationError,
    DependencyCycleError,
    DestinationUnavailableError,
    ErrorClassification,
    ErrorHandler,
    ErrorRecoverability,
    ErrorSeverity,
    FatalMigrationError,
    InvalidStateTransitionError,
    MigrationError,
    RecordMigrationError,
    RetryConfig,
    SourceUnavailableError,
    TaskValidationError,
    classify_exception,
)
from bulkmigrate.executor import MigrationExecutor, Transform
from bulkmigrate.graph import DependencyGraph, ExecutionPlan, build_execution_plan
from bulkmigrate.models import (
    Alert,
    AlertSeverity,
    AlertType,
    BatchError,
    BatchResult,
    BatchStatus,
    CancelResult,
    Checkpoint,
    CheckpointData,
    CheckpointStatus,
    ExecutionSession,
    FailureAnalysis,
    MigrationExecutionResult,
    MigrationTask,
    PauseResult,
    PerformanceMetrics,
    PerformanceSummary,
    Priority,
    ProcessingState,
    ProgressReport,
    ProgressSnapshot,
    ProgressStatus,
    ProgressUpdate,
    RecordId,
    RecoveryInfo,
    ResultStatus,
    ResumeResult,
    SessionStatus,
    TaskState,
    TaskStatus,
    UpdateType,
)
from bulkmigrate.progress import ProgressTracker
from bulkmigrate.repositories import (
    CheckpointRecord,
    CheckpointRepository,
    FileCheckpointBackup,
    InMemoryCheckpointRepository,
    InMemoryProgressRepository,
    ProgressRepository,
    SQLCheckpointRepository,
    SQLProgressRepository,
)
from bulkmigrate.schema import create_schema
from bulkmigrate.stores import (
    DestinationWriter,
    InMemoryDestination,
    InMemorySource,
    RecordFailure,
    Row,
    SourceReader,
    SQLDestinationWriter,
    SQLSourceReader,
    WriteOutcome,
)

__all__ = [
    "__version__",
    # Executor
    "MigrationExecutor",
    "Transform",
    "DependencyGraph",
    "ExecutionPlan",
    "build_execution_plan",
    "BatchSizer",
    "process_memory_mb",
    # Checkpoints
    "CheckpointStore",
    "CheckpointCreateResult",
    "CheckpointLoadResult",
    "CheckpointSummary",
    "CheckpointRecoveryInfo",
    "StorageStatistics",
    # Progress
    "ProgressTracker",
    # Configuration
    "ExecutorConfig",
    "BatchSizingConfig",
    "BatchingMode",
    "AlertThresholds",
    "CheckpointStoreConfig",
    "ProgressConfig",
    # Models
    "RecordId",
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
    "ProcessingState",
    "CheckpointData",
    "Checkpoint",
    "ProgressSnapshot",
    "Alert",
    "ProgressUpdate",
    "PerformanceMetrics",
    "ProgressReport",
    # Exceptions
    "MigrationError",
    "TaskValidationError",
    "DependencyCycleError",
    "InvalidStateTransitionError",
    "RecordMigrationError",
    "BatchExecutionError",
    "SourceUnavailableError",
    "DestinationUnavailableError",
    "BatchTimeoutError",
    "CheckpointError",
    "CheckpointValidationError",
    "CheckpointNotFoundError",
    "CheckpointCorruptedError",
    "CheckpointPersistenceError",
    "FatalMigrationError",
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "ErrorHandler",
    "RetryConfig",
    "RECORD_RETRY_CONFIG",
    "BATCH_RETRY_CONFIG",
    "classify_exception",
    # Stores
    "SourceReader",
    "DestinationWriter",
    "Row",
    "RecordFailure",
    "WriteOutcome",
    "SQLSourceReader",
    "SQLDestinationWriter",
    "InMemorySource",
    "InMemoryDestination",
    # Repositories
    "CheckpointRecord",
    "CheckpointRepository",
    "SQLCheckpointRepository",
    "InMemoryCheckpointRepository",
    "FileCheckpointBackup",
    "ProgressRepository",
    "SQLProgressRepository",
    "InMemoryProgressRepository",
    "create_schema",
]
