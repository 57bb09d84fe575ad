"""
Exceptions and error classification for the bulk migration engine.

Exception Hierarchy:
    MigrationError (base)
    +-- TaskValidationError
    |   +-- DependencyCycleError
    +-- InvalidStateTransitionError
    +-- RecordMigrationError
    +-- BatchExecutionError
    |   +-- SourceUnavailableError
    |   +-- DestinationUnavailableError
    |   +-- BatchTimeoutError
    +-- CheckpointError
    |   +-- CheckpointValidationError
    |   +-- CheckpointNotFoundError
    |   +-- CheckpointCorruptedError
    |   +-- CheckpointPersistenceError
    +-- FatalMigrationError

Error Classification:
    - ErrorSeverity: CRITICAL, ERROR, WARNING, INFO levels
    - ErrorRecoverability: RECOVERABLE, TRANSIENT, FATAL categories
    - ErrorClassification: metadata attached to each error type
    - ErrorHandler: automatic retry with backoff for transient errors

Only validation errors and fatal errors escape
``MigrationExecutor.execute_migration_tasks``. Everything else is retried,
recorded against the batch that produced it, or surfaced as recovery
metadata on the execution result.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Coroutine, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Used for alerting, logging, and operator notification decisions.

    Attributes:
        CRITICAL: Failure requiring immediate attention (e.g. corrupted state).
        ERROR: Failure that needs operator intervention (e.g. task failed).
        WARNING: Issue that may self-resolve (e.g. connection blip).
        INFO: Informational condition, not a failure.
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def log_level(self) -> int:
        """Get the corresponding Python logging level."""
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for migration errors.

    Attributes:
        RECOVERABLE: Can be recovered with operator action, typically by
            resuming from the last checkpoint.
        TRANSIENT: Temporary error that may resolve on retry.
        FATAL: No automatic recovery is possible.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT

    @property
    def should_abort(self) -> bool:
        """True only for FATAL errors."""
        return self == ErrorRecoverability.FATAL


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for automatic error retry.

    Implements exponential backoff with jitter for transient errors.

    Attributes:
        max_attempts: Maximum number of attempts (including the initial one).
        base_delay_ms: Base delay between retries in milliseconds.
        max_delay_ms: Maximum delay between retries in milliseconds.
        exponential_base: Base for exponential backoff (default 2.0).
        jitter_factor: Random jitter factor (0.0 to 1.0, default 0.1).

    Example:
        >>> config = RetryConfig(max_attempts=5, base_delay_ms=100)
        >>> config.get_delay_ms(attempt=3)  # 100 * 2^3 = 800ms, plus jitter
    """

    max_attempts: int = 3
    base_delay_ms: float = 100.0
    max_delay_ms: float = 30000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be >= 1.0, got {self.exponential_base}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}")

    def get_delay_ms(self, attempt: int) -> float:
        """
        Calculate delay for a specific retry attempt.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in milliseconds before the next retry, capped at max_delay_ms.
        """
        delay = self.base_delay_ms * (self.exponential_base**attempt)

        if self.jitter_factor > 0:
            jitter = delay * self.jitter_factor * random.random()  # nosec B311 - retry jitter
            delay = delay + jitter

        return min(delay, self.max_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "exponential_base": self.exponential_base,
            "jitter_factor": self.jitter_factor,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryConfig:
        """Create from dictionary, using defaults for missing keys."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


RECORD_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay_ms=50.0,
    max_delay_ms=2000.0,
    exponential_base=2.0,
    jitter_factor=0.1,
)

BATCH_RETRY_CONFIG = RetryConfig(
    max_attempts=5,
    base_delay_ms=500.0,
    max_delay_ms=30000.0,
    exponential_base=2.0,
    jitter_factor=0.2,
)


@dataclass(frozen=True)
class ErrorClassification:
    """
    Metadata describing how an error should be handled.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
        retry_config: Configuration for automatic retry (if applicable).
        labels: Free-form labels for alert details.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None
    labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert classification to dictionary for serialization."""
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config:
            result["retry_config"] = self.retry_config.to_dict()
        if self.labels:
            result["labels"] = self.labels
        return result


class MigrationError(Exception):
    """
    Base exception for all migration engine errors.

    Attributes:
        message: Human-readable error description.
        session_id: Execution session involved, if applicable.
        entity_type: Entity type involved, if applicable.
        recoverable: Whether a resume can recover from this error.
        suggested_action: Suggested action for recovery.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_ERROR",
        category="general",
        suggested_action="Review migration logs for the failing entity",
    )

    def __init__(
        self,
        message: str,
        *,
        session_id: str | None = None,
        entity_type: str | None = None,
        recoverable: bool = False,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.session_id = session_id
        self.entity_type = entity_type
        self.recoverable = recoverable
        self.suggested_action = suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error string with context."""
        parts = [self.message]
        if self.session_id:
            parts.append(f"session_id={self.session_id}")
        if self.entity_type:
            parts.append(f"entity_type={self.entity_type}")
        if self.recoverable:
            parts.append("(recoverable)")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        """Error classification for this exception type."""
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability_type(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def retry_config(self) -> RetryConfig | None:
        return self.classification.retry_config

    def to_dict(self) -> dict[str, Any]:
        """Convert the exception to a dictionary for logging and alert details."""
        return {
            "message": self.message,
            "session_id": self.session_id,
            "entity_type": self.entity_type,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class TaskValidationError(MigrationError):
    """
    Raised when a submitted task list is rejected before any work starts.

    Attributes:
        violations: Individual validation failures, one message per problem.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="TASK_VALIDATION_FAILED",
        category="validation",
        suggested_action="Fix the task list and resubmit; nothing was executed",
    )

    def __init__(
        self,
        message: str,
        *,
        violations: Sequence[str] = (),
        entity_type: str | None = None,
    ) -> None:
        self.violations = list(violations)
        super().__init__(message, entity_type=entity_type)


class DependencyCycleError(TaskValidationError):
    """
    Raised when task dependencies form a cycle.

    Attributes:
        cycle: Entity types along the cycle, first element repeated at the end.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="DEPENDENCY_CYCLE",
        category="validation",
        suggested_action="Remove one of the dependencies on the reported cycle",
    )

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        path = " -> ".join(self.cycle)
        super().__init__(
            f"Circular dependency detected: {path}",
            violations=[f"cycle: {path}"],
        )


class InvalidStateTransitionError(MigrationError):
    """
    Raised when a task state transition is not allowed.

    Attributes:
        current_status: The status the task is in.
        target_status: The status that was requested.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_STATE_TRANSITION",
        category="state",
        suggested_action="Check the task status before requesting this operation",
    )

    def __init__(self, entity_type: str, current_status: Any, target_status: Any) -> None:
        self.current_status = current_status
        self.target_status = target_status
        current = getattr(current_status, "value", current_status)
        target = getattr(target_status, "value", target_status)
        super().__init__(
            f"Invalid transition from {current} to {target}",
            entity_type=entity_type,
        )


class RecordMigrationError(MigrationError):
    """
    Raised for a single record that could not be migrated.

    Transforms may raise this to mark a failure as retryable; any other
    exception raised by a transform is recorded as a non-retryable
    ``transform_error``.

    Attributes:
        record_id: The record that failed.
        error_type: Short failure category (e.g. "constraint_violation").
        retryable: Whether retrying the record may succeed.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="RECORD_MIGRATION_FAILED",
        category="record",
        suggested_action="Inspect the failed record; it is listed in the batch errors",
    )

    def __init__(
        self,
        record_id: str | int,
        message: str,
        *,
        error_type: str = "record_error",
        retryable: bool = False,
        entity_type: str | None = None,
    ) -> None:
        self.record_id = record_id
        self.error_type = error_type
        self.retryable = retryable
        super().__init__(message, entity_type=entity_type, recoverable=retryable)


class BatchExecutionError(MigrationError):
    """
    Raised when a whole batch could not be executed.

    Infrastructure failures are retried at batch granularity; when the
    retry budget is exhausted the owning task fails with recovery metadata.

    Attributes:
        batch_number: One-based batch number within the entity.
        original_error: The underlying error message.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="BATCH_EXECUTION_FAILED",
        category="batch",
        suggested_action=(
            "Batch failed but can be resumed from the last checkpoint. "
            "Check connectivity to both databases, then resume."
        ),
        retry_config=BATCH_RETRY_CONFIG,
    )

    def __init__(
        self,
        message: str,
        *,
        entity_type: str | None = None,
        batch_number: int | None = None,
        original_error: str | None = None,
    ) -> None:
        self.batch_number = batch_number
        self.original_error = original_error
        super().__init__(
            message,
            entity_type=entity_type,
            recoverable=True,
            suggested_action="Resume migration to continue from last checkpoint",
        )


class SourceUnavailableError(BatchExecutionError):
    """Raised when the source database cannot be read."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="SOURCE_UNAVAILABLE",
        category="connectivity",
        suggested_action="Check source database connectivity",
        retry_config=BATCH_RETRY_CONFIG,
    )


class DestinationUnavailableError(BatchExecutionError):
    """Raised when the destination database cannot be written."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="DESTINATION_UNAVAILABLE",
        category="connectivity",
        suggested_action="Check destination database connectivity",
        retry_config=BATCH_RETRY_CONFIG,
    )


class BatchTimeoutError(BatchExecutionError):
    """
    Raised when a batch exceeds the configured per-batch timeout.

    The in-flight write is rolled back and the records not yet committed are
    reported as retryable failures; the task advances to the next batch.

    Attributes:
        timeout_seconds: The timeout that was exceeded.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="BATCH_TIMEOUT",
        category="batch",
        suggested_action="Reduce batch size or raise the batch timeout",
    )

    def __init__(self, entity_type: str, batch_number: int, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Batch {batch_number} exceeded timeout of {timeout_seconds}s",
            entity_type=entity_type,
            batch_number=batch_number,
        )


class CheckpointError(MigrationError):
    """Base class for checkpoint persistence and validation failures."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CHECKPOINT_ERROR",
        category="checkpoint",
        suggested_action="Resume from an earlier checkpoint or restart the entity",
    )


class CheckpointValidationError(CheckpointError):
    """
    Raised when checkpoint data fails field validation.

    Attributes:
        errors: Individual validation failures.
    """

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        super().__init__("Invalid checkpoint data: " + "; ".join(self.errors))


class CheckpointNotFoundError(CheckpointError):
    """Raised when no copy of a checkpoint exists in any backup target."""

    def __init__(self, checkpoint_id: str) -> None:
        self.checkpoint_id = checkpoint_id
        super().__init__(f"Checkpoint not found: {checkpoint_id}")


class CheckpointCorruptedError(CheckpointError):
    """
    Raised when no copy of a checkpoint passes checksum verification.

    A checkpoint whose recomputed checksum differs from the stored one is
    never used for resume.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CHECKPOINT_CORRUPTED",
        category="checkpoint",
        suggested_action="Resume from an earlier checkpoint or restart the entity",
    )

    def __init__(self, checkpoint_id: str, reason: str) -> None:
        self.checkpoint_id = checkpoint_id
        self.reason = reason
        super().__init__(f"Checkpoint {checkpoint_id} is corrupted: {reason}")


class CheckpointPersistenceError(CheckpointError):
    """Raised when a checkpoint could not be written to any backup target."""

    def __init__(self, checkpoint_id: str, errors: Sequence[str]) -> None:
        self.checkpoint_id = checkpoint_id
        self.errors = list(errors)
        super().__init__(
            f"Failed to persist checkpoint {checkpoint_id}: " + "; ".join(self.errors)
        )


class FatalMigrationError(MigrationError):
    """
    Raised for failures that no retry or resume can fix.

    Examples: destination table missing, schema drift between the transform
    output and the destination columns.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="FATAL_MIGRATION_ERROR",
        category="fatal",
        suggested_action="Fix the destination schema or configuration before retrying",
    )


class ErrorHandler:
    """
    Error handler with automatic retry for transient errors.

    Exceptions raised by the operation are classified with
    ``classify_exception``, so builtin connection and timeout errors from a
    third-party store are retried just like ``SourceUnavailableError``.

    Usage:
        >>> handler = ErrorHandler()
        >>> rows = await handler.execute_with_retry(
        ...     lambda: source.fetch_rows("offices", ids),
        ...     operation_name="fetch_rows",
        ...     retry_config=config.batch_retry,
        ... )
    """

    async def execute_with_retry(
        self,
        operation: Callable[[], Coroutine[Any, Any, T]],
        operation_name: str,
        *,
        retry_config: RetryConfig | None = None,
        on_retry: Callable[[int, Exception, float], None] | None = None,
    ) -> T:
        """
        Execute an operation with automatic retry for transient errors.

        Args:
            operation: Async callable to execute.
            operation_name: Name for logging.
            retry_config: Override retry configuration.
            on_retry: Callback invoked on each retry (attempt, exception, delay_ms).

        Returns:
            The result of the operation.

        Raises:
            Exception: The last error, once retries are exhausted or when the
                error is not transient.
        """
        attempt = 0

        while True:
            try:
                result = await operation()
                if attempt > 0:
                    logger.info(
                        "Operation '%s' succeeded after %d retries",
                        operation_name,
                        attempt,
                    )
                return result

            except Exception as e:
                classification = classify_exception(e)
                message = e.message if isinstance(e, MigrationError) else str(e)
                self._log_error(classification, message, operation_name)

                if not classification.recoverability.should_retry:
                    logger.error(
                        "Non-retryable error in '%s': %s (code=%s)",
                        operation_name,
                        message,
                        classification.error_code,
                    )
                    raise

                config = retry_config or classification.retry_config or BATCH_RETRY_CONFIG

                if attempt + 1 >= config.max_attempts:
                    logger.error(
                        "Exhausted %d attempts for '%s': %s",
                        config.max_attempts,
                        operation_name,
                        message,
                    )
                    raise

                delay_ms = config.get_delay_ms(attempt)
                delay_s = delay_ms / 1000.0

                logger.warning(
                    "Retryable error in '%s' (attempt %d/%d): %s. Retrying in %.2fs",
                    operation_name,
                    attempt + 1,
                    config.max_attempts,
                    message,
                    delay_s,
                )

                if on_retry:
                    on_retry(attempt, e, delay_ms)

                await asyncio.sleep(delay_s)
                attempt += 1

    @staticmethod
    def _log_error(
        classification: ErrorClassification,
        message: str,
        operation_name: str,
    ) -> None:
        logger.log(
            classification.severity.log_level,
            "Error in '%s': %s [code=%s, severity=%s, recoverable=%s]",
            operation_name,
            message,
            classification.error_code,
            classification.severity.value,
            classification.recoverability.value,
        )


def classify_exception(exc: BaseException) -> ErrorClassification:
    """
    Classify any exception and return its error classification.

    MigrationError subclasses return their own classification. Builtin
    connection and timeout errors are treated as transient; anything else
    is fatal.

    Args:
        exc: The exception to classify.

    Returns:
        ErrorClassification for the exception.
    """
    if isinstance(exc, MigrationError):
        return exc.classification

    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorClassification(
            severity=ErrorSeverity.WARNING,
            recoverability=ErrorRecoverability.TRANSIENT,
            error_code="CONNECTION_ERROR",
            category="connectivity",
            suggested_action="Check database connectivity",
            retry_config=BATCH_RETRY_CONFIG,
        )

    return ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNKNOWN_ERROR",
        category="unknown",
        suggested_action="An unexpected error occurred. Review logs for details.",
    )


__all__ = [
    # Classification
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "RECORD_RETRY_CONFIG",
    "BATCH_RETRY_CONFIG",
    "ErrorHandler",
    "classify_exception",
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
]
