"""
Configuration for the bulk migration engine.

All configuration objects are frozen dataclasses validated on construction,
so an invalid value fails fast before any work starts. Each exposes
``to_dict``/``from_dict`` for storage alongside session metadata.

Classes:
    - BatchingMode: FIXED or ADAPTIVE batch sizing
    - BatchSizingConfig: Batch size and adaptive bounds
    - AlertThresholds: Limits that raise automatic alerts
    - ExecutorConfig: Everything the Migration Executor needs
    - CheckpointStoreConfig: Retention, compression and backup location
    - ProgressConfig: Alert horizon and metrics window
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from bulkmigrate.exceptions import BATCH_RETRY_CONFIG, RECORD_RETRY_CONFIG, RetryConfig


class BatchingMode(Enum):
    """
    How batch sizes are chosen.

    Attributes:
        FIXED: Every batch uses ``batch_size`` (the last one may be smaller).
        ADAPTIVE: The size is recomputed after each batch from per-record
            latency and memory headroom, clamped to ``[min_batch_size,
            max_batch_size]``.
    """

    FIXED = "fixed"
    ADAPTIVE = "adaptive"


@dataclass(frozen=True)
class BatchSizingConfig:
    """
    Batch sizing parameters.

    Attributes:
        mode: FIXED or ADAPTIVE.
        batch_size: Initial size, and the only size in FIXED mode.
        min_batch_size: Lower bound in ADAPTIVE mode.
        max_batch_size: Upper bound in ADAPTIVE mode.
        target_batch_seconds: Wall-clock duration ADAPTIVE mode aims for.

    Example:
        >>> sizing = BatchSizingConfig(mode=BatchingMode.ADAPTIVE, batch_size=500)
    """

    mode: BatchingMode = BatchingMode.FIXED
    batch_size: int = 1000
    min_batch_size: int = 10
    max_batch_size: int = 5000
    target_batch_seconds: float = 2.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not 1 <= self.batch_size <= 5000:
            raise ValueError(f"batch_size must be between 1 and 5000, got {self.batch_size}")
        if self.min_batch_size < 1:
            raise ValueError(f"min_batch_size must be >= 1, got {self.min_batch_size}")
        if self.max_batch_size < self.min_batch_size:
            raise ValueError(
                f"max_batch_size ({self.max_batch_size}) must be >= "
                f"min_batch_size ({self.min_batch_size})"
            )
        if self.mode == BatchingMode.ADAPTIVE and not (
            self.min_batch_size <= self.batch_size <= self.max_batch_size
        ):
            raise ValueError(
                f"batch_size ({self.batch_size}) must lie within "
                f"[{self.min_batch_size}, {self.max_batch_size}] in adaptive mode"
            )
        if self.target_batch_seconds <= 0:
            raise ValueError(
                f"target_batch_seconds must be > 0, got {self.target_batch_seconds}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "batch_size": self.batch_size,
            "min_batch_size": self.min_batch_size,
            "max_batch_size": self.max_batch_size,
            "target_batch_seconds": self.target_batch_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BatchSizingConfig:
        return cls(
            mode=BatchingMode(data.get("mode", BatchingMode.FIXED.value)),
            batch_size=data.get("batch_size", 1000),
            min_batch_size=data.get("min_batch_size", 10),
            max_batch_size=data.get("max_batch_size", 5000),
            target_batch_seconds=data.get("target_batch_seconds", 2.0),
        )


@dataclass(frozen=True)
class AlertThresholds:
    """
    Limits that raise automatic alerts during execution.

    Attributes:
        min_throughput_rps: Records per second below which a batch raises a
            low-throughput warning. 0 disables the check.
        max_retries_per_batch: Retries within one batch above which a
            high-retry-rate warning is raised.
        memory_ceiling_mb: Process memory ceiling.
        memory_warning_ratio: Fraction of the ceiling at which a memory
            pressure warning is raised.
    """

    min_throughput_rps: float = 0.0
    max_retries_per_batch: int = 3
    memory_ceiling_mb: float = 1024.0
    memory_warning_ratio: float = 0.8

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.min_throughput_rps < 0:
            raise ValueError(f"min_throughput_rps must be >= 0, got {self.min_throughput_rps}")
        if self.max_retries_per_batch < 0:
            raise ValueError(
                f"max_retries_per_batch must be >= 0, got {self.max_retries_per_batch}"
            )
        if self.memory_ceiling_mb <= 0:
            raise ValueError(f"memory_ceiling_mb must be > 0, got {self.memory_ceiling_mb}")
        if not 0.0 < self.memory_warning_ratio <= 1.0:
            raise ValueError(
                f"memory_warning_ratio must be in (0, 1], got {self.memory_warning_ratio}"
            )

    @property
    def memory_warning_mb(self) -> float:
        return self.memory_ceiling_mb * self.memory_warning_ratio

    def to_dict(self) -> dict[str, Any]:
        return {
            "min_throughput_rps": self.min_throughput_rps,
            "max_retries_per_batch": self.max_retries_per_batch,
            "memory_ceiling_mb": self.memory_ceiling_mb,
            "memory_warning_ratio": self.memory_warning_ratio,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AlertThresholds:
        return cls(
            min_throughput_rps=data.get("min_throughput_rps", 0.0),
            max_retries_per_batch=data.get("max_retries_per_batch", 3),
            memory_ceiling_mb=data.get("memory_ceiling_mb", 1024.0),
            memory_warning_ratio=data.get("memory_warning_ratio", 0.8),
        )


@dataclass(frozen=True)
class ExecutorConfig:
    """
    Configuration for the Migration Executor.

    Attributes:
        sizing: Batch sizing parameters.
        checkpoint_interval: Write a checkpoint every N committed batches.
        parallel_entity_limit: Maximum tasks running at once within a wave.
        batch_timeout_seconds: Per-batch timeout; a stuck batch is aborted,
            its records are reported as retryable failures, and the task
            advances.
        record_retry: Backoff for retrying individual failed records. Its
            ``max_attempts`` counts the initial attempt.
        batch_retry: Backoff for retrying a batch after an infrastructure
            failure.
        alerts: Alert thresholds.
        auto_resume: Resume each task from the latest valid checkpoint of
            the session when no explicit checkpoint is given.

    Example:
        >>> config = ExecutorConfig(
        ...     sizing=BatchSizingConfig(batch_size=3),
        ...     checkpoint_interval=1,
        ... )
    """

    sizing: BatchSizingConfig = field(default_factory=BatchSizingConfig)
    checkpoint_interval: int = 10
    parallel_entity_limit: int = 3
    batch_timeout_seconds: float = 300.0
    record_retry: RetryConfig = RECORD_RETRY_CONFIG
    batch_retry: RetryConfig = BATCH_RETRY_CONFIG
    alerts: AlertThresholds = field(default_factory=AlertThresholds)
    auto_resume: bool = True

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.checkpoint_interval < 1:
            raise ValueError(f"checkpoint_interval must be >= 1, got {self.checkpoint_interval}")
        if not 1 <= self.parallel_entity_limit <= 10:
            raise ValueError(
                f"parallel_entity_limit must be between 1 and 10, "
                f"got {self.parallel_entity_limit}"
            )
        if self.batch_timeout_seconds <= 0:
            raise ValueError(
                f"batch_timeout_seconds must be > 0, got {self.batch_timeout_seconds}"
            )
        if self.record_retry.max_attempts > 11:
            raise ValueError(
                f"record_retry.max_attempts must be <= 11, got {self.record_retry.max_attempts}"
            )

    @property
    def batch_size(self) -> int:
        return self.sizing.batch_size

    def to_dict(self) -> dict[str, Any]:
        return {
            "sizing": self.sizing.to_dict(),
            "checkpoint_interval": self.checkpoint_interval,
            "parallel_entity_limit": self.parallel_entity_limit,
            "batch_timeout_seconds": self.batch_timeout_seconds,
            "record_retry": self.record_retry.to_dict(),
            "batch_retry": self.batch_retry.to_dict(),
            "alerts": self.alerts.to_dict(),
            "auto_resume": self.auto_resume,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutorConfig:
        return cls(
            sizing=BatchSizingConfig.from_dict(data.get("sizing", {})),
            checkpoint_interval=data.get("checkpoint_interval", 10),
            parallel_entity_limit=data.get("parallel_entity_limit", 3),
            batch_timeout_seconds=data.get("batch_timeout_seconds", 300.0),
            record_retry=(
                RetryConfig.from_dict(data["record_retry"])
                if "record_retry" in data
                else RECORD_RETRY_CONFIG
            ),
            batch_retry=(
                RetryConfig.from_dict(data["batch_retry"])
                if "batch_retry" in data
                else BATCH_RETRY_CONFIG
            ),
            alerts=AlertThresholds.from_dict(data.get("alerts", {})),
            auto_resume=data.get("auto_resume", True),
        )


@dataclass(frozen=True)
class CheckpointStoreConfig:
    """
    Configuration for the Checkpoint Store.

    Attributes:
        checkpoint_dir: Directory for the file backup. None disables it.
        compression_enabled: Compress payloads above the threshold.
        compression_threshold_bytes: Payload size above which gzip is applied.
        retention_days: Age after which cleanup deletes checkpoints.
        max_checkpoints_per_entity: Checkpoints kept per (session, entity);
            older ones are deleted first and the active one is always kept.
    """

    checkpoint_dir: Path | None = None
    compression_enabled: bool = True
    compression_threshold_bytes: int = 1024
    retention_days: int = 30
    max_checkpoints_per_entity: int = 10

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.checkpoint_dir is not None and not isinstance(self.checkpoint_dir, Path):
            object.__setattr__(self, "checkpoint_dir", Path(self.checkpoint_dir))
        if self.compression_threshold_bytes < 0:
            raise ValueError(
                f"compression_threshold_bytes must be >= 0, "
                f"got {self.compression_threshold_bytes}"
            )
        if self.retention_days < 1:
            raise ValueError(f"retention_days must be >= 1, got {self.retention_days}")
        if self.max_checkpoints_per_entity < 1:
            raise ValueError(
                f"max_checkpoints_per_entity must be >= 1, "
                f"got {self.max_checkpoints_per_entity}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkpoint_dir": str(self.checkpoint_dir) if self.checkpoint_dir else None,
            "compression_enabled": self.compression_enabled,
            "compression_threshold_bytes": self.compression_threshold_bytes,
            "retention_days": self.retention_days,
            "max_checkpoints_per_entity": self.max_checkpoints_per_entity,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckpointStoreConfig:
        checkpoint_dir = data.get("checkpoint_dir")
        return cls(
            checkpoint_dir=Path(checkpoint_dir) if checkpoint_dir else None,
            compression_enabled=data.get("compression_enabled", True),
            compression_threshold_bytes=data.get("compression_threshold_bytes", 1024),
            retention_days=data.get("retention_days", 30),
            max_checkpoints_per_entity=data.get("max_checkpoints_per_entity", 10),
        )


@dataclass(frozen=True)
class ProgressConfig:
    """
    Configuration for the Progress Tracker.

    Attributes:
        alert_horizon_seconds: Alerts older than this are no longer active.
        performance_window_size: Batch samples kept per entity for metrics.
        subscriber_queue_size: Buffered updates per stream subscriber.
        persist_snapshots: Mirror snapshots and alerts to the repository.
    """

    alert_horizon_seconds: float = 3600.0
    performance_window_size: int = 100
    subscriber_queue_size: int = 1000
    persist_snapshots: bool = True

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.alert_horizon_seconds <= 0:
            raise ValueError(
                f"alert_horizon_seconds must be > 0, got {self.alert_horizon_seconds}"
            )
        if not 5 <= self.performance_window_size <= 1000:
            raise ValueError(
                f"performance_window_size must be between 5 and 1000, "
                f"got {self.performance_window_size}"
            )
        if self.subscriber_queue_size < 1:
            raise ValueError(
                f"subscriber_queue_size must be >= 1, got {self.subscriber_queue_size}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_horizon_seconds": self.alert_horizon_seconds,
            "performance_window_size": self.performance_window_size,
            "subscriber_queue_size": self.subscriber_queue_size,
            "persist_snapshots": self.persist_snapshots,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProgressConfig:
        return cls(
            alert_horizon_seconds=data.get("alert_horizon_seconds", 3600.0),
            performance_window_size=data.get("performance_window_size", 100),
            subscriber_queue_size=data.get("subscriber_queue_size", 1000),
            persist_snapshots=data.get("persist_snapshots", True),
        )


__all__ = [
    "BatchingMode",
    "BatchSizingConfig",
    "AlertThresholds",
    "ExecutorConfig",
    "CheckpointStoreConfig",
    "ProgressConfig",
]
