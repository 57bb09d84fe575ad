"""
Unit tests for configuration validation.
"""

from pathlib import Path

import pytest

from bulkmigrate.config import (
    AlertThresholds,
    BatchingMode,
    BatchSizingConfig,
    CheckpointStoreConfig,
    ExecutorConfig,
    ProgressConfig,
)
from bulkmigrate.exceptions import RetryConfig


class TestBatchSizingConfig:
    """Tests for BatchSizingConfig."""

    def test_defaults(self):
        config = BatchSizingConfig()

        assert config.mode == BatchingMode.FIXED
        assert config.batch_size == 1000

    @pytest.mark.parametrize("size", [0, 5001])
    def test_batch_size_bounds(self, size):
        """Test that batch sizes outside 1..5000 are rejected."""
        with pytest.raises(ValueError, match="batch_size"):
            BatchSizingConfig(batch_size=size)

    def test_max_below_min_rejected(self):
        with pytest.raises(ValueError, match="max_batch_size"):
            BatchSizingConfig(min_batch_size=100, max_batch_size=10)

    def test_adaptive_requires_size_within_bounds(self):
        """Test that adaptive mode needs the initial size inside [min, max]."""
        with pytest.raises(ValueError, match="adaptive"):
            BatchSizingConfig(
                mode=BatchingMode.ADAPTIVE,
                batch_size=5,
                min_batch_size=10,
                max_batch_size=100,
            )

    def test_fixed_mode_ignores_adaptive_bounds(self):
        config = BatchSizingConfig(batch_size=3, min_batch_size=10)
        assert config.batch_size == 3


class TestAlertThresholds:
    def test_memory_warning_mb(self):
        thresholds = AlertThresholds(memory_ceiling_mb=1000.0, memory_warning_ratio=0.8)
        assert thresholds.memory_warning_mb == 800.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"min_throughput_rps": -1},
            {"max_retries_per_batch": -1},
            {"memory_ceiling_mb": 0},
            {"memory_warning_ratio": 0},
            {"memory_warning_ratio": 1.5},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            AlertThresholds(**kwargs)


class TestExecutorConfig:
    """Tests for ExecutorConfig."""

    def test_defaults(self):
        config = ExecutorConfig()

        assert config.checkpoint_interval == 10
        assert config.parallel_entity_limit == 3
        assert config.batch_size == 1000
        assert config.auto_resume is True

    @pytest.mark.parametrize("limit", [0, 11])
    def test_parallel_entity_limit_bounds(self, limit):
        """Test that the parallel entity limit must lie within 1..10."""
        with pytest.raises(ValueError, match="parallel_entity_limit"):
            ExecutorConfig(parallel_entity_limit=limit)

    def test_checkpoint_interval_must_be_positive(self):
        with pytest.raises(ValueError, match="checkpoint_interval"):
            ExecutorConfig(checkpoint_interval=0)

    def test_batch_timeout_must_be_positive(self):
        with pytest.raises(ValueError, match="batch_timeout_seconds"):
            ExecutorConfig(batch_timeout_seconds=0)

    def test_dict_round_trip(self):
        """Test that from_dict restores a config produced by to_dict."""
        config = ExecutorConfig(
            sizing=BatchSizingConfig(mode=BatchingMode.ADAPTIVE, batch_size=50),
            checkpoint_interval=2,
            parallel_entity_limit=5,
            record_retry=RetryConfig(max_attempts=4, base_delay_ms=10.0),
            alerts=AlertThresholds(min_throughput_rps=5.0),
            auto_resume=False,
        )

        assert ExecutorConfig.from_dict(config.to_dict()) == config

    def test_record_retries_capped(self):
        """Test that at most ten record retries are allowed."""
        with pytest.raises(ValueError, match="record_retry"):
            ExecutorConfig(record_retry=RetryConfig(max_attempts=12))


class TestCheckpointStoreConfig:
    def test_checkpoint_dir_coerced_to_path(self):
        config = CheckpointStoreConfig(checkpoint_dir="/tmp/checkpoints")  # type: ignore[arg-type]
        assert config.checkpoint_dir == Path("/tmp/checkpoints")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"compression_threshold_bytes": -1},
            {"retention_days": 0},
            {"max_checkpoints_per_entity": 0},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            CheckpointStoreConfig(**kwargs)


class TestProgressConfig:
    @pytest.mark.parametrize("window", [4, 1001])
    def test_window_bounds(self, window):
        """Test that the performance window must lie within 5..1000."""
        with pytest.raises(ValueError, match="performance_window_size"):
            ProgressConfig(performance_window_size=window)

    def test_queue_size_must_be_positive(self):
        with pytest.raises(ValueError, match="subscriber_queue_size"):
            ProgressConfig(subscriber_queue_size=0)
