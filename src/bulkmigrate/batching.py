"""
Batch sizing.

A task's ordered id list is consumed front to back in batches. In FIXED
mode every batch has ``batch_size`` ids except possibly the last. In
ADAPTIVE mode the size is recomputed after each batch so that a batch
takes roughly ``target_batch_seconds``, and it is cut back when process
memory approaches the configured ceiling.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

import psutil

from bulkmigrate.config import BatchingMode, BatchSizingConfig
from bulkmigrate.models import RecordId

logger = logging.getLogger(__name__)

_BYTES_PER_MB = 1024 * 1024

# Fraction of the memory ceiling at which adaptive sizing stops growing,
# and the fraction at which it halves the batch.
_MEMORY_HOLD_RATIO = 0.75
_MEMORY_SHRINK_RATIO = 0.9

# Fraction of the distance to the ideal size covered per adjustment.
_DAMPING = 0.5


def process_memory_mb() -> float:
    """Resident set size of the current process in megabytes."""
    return psutil.Process().memory_info().rss / _BYTES_PER_MB


class BatchSizer:
    """
    Chooses the size of the next batch for one task.

    Each task gets its own sizer; it is only touched by the worker running
    that task.

    Args:
        config: Batch sizing parameters.
        memory_ceiling_mb: Process memory ceiling used for headroom.
        memory_sampler: Returns current process memory in MB.
    """

    def __init__(
        self,
        config: BatchSizingConfig,
        memory_ceiling_mb: float,
        memory_sampler: Callable[[], float] = process_memory_mb,
    ) -> None:
        self._config = config
        self._memory_ceiling_mb = memory_ceiling_mb
        self._memory_sampler = memory_sampler
        self._size = config.batch_size

    @property
    def current_size(self) -> int:
        return self._size

    @property
    def adaptive(self) -> bool:
        return self._config.mode == BatchingMode.ADAPTIVE

    def restore(self, size: int) -> None:
        """Continue from a size recorded in a checkpoint (adaptive mode only)."""
        if self.adaptive:
            self._size = self._clamp(size)

    def next_batch(
        self,
        record_ids: Sequence[RecordId],
        position: int,
    ) -> tuple[RecordId, ...]:
        """Ids of the batch starting at ``position``; empty when exhausted."""
        return tuple(record_ids[position : position + self._size])

    def sample_memory(self) -> float:
        return self._memory_sampler()

    def observe(self, record_count: int, duration_seconds: float, memory_mb: float) -> int:
        """
        Feed back the measurements of a finished batch.

        Args:
            record_count: Ids in the batch.
            duration_seconds: Wall-clock duration of the batch.
            memory_mb: Process memory after the batch.

        Returns:
            Size of the next batch.
        """
        if not self.adaptive or record_count <= 0 or duration_seconds <= 0:
            return self._size

        per_record = duration_seconds / record_count
        ideal = self._config.target_batch_seconds / per_record

        ratio = memory_mb / self._memory_ceiling_mb
        if ratio >= _MEMORY_SHRINK_RATIO:
            ideal = min(ideal, self._size / 2)
        elif ratio >= _MEMORY_HOLD_RATIO:
            ideal = min(ideal, self._size)

        previous = self._size
        self._size = self._clamp(round(self._size + (ideal - self._size) * _DAMPING))

        if self._size != previous:
            logger.debug(
                "Adjusted batch size %d -> %d (%.2fms/record, memory %.0fMB)",
                previous,
                self._size,
                per_record * 1000,
                memory_mb,
            )
        return self._size

    def _clamp(self, size: int | float) -> int:
        return int(max(self._config.min_batch_size, min(self._config.max_batch_size, size)))


__all__ = [
    "BatchSizer",
    "process_memory_mb",
]
