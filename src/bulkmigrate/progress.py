"""
Progress Tracker: live progress snapshots, ordered updates and alerts.

Each tracked entity owns one slot in an arena of slots. Only the worker
migrating that entity writes its slot, so per-entity updates are produced
and delivered in order without locking; readers receive immutable
ProgressSnapshot copies.

Snapshots and alerts are mirrored to a ProgressRepository for
cross-process visibility. Mirror failures are logged and never fatal.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import statistics
import time
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from bulkmigrate.config import AlertThresholds, ProgressConfig
from bulkmigrate.models import (
    Alert,
    AlertSeverity,
    AlertType,
    EfficiencyScores,
    MemoryStats,
    PerformanceMetrics,
    ProgressReport,
    ProgressSnapshot,
    ProgressStatus,
    ProgressUpdate,
    ThroughputStats,
    TimingStats,
    UpdateType,
)
from bulkmigrate.observability import Tracer, create_tracer
from bulkmigrate.observability.attributes import ATTR_ENTITY_TYPE, ATTR_SESSION_ID
from bulkmigrate.repositories.progress import ProgressRepository

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[ProgressUpdate], Awaitable[None] | None]
"""Subscriber callback; may be a plain function or a coroutine function."""

# Records per second treated as full throughput efficiency.
THROUGHPUT_BASELINE_RPS = 1000.0

HIGH_FAILURE_RATE = 0.10

_STREAM_CLOSED = object()


@dataclass
class _EntitySlot:
    """Mutable progress state of one entity, written only by its owner."""

    entity_type: str
    total_records: int
    status: ProgressStatus
    records_processed: int
    started_at: float
    window: int
    records_failed: int = 0
    batch_number: int = 0
    sequence: int = 0
    throughput_samples: deque[float] = field(init=False)
    memory_samples: deque[float] = field(init=False)
    batch_durations_ms: deque[float] = field(init=False)
    snapshot: ProgressSnapshot | None = None

    def __post_init__(self) -> None:
        self.throughput_samples = deque(maxlen=self.window)
        self.memory_samples = deque(maxlen=self.window)
        self.batch_durations_ms = deque(maxlen=self.window)


class ProgressTracker:
    """
    Tracks progress, performance and alerts for one execution session.

    Example:
        >>> tracker = ProgressTracker("session-1", InMemoryProgressRepository())
        >>> unsubscribe = tracker.subscribe_to_updates(print)
        >>> await tracker.start_tracking("offices", total_records=10)
        >>> await tracker.record_batch_completed(
        ...     "offices", 1, records_processed=3, batch_records=3, duration_ms=120.0
        ... )
        >>> tracker.get_latest_progress("offices").percentage_complete
        30.0

    Args:
        session_id: Session the tracked entities belong to.
        repository: Optional mirror for snapshots and alerts.
        config: Tracker configuration.
        tracer: Optional tracer (if not provided, one will be created)
        enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        clock: Monotonic clock in seconds, injectable for tests.
        alert_thresholds: Limits used for report recommendations; the
            executor passes its own so both agree.
    """

    def __init__(
        self,
        session_id: str,
        repository: ProgressRepository | None = None,
        config: ProgressConfig | None = None,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        clock: Callable[[], float] = time.monotonic,
        alert_thresholds: AlertThresholds | None = None,
    ) -> None:
        self.session_id = session_id
        self._thresholds = alert_thresholds or AlertThresholds()
        self._repository = repository
        self._config = config or ProgressConfig()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._clock = clock

        self._slots: list[_EntitySlot] = []
        self._slot_index: dict[str, int] = {}
        self._session_sequence = 0

        self._alerts: list[Alert] = []
        self._subscribers: list[UpdateCallback] = []
        self._streams: list[asyncio.Queue[Any]] = []

    @property
    def config(self) -> ProgressConfig:
        return self._config

    # =========================================================================
    # Writer API
    # =========================================================================

    async def start_tracking(
        self,
        entity_type: str,
        total_records: int,
        already_processed: int = 0,
    ) -> ProgressSnapshot:
        """
        Begin a tracking period for an entity.

        A resumed entity passes the position it resumes from as
        ``already_processed``. The per-entity sequence continues across
        tracking periods. When that position is behind the previous period
        the update is published as PROGRESS_RESET, carrying the previous
        position, so subscribers can tell a rewind from a regression.
        """
        if total_records < 0:
            raise ValueError(f"total_records must be >= 0, got {total_records}")
        if not 0 <= already_processed <= total_records:
            raise ValueError(
                f"already_processed must be within [0, {total_records}], got {already_processed}"
            )

        slot = _EntitySlot(
            entity_type=entity_type,
            total_records=total_records,
            status=ProgressStatus.STARTING,
            records_processed=already_processed,
            started_at=self._clock(),
            window=self._config.performance_window_size,
        )
        update_type = UpdateType.PROGRESS
        extra: dict[str, Any] = {}
        index = self._slot_index.get(entity_type)
        if index is None:
            self._slot_index[entity_type] = len(self._slots)
            self._slots.append(slot)
        else:
            previous = self._slots[index]
            slot.sequence = previous.sequence
            self._slots[index] = slot
            if already_processed < previous.records_processed:
                update_type = UpdateType.PROGRESS_RESET
                extra["previous_records_processed"] = previous.records_processed
                logger.warning(
                    "Progress of %s rewound from %d to %d records",
                    entity_type,
                    previous.records_processed,
                    already_processed,
                )

        logger.debug(
            "Tracking %s: %d records, %d already processed",
            entity_type,
            total_records,
            already_processed,
        )
        return await self._publish(slot, update_type, extra)

    async def record_batch_started(
        self,
        entity_type: str,
        batch_number: int,
        batch_size: int,
    ) -> None:
        """Record that a batch was read for processing."""
        slot = self._slot(entity_type)
        if slot.status == ProgressStatus.STARTING:
            slot.status = ProgressStatus.RUNNING
        await self._emit(
            UpdateType.BATCH_STARTED,
            slot,
            {"batch_number": batch_number, "batch_size": batch_size},
        )

    async def record_batch_completed(
        self,
        entity_type: str,
        batch_number: int,
        *,
        records_processed: int,
        batch_records: int,
        duration_ms: float,
        records_failed: int | None = None,
        memory_mb: float | None = None,
    ) -> ProgressSnapshot:
        """
        Record a finished batch and recompute the entity's snapshot.

        Args:
            entity_type: The entity.
            batch_number: Number of the finished batch.
            records_processed: Position within the entity's id list after
                the batch. Values lower than the current position are ignored.
            batch_records: Records the batch covered.
            duration_ms: Wall-clock duration of the batch.
            records_failed: Cumulative failed records, if known.
            memory_mb: Process memory sampled after the batch.

        Returns:
            The new snapshot.
        """
        slot = self._slot(entity_type)
        with self._tracer.span(
            "bulkmigrate.progress.record_batch_completed",
            {ATTR_SESSION_ID: self.session_id, ATTR_ENTITY_TYPE: entity_type},
        ):
            if slot.status == ProgressStatus.STARTING:
                slot.status = ProgressStatus.RUNNING
            slot.records_processed = min(
                max(slot.records_processed, records_processed), slot.total_records
            )
            if records_failed is not None:
                slot.records_failed = max(slot.records_failed, records_failed)
            slot.batch_number = max(slot.batch_number, batch_number)

            throughput = batch_records / (duration_ms / 1000.0) if duration_ms > 0 else 0.0
            slot.throughput_samples.append(throughput)
            slot.batch_durations_ms.append(duration_ms)
            if memory_mb is not None:
                slot.memory_samples.append(memory_mb)

            await self._emit(
                UpdateType.BATCH_COMPLETED,
                slot,
                {
                    "batch_number": batch_number,
                    "batch_records": batch_records,
                    "duration_ms": duration_ms,
                },
            )
            return await self._publish(slot, UpdateType.PROGRESS)

    async def mark_status(self, entity_type: str, status: ProgressStatus) -> ProgressSnapshot:
        """Set an entity's status; COMPLETED also emits an entity_completed update."""
        slot = self._slot(entity_type)
        slot.status = status
        if status == ProgressStatus.COMPLETED:
            slot.records_processed = slot.total_records
            logger.info(
                "Entity %s completed: %d records, %d failed",
                entity_type,
                slot.total_records,
                slot.records_failed,
            )
            return await self._publish(slot, UpdateType.ENTITY_COMPLETED)
        return await self._publish(slot, UpdateType.PROGRESS)

    # =========================================================================
    # Updates
    # =========================================================================

    def subscribe_to_updates(self, callback: UpdateCallback) -> Callable[[], None]:
        """
        Deliver every update to ``callback``.

        Updates of one entity are delivered in sequence order. An exception
        raised by a callback is logged and does not affect other subscribers.

        Returns:
            A function that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def stream_updates(self) -> AsyncIterator[ProgressUpdate]:
        """
        Iterate over updates as they are produced.

        The stream ends when close_streams() is called. A consumer that falls
        more than ``subscriber_queue_size`` updates behind loses the newest
        updates rather than blocking the writers.
        """
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=self._config.subscriber_queue_size)
        self._streams.append(queue)
        try:
            while True:
                item = await queue.get()
                if item is _STREAM_CLOSED:
                    return
                yield item
        finally:
            if queue in self._streams:
                self._streams.remove(queue)

    def close_streams(self) -> None:
        """End every open stream_updates() iterator."""
        for queue in list(self._streams):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(_STREAM_CLOSED)

    async def _publish(
        self,
        slot: _EntitySlot,
        update_type: UpdateType,
        extra: dict[str, Any] | None = None,
    ) -> ProgressSnapshot:
        snapshot = self._build_snapshot(slot)
        slot.snapshot = snapshot
        await self._emit(update_type, slot, {**snapshot.to_dict(), **(extra or {})})
        if self._repository is not None and self._config.persist_snapshots:
            try:
                await self._repository.save_snapshot(snapshot)
            except Exception as e:
                logger.warning(
                    "Failed to mirror progress snapshot for %s: %s", slot.entity_type, e
                )
        return snapshot

    async def _emit(
        self,
        update_type: UpdateType,
        slot: _EntitySlot | None,
        data: dict[str, Any],
        entity_type: str | None = None,
    ) -> None:
        if slot is not None:
            slot.sequence += 1
            sequence = slot.sequence
            entity_type = slot.entity_type
        else:
            self._session_sequence += 1
            sequence = self._session_sequence

        update = ProgressUpdate(
            update_id=str(uuid4()),
            session_id=self.session_id,
            sequence=sequence,
            update_type=update_type,
            entity_type=entity_type,
            data=data,
        )

        for callback in list(self._subscribers):
            try:
                result = callback(update)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "Progress subscriber %r failed on %s update: %s",
                    callback,
                    update_type.value,
                    e,
                    exc_info=True,
                )

        for queue in self._streams:
            try:
                queue.put_nowait(update)
            except asyncio.QueueFull:
                logger.warning("Progress stream is full, dropping %s update", update_type.value)

    # =========================================================================
    # Reader API
    # =========================================================================

    def get_latest_progress(self, entity_type: str) -> ProgressSnapshot | None:
        """Latest snapshot of an entity, or None if it is not tracked."""
        index = self._slot_index.get(entity_type)
        if index is None:
            return None
        return self._slots[index].snapshot

    def get_all_progress(self) -> dict[str, ProgressSnapshot]:
        """Latest snapshot of every tracked entity, in tracking order."""
        return {
            slot.entity_type: slot.snapshot for slot in self._slots if slot.snapshot is not None
        }

    def calculate_performance_metrics(self, entity_type: str) -> PerformanceMetrics | None:
        """
        Performance metrics over the trailing window of batch samples.

        Returns:
            PerformanceMetrics, or None when the entity has no batch samples.
        """
        index = self._slot_index.get(entity_type)
        if index is None:
            return None
        slot = self._slots[index]
        throughputs = list(slot.throughput_samples)
        durations = list(slot.batch_durations_ms)
        if not throughputs:
            return None
        memory = list(slot.memory_samples)

        throughput = ThroughputStats(
            current=throughputs[-1],
            average=statistics.fmean(throughputs),
            peak=max(throughputs),
            minimum=min(throughputs),
        )
        memory_stats = MemoryStats(
            current_mb=memory[-1] if memory else 0.0,
            average_mb=statistics.fmean(memory) if memory else 0.0,
            peak_mb=max(memory) if memory else 0.0,
        )
        timing = TimingStats(
            average_batch_ms=statistics.fmean(durations),
            fastest_batch_ms=min(durations),
            slowest_batch_ms=max(durations),
            variance=statistics.pvariance(durations),
        )

        throughput_efficiency = min(1.0, throughput.average / THROUGHPUT_BASELINE_RPS)
        if memory_stats.average_mb > 0:
            memory_efficiency = min(1.0, throughput.average / memory_stats.average_mb)
        else:
            memory_efficiency = 0.0
        efficiency = EfficiencyScores(
            throughput_efficiency=throughput_efficiency,
            memory_efficiency=memory_efficiency,
            overall_score=round((throughput_efficiency + memory_efficiency) / 2 * 100, 2),
        )

        return PerformanceMetrics(
            entity_type=entity_type,
            sample_count=len(throughputs),
            throughput=throughput,
            memory=memory_stats,
            timing=timing,
            efficiency=efficiency,
        )

    # =========================================================================
    # Alerts
    # =========================================================================

    async def record_alert(self, alert: Alert) -> Alert:
        """Store an alert, mirror it and notify subscribers."""
        self._alerts.append(alert)
        log_level = logging.ERROR if alert.severity == AlertSeverity.ERROR else logging.WARNING
        if alert.severity in (AlertSeverity.DEBUG, AlertSeverity.INFO):
            log_level = logging.INFO
        logger.log(
            log_level,
            "Alert [%s] %s: %s",
            alert.alert_type.value,
            alert.entity_type or self.session_id,
            alert.message,
        )

        if self._repository is not None:
            try:
                await self._repository.save_alert(alert)
            except Exception as e:
                logger.warning("Failed to mirror alert %s: %s", alert.alert_id, e)

        index = self._slot_index.get(alert.entity_type) if alert.entity_type else None
        slot = self._slots[index] if index is not None else None
        await self._emit(
            UpdateType.ALERT,
            slot,
            {"action": "raised", "alert": alert.to_dict()},
            entity_type=alert.entity_type,
        )
        return alert

    async def raise_alert(
        self,
        severity: AlertSeverity,
        alert_type: AlertType,
        message: str,
        *,
        entity_type: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> Alert:
        """Create and record an alert for this session."""
        alert = Alert.create(
            self.session_id,
            severity,
            alert_type,
            message,
            entity_type=entity_type,
            details=details,
        )
        return await self.record_alert(alert)

    def get_active_alerts(self, now: datetime | None = None) -> list[Alert]:
        """Unresolved alerts younger than the alert horizon, newest first."""
        horizon = (now or datetime.now(UTC)) - timedelta(
            seconds=self._config.alert_horizon_seconds
        )
        active = [a for a in self._alerts if not a.resolved and a.timestamp >= horizon]
        return sorted(active, key=lambda a: a.timestamp, reverse=True)

    def get_alerts(self) -> list[Alert]:
        """Every alert recorded in this process, oldest first."""
        return list(self._alerts)

    async def resolve_alert(self, alert_id: str) -> bool:
        """
        Mark an alert resolved.

        Returns:
            False when the alert is unknown or already resolved.
        """
        for i, alert in enumerate(self._alerts):
            if alert.alert_id != alert_id:
                continue
            if alert.resolved:
                return False
            resolved = replace(alert, resolved=True, resolved_at=datetime.now(UTC))
            self._alerts[i] = resolved
            logger.info("Alert resolved: %s for %s", alert.alert_type.value, alert.entity_type)

            if self._repository is not None:
                try:
                    await self._repository.resolve_alert(alert_id, resolved.resolved_at)
                except Exception as e:
                    logger.warning("Failed to mirror alert resolution %s: %s", alert_id, e)

            index = self._slot_index.get(alert.entity_type) if alert.entity_type else None
            await self._emit(
                UpdateType.ALERT,
                self._slots[index] if index is not None else None,
                {"action": "resolved", "alert": resolved.to_dict()},
                entity_type=alert.entity_type,
            )
            return True
        return False

    # =========================================================================
    # Reporting
    # =========================================================================

    def generate_progress_report(self) -> ProgressReport:
        """Summarize every tracked entity, active alerts and recommendations."""
        snapshots = tuple(self.get_all_progress().values())
        total = sum(s.total_records for s in snapshots)
        processed = sum(s.records_processed for s in snapshots)
        failed = sum(s.records_failed for s in snapshots)
        overall = round(processed / total * 100, 2) if total else 0.0
        alerts = tuple(self.get_active_alerts())

        return ProgressReport(
            session_id=self.session_id,
            generated_at=datetime.now(UTC),
            entities=snapshots,
            total_records=total,
            records_processed=processed,
            records_failed=failed,
            overall_percentage=overall,
            active_alerts=alerts,
            recommendations=tuple(self._recommendations(snapshots, alerts, overall)),
        )

    def _recommendations(
        self,
        snapshots: tuple[ProgressSnapshot, ...],
        alerts: tuple[Alert, ...],
        overall: float,
    ) -> list[str]:
        recommendations: list[str] = []
        if alerts:
            recommendations.append(f"{len(alerts)} active alert(s) require attention")

        active = [s for s in snapshots if not s.status.is_terminal]
        if snapshots and not active and overall == 100.0:
            recommendations.append("All entities completed successfully")
        elif overall < 25:
            recommendations.append("Migration in early stages - monitor for performance issues")
        elif overall > 90:
            recommendations.append("Migration nearing completion - prepare for final validation")

        failing = [
            s.entity_type
            for s in snapshots
            if s.records_processed and s.records_failed / s.records_processed > HIGH_FAILURE_RATE
        ]
        if failing:
            recommendations.append(
                f"High failure rate for: {', '.join(failing)} - review record errors"
            )

        warning_mb = self._thresholds.memory_warning_mb
        memory_heavy = [s.entity_type for s in snapshots if s.memory_mb >= warning_mb]
        if memory_heavy:
            recommendations.append(
                f"High memory usage for: {', '.join(memory_heavy)} - reduce batch size"
            )

        stalled = [
            s.entity_type
            for s in snapshots
            if s.status == ProgressStatus.RUNNING and s.throughput_rps == 0
        ]
        if stalled:
            recommendations.append(f"Stalled entities detected: {', '.join(stalled)}")

        if not recommendations:
            recommendations.append("Progress tracking normal - no issues detected")
        return recommendations

    # =========================================================================
    # Internals
    # =========================================================================

    def _slot(self, entity_type: str) -> _EntitySlot:
        index = self._slot_index.get(entity_type)
        if index is None:
            raise KeyError(f"Entity {entity_type!r} is not being tracked")
        return self._slots[index]

    def _build_snapshot(self, slot: _EntitySlot) -> ProgressSnapshot:
        processed = slot.records_processed
        remaining = max(slot.total_records - processed, 0)
        total = processed + remaining
        percentage = 100.0 if total == 0 else processed / total * 100.0
        percentage = min(max(percentage, 0.0), 100.0)

        throughput = slot.throughput_samples[-1] if slot.throughput_samples else 0.0
        eta_ms = remaining / throughput * 1000.0 if throughput > 0 else None

        return ProgressSnapshot(
            session_id=self.session_id,
            entity_type=slot.entity_type,
            status=slot.status,
            records_processed=processed,
            records_remaining=remaining,
            records_failed=slot.records_failed,
            percentage_complete=round(percentage, 2),
            throughput_rps=throughput,
            memory_mb=slot.memory_samples[-1] if slot.memory_samples else 0.0,
            elapsed_ms=(self._clock() - slot.started_at) * 1000.0,
            eta_ms=eta_ms,
            batch_number=slot.batch_number,
        )


__all__ = [
    "ProgressTracker",
    "UpdateCallback",
    "THROUGHPUT_BASELINE_RPS",
]
