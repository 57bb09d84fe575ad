"""
Unit tests for ProgressTracker.

Tests cover:
- Snapshot calculation (percentage, clamping, monotonic progress, ETA)
- Ordered update delivery to callbacks and streams
- Subscriber failure isolation
- Performance metrics over the sample window
- Alert lifecycle and the alert horizon
- Progress reports and recommendations
- Mirroring to the progress repository
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from bulkmigrate.config import AlertThresholds, ProgressConfig
from bulkmigrate.models import (
    AlertSeverity,
    AlertType,
    ProgressStatus,
    ProgressUpdate,
    UpdateType,
)
from bulkmigrate.progress import ProgressTracker
from bulkmigrate.repositories.progress import InMemoryProgressRepository


class FailingProgressRepository(InMemoryProgressRepository):
    async def save_snapshot(self, snapshot):
        raise ConnectionError("progress store unavailable")

    async def save_alert(self, alert):
        raise ConnectionError("progress store unavailable")


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


async def _complete_batch(tracker, entity, batch, processed, *, records=3, ms=100.0, **kw):
    return await tracker.record_batch_completed(
        entity,
        batch,
        records_processed=processed,
        batch_records=records,
        duration_ms=ms,
        **kw,
    )


class TestSnapshots:
    """Tests for snapshot calculation."""

    @pytest.mark.asyncio
    async def test_start_tracking(self, progress_tracker: ProgressTracker, session_id):
        snapshot = await progress_tracker.start_tracking("offices", 10)

        assert snapshot.session_id == session_id
        assert snapshot.status == ProgressStatus.STARTING
        assert snapshot.percentage_complete == 0.0
        assert snapshot.records_remaining == 10
        assert snapshot.eta_ms is None

    @pytest.mark.asyncio
    async def test_batch_completion_updates_percentage(self, progress_tracker: ProgressTracker):
        """Test that percentage is processed over processed + remaining."""
        await progress_tracker.start_tracking("offices", 10)

        snapshot = await _complete_batch(progress_tracker, "offices", 1, 3, records=3, ms=100.0)

        assert snapshot.status == ProgressStatus.RUNNING
        assert snapshot.percentage_complete == 30.0
        assert snapshot.throughput_rps == 30.0
        # 7 remaining at 30 rps.
        assert snapshot.eta_ms == pytest.approx(7 / 30 * 1000)
        assert progress_tracker.get_latest_progress("offices") == snapshot

    @pytest.mark.asyncio
    async def test_resumed_entity_starts_from_position(self, progress_tracker: ProgressTracker):
        snapshot = await progress_tracker.start_tracking("offices", 10, already_processed=6)

        assert snapshot.percentage_complete == 60.0

    @pytest.mark.asyncio
    async def test_progress_never_decreases(self, progress_tracker: ProgressTracker):
        """Test that a stale lower position does not move progress backwards."""
        await progress_tracker.start_tracking("offices", 10)
        await _complete_batch(progress_tracker, "offices", 2, 6)

        snapshot = await _complete_batch(progress_tracker, "offices", 1, 3)

        assert snapshot.records_processed == 6
        assert snapshot.batch_number == 2

    @pytest.mark.asyncio
    async def test_progress_clamped_to_total(self, progress_tracker: ProgressTracker):
        await progress_tracker.start_tracking("offices", 10)

        snapshot = await _complete_batch(progress_tracker, "offices", 5, 15)

        assert snapshot.records_processed == 10
        assert snapshot.percentage_complete == 100.0

    @pytest.mark.asyncio
    async def test_empty_entity_is_complete(self, progress_tracker: ProgressTracker):
        snapshot = await progress_tracker.start_tracking("offices", 0)
        assert snapshot.percentage_complete == 100.0

    @pytest.mark.asyncio
    async def test_elapsed_uses_clock(self, session_id):
        clock = FakeClock()
        tracker = ProgressTracker(session_id, enable_tracing=False, clock=clock)
        await tracker.start_tracking("offices", 10)
        clock.now += 2.5

        snapshot = await _complete_batch(tracker, "offices", 1, 3)

        assert snapshot.elapsed_ms == pytest.approx(2500.0)

    @pytest.mark.asyncio
    async def test_completed_status_fills_progress(self, progress_tracker: ProgressTracker):
        await progress_tracker.start_tracking("offices", 10)

        snapshot = await progress_tracker.mark_status("offices", ProgressStatus.COMPLETED)

        assert snapshot.percentage_complete == 100.0
        assert snapshot.status == ProgressStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, progress_tracker: ProgressTracker):
        with pytest.raises(ValueError):
            await progress_tracker.start_tracking("offices", -1)
        with pytest.raises(ValueError):
            await progress_tracker.start_tracking("offices", 10, already_processed=11)
        with pytest.raises(KeyError):
            await progress_tracker.record_batch_started("unknown", 1, 3)

    @pytest.mark.asyncio
    async def test_get_all_progress_in_tracking_order(self, progress_tracker: ProgressTracker):
        await progress_tracker.start_tracking("offices", 10)
        await progress_tracker.start_tracking("doctors", 6)

        assert list(progress_tracker.get_all_progress()) == ["offices", "doctors"]
        assert progress_tracker.get_latest_progress("patients") is None


class TestUpdates:
    """Tests for update delivery."""

    @pytest.mark.asyncio
    async def test_updates_delivered_in_sequence(self, progress_tracker: ProgressTracker):
        """Test that per-entity sequence numbers increase without gaps."""
        received: list[ProgressUpdate] = []
        progress_tracker.subscribe_to_updates(received.append)

        await progress_tracker.start_tracking("offices", 10)
        await progress_tracker.record_batch_started("offices", 1, 3)
        await _complete_batch(progress_tracker, "offices", 1, 3)
        await progress_tracker.mark_status("offices", ProgressStatus.COMPLETED)

        assert [u.sequence for u in received] == list(range(1, len(received) + 1))
        assert [u.update_type for u in received] == [
            UpdateType.PROGRESS,
            UpdateType.BATCH_STARTED,
            UpdateType.BATCH_COMPLETED,
            UpdateType.PROGRESS,
            UpdateType.ENTITY_COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_sequence_continues_after_restart(self, progress_tracker: ProgressTracker):
        received: list[ProgressUpdate] = []
        progress_tracker.subscribe_to_updates(received.append)

        await progress_tracker.start_tracking("offices", 10)
        await progress_tracker.start_tracking("offices", 10, already_processed=3)

        assert [u.sequence for u in received] == [1, 2]

    @pytest.mark.asyncio
    async def test_rewound_restart_is_a_reset(self, progress_tracker: ProgressTracker):
        """Test that resuming behind the last position is flagged as a reset."""
        received: list[ProgressUpdate] = []
        await progress_tracker.start_tracking("offices", 10)
        await _complete_batch(progress_tracker, "offices", 2, 6)
        await progress_tracker.mark_status("offices", ProgressStatus.PAUSED)
        progress_tracker.subscribe_to_updates(received.append)

        snapshot = await progress_tracker.start_tracking("offices", 10, already_processed=3)
        await progress_tracker.start_tracking("offices", 10, already_processed=3)

        assert snapshot.records_processed == 3
        assert [u.update_type for u in received] == [
            UpdateType.PROGRESS_RESET,
            UpdateType.PROGRESS,
        ]
        assert received[0].data["previous_records_processed"] == 6
        assert "previous_records_processed" not in received[1].data

    @pytest.mark.asyncio
    async def test_async_subscriber_awaited(self, progress_tracker: ProgressTracker):
        received = []

        async def on_update(update: ProgressUpdate) -> None:
            await asyncio.sleep(0)
            received.append(update.entity_type)

        progress_tracker.subscribe_to_updates(on_update)
        await progress_tracker.start_tracking("offices", 10)

        assert received == ["offices"]

    @pytest.mark.asyncio
    async def test_failing_subscriber_isolated(self, progress_tracker: ProgressTracker):
        """Test that one subscriber raising does not stop delivery to others."""
        received = []

        def broken(update: ProgressUpdate) -> None:
            raise RuntimeError("subscriber bug")

        progress_tracker.subscribe_to_updates(broken)
        progress_tracker.subscribe_to_updates(received.append)

        snapshot = await progress_tracker.start_tracking("offices", 10)

        assert len(received) == 1
        assert snapshot.records_remaining == 10

    @pytest.mark.asyncio
    async def test_unsubscribe(self, progress_tracker: ProgressTracker):
        received = []
        unsubscribe = progress_tracker.subscribe_to_updates(received.append)

        await progress_tracker.start_tracking("offices", 10)
        unsubscribe()
        unsubscribe()
        await progress_tracker.start_tracking("doctors", 6)

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_stream_updates_until_closed(self, progress_tracker: ProgressTracker):
        """Test that stream_updates yields updates and ends on close_streams."""
        received: list[ProgressUpdate] = []

        async def consume() -> None:
            async for update in progress_tracker.stream_updates():
                received.append(update)

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)

        await progress_tracker.start_tracking("offices", 10)
        await _complete_batch(progress_tracker, "offices", 1, 3)
        progress_tracker.close_streams()
        await asyncio.wait_for(consumer, timeout=1.0)

        assert [u.update_type for u in received] == [
            UpdateType.PROGRESS,
            UpdateType.BATCH_COMPLETED,
            UpdateType.PROGRESS,
        ]

    @pytest.mark.asyncio
    async def test_full_stream_drops_updates(self, session_id):
        """Test that a slow stream consumer never blocks the writer."""
        tracker = ProgressTracker(
            session_id,
            config=ProgressConfig(subscriber_queue_size=1),
            enable_tracing=False,
        )
        stream = tracker.stream_updates()
        first = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)

        await tracker.start_tracking("offices", 10)
        await tracker.start_tracking("doctors", 6)
        await tracker.start_tracking("patients", 4)

        update = await asyncio.wait_for(first, timeout=1.0)
        assert update.entity_type == "offices"
        await stream.aclose()


class TestPerformanceMetrics:
    """Tests for calculate_performance_metrics."""

    @pytest.mark.asyncio
    async def test_no_samples(self, progress_tracker: ProgressTracker):
        await progress_tracker.start_tracking("offices", 10)

        assert progress_tracker.calculate_performance_metrics("offices") is None
        assert progress_tracker.calculate_performance_metrics("unknown") is None

    @pytest.mark.asyncio
    async def test_full_efficiency(self, progress_tracker: ProgressTracker):
        """Test that baseline throughput with modest memory scores 100."""
        await progress_tracker.start_tracking("offices", 5000)
        await _complete_batch(
            progress_tracker, "offices", 1, 1000, records=1000, ms=1000.0, memory_mb=200.0
        )

        metrics = progress_tracker.calculate_performance_metrics("offices")

        assert metrics.sample_count == 1
        assert metrics.throughput.average == 1000.0
        assert metrics.memory.peak_mb == 200.0
        assert metrics.efficiency.overall_score == 100.0

    @pytest.mark.asyncio
    async def test_window_statistics(self, progress_tracker: ProgressTracker):
        await progress_tracker.start_tracking("offices", 100)
        await _complete_batch(progress_tracker, "offices", 1, 10, records=10, ms=100.0)
        await _complete_batch(progress_tracker, "offices", 2, 20, records=10, ms=200.0)

        metrics = progress_tracker.calculate_performance_metrics("offices")

        assert metrics.throughput.peak == 100.0
        assert metrics.throughput.minimum == 50.0
        assert metrics.throughput.current == 50.0
        assert metrics.timing.fastest_batch_ms == 100.0
        assert metrics.timing.slowest_batch_ms == 200.0
        assert metrics.timing.average_batch_ms == 150.0
        assert metrics.memory.current_mb == 0.0
        assert metrics.efficiency.memory_efficiency == 0.0

    @pytest.mark.asyncio
    async def test_window_is_bounded(self, session_id):
        tracker = ProgressTracker(
            session_id,
            config=ProgressConfig(performance_window_size=5),
            enable_tracing=False,
        )
        await tracker.start_tracking("offices", 100)
        for batch in range(1, 9):
            await _complete_batch(tracker, "offices", batch, batch * 3)

        assert tracker.calculate_performance_metrics("offices").sample_count == 5


class TestAlerts:
    """Tests for the alert lifecycle."""

    @pytest.mark.asyncio
    async def test_raise_and_resolve(self, progress_tracker: ProgressTracker, progress_repo):
        alert = await progress_tracker.raise_alert(
            AlertSeverity.WARNING,
            AlertType.LOW_THROUGHPUT,
            "throughput below threshold",
            entity_type="offices",
            details={"throughput_rps": 1.5},
        )

        assert progress_tracker.get_active_alerts() == [alert]
        assert await progress_tracker.resolve_alert(alert.alert_id)
        assert progress_tracker.get_active_alerts() == []
        assert progress_tracker.get_alerts()[0].resolved

        mirrored = await progress_repo.get_alerts(progress_tracker.session_id)
        assert mirrored[0].resolved

    @pytest.mark.asyncio
    async def test_resolve_twice_or_unknown(self, progress_tracker: ProgressTracker):
        alert = await progress_tracker.raise_alert(
            AlertSeverity.ERROR, AlertType.TASK_FAILED, "offices failed"
        )

        assert await progress_tracker.resolve_alert(alert.alert_id)
        assert not await progress_tracker.resolve_alert(alert.alert_id)
        assert not await progress_tracker.resolve_alert("missing")

    @pytest.mark.asyncio
    async def test_alert_horizon(self, progress_tracker: ProgressTracker):
        """Test that alerts older than the horizon are no longer active."""
        alert = await progress_tracker.raise_alert(
            AlertSeverity.WARNING, AlertType.MEMORY_PRESSURE, "memory high"
        )
        later = alert.timestamp + timedelta(seconds=3601)

        assert progress_tracker.get_active_alerts(now=later) == []
        assert progress_tracker.get_alerts() == [alert]

    @pytest.mark.asyncio
    async def test_active_alerts_newest_first(self, progress_tracker: ProgressTracker):
        first = await progress_tracker.raise_alert(
            AlertSeverity.WARNING, AlertType.HIGH_RETRY_RATE, "retries"
        )
        second = await progress_tracker.raise_alert(
            AlertSeverity.WARNING, AlertType.BATCH_TIMEOUT, "timeout"
        )

        active = progress_tracker.get_active_alerts(now=datetime.now(UTC))
        assert {a.alert_id for a in active} == {first.alert_id, second.alert_id}
        assert active[0].timestamp >= active[1].timestamp

    @pytest.mark.asyncio
    async def test_alert_published_as_update(self, progress_tracker: ProgressTracker):
        received: list[ProgressUpdate] = []
        progress_tracker.subscribe_to_updates(received.append)
        await progress_tracker.start_tracking("offices", 10)

        await progress_tracker.raise_alert(
            AlertSeverity.ERROR,
            AlertType.CHECKPOINT_CORRUPTED,
            "no valid checkpoint",
            entity_type="offices",
        )

        update = received[-1]
        assert update.update_type == UpdateType.ALERT
        assert update.entity_type == "offices"
        assert update.sequence == 2
        assert update.data["action"] == "raised"


class TestReporting:
    """Tests for generate_progress_report."""

    @pytest.mark.asyncio
    async def test_early_stage_report(self, progress_tracker: ProgressTracker):
        await progress_tracker.start_tracking("offices", 10)
        await progress_tracker.start_tracking("doctors", 6)

        report = progress_tracker.generate_progress_report()

        assert report.total_records == 16
        assert report.overall_percentage == 0.0
        assert any("early stages" in r for r in report.recommendations)

    @pytest.mark.asyncio
    async def test_completed_report(self, progress_tracker: ProgressTracker):
        await progress_tracker.start_tracking("offices", 10)
        await progress_tracker.mark_status("offices", ProgressStatus.COMPLETED)

        report = progress_tracker.generate_progress_report()

        assert report.overall_percentage == 100.0
        assert report.recommendations == ("All entities completed successfully",)

    @pytest.mark.asyncio
    async def test_report_flags_problems(self, progress_tracker: ProgressTracker):
        """Test that failures, memory and alerts produce recommendations."""
        await progress_tracker.start_tracking("offices", 10)
        await _complete_batch(
            progress_tracker, "offices", 2, 6, records_failed=2, memory_mb=900.0
        )
        await progress_tracker.raise_alert(
            AlertSeverity.WARNING, AlertType.MEMORY_PRESSURE, "memory high"
        )

        report = progress_tracker.generate_progress_report()

        assert report.records_failed == 2
        assert report.overall_percentage == 60.0
        assert len(report.active_alerts) == 1
        text = " | ".join(report.recommendations)
        assert "1 active alert(s)" in text
        assert "High failure rate for: offices" in text
        assert "High memory usage for: offices" in text

    @pytest.mark.asyncio
    async def test_memory_recommendation_uses_alert_thresholds(self, session_id):
        """Test that the memory recommendation follows the configured warning level."""
        tracker = ProgressTracker(
            session_id,
            enable_tracing=False,
            alert_thresholds=AlertThresholds(memory_ceiling_mb=500.0, memory_warning_ratio=0.5),
        )
        await tracker.start_tracking("offices", 10)
        await _complete_batch(tracker, "offices", 1, 3, memory_mb=260.0)
        await tracker.start_tracking("doctors", 10)
        await _complete_batch(tracker, "doctors", 1, 3, memory_mb=240.0)

        text = " | ".join(tracker.generate_progress_report().recommendations)

        assert "High memory usage for: offices -" in text
        assert "doctors -" not in text


class TestRepositoryMirror:
    """Tests for mirroring snapshots and alerts."""

    @pytest.mark.asyncio
    async def test_snapshots_mirrored(self, progress_tracker: ProgressTracker, progress_repo):
        await progress_tracker.start_tracking("offices", 10)
        await _complete_batch(progress_tracker, "offices", 1, 3)

        stored = await progress_repo.get_snapshots(progress_tracker.session_id)

        assert [s.records_processed for s in stored] == [3]

    @pytest.mark.asyncio
    async def test_persistence_can_be_disabled(self, session_id, progress_repo):
        tracker = ProgressTracker(
            session_id,
            progress_repo,
            ProgressConfig(persist_snapshots=False),
            enable_tracing=False,
        )
        await tracker.start_tracking("offices", 10)

        assert await progress_repo.get_snapshots(session_id) == []

    @pytest.mark.asyncio
    async def test_mirror_failure_is_not_fatal(self, session_id, caplog):
        """Test that repository errors are logged and tracking continues."""
        tracker = ProgressTracker(session_id, FailingProgressRepository(), enable_tracing=False)

        snapshot = await tracker.start_tracking("offices", 10)
        alert = await tracker.raise_alert(AlertSeverity.INFO, AlertType.TASK_FAILED, "x")

        assert snapshot.records_remaining == 10
        assert tracker.get_alerts() == [alert]
        assert "Failed to mirror progress snapshot" in caplog.text
