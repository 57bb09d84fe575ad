"""
Migration Executor: dependency-ordered, resumable batch migration.

The executor compiles a task list into dependency waves and runs the waves
one after another. Tasks inside a wave run concurrently, bounded by
``parallel_entity_limit``; the batches of one task run strictly in order,
so at most one batch per entity is ever in flight.

Every batch reads its source rows by explicit id, applies the entity's
transform and upserts the result keyed by the legacy identifier. Re-running
a batch therefore never duplicates destination rows, which is what makes
batch retries and resume after a crash safe.

Pause and cancel are cooperative. They take effect only immediately before
the next batch's source rows are read.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import uuid4

from bulkmigrate.batching import BatchSizer, process_memory_mb
from bulkmigrate.checkpoint_store import CheckpointStore
from bulkmigrate.config import ExecutorConfig
from bulkmigrate.exceptions import (
    BatchTimeoutError,
    CheckpointCorruptedError,
    CheckpointError,
    CheckpointNotFoundError,
    ErrorHandler,
    ErrorRecoverability,
    MigrationError,
    RecordMigrationError,
    classify_exception,
)
from bulkmigrate.graph import DependencyGraph, ExecutionPlan
from bulkmigrate.models import (
    AlertSeverity,
    AlertType,
    BatchError,
    BatchResult,
    BatchStatus,
    CancelResult,
    Checkpoint,
    CheckpointData,
    ExecutionSession,
    FailureAnalysis,
    MigrationExecutionResult,
    MigrationTask,
    PauseResult,
    PerformanceSummary,
    ProcessingState,
    ProgressStatus,
    RecordId,
    RecoveryInfo,
    ResultStatus,
    ResumeResult,
    SessionStatus,
    TaskState,
    TaskStatus,
)
from bulkmigrate.observability import Tracer, create_tracer
from bulkmigrate.observability.attributes import (
    ATTR_BATCH_NUMBER,
    ATTR_BATCH_SIZE,
    ATTR_ENTITY_TYPE,
    ATTR_EXECUTION_ID,
    ATTR_SESSION_ID,
    ATTR_TASK_COUNT,
    ATTR_WAVE_INDEX,
)
from bulkmigrate.progress import ProgressTracker
from bulkmigrate.stores.interface import DestinationWriter, Row, SourceReader

logger = logging.getLogger(__name__)

Transform = Callable[[Row], Row | Awaitable[Row]]
"""Maps a source row to a destination row; may be sync or async."""

# Samples kept in a checkpoint's processing state.
_CHECKPOINT_SAMPLES = 20

HIGH_FAILURE_RATIO = 0.1


@dataclass
class _TaskRun:
    """Book-keeping for one task within one execute_migration_tasks call."""

    task: MigrationTask
    state: TaskState
    sizer: BatchSizer
    batch_results: list[BatchResult] = field(default_factory=list)
    checkpoints: list[str] = field(default_factory=list)
    throughput_samples: list[float] = field(default_factory=list)
    memory_samples: list[float] = field(default_factory=list)
    failure: FailureAnalysis | None = None
    fatal: bool = False
    records_written: int = 0
    stop_ack: asyncio.Future[str | None] | None = None


@dataclass
class _ResumePoint:
    position: int = 0
    batch_number: int = 0
    checkpoint: Checkpoint | None = None


class MigrationExecutor:
    """
    Runs migration tasks in dependency order with checkpointed batches.

    Example:
        >>> executor = MigrationExecutor(
        ...     source=SQLSourceReader(source_engine),
        ...     destination=SQLDestinationWriter(dest_engine),
        ...     checkpoint_store=CheckpointStore(SQLCheckpointRepository(dest_engine)),
        ...     transforms={"offices": map_office},
        ... )
        >>> result = await executor.execute_migration_tasks([
        ...     MigrationTask("offices", office_ids, priority=Priority.HIGH),
        ...     MigrationTask("doctors", doctor_ids, dependencies={"offices"}),
        ... ])
        >>> result.overall_status
        <ResultStatus.COMPLETED: 'completed'>

    Args:
        source: Reads source rows by id.
        destination: Upserts rows keyed by legacy id.
        checkpoint_store: Persists execution positions.
        progress_tracker: Receives progress and alerts. A tracker for the
            executor's session is created when omitted.
        transforms: Per-entity row transforms; identity when absent.
        config: Executor configuration.
        session_id: Continue an existing session (e.g. after a restart).
            Defaults to the tracker's session, or a new id.
        completed_entities: Entity types already migrated, which satisfy
            dependencies without being resubmitted.
        tracer: Optional tracer (if not provided, one will be created)
        enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        memory_sampler: Returns process memory in MB.
    """

    def __init__(
        self,
        source: SourceReader,
        destination: DestinationWriter,
        checkpoint_store: CheckpointStore,
        progress_tracker: ProgressTracker | None = None,
        *,
        transforms: Mapping[str, Transform] | None = None,
        config: ExecutorConfig | None = None,
        session_id: str | None = None,
        completed_entities: Iterable[str] = (),
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        memory_sampler: Callable[[], float] = process_memory_mb,
    ) -> None:
        if (
            progress_tracker is not None
            and session_id is not None
            and progress_tracker.session_id != session_id
        ):
            raise ValueError(
                f"Progress tracker belongs to session {progress_tracker.session_id!r}, "
                f"not {session_id!r}"
            )
        if session_id is None:
            session_id = progress_tracker.session_id if progress_tracker else str(uuid4())

        self._source = source
        self._destination = destination
        self._checkpoints = checkpoint_store
        self._transforms: dict[str, Transform] = dict(transforms or {})
        self._config = config or ExecutorConfig()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._progress = progress_tracker or ProgressTracker(
            session_id,
            tracer=self._tracer,
            enable_tracing=enable_tracing,
            alert_thresholds=self._config.alerts,
        )
        self._memory_sampler = memory_sampler
        self._error_handler = ErrorHandler()

        self._session = ExecutionSession(
            session_id=session_id,
            completed_entities=set(completed_entities),
        )
        self._tasks: dict[str, MigrationTask] = {}
        self._staged: dict[str, _ResumePoint] = {}
        self._runs: dict[str, _TaskRun] = {}
        self._executing = False
        self._stop_request: TaskStatus | None = None

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def session_id(self) -> str:
        return self._session.session_id

    @property
    def session(self) -> ExecutionSession:
        """Independent copy of the execution session."""
        return self._session.snapshot()

    @property
    def progress_tracker(self) -> ProgressTracker:
        return self._progress

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    def get_task_state(self, entity_type: str) -> TaskState | None:
        """Copy of a task's state in this session, or None if never submitted."""
        state = self._session.tasks.get(entity_type)
        if state is None:
            return None
        return self._session.snapshot().tasks[entity_type]

    def register_transform(self, entity_type: str, transform: Transform) -> None:
        self._transforms[entity_type] = transform

    def build_execution_plan(self, tasks: Sequence[MigrationTask]) -> ExecutionPlan:
        """
        Validate tasks and compute their waves without running anything.

        Raises:
            TaskValidationError: If the task list is invalid.
            DependencyCycleError: If the dependencies form a cycle.
        """
        return DependencyGraph(tasks, self._session.completed_entities).plan()

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute_migration_tasks(
        self,
        tasks: Sequence[MigrationTask],
    ) -> MigrationExecutionResult:
        """
        Execute tasks in dependency order.

        Tasks already completed in this session are skipped. A task whose
        dependency did not complete is not started and is reported as
        blocked.

        Args:
            tasks: Tasks in submission order.

        Returns:
            MigrationExecutionResult with per-batch results and recovery
            information when not every task completed.

        Raises:
            TaskValidationError: If the task list is invalid. Nothing is executed.
            DependencyCycleError: If the dependencies form a cycle. Nothing is executed.
            RuntimeError: If another execution is already in progress.
        """
        if self._executing:
            raise RuntimeError("An execution is already in progress for this executor")

        plan = self.build_execution_plan(tasks)

        execution_id = str(uuid4())
        started_at = datetime.now(UTC)
        started = time.perf_counter()

        self._executing = True
        self._stop_request = None
        self._session.status = SessionStatus.RUNNING
        runs: dict[str, _TaskRun] = {}
        skipped: list[str] = []
        blocked: list[str] = []

        logger.info(
            "Starting execution %s in session %s: %d tasks in %d waves",
            execution_id,
            self.session_id,
            plan.task_count,
            len(plan.waves),
        )

        try:
            with self._tracer.span(
                "bulkmigrate.executor.execute_migration_tasks",
                {
                    ATTR_EXECUTION_ID: execution_id,
                    ATTR_SESSION_ID: self.session_id,
                    ATTR_TASK_COUNT: plan.task_count,
                },
            ):
                semaphore = asyncio.Semaphore(self._config.parallel_entity_limit)
                for wave_index, wave in enumerate(plan.waves):
                    eligible: list[_TaskRun] = []
                    for task in wave:
                        self._tasks[task.entity_type] = task
                        if task.entity_type in self._session.completed_entities:
                            skipped.append(task.entity_type)
                            continue
                        state = self._prepare_state(task)
                        if self._stop_request is not None or not self._dependencies_met(task):
                            blocked.append(task.entity_type)
                            continue
                        run = self._new_run(task, state)
                        runs[task.entity_type] = run
                        eligible.append(run)

                    if not eligible:
                        continue
                    with self._tracer.span(
                        "bulkmigrate.executor.execute_wave",
                        {ATTR_WAVE_INDEX: wave_index, ATTR_TASK_COUNT: len(eligible)},
                    ):
                        await asyncio.gather(
                            *(self._run_with_limit(semaphore, run) for run in eligible)
                        )
        finally:
            self._executing = False
            for run in runs.values():
                self._acknowledge_stop(run, None)
            self._runs.clear()

        result = self._build_result(
            execution_id,
            started_at,
            time.perf_counter() - started,
            runs,
            skipped,
            blocked,
        )
        self._session.status = _SESSION_STATUS[result.overall_status]
        self._stop_request = None

        logger.info(
            "Execution %s finished: %s (%d records written, %d failed, %d entities blocked)",
            execution_id,
            result.overall_status.value,
            result.total_records_processed,
            result.total_records_failed,
            len(result.entities_blocked),
        )
        return result

    def _prepare_state(self, task: MigrationTask) -> TaskState:
        state = self._session.tasks.get(task.entity_type)
        # Failed and cancelled states are final for their submission; a running
        # state left behind by an interrupted call is stale.
        stale = state is not None and (
            state.status.is_terminal or state.status == TaskStatus.RUNNING
        )
        if state is None or stale or state.total_records != task.total_records:
            state = TaskState(entity_type=task.entity_type, total_records=task.total_records)
            self._session.tasks[task.entity_type] = state
        return state

    def _dependencies_met(self, task: MigrationTask) -> bool:
        return all(dep in self._session.completed_entities for dep in task.dependencies)

    def _new_run(self, task: MigrationTask, state: TaskState) -> _TaskRun:
        sizer = BatchSizer(
            self._config.sizing,
            self._config.alerts.memory_ceiling_mb,
            memory_sampler=self._memory_sampler,
        )
        return _TaskRun(task=task, state=state, sizer=sizer)

    async def _run_with_limit(self, semaphore: asyncio.Semaphore, run: _TaskRun) -> None:
        async with semaphore:
            if self._stop_request is not None:
                return
            self._runs[run.task.entity_type] = run
            try:
                await self._run_task(run)
            finally:
                self._runs.pop(run.task.entity_type, None)
                self._acknowledge_stop(run, None)

    async def _run_task(self, run: _TaskRun) -> None:
        task, state = run.task, run.state
        entity = task.entity_type
        with self._tracer.span(
            "bulkmigrate.executor.execute_task",
            {ATTR_SESSION_ID: self.session_id, ATTR_ENTITY_TYPE: entity},
        ):
            try:
                await self._destination.verify_table(task.destination_table or entity)
                start = await self._resolve_start(task)
                self._restore_state(run, start)
                state.transition_to(TaskStatus.RUNNING)
                await self._progress.start_tracking(entity, task.total_records, start.position)
                logger.info(
                    "Task %s started at record %d/%d (batch %d)",
                    entity,
                    start.position,
                    task.total_records,
                    start.batch_number,
                )
                await self._process_batches(run)
            except MigrationError as e:
                await self._fail_task(run, e)
            except Exception as e:
                logger.exception("Unexpected error migrating %s", entity)
                await self._fail_task(run, e)

    async def _process_batches(self, run: _TaskRun) -> None:
        task, state = run.task, run.state
        entity = task.entity_type
        interval = self._config.checkpoint_interval

        while state.records_processed < task.total_records:
            # Only suspension point for pause and cancel.
            if self._stop_request is not None:
                await self._stop_at_boundary(run, self._stop_request)
                return

            batch_ids = run.sizer.next_batch(task.record_ids, state.records_processed)
            batch_number = state.batches_completed + 1
            await self._progress.record_batch_started(entity, batch_number, len(batch_ids))

            result = await self._execute_batch(run, batch_ids, batch_number)

            state.records_processed += len(batch_ids)
            state.batches_completed = batch_number
            state.records_succeeded += result.successful_records
            state.records_failed += result.failed_records
            state.retry_count += result.attempts - 1
            state.failed_record_ids.extend(e.record_id for e in result.errors)
            run.records_written += result.successful_records

            memory_mb = run.sizer.sample_memory()
            run.memory_samples.append(memory_mb)
            throughput = (
                len(batch_ids) / (result.duration_ms / 1000.0) if result.duration_ms > 0 else 0.0
            )
            run.throughput_samples.append(throughput)

            finished = state.records_processed >= task.total_records
            if not finished and batch_number % interval == 0:
                checkpoint_id = await self._write_checkpoint(run)
                if checkpoint_id:
                    result = _with_checkpoint(result, checkpoint_id)
            run.batch_results.append(result)

            await self._progress.record_batch_completed(
                entity,
                batch_number,
                records_processed=state.records_processed,
                batch_records=len(batch_ids),
                duration_ms=result.duration_ms,
                records_failed=state.records_failed,
                memory_mb=memory_mb,
            )
            await self._check_batch_alerts(run, result, throughput, memory_mb)
            run.sizer.observe(len(batch_ids), result.duration_ms / 1000.0, memory_mb)

        await self._complete_task(run)

    async def _complete_task(self, run: _TaskRun) -> None:
        entity = run.task.entity_type
        await self._write_checkpoint(run)
        run.state.transition_to(TaskStatus.COMPLETED)
        self._session.completed_entities.add(entity)
        await self._progress.mark_status(entity, ProgressStatus.COMPLETED)
        logger.info(
            "Task %s completed: %d written, %d failed in %d batches",
            entity,
            run.state.records_succeeded,
            run.state.records_failed,
            run.state.batches_completed,
        )

    async def _stop_at_boundary(self, run: _TaskRun, target: TaskStatus) -> None:
        entity = run.task.entity_type
        checkpoint_id: str | None = None
        if target == TaskStatus.PAUSED:
            checkpoint_id = await self._write_checkpoint(run)
            run.state.transition_to(TaskStatus.PAUSED)
            await self._progress.mark_status(entity, ProgressStatus.PAUSED)
        else:
            run.state.transition_to(TaskStatus.CANCELLED)
            await self._progress.mark_status(entity, ProgressStatus.CANCELLED)
        logger.info(
            "Task %s %s at record %d/%d",
            entity,
            target.value,
            run.state.records_processed,
            run.task.total_records,
        )
        self._acknowledge_stop(run, checkpoint_id)

    async def _fail_task(self, run: _TaskRun, error: Exception) -> None:
        task, state = run.task, run.state
        classification = classify_exception(error)
        message = error.message if isinstance(error, MigrationError) else str(error)

        run.fatal = classification.recoverability == ErrorRecoverability.FATAL
        if state.records_processed > 0 and not run.fatal:
            await self._write_checkpoint(run)

        if state.status in (TaskStatus.PENDING, TaskStatus.PAUSED):
            state.transition_to(TaskStatus.RUNNING)
        state.transition_to(TaskStatus.FAILED)
        state.error = message

        run.failure = FailureAnalysis(
            entity_type=task.entity_type,
            error_code=classification.error_code,
            category=classification.category,
            message=message,
            suggested_action=classification.suggested_action,
            failed_record_count=state.records_failed,
            error_counts=dict(
                Counter(e.error_type for r in run.batch_results for e in r.errors)
            ),
        )
        logger.error(
            "Task %s failed at record %d/%d: %s [code=%s]",
            task.entity_type,
            state.records_processed,
            task.total_records,
            message,
            classification.error_code,
        )

        if self._progress.get_latest_progress(task.entity_type) is None:
            await self._progress.start_tracking(
                task.entity_type, task.total_records, state.records_processed
            )
        await self._progress.mark_status(task.entity_type, ProgressStatus.FAILED)
        await self._progress.raise_alert(
            AlertSeverity.ERROR,
            AlertType.TASK_FAILED,
            f"Task {task.entity_type} failed: {message}",
            entity_type=task.entity_type,
            details={
                "error_code": classification.error_code,
                "records_processed": state.records_processed,
                "last_checkpoint_id": state.last_checkpoint_id,
            },
        )

    # =========================================================================
    # Batches
    # =========================================================================

    async def _execute_batch(
        self,
        run: _TaskRun,
        batch_ids: tuple[RecordId, ...],
        batch_number: int,
    ) -> BatchResult:
        """
        Run one batch with batch-level retries under the batch timeout.

        Each record-retry round is its own destination write and commits on
        its own. Ids committed by any round of any attempt are collected in
        ``committed`` and always reported, including when the batch is
        abandoned part way.

        Raises:
            MigrationError: When batch retries are exhausted or the error
                cannot be retried. Any committed part of the batch is recorded
                on the run first.
        """
        entity = run.task.entity_type
        timeout = self._config.batch_timeout_seconds
        started_at = datetime.now(UTC)
        started = time.perf_counter()
        attempts = 1
        committed: dict[RecordId, None] = {}

        def on_retry(attempt: int, error: Exception, delay_ms: float) -> None:
            nonlocal attempts
            attempts = attempt + 2

        with self._tracer.span(
            "bulkmigrate.executor.execute_batch",
            {
                ATTR_ENTITY_TYPE: entity,
                ATTR_BATCH_NUMBER: batch_number,
                ATTR_BATCH_SIZE: len(batch_ids),
            },
        ):
            try:
                async with asyncio.timeout(timeout) as deadline:
                    errors, record_retries = await self._error_handler.execute_with_retry(
                        lambda: self._attempt_batch(run.task, batch_ids, committed),
                        f"batch {batch_number} of {entity}",
                        retry_config=self._config.batch_retry,
                        on_retry=on_retry,
                    )
            except TimeoutError as e:
                if deadline.expired():
                    return await self._timed_out_batch(
                        run, batch_ids, batch_number, attempts, started, started_at, committed
                    )
                self._record_abandoned_batch(
                    run, batch_ids, batch_number, attempts, started, started_at, committed, e
                )
                raise
            except Exception as e:
                self._record_abandoned_batch(
                    run, batch_ids, batch_number, attempts, started, started_at, committed, e
                )
                raise

        written = {str(rid) for rid in committed}
        errors = [e for e in errors if e.record_id not in written]
        failed = len(errors)
        succeeded = len(committed)
        if failed == 0:
            status = BatchStatus.SUCCESS
        elif succeeded > 0:
            status = BatchStatus.PARTIAL_SUCCESS
        else:
            status = BatchStatus.FAILED

        if failed:
            logger.warning(
                "Batch %d of %s: %d of %d records failed",
                batch_number,
                entity,
                failed,
                len(batch_ids),
            )
        return BatchResult(
            batch_number=batch_number,
            entity_type=entity,
            record_ids=batch_ids,
            successful_records=succeeded,
            failed_records=failed,
            errors=tuple(errors),
            status=status,
            attempts=attempts + record_retries,
            duration_ms=(time.perf_counter() - started) * 1000.0,
            started_at=started_at,
        )

    async def _timed_out_batch(
        self,
        run: _TaskRun,
        batch_ids: tuple[RecordId, ...],
        batch_number: int,
        attempts: int,
        started: float,
        started_at: datetime,
        committed: Mapping[RecordId, None],
    ) -> BatchResult:
        entity = run.task.entity_type
        timeout = self._config.batch_timeout_seconds
        error = BatchTimeoutError(entity, batch_number, timeout)
        logger.warning(
            "%s for %s; %d records committed, the rest marked retryable",
            error.message,
            entity,
            len(committed),
        )
        await self._progress.raise_alert(
            AlertSeverity.WARNING,
            AlertType.BATCH_TIMEOUT,
            f"{error.message} ({entity})",
            entity_type=entity,
            details={"batch_number": batch_number, "timeout_seconds": timeout},
        )
        pending = [rid for rid in batch_ids if rid not in committed]
        return BatchResult(
            batch_number=batch_number,
            entity_type=entity,
            record_ids=batch_ids,
            successful_records=len(committed),
            failed_records=len(pending),
            errors=tuple(
                BatchError(str(rid), error.error_code.lower(), error.message, retryable=True)
                for rid in pending
            ),
            status=BatchStatus.TIMED_OUT,
            attempts=attempts,
            duration_ms=(time.perf_counter() - started) * 1000.0,
            started_at=started_at,
        )

    def _record_abandoned_batch(
        self,
        run: _TaskRun,
        batch_ids: tuple[RecordId, ...],
        batch_number: int,
        attempts: int,
        started: float,
        started_at: datetime,
        committed: Mapping[RecordId, None],
        error: Exception,
    ) -> None:
        """Report the committed part of a batch that is about to fail its task."""
        if not committed:
            return
        entity = run.task.entity_type
        classification = classify_exception(error)
        message = error.message if isinstance(error, MigrationError) else str(error)
        pending = [rid for rid in batch_ids if rid not in committed]
        logger.warning(
            "Batch %d of %s abandoned with %d of %d records committed: %s",
            batch_number,
            entity,
            len(committed),
            len(batch_ids),
            message,
        )
        run.records_written += len(committed)
        run.batch_results.append(
            BatchResult(
                batch_number=batch_number,
                entity_type=entity,
                record_ids=batch_ids,
                successful_records=len(committed),
                failed_records=len(pending),
                errors=tuple(
                    BatchError(
                        str(rid), classification.error_code.lower(), message, retryable=True
                    )
                    for rid in pending
                ),
                status=BatchStatus.PARTIAL_SUCCESS,
                attempts=attempts,
                duration_ms=(time.perf_counter() - started) * 1000.0,
                started_at=started_at,
            )
        )

    async def _attempt_batch(
        self,
        task: MigrationTask,
        batch_ids: tuple[RecordId, ...],
        committed: dict[RecordId, None],
    ) -> tuple[list[BatchError], int]:
        """
        Read, transform and write one batch, retrying failed records.

        Ids the destination accepts are added to ``committed`` as each
        write returns.

        Returns:
            (final record errors, record retry rounds used)
        """
        entity = task.entity_type
        rows = await self._source.fetch_rows(task.source_table or entity, batch_ids)

        errors: list[BatchError] = []
        pending: list[RecordId] = []
        for rid in batch_ids:
            if rid in rows:
                pending.append(rid)
            else:
                errors.append(
                    BatchError(str(rid), "not_found", "Record not found in source", False)
                )

        retry_config = self._config.record_retry
        rounds = 0
        for attempt in range(retry_config.max_attempts):
            prepared, failures = await self._transform_rows(entity, pending, rows)
            if prepared:
                outcome = await self._destination.write_batch(
                    task.destination_table or entity, prepared
                )
                committed.update(dict.fromkeys(outcome.written))
                failures.extend(
                    BatchError(str(f.record_id), f.error_type, f.message, f.retryable)
                    for f in outcome.failures
                )

            retryable = [f for f in failures if f.retryable]
            errors.extend(f for f in failures if not f.retryable)
            if not retryable or attempt + 1 >= retry_config.max_attempts:
                errors.extend(retryable)
                break

            retry_keys = {f.record_id for f in retryable}
            pending = [rid for rid in pending if str(rid) in retry_keys]
            rounds += 1
            delay_ms = retry_config.get_delay_ms(attempt)
            logger.debug(
                "Retrying %d records of %s in %.0fms",
                len(pending),
                entity,
                delay_ms,
            )
            await asyncio.sleep(delay_ms / 1000.0)

        return errors, rounds

    async def _transform_rows(
        self,
        entity: str,
        record_ids: Sequence[RecordId],
        rows: Mapping[RecordId, Row],
    ) -> tuple[list[tuple[RecordId, Row]], list[BatchError]]:
        transform = self._transforms.get(entity)
        prepared: list[tuple[RecordId, Row]] = []
        failures: list[BatchError] = []
        for rid in record_ids:
            row = rows[rid]
            if transform is None:
                prepared.append((rid, dict(row)))
                continue
            try:
                out = transform(dict(row))
                if inspect.isawaitable(out):
                    out = await out
            except RecordMigrationError as e:
                failures.append(BatchError(str(rid), e.error_type, e.message, e.retryable))
            except MigrationError:
                raise
            except Exception as e:
                failures.append(BatchError(str(rid), "transform_error", str(e), False))
            else:
                prepared.append((rid, out))
        return prepared, failures

    async def _check_batch_alerts(
        self,
        run: _TaskRun,
        result: BatchResult,
        throughput: float,
        memory_mb: float,
    ) -> None:
        thresholds = self._config.alerts
        entity = run.task.entity_type

        if thresholds.min_throughput_rps > 0 and throughput < thresholds.min_throughput_rps:
            await self._progress.raise_alert(
                AlertSeverity.WARNING,
                AlertType.LOW_THROUGHPUT,
                f"Low throughput for {entity}: {throughput:.1f} records/sec",
                entity_type=entity,
                details={
                    "threshold": thresholds.min_throughput_rps,
                    "actual": throughput,
                    "batch_number": result.batch_number,
                },
            )

        retries = result.attempts - 1
        if retries > thresholds.max_retries_per_batch:
            await self._progress.raise_alert(
                AlertSeverity.WARNING,
                AlertType.HIGH_RETRY_RATE,
                f"Batch {result.batch_number} of {entity} needed {retries} retries",
                entity_type=entity,
                details={
                    "threshold": thresholds.max_retries_per_batch,
                    "actual": retries,
                    "batch_number": result.batch_number,
                },
            )

        if memory_mb >= thresholds.memory_warning_mb:
            await self._progress.raise_alert(
                AlertSeverity.WARNING,
                AlertType.MEMORY_PRESSURE,
                f"Process memory at {memory_mb:.0f}MB while migrating {entity}",
                entity_type=entity,
                details={
                    "threshold_mb": thresholds.memory_warning_mb,
                    "ceiling_mb": thresholds.memory_ceiling_mb,
                    "actual_mb": memory_mb,
                },
            )

    # =========================================================================
    # Checkpoints and resume
    # =========================================================================

    async def _write_checkpoint(self, run: _TaskRun) -> str | None:
        """Persist the task's position; failures are logged, not raised."""
        task, state = run.task, run.state
        data = CheckpointData(
            session_id=self.session_id,
            entity_type=task.entity_type,
            batch_number=state.batches_completed,
            records_processed=state.records_processed,
            records_remaining=state.records_remaining,
            last_processed_record_id=(
                str(task.record_ids[state.records_processed - 1])
                if state.records_processed
                else None
            ),
            processing_state=ProcessingState(
                batch_size=run.sizer.current_size,
                retry_count=state.retry_count,
                error_count=state.records_failed,
                failed_record_ids=tuple(state.failed_record_ids),
                throughput_samples=tuple(run.throughput_samples[-_CHECKPOINT_SAMPLES:]),
                memory_samples_mb=tuple(run.memory_samples[-_CHECKPOINT_SAMPLES:]),
            ),
        )
        try:
            created = await self._checkpoints.create_checkpoint(data)
        except CheckpointError as e:
            logger.error(
                "Failed to checkpoint %s at batch %d: %s",
                task.entity_type,
                state.batches_completed,
                e.message,
            )
            return None
        for warning in created.warnings:
            logger.warning("Checkpoint %s: %s", created.checkpoint_id, warning)
        state.last_checkpoint_id = created.checkpoint_id
        run.checkpoints.append(created.checkpoint_id)
        return created.checkpoint_id

    def _checkpoint_problems(self, task: MigrationTask | None, checkpoint: Checkpoint) -> list[str]:
        """Reasons a verified checkpoint cannot position ``task``; empty when usable."""
        problems: list[str] = []
        if task is None:
            return problems
        if checkpoint.entity_type != task.entity_type:
            problems.append(
                f"checkpoint belongs to '{checkpoint.entity_type}', not '{task.entity_type}'"
            )
            return problems
        total = checkpoint.records_processed + checkpoint.records_remaining
        if total != task.total_records:
            problems.append(
                f"records_processed + records_remaining = {total}, "
                f"task has {task.total_records} records"
            )
            return problems
        position = checkpoint.records_processed
        if position == 0:
            if checkpoint.last_processed_record_id is not None:
                problems.append("last_processed_record_id set at position 0")
        elif str(task.record_ids[position - 1]) != checkpoint.last_processed_record_id:
            problems.append(
                f"last_processed_record_id {checkpoint.last_processed_record_id!r} "
                f"is not record {position} of the task"
            )
        return problems

    async def _validated_resume(
        self,
        checkpoint_id: str,
        task: MigrationTask | None,
        entity_hint: str | None = None,
    ) -> tuple[_ResumePoint | None, str | None, list[str]]:
        """
        Load and validate a checkpoint, falling back to earlier ones.

        Returns:
            (resume point, entity type, warnings). The resume point is None
            only when the checkpoint does not exist at all.
        """
        warnings: list[str] = []
        checkpoint: Checkpoint | None = None
        try:
            loaded = await self._checkpoints.load_checkpoint(checkpoint_id)
            warnings.extend(loaded.warnings)
            checkpoint = loaded.checkpoint
        except CheckpointNotFoundError as e:
            warnings.append(e.message)
            return None, entity_hint, warnings
        except CheckpointCorruptedError as e:
            warnings.append(e.message)

        if checkpoint is not None:
            problems = self._checkpoint_problems(task, checkpoint)
            if not problems:
                return _resume_point(checkpoint), checkpoint.entity_type, warnings
            warnings.append(f"checkpoint {checkpoint_id} rejected: {'; '.join(problems)}")
            session_id, entity, before = (
                checkpoint.session_id,
                checkpoint.entity_type,
                checkpoint.batch_number,
            )
        else:
            summary = await self._checkpoints.describe_checkpoint(checkpoint_id)
            if summary is None:
                return _ResumePoint(), entity_hint, warnings
            session_id, entity, before = (
                summary.session_id,
                summary.entity_type,
                summary.batch_number,
            )

        if task is None:
            task = self._tasks.get(entity)
        fallback = await self._checkpoints.find_latest_valid(
            session_id,
            entity,
            before_batch=before,
            exclude_ids={checkpoint_id},
            validator=lambda c: self._checkpoint_problems(task, c),
        )
        if fallback is not None:
            warnings.extend(fallback.warnings)
            warnings.append(
                f"falling back to checkpoint {fallback.checkpoint.checkpoint_id} "
                f"(batch {fallback.checkpoint.batch_number})"
            )
            return _resume_point(fallback.checkpoint), entity, warnings

        warnings.append(f"no valid checkpoint for {entity}; restarting from batch 0")
        await self._progress.raise_alert(
            AlertSeverity.WARNING,
            AlertType.CHECKPOINT_CORRUPTED,
            f"Checkpoint {checkpoint_id} unusable; {entity} restarts from the beginning",
            entity_type=entity,
            details={"checkpoint_id": checkpoint_id, "warnings": list(warnings)},
        )
        return _ResumePoint(), entity, warnings

    async def _resolve_start(self, task: MigrationTask) -> _ResumePoint:
        entity = task.entity_type
        state = self._session.tasks[entity]

        if task.checkpoint_id is not None:
            self._staged.pop(entity, None)
            point, _, warnings = await self._validated_resume(task.checkpoint_id, task, entity)
            for warning in warnings:
                logger.warning("Resume of %s: %s", entity, warning)
            if point is None:
                raise CheckpointNotFoundError(task.checkpoint_id)
            return point

        staged = self._staged.pop(entity, None)
        if staged is not None:
            if staged.checkpoint is None:
                return staged
            problems = self._checkpoint_problems(task, staged.checkpoint)
            if not problems:
                return staged
            point, _, warnings = await self._validated_resume(
                staged.checkpoint.checkpoint_id, task, entity
            )
            for warning in warnings:
                logger.warning("Resume of %s: %s", entity, warning)
            return point or _ResumePoint()

        if state.status == TaskStatus.PAUSED and state.last_checkpoint_id:
            point, _, _ = await self._validated_resume(state.last_checkpoint_id, task, entity)
            if point is not None:
                return point

        if self._config.auto_resume:
            found = await self._checkpoints.find_latest_valid(
                self.session_id,
                entity,
                validator=lambda c: self._checkpoint_problems(task, c),
            )
            if found is not None:
                for warning in found.warnings:
                    logger.warning("Resume of %s: %s", entity, warning)
                logger.info(
                    "Resuming %s from checkpoint %s (batch %d)",
                    entity,
                    found.checkpoint.checkpoint_id,
                    found.checkpoint.batch_number,
                )
                return _resume_point(found.checkpoint)

        return _ResumePoint()

    def _restore_state(self, run: _TaskRun, point: _ResumePoint) -> None:
        state = run.state
        state.records_processed = point.position
        state.batches_completed = point.batch_number
        if point.checkpoint is None:
            state.records_succeeded = 0
            state.records_failed = 0
            state.retry_count = 0
            state.failed_record_ids = []
            return
        processing = point.checkpoint.data.processing_state
        state.records_failed = processing.error_count
        state.records_succeeded = max(point.position - processing.error_count, 0)
        state.retry_count = processing.retry_count
        state.failed_record_ids = list(processing.failed_record_ids)
        state.last_checkpoint_id = point.checkpoint.checkpoint_id
        run.sizer.restore(processing.batch_size)

    # =========================================================================
    # Operator controls
    # =========================================================================

    async def pause_execution(self) -> PauseResult:
        """
        Pause every running task at its next batch boundary.

        Each started task writes a checkpoint before this call returns,
        including one still verifying its table or resolving its resume
        point. Tasks waiting for a wave slot stay pending.
        """
        if not self._executing:
            return PauseResult(success=False, message="No execution in progress")

        acks = self._request_stop(TaskStatus.PAUSED)
        results = await asyncio.gather(*acks.values()) if acks else []
        checkpoint_ids = {
            entity: cid for entity, cid in zip(acks, results, strict=True) if cid is not None
        }
        latest = list(checkpoint_ids.values())[-1] if checkpoint_ids else None
        logger.info("Execution paused; checkpoints: %s", checkpoint_ids or "none")
        return PauseResult(
            success=True,
            checkpoint_id=latest,
            checkpoint_ids=checkpoint_ids,
            message=f"Paused {len(checkpoint_ids)} running task(s)",
        )

    async def cancel_execution(self) -> CancelResult:
        """
        Cancel every running task at its next batch boundary.

        No new checkpoint is written; the last one taken remains available.
        """
        if not self._executing:
            return CancelResult(success=False, message="No execution in progress")

        acks = self._request_stop(TaskStatus.CANCELLED)
        if acks:
            await asyncio.gather(*acks.values())
        cancelled = tuple(
            entity
            for entity in acks
            if self._session.tasks[entity].status == TaskStatus.CANCELLED
        )
        logger.info("Execution cancelled: %s", ", ".join(cancelled) or "no running tasks")
        return CancelResult(
            success=True,
            cancelled_entities=cancelled,
            message=f"Cancelled {len(cancelled)} running task(s)",
        )

    async def resume_execution(self, checkpoint_id: str) -> ResumeResult:
        """
        Stage a resume point for the next execute_migration_tasks call.

        The checkpoint is checksum-verified and checked against the entity's
        task when the task is known. When it cannot be used, the nearest
        earlier valid checkpoint of the same (session, entity) is staged
        instead; when none exists the entity restarts from batch 0 and a
        corruption alert is raised.
        """
        point, entity, warnings = await self._validated_resume(
            checkpoint_id,
            None,
        )
        if point is None or entity is None:
            logger.warning("Cannot resume from %s: %s", checkpoint_id, "; ".join(warnings))
            return ResumeResult(
                success=False,
                checkpoint_id=checkpoint_id,
                warnings=tuple(warnings),
            )

        task = self._tasks.get(entity)
        if task is not None and point.checkpoint is not None:
            problems = self._checkpoint_problems(task, point.checkpoint)
            if problems:
                point, entity, more = await self._validated_resume(
                    point.checkpoint.checkpoint_id, task, entity
                )
                warnings.extend(more)
                point = point or _ResumePoint()

        self._staged[entity] = point
        used = point.checkpoint.checkpoint_id if point.checkpoint else None
        logger.info(
            "Staged resume of %s from batch %d (checkpoint %s)",
            entity,
            point.batch_number,
            used or "none",
        )
        return ResumeResult(
            success=True,
            resumed_from_batch=point.batch_number,
            checkpoint_id=used,
            entity_type=entity,
            warnings=tuple(warnings),
        )

    def _request_stop(self, target: TaskStatus) -> dict[str, asyncio.Future[str | None]]:
        self._stop_request = target
        loop = asyncio.get_running_loop()
        acks: dict[str, asyncio.Future[str | None]] = {}
        # Runs still verifying their table or resolving a resume point stop
        # at their first boundary and acknowledge there.
        for entity, run in self._runs.items():
            if run.stop_ack is None or run.stop_ack.done():
                run.stop_ack = loop.create_future()
            acks[entity] = run.stop_ack
        return acks

    @staticmethod
    def _acknowledge_stop(run: _TaskRun, checkpoint_id: str | None) -> None:
        if run.stop_ack is not None and not run.stop_ack.done():
            run.stop_ack.set_result(checkpoint_id)

    # =========================================================================
    # Result
    # =========================================================================

    def _build_result(
        self,
        execution_id: str,
        started_at: datetime,
        elapsed_seconds: float,
        runs: dict[str, _TaskRun],
        skipped: list[str],
        blocked: list[str],
    ) -> MigrationExecutionResult:
        completed = skipped + [
            e for e, r in runs.items() if r.state.status == TaskStatus.COMPLETED
        ]
        failed = [e for e, r in runs.items() if r.state.status == TaskStatus.FAILED]
        stopped = [
            e
            for e, r in runs.items()
            if r.state.status in (TaskStatus.PAUSED, TaskStatus.CANCELLED, TaskStatus.PENDING)
        ]
        written = sum(r.records_written for r in runs.values())
        failed_records = sum(
            b.failed_records for r in runs.values() for b in r.batch_results
        )
        batch_results = sorted(
            (b for r in runs.values() for b in r.batch_results),
            key=lambda b: b.started_at,
        )
        checkpoints = [c for r in runs.values() for c in r.checkpoints]
        memory = [m for r in runs.values() for m in r.memory_samples]
        peak_memory = max(memory, default=0.0)

        interrupted = bool(stopped or blocked)
        if self._stop_request == TaskStatus.CANCELLED and interrupted:
            status = ResultStatus.CANCELLED
        elif self._stop_request == TaskStatus.PAUSED and interrupted:
            status = ResultStatus.PAUSED
        elif not failed and not blocked and not stopped:
            status = ResultStatus.COMPLETED
        elif written > 0 or any(e in self._session.completed_entities for e in runs):
            status = ResultStatus.PARTIAL
        else:
            status = ResultStatus.FAILED

        recovery = None
        if status != ResultStatus.COMPLETED:
            recovery = self._recovery_info(
                status, runs, failed, blocked, stopped, written, failed_records, peak_memory
            )

        return MigrationExecutionResult(
            execution_id=execution_id,
            session_id=self.session_id,
            overall_status=status,
            entities_processed=tuple(completed),
            entities_failed=tuple(failed),
            entities_blocked=tuple(blocked),
            total_records_processed=written,
            total_records_failed=failed_records,
            batch_results=tuple(batch_results),
            checkpoints=tuple(checkpoints),
            recovery=recovery,
            performance=PerformanceSummary(
                started_at=started_at,
                completed_at=datetime.now(UTC),
                duration_ms=elapsed_seconds * 1000.0,
                average_throughput=written / elapsed_seconds if elapsed_seconds > 0 else 0.0,
                peak_memory_mb=peak_memory,
            ),
        )

    def _recovery_info(
        self,
        status: ResultStatus,
        runs: dict[str, _TaskRun],
        failed: list[str],
        blocked: list[str],
        stopped: list[str],
        written: int,
        failed_records: int,
        peak_memory: float,
    ) -> RecoveryInfo:
        incomplete = failed + stopped
        entity_checkpoints = {
            e: runs[e].state.last_checkpoint_id
            for e in incomplete
            if runs[e].state.last_checkpoint_id
        }
        last_checkpoint_id: str | None = None
        resume_from_batch: int | None = None
        for entity in incomplete:
            run = runs[entity]
            if run.state.last_checkpoint_id:
                last_checkpoint_id = run.state.last_checkpoint_id
                resume_from_batch = run.state.batches_completed
        analyses = tuple(runs[e].failure for e in failed if runs[e].failure is not None)
        is_recoverable = not any(runs[e].fatal for e in failed)

        actions: list[str] = []
        for analysis in analyses:
            actions.append(f"{analysis.entity_type}: {analysis.suggested_action}")
        if failed:
            actions.append(f"Review and fix errors for failed entities: {', '.join(failed)}")
        if status == ResultStatus.PAUSED:
            actions.append(
                "Resubmit the same tasks to continue from the pause checkpoints"
            )
        if entity_checkpoints and is_recoverable:
            actions.append("Use checkpoint-based recovery to resume from the last successful batch")
        if blocked:
            actions.append(
                f"Resubmit blocked entities once their dependencies complete: {', '.join(blocked)}"
            )
        if written and failed_records > written * HIGH_FAILURE_RATIO:
            actions.append(
                "High failure rate detected - investigate data quality issues before retrying"
            )
        if peak_memory >= self._config.alerts.memory_warning_mb:
            actions.append("High memory usage detected - consider reducing batch size")

        return RecoveryInfo(
            is_recoverable=is_recoverable,
            last_checkpoint_id=last_checkpoint_id,
            resume_from_batch=resume_from_batch,
            entity_checkpoints=entity_checkpoints,
            failure_analyses=analyses,
            recommended_actions=tuple(actions),
        )


_SESSION_STATUS = {
    ResultStatus.COMPLETED: SessionStatus.COMPLETED,
    ResultStatus.PARTIAL: SessionStatus.FAILED,
    ResultStatus.FAILED: SessionStatus.FAILED,
    ResultStatus.PAUSED: SessionStatus.PAUSED,
    ResultStatus.CANCELLED: SessionStatus.CANCELLED,
}


def _resume_point(checkpoint: Checkpoint) -> _ResumePoint:
    return _ResumePoint(
        position=checkpoint.records_processed,
        batch_number=checkpoint.batch_number,
        checkpoint=checkpoint,
    )


def _with_checkpoint(result: BatchResult, checkpoint_id: str) -> BatchResult:
    return BatchResult(
        batch_number=result.batch_number,
        entity_type=result.entity_type,
        record_ids=result.record_ids,
        successful_records=result.successful_records,
        failed_records=result.failed_records,
        errors=result.errors,
        status=result.status,
        attempts=result.attempts,
        duration_ms=result.duration_ms,
        checkpoint_id=checkpoint_id,
        started_at=result.started_at,
    )


__all__ = [
    "MigrationExecutor",
    "Transform",
]
