"""
Checkpoint Store: durable, checksum-verified execution positions.

Each checkpoint is written to a primary target (the checkpoint repository,
normally the ``migration_checkpoints`` table) and a secondary target (one
JSON file per checkpoint). Creation succeeds when at least one target
accepts the write. Loading tries the primary copy first and falls back to
the file copy when the primary is unavailable or fails verification.

A checkpoint copy is trusted only when the SHA-256 of its uncompressed
payload matches the stored checksum and the payload agrees with the
indexed columns. When no copy passes, the checkpoint is marked corrupted
and is never used for resume.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Collection
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from bulkmigrate.config import CheckpointStoreConfig
from bulkmigrate.exceptions import (
    CheckpointCorruptedError,
    CheckpointNotFoundError,
    CheckpointPersistenceError,
    CheckpointValidationError,
)
from bulkmigrate.models import Checkpoint, CheckpointData, CheckpointStatus
from bulkmigrate.observability import Tracer, create_tracer
from bulkmigrate.observability.attributes import (
    ATTR_BATCH_NUMBER,
    ATTR_CHECKPOINT_ID,
    ATTR_CHECKPOINT_SOURCE,
    ATTR_ENTITY_TYPE,
    ATTR_SESSION_ID,
)
from bulkmigrate.repositories.checkpoint import CheckpointRecord, CheckpointRepository
from bulkmigrate.repositories.file_backup import FileCheckpointBackup
from bulkmigrate.serialization import (
    ChecksumMismatchError,
    decode_checkpoint,
    encode_checkpoint,
)

logger = logging.getLogger(__name__)

SOURCE_DATABASE = "database"
SOURCE_FILE = "file"

CheckpointValidator = Callable[[Checkpoint], list[str]]
"""Returns problems with a checkpoint for a specific use; empty means usable."""


@dataclass(frozen=True)
class CheckpointCreateResult:
    """
    Result of create_checkpoint.

    Attributes:
        checkpoint_id: Id of the new checkpoint.
        backup_locations: Targets that accepted the write ("database", "file:<path>").
        warnings: Failures of individual targets.
        compressed: Whether the payload was compressed.
        size_bytes: Stored payload size.
    """

    checkpoint_id: str
    backup_locations: tuple[str, ...]
    warnings: tuple[str, ...] = ()
    compressed: bool = False
    size_bytes: int = 0


@dataclass(frozen=True)
class CheckpointLoadResult:
    """
    Result of loading a checkpoint.

    Attributes:
        checkpoint: The verified checkpoint.
        source: "database" or "file".
        fallback_used: True when the primary copy could not be used.
        warnings: Problems encountered along the way.
    """

    checkpoint: Checkpoint
    source: str
    fallback_used: bool = False
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class CheckpointSummary:
    """Index-level view of a checkpoint, without loading its payload."""

    checkpoint_id: str
    session_id: str
    entity_type: str
    batch_number: int
    records_processed: int
    records_remaining: int
    status: CheckpointStatus
    created_at: datetime

    @property
    def progress_percentage(self) -> float:
        total = self.records_processed + self.records_remaining
        if total == 0:
            return 100.0
        return self.records_processed / total * 100.0

    @classmethod
    def from_record(cls, record: CheckpointRecord) -> CheckpointSummary:
        return cls(
            checkpoint_id=record.checkpoint_id,
            session_id=record.session_id,
            entity_type=record.entity_type,
            batch_number=record.batch_number,
            records_processed=record.records_processed,
            records_remaining=record.records_remaining,
            status=record.status,
            created_at=record.created_at,
        )


@dataclass(frozen=True)
class CheckpointRecoveryInfo:
    """
    Recovery options for a session.

    Attributes:
        session_id: The session.
        entity_type: Entity filter, if one was given.
        available: Non-corrupted checkpoints ranked by progress descending,
            then creation time descending.
        recommended: The top-ranked checkpoint, if any.
    """

    session_id: str
    entity_type: str | None
    available: tuple[CheckpointSummary, ...]
    recommended: CheckpointSummary | None


@dataclass(frozen=True)
class StorageStatistics:
    """Aggregate statistics over stored checkpoints."""

    total_checkpoints: int
    by_status: dict[str, int] = field(default_factory=dict)
    sessions: int = 0
    total_size_bytes: int = 0
    average_size_bytes: float = 0.0
    compressed_count: int = 0
    oldest: datetime | None = None
    newest: datetime | None = None
    backup_files: int = 0


class CheckpointStore:
    """
    Durable checkpoint storage with a redundant file backup.

    Example:
        >>> store = CheckpointStore(
        ...     SQLCheckpointRepository(engine),
        ...     config=CheckpointStoreConfig(checkpoint_dir=Path("checkpoints")),
        ... )
        >>> created = await store.create_checkpoint(data)
        >>> loaded = await store.load_checkpoint(created.checkpoint_id)

    Args:
        repository: Primary checkpoint storage.
        backup: Secondary storage. Built from ``config.checkpoint_dir`` when
            not given; None disables the file backup.
        config: Store configuration.
        tracer: Optional tracer (if not provided, one will be created)
        enable_tracing: Whether to enable OpenTelemetry tracing (default True)
    """

    def __init__(
        self,
        repository: CheckpointRepository,
        backup: FileCheckpointBackup | None = None,
        config: CheckpointStoreConfig | None = None,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._config = config or CheckpointStoreConfig()
        self._repository = repository
        if backup is None and self._config.checkpoint_dir is not None:
            backup = FileCheckpointBackup(self._config.checkpoint_dir)
        self._backup = backup
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @property
    def config(self) -> CheckpointStoreConfig:
        return self._config

    @property
    def backup(self) -> FileCheckpointBackup | None:
        return self._backup

    # =========================================================================
    # Create
    # =========================================================================

    def validate(self, data: CheckpointData) -> list[str]:
        """
        Check required fields of a checkpoint payload.

        Returns:
            Validation errors; empty when the payload is valid.
        """
        errors: list[str] = []
        if not data.session_id.strip():
            errors.append("session_id is required")
        if not data.entity_type.strip():
            errors.append("entity_type is required")
        if data.records_processed > 0 and not data.last_processed_record_id:
            errors.append("last_processed_record_id is required when records_processed > 0")
        if data.records_processed == 0 and data.last_processed_record_id is not None:
            errors.append("last_processed_record_id must be empty when records_processed is 0")
        return errors

    async def create_checkpoint(self, data: CheckpointData) -> CheckpointCreateResult:
        """
        Persist a checkpoint to every configured target.

        Older active checkpoints of the same (session, entity) become
        superseded, and the per-entity retention limit is applied.

        Args:
            data: Checkpoint payload.

        Returns:
            CheckpointCreateResult with the targets written and any warnings.

        Raises:
            CheckpointValidationError: If required fields are missing.
            CheckpointPersistenceError: If no target accepted the write.
        """
        errors = self.validate(data)
        if errors:
            raise CheckpointValidationError(errors)

        checkpoint_id = str(uuid4())
        with self._tracer.span(
            "bulkmigrate.checkpoint_store.create_checkpoint",
            {
                ATTR_CHECKPOINT_ID: checkpoint_id,
                ATTR_SESSION_ID: data.session_id,
                ATTR_ENTITY_TYPE: data.entity_type,
                ATTR_BATCH_NUMBER: data.batch_number,
            },
        ):
            encoded = encode_checkpoint(
                data,
                compression_enabled=self._config.compression_enabled,
                compression_threshold_bytes=self._config.compression_threshold_bytes,
            )
            record = CheckpointRecord(
                checkpoint_id=checkpoint_id,
                session_id=data.session_id,
                entity_type=data.entity_type,
                batch_number=data.batch_number,
                records_processed=data.records_processed,
                records_remaining=data.records_remaining,
                last_processed_record_id=data.last_processed_record_id,
                state_blob=encoded.state_blob,
                compressed=encoded.compressed,
                checksum=encoded.checksum,
                status=CheckpointStatus.ACTIVE,
                size_bytes=encoded.size_bytes,
                created_at=datetime.now(UTC),
            )

            locations: list[str] = []
            warnings: list[str] = []

            primary_ok = False
            try:
                await self._repository.save(record)
                locations.append(SOURCE_DATABASE)
                primary_ok = True
            except Exception as e:
                logger.warning(
                    "Primary checkpoint write failed for %s/%s: %s",
                    data.session_id,
                    data.entity_type,
                    e,
                )
                warnings.append(f"database backup failed: {e}")

            if self._backup is not None:
                try:
                    path = await self._backup.save(record)
                    locations.append(f"{SOURCE_FILE}:{path}")
                except OSError as e:
                    logger.warning("File checkpoint backup failed for %s: %s", checkpoint_id, e)
                    warnings.append(f"file backup failed: {e}")

            if not locations:
                raise CheckpointPersistenceError(checkpoint_id, warnings)

            if primary_ok:
                await self._retire_older(record, warnings)

            logger.debug(
                "Created checkpoint %s for %s/%s at batch %d (%d/%d records, %s)",
                checkpoint_id,
                data.session_id,
                data.entity_type,
                data.batch_number,
                data.records_processed,
                data.total_records,
                ", ".join(locations),
            )
            return CheckpointCreateResult(
                checkpoint_id=checkpoint_id,
                backup_locations=tuple(locations),
                warnings=tuple(warnings),
                compressed=encoded.compressed,
                size_bytes=encoded.size_bytes,
            )

    async def _retire_older(self, record: CheckpointRecord, warnings: list[str]) -> None:
        try:
            await self._repository.supersede_active(
                record.session_id, record.entity_type, record.checkpoint_id
            )
            await self.enforce_checkpoint_limit(record.session_id, record.entity_type)
        except Exception as e:
            logger.warning(
                "Failed to retire older checkpoints for %s/%s: %s",
                record.session_id,
                record.entity_type,
                e,
            )
            warnings.append(f"retiring older checkpoints failed: {e}")

    # =========================================================================
    # Load
    # =========================================================================

    async def load_checkpoint(self, checkpoint_id: str) -> CheckpointLoadResult:
        """
        Load and verify a checkpoint.

        Args:
            checkpoint_id: The checkpoint to load.

        Returns:
            CheckpointLoadResult naming the copy that was used.

        Raises:
            CheckpointNotFoundError: If no copy exists.
            CheckpointCorruptedError: If no copy passes verification. The
                checkpoint is marked corrupted before raising.
        """
        with self._tracer.span(
            "bulkmigrate.checkpoint_store.load_checkpoint",
            {ATTR_CHECKPOINT_ID: checkpoint_id},
        ) as span:
            warnings: list[str] = []
            found = False

            primary: CheckpointRecord | None = None
            try:
                primary = await self._repository.get(checkpoint_id)
            except Exception as e:
                logger.warning("Primary checkpoint read failed for %s: %s", checkpoint_id, e)
                warnings.append(f"database unavailable: {e}")

            if primary is not None:
                found = True
                try:
                    checkpoint = self._verify(primary)
                    if span is not None:
                        span.set_attribute(ATTR_CHECKPOINT_SOURCE, SOURCE_DATABASE)
                    return CheckpointLoadResult(
                        checkpoint=checkpoint,
                        source=SOURCE_DATABASE,
                        fallback_used=False,
                        warnings=tuple(warnings),
                    )
                except ChecksumMismatchError as e:
                    logger.warning(
                        "Primary copy of checkpoint %s failed verification: %s",
                        checkpoint_id,
                        e,
                    )
                    warnings.append(f"database copy invalid: {e}")

            if self._backup is not None:
                secondary: CheckpointRecord | None = None
                try:
                    secondary = await self._backup.get(checkpoint_id)
                except (OSError, ValueError) as e:
                    found = True
                    warnings.append(f"file copy unreadable: {e}")

                if secondary is not None:
                    found = True
                    try:
                        checkpoint = self._verify(secondary)
                        if primary is not None:
                            checkpoint = _with_status(checkpoint, primary.status)
                        logger.info(
                            "Loaded checkpoint %s from file backup", checkpoint_id
                        )
                        if span is not None:
                            span.set_attribute(ATTR_CHECKPOINT_SOURCE, SOURCE_FILE)
                        return CheckpointLoadResult(
                            checkpoint=checkpoint,
                            source=SOURCE_FILE,
                            fallback_used=True,
                            warnings=tuple(warnings),
                        )
                    except ChecksumMismatchError as e:
                        warnings.append(f"file copy invalid: {e}")

            if not found:
                raise CheckpointNotFoundError(checkpoint_id)

            await self._mark_corrupted_if_present(checkpoint_id, primary)
            raise CheckpointCorruptedError(checkpoint_id, "; ".join(warnings))

    def _verify(self, record: CheckpointRecord) -> Checkpoint:
        data = decode_checkpoint(record.state_blob, record.compressed, record.checksum)
        mismatched = [
            name
            for name, column, payload in (
                ("session_id", record.session_id, data.session_id),
                ("entity_type", record.entity_type, data.entity_type),
                ("batch_number", record.batch_number, data.batch_number),
                ("records_processed", record.records_processed, data.records_processed),
                ("records_remaining", record.records_remaining, data.records_remaining),
                (
                    "last_processed_record_id",
                    record.last_processed_record_id,
                    data.last_processed_record_id,
                ),
            )
            if column != payload
        ]
        if mismatched:
            raise ChecksumMismatchError(
                f"indexed columns disagree with payload: {', '.join(mismatched)}"
            )
        return Checkpoint(
            checkpoint_id=record.checkpoint_id,
            data=data,
            status=record.status,
            checksum=record.checksum,
            created_at=record.created_at,
            compressed=record.compressed,
            size_bytes=record.size_bytes,
        )

    async def _mark_corrupted_if_present(
        self,
        checkpoint_id: str,
        primary: CheckpointRecord | None,
    ) -> None:
        if primary is None or primary.status == CheckpointStatus.CORRUPTED:
            return
        try:
            await self.mark_corrupted(checkpoint_id)
        except Exception as e:
            logger.warning("Could not mark checkpoint %s corrupted: %s", checkpoint_id, e)

    async def find_latest_valid(
        self,
        session_id: str,
        entity_type: str,
        *,
        validator: CheckpointValidator | None = None,
        before_batch: int | None = None,
        exclude_ids: Collection[str] = (),
    ) -> CheckpointLoadResult | None:
        """
        Find the newest checkpoint of (session, entity) that can be used.

        Checkpoints are tried newest first. Corrupted ones are skipped; a
        checkpoint that fails verification while loading is marked
        corrupted; one rejected by ``validator`` is skipped.

        Args:
            session_id: The session.
            entity_type: The entity.
            before_batch: Only consider checkpoints with a lower batch number.
            validator: Extra checks for the caller's use (e.g. matching the
                task's id list).
            exclude_ids: Checkpoints to skip.

        Returns:
            CheckpointLoadResult carrying the warnings of every rejected
            candidate, or None when nothing usable exists.
        """
        with self._tracer.span(
            "bulkmigrate.checkpoint_store.find_latest_valid",
            {ATTR_SESSION_ID: session_id, ATTR_ENTITY_TYPE: entity_type},
        ):
            warnings: list[str] = []
            records, _ = await self._indexed_records(session_id, entity_type, warnings)
            for record in records:
                if record.checkpoint_id in exclude_ids:
                    continue
                if record.status == CheckpointStatus.CORRUPTED:
                    continue
                if before_batch is not None and record.batch_number >= before_batch:
                    continue
                try:
                    loaded = await self.load_checkpoint(record.checkpoint_id)
                except (CheckpointCorruptedError, CheckpointNotFoundError) as e:
                    warnings.append(f"{record.checkpoint_id}: {e.message}")
                    continue
                problems = validator(loaded.checkpoint) if validator else []
                if problems:
                    warnings.append(f"{record.checkpoint_id}: {'; '.join(problems)}")
                    continue
                return CheckpointLoadResult(
                    checkpoint=loaded.checkpoint,
                    source=loaded.source,
                    fallback_used=loaded.fallback_used,
                    warnings=tuple(warnings) + loaded.warnings,
                )
            return None

    # =========================================================================
    # Queries
    # =========================================================================

    async def list_checkpoints(
        self,
        session_id: str,
        entity_type: str | None = None,
    ) -> list[CheckpointSummary]:
        """
        List checkpoints of a session, newest first.

        Includes checkpoints that only reached the file backup.
        """
        records, _ = await self._indexed_records(session_id, entity_type)
        return [CheckpointSummary.from_record(r) for r in records]

    async def describe_checkpoint(self, checkpoint_id: str) -> CheckpointSummary | None:
        """
        Index-level view of a checkpoint without verifying its payload.

        Works for corrupted checkpoints too, so callers can still tell which
        session and entity a bad checkpoint belonged to.
        """
        record: CheckpointRecord | None = None
        try:
            record = await self._repository.get(checkpoint_id)
        except Exception as e:
            logger.warning("Primary checkpoint read failed for %s: %s", checkpoint_id, e)
        if record is None and self._backup is not None:
            try:
                record = await self._backup.get(checkpoint_id)
            except (OSError, ValueError) as e:
                logger.warning("File checkpoint read failed for %s: %s", checkpoint_id, e)
        return CheckpointSummary.from_record(record) if record else None

    async def get_recovery_info(
        self,
        session_id: str,
        entity_type: str | None = None,
    ) -> CheckpointRecoveryInfo:
        """
        Rank the recovery options of a session.

        Corrupted checkpoints are excluded. The rest are ranked by progress
        percentage descending, then creation time descending.
        """
        records, _ = await self._indexed_records(session_id, entity_type)
        summaries = [
            CheckpointSummary.from_record(r)
            for r in records
            if r.status != CheckpointStatus.CORRUPTED
        ]
        summaries.sort(key=lambda s: (s.progress_percentage, s.created_at), reverse=True)
        return CheckpointRecoveryInfo(
            session_id=session_id,
            entity_type=entity_type,
            available=tuple(summaries),
            recommended=summaries[0] if summaries else None,
        )

    async def get_storage_statistics(self) -> StorageStatistics:
        """Aggregate statistics over every stored checkpoint."""
        records = await self._repository.list_all()
        by_status: dict[str, int] = defaultdict(int)
        for r in records:
            by_status[r.status.value] += 1
        total_size = sum(r.size_bytes for r in records)
        backup_files = len(await self._backup.list_ids()) if self._backup else 0
        return StorageStatistics(
            total_checkpoints=len(records),
            by_status=dict(by_status),
            sessions=len({r.session_id for r in records}),
            total_size_bytes=total_size,
            average_size_bytes=total_size / len(records) if records else 0.0,
            compressed_count=sum(1 for r in records if r.compressed),
            oldest=min((r.created_at for r in records), default=None),
            newest=max((r.created_at for r in records), default=None),
            backup_files=backup_files,
        )

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def mark_corrupted(self, checkpoint_id: str) -> None:
        """Mark a checkpoint corrupted so it is never used for resume."""
        await self._repository.update_status(checkpoint_id, CheckpointStatus.CORRUPTED)
        logger.warning("Checkpoint %s marked corrupted", checkpoint_id)

    async def cleanup_old_checkpoints(self, now: datetime | None = None) -> int:
        """
        Delete checkpoints older than the retention period from every target.

        Returns:
            Number of checkpoints deleted from the primary target.
        """
        cutoff = (now or datetime.now(UTC)) - timedelta(days=self._config.retention_days)
        expired = await self._repository.list_created_before(cutoff)
        ids = [r.checkpoint_id for r in expired]
        deleted = await self._delete(ids)
        if deleted:
            logger.info(
                "Deleted %d checkpoints older than %d days",
                deleted,
                self._config.retention_days,
            )
        return deleted

    async def enforce_checkpoint_limit(
        self,
        session_id: str,
        entity_type: str | None = None,
    ) -> int:
        """
        Keep at most ``max_checkpoints_per_entity`` checkpoints per entity.

        The oldest are deleted first; the active checkpoint is always kept.
        A checkpoint that only reached the file backup counts as active
        while it is the newest of its entity. Nothing is deleted while the
        primary target cannot be listed.

        Returns:
            Number of checkpoints deleted.
        """
        limit = self._config.max_checkpoints_per_entity
        records, primary_ids = await self._indexed_records(session_id, entity_type)
        if primary_ids is None:
            return 0

        by_entity: dict[str, list[CheckpointRecord]] = defaultdict(list)
        for r in records:
            by_entity[r.entity_type].append(r)

        doomed: list[str] = []
        for group in by_entity.values():
            # Newest first, so everything past the limit is the oldest.
            for r in group[limit:]:
                file_only = r.checkpoint_id not in primary_ids
                if file_only or r.status != CheckpointStatus.ACTIVE:
                    doomed.append(r.checkpoint_id)
        return await self._delete(doomed)

    async def _indexed_records(
        self,
        session_id: str,
        entity_type: str | None,
        warnings: list[str] | None = None,
    ) -> tuple[list[CheckpointRecord], set[str] | None]:
        """
        Checkpoints of the primary target merged with the file backup index.

        The primary copy wins when both hold a checkpoint, since only the
        primary tracks status changes. A failed primary listing is logged
        and the file index is used alone.

        Returns:
            The merged records newest first, and the ids listed by the
            primary target (None when it could not be listed).
        """
        merged: dict[str, CheckpointRecord] = {}
        primary_ids: set[str] | None = None

        if self._backup is not None:
            try:
                for record in await self._backup.list_records(session_id, entity_type):
                    merged[record.checkpoint_id] = record
            except OSError as e:
                logger.warning("File checkpoint index unavailable for %s: %s", session_id, e)
                if warnings is not None:
                    warnings.append(f"file index unavailable: {e}")

        try:
            primary = await self._repository.list_checkpoints(session_id, entity_type)
        except Exception as e:
            logger.warning(
                "Primary checkpoint listing failed for %s; using file backups: %s",
                session_id,
                e,
            )
            if warnings is not None:
                warnings.append(f"database unavailable: {e}")
        else:
            primary_ids = {r.checkpoint_id for r in primary}
            for record in primary:
                merged[record.checkpoint_id] = record

        records = sorted(merged.values(), key=CheckpointRecord.sort_key, reverse=True)
        return records, primary_ids

    async def _delete(self, checkpoint_ids: list[str]) -> int:
        if not checkpoint_ids:
            return 0
        deleted = await self._repository.delete(checkpoint_ids)
        if self._backup is not None:
            removed = await self._backup.delete(checkpoint_ids)
            deleted = max(deleted, removed)
        return deleted


def _with_status(checkpoint: Checkpoint, status: CheckpointStatus) -> Checkpoint:
    return Checkpoint(
        checkpoint_id=checkpoint.checkpoint_id,
        data=checkpoint.data,
        status=status,
        checksum=checkpoint.checksum,
        created_at=checkpoint.created_at,
        compressed=checkpoint.compressed,
        size_bytes=checkpoint.size_bytes,
    )


__all__ = [
    "CheckpointStore",
    "CheckpointCreateResult",
    "CheckpointLoadResult",
    "CheckpointSummary",
    "CheckpointRecoveryInfo",
    "StorageStatistics",
    "CheckpointValidator",
    "SOURCE_DATABASE",
    "SOURCE_FILE",
]
