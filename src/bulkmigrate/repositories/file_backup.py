"""
File backup for checkpoints.

Each checkpoint is written to ``<directory>/<checkpoint_id>.json``. Writes
go to a temporary file that is then renamed over the target, so a crash
never leaves a half-written backup behind. Blocking file I/O runs in a
worker thread.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from collections.abc import Sequence
from pathlib import Path

from bulkmigrate.repositories.checkpoint import CheckpointRecord
from bulkmigrate.serialization import json_dumps, json_loads

logger = logging.getLogger(__name__)


class FileCheckpointBackup:
    """
    Secondary checkpoint storage as one JSON file per checkpoint.

    Example:
        >>> backup = FileCheckpointBackup(Path("/var/lib/migration/checkpoints"))
        >>> location = await backup.save(record)
        >>> restored = await backup.get(record.checkpoint_id)

    Args:
        directory: Directory for backup files; created on first write.
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)

    def path_for(self, checkpoint_id: str) -> Path:
        return self.directory / f"{checkpoint_id}.json"

    async def save(self, record: CheckpointRecord) -> Path:
        """
        Write a checkpoint atomically.

        Returns:
            Path of the backup file

        Raises:
            OSError: If the file cannot be written
        """
        return await asyncio.to_thread(self._write, record)

    async def get(self, checkpoint_id: str) -> CheckpointRecord | None:
        """
        Read a checkpoint, or None when no backup file exists.

        Raises:
            ValueError: If the file exists but is not a valid backup
        """
        return await asyncio.to_thread(self._read, checkpoint_id)

    async def delete(self, checkpoint_ids: Sequence[str]) -> int:
        """Delete backup files. Returns the number removed."""
        return await asyncio.to_thread(self._delete, list(checkpoint_ids))

    async def list_ids(self) -> list[str]:
        return await asyncio.to_thread(self._list_ids)

    async def list_records(
        self,
        session_id: str,
        entity_type: str | None = None,
    ) -> list[CheckpointRecord]:
        """
        Scan the backup directory for checkpoints of a session, newest first.

        Files that cannot be read or parsed are skipped with a warning.
        """
        return await asyncio.to_thread(self._list_records, session_id, entity_type)

    def _write(self, record: CheckpointRecord) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self.path_for(record.checkpoint_id)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(json_dumps(record.to_dict()))
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return target

    def _read(self, checkpoint_id: str) -> CheckpointRecord | None:
        path = self.path_for(checkpoint_id)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return CheckpointRecord.from_dict(json_loads(content))
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Invalid checkpoint backup {path}: {e}") from e

    def _delete(self, checkpoint_ids: list[str]) -> int:
        removed = 0
        for checkpoint_id in checkpoint_ids:
            path = self.path_for(checkpoint_id)
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Failed to delete checkpoint backup %s: %s", path, e)
        return removed

    def _list_ids(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))

    def _list_records(self, session_id: str, entity_type: str | None) -> list[CheckpointRecord]:
        if not self.directory.exists():
            return []
        matches: list[CheckpointRecord] = []
        for path in self.directory.glob("*.json"):
            try:
                record = CheckpointRecord.from_dict(
                    json_loads(path.read_text(encoding="utf-8"))
                )
            except FileNotFoundError:
                continue
            except (OSError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable checkpoint backup %s: %s", path, e)
                continue
            if record.session_id != session_id:
                continue
            if entity_type is not None and record.entity_type != entity_type:
                continue
            matches.append(record)
        return sorted(matches, key=CheckpointRecord.sort_key, reverse=True)


__all__ = [
    "FileCheckpointBackup",
]
