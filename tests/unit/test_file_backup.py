"""
Unit tests for FileCheckpointBackup.
"""

from datetime import UTC, datetime
from pathlib import Path

import pytest

from bulkmigrate.models import CheckpointStatus
from bulkmigrate.repositories.checkpoint import CheckpointRecord
from bulkmigrate.repositories.file_backup import FileCheckpointBackup


def _record(checkpoint_id: str = "cp-1", **overrides) -> CheckpointRecord:
    fields = {
        "checkpoint_id": checkpoint_id,
        "session_id": "s1",
        "entity_type": "offices",
        "batch_number": 2,
        "records_processed": 6,
        "records_remaining": 4,
        "last_processed_record_id": "6",
        "state_blob": '{"entity_type":"offices"}',
        "compressed": False,
        "checksum": "a" * 64,
        "status": CheckpointStatus.ACTIVE,
        "size_bytes": 25,
        "created_at": datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
    }
    fields.update(overrides)
    return CheckpointRecord(**fields)


@pytest.fixture
def backup(tmp_path: Path) -> FileCheckpointBackup:
    return FileCheckpointBackup(tmp_path / "nested" / "checkpoints")


class TestFileCheckpointBackup:
    """Tests for save / get / delete / list_ids."""

    @pytest.mark.asyncio
    async def test_save_and_get(self, backup: FileCheckpointBackup):
        """Test that a saved record reads back unchanged."""
        record = _record()

        path = await backup.save(record)

        assert path == backup.path_for("cp-1")
        assert await backup.get("cp-1") == record

    @pytest.mark.asyncio
    async def test_save_leaves_no_temp_files(self, backup: FileCheckpointBackup):
        await backup.save(_record())
        await backup.save(_record(batch_number=3))

        assert [p.name for p in backup.directory.iterdir()] == ["cp-1.json"]
        assert (await backup.get("cp-1")).batch_number == 3

    @pytest.mark.asyncio
    async def test_missing_file(self, backup: FileCheckpointBackup):
        assert await backup.get("nope") is None
        assert await backup.list_ids() == []

    @pytest.mark.asyncio
    async def test_invalid_file(self, backup: FileCheckpointBackup):
        """Test that an unreadable backup raises ValueError rather than returning data."""
        await backup.save(_record())
        backup.path_for("cp-1").write_text('{"checkpoint_id": "cp-1"}')

        with pytest.raises(ValueError, match="Invalid checkpoint backup"):
            await backup.get("cp-1")

    @pytest.mark.asyncio
    async def test_delete_and_list(self, backup: FileCheckpointBackup):
        for cid in ("cp-1", "cp-2", "cp-3"):
            await backup.save(_record(cid))

        removed = await backup.delete(["cp-1", "cp-3", "missing"])

        assert removed == 2
        assert await backup.list_ids() == ["cp-2"]
