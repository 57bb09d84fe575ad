"""
Persistence for the migration engine's bookkeeping data.

Repositories:
    - CheckpointRepository: primary checkpoint storage (SQL / in-memory)
    - FileCheckpointBackup: secondary checkpoint storage, one JSON file each
    - ProgressRepository: progress snapshot and alert mirror (SQL / in-memory)

Example:
    >>> from bulkmigrate.repositories import SQLCheckpointRepository
    >>> repo = SQLCheckpointRepository(engine)
"""

from bulkmigrate.repositories.checkpoint import (
    CheckpointRecord,
    CheckpointRepository,
    InMemoryCheckpointRepository,
    SQLCheckpointRepository,
)
from bulkmigrate.repositories.file_backup import FileCheckpointBackup
from bulkmigrate.repositories.progress import (
    InMemoryProgressRepository,
    ProgressRepository,
    SQLProgressRepository,
)

__all__ = [
    # Checkpoints
    "CheckpointRecord",
    "CheckpointRepository",
    "SQLCheckpointRepository",
    "InMemoryCheckpointRepository",
    "FileCheckpointBackup",
    # Progress
    "ProgressRepository",
    "SQLProgressRepository",
    "InMemoryProgressRepository",
]
