"""
Standard span attributes for bulkmigrate.

Attribute names used across the engine so spans from the executor, the
checkpoint store and the progress tracker can be correlated. Database
attributes follow OpenTelemetry semantic conventions.

Example:
    >>> from bulkmigrate.observability.attributes import (
    ...     ATTR_ENTITY_TYPE,
    ...     ATTR_BATCH_NUMBER,
    ... )
    >>>
    >>> with tracer.span(
    ...     "bulkmigrate.executor.execute_batch",
    ...     {ATTR_ENTITY_TYPE: "offices", ATTR_BATCH_NUMBER: 3},
    ... ):
    ...     pass
"""

# =============================================================================
# Session Attributes
# =============================================================================

ATTR_SESSION_ID = "bulkmigrate.session.id"
"""Execution session identifier (string)."""

ATTR_EXECUTION_ID = "bulkmigrate.execution.id"
"""Identifier of a single execute_migration_tasks call (string)."""

ATTR_TASK_COUNT = "bulkmigrate.task.count"
"""Number of tasks submitted in one call (integer)."""

ATTR_WAVE_INDEX = "bulkmigrate.wave.index"
"""Zero-based index of the dependency wave being executed (integer)."""

# =============================================================================
# Entity and Batch Attributes
# =============================================================================

ATTR_ENTITY_TYPE = "bulkmigrate.entity.type"
"""Entity type being migrated (e.g., 'offices', 'doctors')."""

ATTR_BATCH_NUMBER = "bulkmigrate.batch.number"
"""One-based batch number within an entity (integer)."""

ATTR_BATCH_SIZE = "bulkmigrate.batch.size"
"""Number of record ids in a batch (integer)."""

# =============================================================================
# Checkpoint Attributes
# =============================================================================

ATTR_CHECKPOINT_ID = "bulkmigrate.checkpoint.id"
"""Checkpoint identifier (string)."""

ATTR_CHECKPOINT_SOURCE = "bulkmigrate.checkpoint.source"
"""Where a checkpoint was loaded from ('database' or 'file')."""

# =============================================================================
# Database Attributes (OpenTelemetry semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'postgresql', 'sqlite')."""

ATTR_DB_NAME = "db.name"
"""Table name being read or written (string)."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation being performed (e.g., 'SELECT', 'UPSERT')."""


__all__ = [
    "ATTR_SESSION_ID",
    "ATTR_EXECUTION_ID",
    "ATTR_TASK_COUNT",
    "ATTR_WAVE_INDEX",
    "ATTR_ENTITY_TYPE",
    "ATTR_BATCH_NUMBER",
    "ATTR_BATCH_SIZE",
    "ATTR_CHECKPOINT_ID",
    "ATTR_CHECKPOINT_SOURCE",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_NAME",
    "ATTR_DB_OPERATION",
]
