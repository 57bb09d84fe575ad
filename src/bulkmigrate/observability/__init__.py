"""
Observability utilities for bulkmigrate.

Provides the injectable tracer abstraction and the standard span attribute
names used by the executor, checkpoint store and progress tracker.

Example:
    >>> from bulkmigrate.observability import create_tracer
    >>>
    >>> tracer = create_tracer(__name__, enable_tracing=True)
    >>> with tracer.span("bulkmigrate.my_operation"):
    ...     pass
"""

from bulkmigrate.observability.attributes import (
    ATTR_BATCH_NUMBER,
    ATTR_BATCH_SIZE,
    ATTR_CHECKPOINT_ID,
    ATTR_CHECKPOINT_SOURCE,
    ATTR_DB_NAME,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_ENTITY_TYPE,
    ATTR_EXECUTION_ID,
    ATTR_SESSION_ID,
    ATTR_TASK_COUNT,
    ATTR_WAVE_INDEX,
)
from bulkmigrate.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    # Attributes
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
