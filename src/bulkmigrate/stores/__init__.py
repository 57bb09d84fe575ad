"""
Source and destination stores for the migration engine.

Example:
    >>> from bulkmigrate.stores import SQLSourceReader, SQLDestinationWriter
    >>>
    >>> source = SQLSourceReader(source_engine)
    >>> destination = SQLDestinationWriter(dest_engine, legacy_id_column="legacy_id")
"""

from bulkmigrate.stores.in_memory import InMemoryDestination, InMemorySource, RowValidator
from bulkmigrate.stores.interface import (
    DestinationWriter,
    RecordFailure,
    Row,
    SourceReader,
    WriteOutcome,
)
from bulkmigrate.stores.sql import SQLDestinationWriter, SQLSourceReader

__all__ = [
    # Protocols and values
    "SourceReader",
    "DestinationWriter",
    "Row",
    "RecordFailure",
    "WriteOutcome",
    # Implementations
    "SQLSourceReader",
    "SQLDestinationWriter",
    "InMemorySource",
    "InMemoryDestination",
    "RowValidator",
]
