"""
Serialization utilities for bulkmigrate.

Provides:
- JSON helpers that understand datetimes, enums and UUIDs, used for
  snapshot, alert and file-backup payloads
- Checkpoint payload encoding: canonical JSON, optional gzip + base64
  compression, and a SHA-256 checksum over the uncompressed JSON

Example:
    >>> encoded = encode_checkpoint(data, compression_threshold_bytes=1024)
    >>> decoded = decode_checkpoint(encoded.state_blob, encoded.compressed, encoded.checksum)
"""

from __future__ import annotations

import base64
import gzip
import hashlib
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import ValidationError

from bulkmigrate.models import CheckpointData


class MigrationJSONEncoder(json.JSONEncoder):
    """
    JSON encoder that handles UUID, datetime and Enum objects.

    Example:
        >>> json.dumps({"at": datetime.now(UTC)}, cls=MigrationJSONEncoder)
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


def json_dumps(obj: Any) -> str:
    """Serialize object to JSON with UUID, datetime and Enum support."""
    return json.dumps(obj, cls=MigrationJSONEncoder)


def json_loads(s: str | bytes) -> Any:
    """
    Deserialize JSON.

    Datetime and enum strings are not converted back; callers rebuild
    their own types with ``from_dict``.
    """
    return json.loads(s)


def format_timestamp(value: datetime) -> str:
    """
    Fixed-width ISO-8601 UTC text for storage.

    Always includes microseconds so stored values sort chronologically as
    plain strings.
    """
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def parse_timestamp(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class ChecksumMismatchError(ValueError):
    """Raised when a decoded payload does not match its stored checksum."""


@dataclass(frozen=True)
class EncodedCheckpoint:
    """
    A checkpoint payload ready for storage.

    Attributes:
        state_blob: Canonical JSON, or base64 of its gzip when compressed.
        compressed: Whether gzip + base64 was applied.
        checksum: Hex SHA-256 of the canonical JSON bytes.
        size_bytes: Length of ``state_blob``.
    """

    state_blob: str
    compressed: bool
    checksum: str
    size_bytes: int


def canonical_json(data: CheckpointData) -> str:
    """Deterministic JSON for a checkpoint payload (sorted keys, no spaces)."""
    return json.dumps(
        data.model_dump(mode="json"),
        sort_keys=True,
        separators=(",", ":"),
    )


def compute_checksum(payload: str | bytes) -> str:
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def encode_checkpoint(
    data: CheckpointData,
    *,
    compression_enabled: bool = True,
    compression_threshold_bytes: int = 1024,
) -> EncodedCheckpoint:
    """
    Serialize, checksum and optionally compress a checkpoint payload.

    Args:
        data: The payload.
        compression_enabled: Whether compression may be applied.
        compression_threshold_bytes: Payloads larger than this are compressed.

    Returns:
        EncodedCheckpoint for storage.
    """
    raw = canonical_json(data).encode("utf-8")
    checksum = compute_checksum(raw)

    if compression_enabled and len(raw) > compression_threshold_bytes:
        blob = base64.b64encode(gzip.compress(raw)).decode("ascii")
        compressed = True
    else:
        blob = raw.decode("utf-8")
        compressed = False

    return EncodedCheckpoint(
        state_blob=blob,
        compressed=compressed,
        checksum=checksum,
        size_bytes=len(blob),
    )


def decode_checkpoint(state_blob: str, compressed: bool, checksum: str) -> CheckpointData:
    """
    Decompress, verify and parse a stored checkpoint payload.

    Args:
        state_blob: Stored payload.
        compressed: Whether the payload is gzip + base64.
        checksum: Stored checksum to verify against.

    Returns:
        The parsed payload.

    Raises:
        ChecksumMismatchError: If the payload cannot be decoded, does not
            match the checksum, or does not parse.
    """
    try:
        raw = gzip.decompress(base64.b64decode(state_blob)) if compressed else state_blob.encode()
    except (ValueError, OSError, EOFError) as e:
        raise ChecksumMismatchError(f"payload could not be decoded: {e}") from e

    actual = compute_checksum(raw)
    if actual != checksum:
        raise ChecksumMismatchError(
            f"checksum mismatch (stored {checksum[:12]}, actual {actual[:12]})"
        )

    try:
        return CheckpointData.model_validate_json(raw)
    except ValidationError as e:
        raise ChecksumMismatchError(f"payload failed validation: {e}") from e


__all__ = [
    "MigrationJSONEncoder",
    "json_dumps",
    "json_loads",
    "format_timestamp",
    "parse_timestamp",
    "ChecksumMismatchError",
    "EncodedCheckpoint",
    "canonical_json",
    "compute_checksum",
    "encode_checkpoint",
    "decode_checkpoint",
]
