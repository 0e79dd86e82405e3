"""
Canonical serialization of records for the cold store.

The cold store holds opaque bytes. Records are encoded as canonical JSON
(sorted keys, no insignificant whitespace) so that the same record always
produces the same bytes, and therefore the same content hash, no matter
which worker serialized it.

Example:
    >>> data = encode_record(record)
    >>> digest = content_hash(data)
    >>> decode_record(data) == record
    True
"""

import hashlib
import json
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import ValidationError

from ledgertier.models import Record


class LedgerTierJSONEncoder(json.JSONEncoder):
    """
    JSON encoder that handles UUID and datetime objects.

    Payload blobs may carry UUIDs or datetimes produced by upstream billing
    code; they are written as strings.
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


def canonical_json(obj: Any) -> str:
    """Serialize to canonical JSON (sorted keys, compact separators)."""
    return json.dumps(
        obj,
        cls=LedgerTierJSONEncoder,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def encode_record(record: Record) -> bytes:
    """Encode a record to the canonical bytes stored in the cold store."""
    return canonical_json(record.model_dump(mode="json")).encode("utf-8")


def decode_record(data: bytes) -> Record:
    """
    Decode cold-store bytes back into a record.

    Raises:
        ValueError: If the bytes are not a valid encoded record
    """
    try:
        return Record.model_validate_json(data)
    except ValidationError as e:
        raise ValueError(f"Invalid encoded record: {e}") from e


def content_hash(data: bytes) -> str:
    """SHA-256 hex digest of encoded bytes."""
    return hashlib.sha256(data).hexdigest()


def record_hash(record: Record) -> str:
    """SHA-256 hex digest of a record's canonical encoding."""
    return content_hash(encode_record(record))


__all__ = [
    "LedgerTierJSONEncoder",
    "canonical_json",
    "encode_record",
    "decode_record",
    "content_hash",
    "record_hash",
]
