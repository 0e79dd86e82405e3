"""
Store adapter interfaces consumed by the tiering core.

The physical drivers live outside this package. The core only needs a
handful of primitives from each tier:

- HotStore: mutable, low-latency store of recent records
- ColdStore: immutable, low-cost archive of encoded records
- Cache: optional read-through cache in front of the cold store

Drivers signal a missing record by raising NotFoundError. Timeouts and
connection problems should surface as ConnectionError, TimeoutError or
OSError (or TransientIOError); the core converts them at its boundary.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TypeVar

from ledgertier.exceptions import TRANSIENT_ADAPTER_ERRORS, TransientIOError
from ledgertier.models import Record

T = TypeVar("T")


@dataclass(frozen=True)
class ScanPage:
    """
    One page of an age scan over the hot store.

    Attributes:
        ids: Record ids on this page
        next_cursor: Opaque cursor for the next page, None when exhausted
    """

    ids: list[str] = field(default_factory=list)
    next_cursor: str | None = None

    @property
    def is_last(self) -> bool:
        return self.next_cursor is None


class HotStore(ABC):
    """
    Abstract base class for the mutable recent-record store.

    The hot store holds the canonical copy of every record that is not
    archived, plus the soft-flagged copy of archived records until cleanup.
    """

    @abstractmethod
    async def get(self, record_id: str) -> Record:
        """
        Fetch a record.

        Raises:
            NotFoundError: If the record is not in the hot store
        """
        pass

    @abstractmethod
    async def put(self, record_id: str, record: Record) -> None:
        """Insert or replace a record. Must be idempotent."""
        pass

    @abstractmethod
    async def delete(self, record_id: str) -> None:
        """
        Remove a record.

        Raises:
            NotFoundError: If the record is not in the hot store
        """
        pass

    @abstractmethod
    async def scan_older_than(
        self,
        age: timedelta,
        cursor: str | None,
        limit: int,
    ) -> ScanPage:
        """
        List ids of records created more than ``age`` ago.

        Args:
            age: Minimum age (exclusive)
            cursor: Cursor from the previous page, None for the first page
            limit: Maximum ids per page

        Returns:
            ScanPage with ids and the cursor for the next page
        """
        pass


class ColdStore(ABC):
    """
    Abstract base class for the immutable archive store.

    Objects are keyed by record id and hold the canonical encoding of the
    record (see ledgertier.serialization).
    """

    @abstractmethod
    async def put(self, record_id: str, data: bytes) -> None:
        """Write an object. Rewriting identical bytes must be harmless."""
        pass

    @abstractmethod
    async def get(self, record_id: str) -> bytes:
        """
        Read an object.

        Raises:
            NotFoundError: If no object exists for the record
        """
        pass

    @abstractmethod
    async def verify(self, record_id: str, expected_hash: str) -> bool:
        """
        Check the stored object's SHA-256 digest.

        Returns:
            True if an object exists and its digest equals ``expected_hash``
        """
        pass


class Cache(ABC):
    """Abstract base class for the optional read-through cache."""

    @abstractmethod
    async def get(self, key: str) -> Record | None:
        """Return the cached record, or None on a miss."""
        pass

    @abstractmethod
    async def set(self, key: str, record: Record, ttl: float) -> None:
        """Cache a record for ``ttl`` seconds."""
        pass


async def call_adapter(
    operation: str,
    record_id: str | None,
    call: Awaitable[T],
    timeout: float,
) -> T:
    """
    Await one adapter call with a timeout.

    Timeouts and connection errors are re-raised as TransientIOError;
    anything else (NotFoundError included) propagates unchanged.

    Args:
        operation: Name used in the error, e.g. "cold.put"
        record_id: Record involved, if any
        call: The adapter coroutine
        timeout: Seconds to wait
    """
    try:
        return await asyncio.wait_for(call, timeout)
    except TRANSIENT_ADAPTER_ERRORS as e:
        raise TransientIOError(operation, record_id=record_id, cause=e) from e


__all__ = [
    "ScanPage",
    "HotStore",
    "ColdStore",
    "Cache",
    "call_adapter",
]
