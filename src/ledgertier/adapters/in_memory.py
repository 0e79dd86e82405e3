"""
In-memory store adapters.

Useful for testing and development. Not suitable for production as all
records are lost when the process terminates.
"""

import asyncio
import time
from collections.abc import Callable
from datetime import datetime, timedelta

from ledgertier.adapters.interface import Cache, ColdStore, HotStore, ScanPage
from ledgertier.exceptions import NotFoundError
from ledgertier.models import Record, utcnow
from ledgertier.observability import ATTR_RECORD_ID, ATTR_TIER, Tracer, create_tracer
from ledgertier.serialization import content_hash


class InMemoryHotStore(HotStore):
    """
    In-memory implementation of the hot store.

    Records are kept in a dictionary keyed by id. Age scans walk the ids in
    sorted order and use the last id of a page as the cursor, so pages stay
    stable while records are inserted or deleted between calls.

    Thread-safety:
        Uses an asyncio lock; safe for concurrent tasks in one event loop.

    Example:
        >>> store = InMemoryHotStore()
        >>> await store.put("inv-1", record)
        >>> page = await store.scan_older_than(timedelta(days=90), None, 100)

    Attributes:
        _records: Dictionary mapping record id to record
        _clock: Callable returning the current UTC time (used by scans)
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = utcnow,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._clock = clock
        self._records: dict[str, Record] = {}
        self._lock = asyncio.Lock()

    async def get(self, record_id: str) -> Record:
        with self._tracer.span(
            "ledgertier.hot_store.get",
            {ATTR_RECORD_ID: record_id, ATTR_TIER: "hot"},
        ):
            async with self._lock:
                record = self._records.get(record_id)
            if record is None:
                raise NotFoundError(record_id, tier="hot")
            return record

    async def put(self, record_id: str, record: Record) -> None:
        if record.id != record_id:
            raise ValueError(f"Record id {record.id!r} does not match key {record_id!r}")
        with self._tracer.span(
            "ledgertier.hot_store.put",
            {ATTR_RECORD_ID: record_id, ATTR_TIER: "hot"},
        ):
            async with self._lock:
                self._records[record_id] = record

    async def delete(self, record_id: str) -> None:
        with self._tracer.span(
            "ledgertier.hot_store.delete",
            {ATTR_RECORD_ID: record_id, ATTR_TIER: "hot"},
        ):
            async with self._lock:
                if record_id not in self._records:
                    raise NotFoundError(record_id, tier="hot")
                del self._records[record_id]

    async def scan_older_than(
        self,
        age: timedelta,
        cursor: str | None,
        limit: int,
    ) -> ScanPage:
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")

        cutoff = self._clock() - age
        async with self._lock:
            candidates = sorted(
                record_id
                for record_id, record in self._records.items()
                if record.created_at < cutoff and (cursor is None or record_id > cursor)
            )

        page = candidates[:limit]
        next_cursor = page[-1] if len(candidates) > limit else None
        return ScanPage(ids=page, next_cursor=next_cursor)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def __len__(self) -> int:
        return len(self._records)


class InMemoryColdStore(ColdStore):
    """
    In-memory implementation of the cold store.

    Keeps encoded bytes per record id and counts physical writes so tests
    can assert that replayed migrations do not rewrite the archive.

    Attributes:
        _objects: Dictionary mapping record id to encoded bytes
        writes: Number of put() calls that stored bytes
    """

    def __init__(
        self,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._objects: dict[str, bytes] = {}
        self._lock = asyncio.Lock()
        self.writes = 0

    async def put(self, record_id: str, data: bytes) -> None:
        with self._tracer.span(
            "ledgertier.cold_store.put",
            {ATTR_RECORD_ID: record_id, ATTR_TIER: "cold"},
        ):
            async with self._lock:
                self._objects[record_id] = bytes(data)
                self.writes += 1

    async def get(self, record_id: str) -> bytes:
        with self._tracer.span(
            "ledgertier.cold_store.get",
            {ATTR_RECORD_ID: record_id, ATTR_TIER: "cold"},
        ):
            async with self._lock:
                data = self._objects.get(record_id)
            if data is None:
                raise NotFoundError(record_id, tier="cold")
            return data

    async def verify(self, record_id: str, expected_hash: str) -> bool:
        async with self._lock:
            data = self._objects.get(record_id)
        if data is None:
            return False
        return content_hash(data) == expected_hash

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._objects


class InMemoryCache(Cache):
    """
    In-memory TTL cache.

    Expiry uses a monotonic clock by default; pass ``clock`` to control time
    in tests. A non-positive TTL disables caching for that call.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[Record, float]] = {}

    async def get(self, key: str) -> Record | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        record, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return record

    async def set(self, key: str, record: Record, ttl: float) -> None:
        if ttl <= 0:
            return
        self._entries[key] = (record, self._clock() + ttl)

    def __len__(self) -> int:
        return len(self._entries)


__all__ = [
    "InMemoryHotStore",
    "InMemoryColdStore",
    "InMemoryCache",
]
