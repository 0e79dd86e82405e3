"""
In-memory consistency log.

Entries live in a list and are lost when the process exits. Used in tests
and by single-process deployments that accept losing migration state on
restart (the engine then treats every record as NONE and re-verifies cold
copies on the next pass).
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from ledgertier.exceptions import ConflictError
from ledgertier.log.interface import resulting_state
from ledgertier.models import ConsistencyLogEntry, MigrationState


class InMemoryConsistencyLog:
    """
    In-memory implementation of the ConsistencyLog protocol.

    Several trackers may share one instance; the from_state check runs under
    the log's lock.

    Attributes:
        fail_appends: When set, append() raises this exception instead of
            storing the entry. Lets tests simulate an unavailable backend.
    """

    def __init__(self) -> None:
        self._entries: list[ConsistencyLogEntry] = []
        self._latest: dict[str, MigrationState] = {}
        self._lock = asyncio.Lock()
        self.fail_appends: BaseException | None = None

    async def append(self, entry: ConsistencyLogEntry) -> ConsistencyLogEntry:
        async with self._lock:
            if self.fail_appends is not None:
                raise self.fail_appends
            logged = self._latest.get(entry.record_id, MigrationState.NONE)
            if entry.from_state != logged:
                raise ConflictError(entry.record_id, expected=(entry.from_state,), actual=logged)
            return self._store(entry)

    def _store(self, entry: ConsistencyLogEntry) -> ConsistencyLogEntry:
        stored = entry.with_sequence(len(self._entries) + 1)
        self._entries.append(stored)
        self._latest[entry.record_id] = resulting_state(entry.to_state)
        return stored

    async def replay(self) -> AsyncIterator[ConsistencyLogEntry]:
        # Snapshot so appends during replay are not observed mid-iteration
        async with self._lock:
            entries = list(self._entries)
        for entry in entries:
            yield entry

    async def entries_for(self, record_id: str) -> list[ConsistencyLogEntry]:
        async with self._lock:
            return [e for e in self._entries if e.record_id == record_id]

    async def load(self, entries: list[ConsistencyLogEntry]) -> None:
        """
        Append pre-built entries as-is (e.g. a log captured before a crash).

        The from_state check is skipped, so a loaded log may contain gaps.
        """
        async with self._lock:
            for entry in entries:
                self._store(entry)

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["InMemoryConsistencyLog"]
