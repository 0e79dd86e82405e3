"""
Consistency log protocol.

The consistency log is the durable, append-only record of every migration
state transition. The tracker writes one entry per transition before it
updates its in-memory map, and rebuilds that map by replaying the log after
a restart.

The log is also where the compare-and-set becomes durable. Trackers in
different processes each keep their own map; append() only accepts an entry
whose ``from_state`` is the state the log already holds for the record, so
two processes cannot both advance the same record from the same state.

Implementations must ensure:
    - an entry is durable before append() returns
    - an entry whose from_state does not match the record's logged state
      is rejected with ConflictError, atomically with the insert
    - sequences are strictly increasing in write order
    - entries are never modified once written
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

from ledgertier.models import ConsistencyLogEntry, MigrationState


def resulting_state(to_state: MigrationState | None) -> MigrationState:
    """
    State a record is in after its latest entry moved it to ``to_state``.

    No entry at all and DELETED both leave the record untracked, i.e. NONE.
    """
    if to_state is None or not to_state.tracked:
        return MigrationState.NONE
    return to_state


@runtime_checkable
class ConsistencyLog(Protocol):
    """
    Protocol for consistency log backends.

    Example:
        >>> log = InMemoryConsistencyLog()
        >>> stored = await log.append(entry)
        >>> stored.sequence
        1
        >>> async for entry in log.replay():
        ...     print(entry.record_id, entry.to_state)
    """

    async def append(self, entry: ConsistencyLogEntry) -> ConsistencyLogEntry:
        """
        Durably append an entry.

        Args:
            entry: Entry to append (its sequence is ignored)

        Returns:
            The stored entry with its sequence assigned

        Raises:
            ConflictError: The record's logged state is not entry.from_state;
                nothing was written
        """
        ...

    def replay(self) -> AsyncIterator[ConsistencyLogEntry]:
        """
        Iterate over all entries in write order.

        Yields:
            Stored entries, lowest sequence first
        """
        ...

    async def entries_for(self, record_id: str) -> list[ConsistencyLogEntry]:
        """
        Get the transition history of one record.

        Args:
            record_id: The record to query

        Returns:
            Entries for the record in write order
        """
        ...


__all__ = ["ConsistencyLog", "resulting_state"]
