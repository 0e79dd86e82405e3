"""
MigrationStateTracker - Per-record migration state with compare-and-set.

The tracker is the single owner of every record's MigrationState. Every
state change goes through a compare-and-set that is scoped to one record id:
there is no global lock, so transitions on different records run in
parallel while transitions on the same record are linearized.

Durability:
    Each transition is appended to the consistency log inside the record's
    critical section, before the in-memory map changes. If the append fails
    the state is left untouched. After a restart, recover() replays the log
    to rebuild the map.

Several processes:
    Critical sections are per process. Across processes the log is the
    arbiter: it rejects an entry whose from_state is not the record's
    logged state. The losing tracker reloads that record from the log and
    raises ConflictError. Callers that must act on the latest state refresh
    the record inside hold() first.

Responsibilities:
    - Answer "what state is this record in" for the router and the engine
    - Enforce the state machine (VALID_TRANSITIONS) on every change
    - Hold a record's critical section while data moves between tiers
    - Rebuild state from the log and flag histories with gaps as stale
    - Surface stuck migrations for operators

Usage:
    >>> tracker = MigrationStateTracker(InMemoryConsistencyLog())
    >>> await tracker.transition(
    ...     "inv-1001",
    ...     MigrationState.NONE,
    ...     MigrationState.COPY_PENDING,
    ...     attempt_id="a1",
    ... )
    >>> async with tracker.hold("inv-1001") as guard:
    ...     if guard.state == MigrationState.VERIFIED:
    ...         await guard.transition(
    ...             MigrationState.VERIFIED,
    ...             MigrationState.ARCHIVED_SOFT_FLAGGED,
    ...             attempt_id="a1",
    ...         )
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from ledgertier.exceptions import (
    TRANSIENT_ADAPTER_ERRORS,
    ConflictError,
    InvalidTransitionError,
    StaleStateError,
    TransientIOError,
)
from ledgertier.log.interface import ConsistencyLog
from ledgertier.models import (
    ConsistencyLogEntry,
    MigrationState,
    RecoveryReport,
    StuckMigration,
    TrackedState,
    utcnow,
)
from ledgertier.observability import (
    ATTR_ATTEMPT_ID,
    ATTR_MIGRATION_STATE,
    ATTR_MIGRATION_TARGET_STATE,
    ATTR_RECORD_ID,
    ATTR_RECORDS_PROCESSED,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

RELEASE_REASON = "operator_release"
"""Reason recorded for operator releases; replay clears the stale mark on it."""

RECOVERY_REASON = "recovered_in_flight"
"""Reason recorded when recover() reverts an interrupted attempt to FAILED."""

Precondition = Callable[[], Awaitable[bool]]


@dataclass
class _ReplayResult:
    states: dict[str, TrackedState] = field(default_factory=dict)
    gaps: list[StaleStateError] = field(default_factory=list)
    entries: int = 0


class RecordGuard:
    """
    Handle to a record whose critical section is held.

    Only valid inside ``MigrationStateTracker.hold()``. Transitions made
    through the guard reuse the held section instead of re-acquiring it.
    """

    def __init__(self, tracker: MigrationStateTracker, record_id: str) -> None:
        self._tracker = tracker
        self.record_id = record_id
        self._active = True

    @property
    def status(self) -> TrackedState | None:
        self._check_active()
        return self._tracker._states.get(self.record_id)

    @property
    def state(self) -> MigrationState:
        status = self.status
        return status.state if status is not None else MigrationState.NONE

    async def transition(
        self,
        expected_from: MigrationState | Iterable[MigrationState],
        to: MigrationState,
        *,
        attempt_id: str,
        reason: str | None = None,
    ) -> ConsistencyLogEntry:
        self._check_active()
        return await self._tracker._apply(
            self.record_id, expected_from, to, attempt_id=attempt_id, reason=reason
        )

    async def refresh(self) -> TrackedState | None:
        """Reload the record's state from the consistency log."""
        self._check_active()
        return await self._tracker._refresh(self.record_id)

    def _check_active(self) -> None:
        if not self._active:
            raise RuntimeError(f"Guard for record {self.record_id} used outside its hold()")


class MigrationStateTracker:
    """
    Tracks the migration state of every record that is not in NONE.

    Records without an entry are in NONE. DELETED is logged and then the
    entry is dropped; reverse migration back to NONE drops it as well.

    Example:
        >>> tracker = MigrationStateTracker(log, lock_timeout=2.0)
        >>> report = await tracker.recover()
        >>> tracker.get("inv-1001")
        <MigrationState.FAILED: 'failed'>
    """

    def __init__(
        self,
        log: ConsistencyLog,
        *,
        lock_timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the tracker.

        Args:
            log: Durable consistency log backend
            lock_timeout: Seconds to wait for a record's critical section
            clock: Callable returning the current UTC time
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._log = log
        self._lock_timeout = lock_timeout
        self._clock = clock
        self._states: dict[str, TrackedState] = {}
        # Locks live only while some task references them
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def log(self) -> ConsistencyLog:
        return self._log

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, record_id: str) -> MigrationState:
        """Current state of ``record_id`` (NONE when untracked)."""
        status = self._states.get(record_id)
        return status.state if status is not None else MigrationState.NONE

    def status(self, record_id: str) -> TrackedState | None:
        return self._states.get(record_id)

    def is_stale(self, record_id: str) -> bool:
        status = self._states.get(record_id)
        return status is not None and status.stale

    def list(self, state: MigrationState) -> list[str]:
        """Ids of all records currently in ``state``, sorted."""
        return sorted(rid for rid, s in self._states.items() if s.state == state)

    def counts(self) -> dict[MigrationState, int]:
        counts: dict[MigrationState, int] = {}
        for status in self._states.values():
            counts[status.state] = counts.get(status.state, 0) + 1
        return counts

    async def history(self, record_id: str) -> list[ConsistencyLogEntry]:
        """Logged transitions for ``record_id`` in write order."""
        return await self._log.entries_for(record_id)

    def find_stuck(
        self,
        older_than: timedelta,
        now: datetime | None = None,
    ) -> list[StuckMigration]:
        """
        Find records that have not left an in-flight state within ``older_than``.

        Stale records are always reported, whatever their age.

        Args:
            older_than: Minimum time spent in the current state
            now: Reference time (defaults to the tracker clock)

        Returns:
            Stuck migrations, oldest first
        """
        now = now or self._clock()
        stuck = []
        for status in self._states.values():
            idle = now - status.since
            if status.stale or (status.state.is_in_flight and idle >= older_than):
                stuck.append(
                    StuckMigration(
                        record_id=status.record_id,
                        state=status.state,
                        since=status.since,
                        attempt_id=status.attempt_id,
                        stuck_for=idle,
                    )
                )
        return sorted(stuck, key=lambda s: s.since)

    # ------------------------------------------------------------------
    # Compare-and-set
    # ------------------------------------------------------------------

    async def transition(
        self,
        record_id: str,
        expected_from: MigrationState | Iterable[MigrationState],
        to: MigrationState,
        *,
        attempt_id: str,
        reason: str | None = None,
        precondition: Precondition | None = None,
    ) -> ConsistencyLogEntry:
        """
        Atomically move ``record_id`` from one of ``expected_from`` to ``to``.

        Args:
            record_id: The record
            expected_from: State (or states) the record must currently be in
            to: Target state
            attempt_id: Attempt the transition belongs to
            reason: Optional reason stored in the log entry
            precondition: Optional async check run inside the critical section;
                a False result aborts with ConflictError

        Returns:
            The stored log entry

        Raises:
            ConflictError: Current state does not match, the precondition
                failed, the critical section was busy past lock_timeout, or
                the log holds a newer state (the record is reloaded from it)
            InvalidTransitionError: ``to`` is not reachable from the current state
            TransientIOError: The log append failed; state unchanged
        """
        async with self._critical_section(record_id, self._lock_timeout):
            if precondition is not None and not await precondition():
                raise ConflictError(
                    record_id, actual=self.get(record_id), reason="precondition failed"
                )
            return await self._apply(
                record_id, expected_from, to, attempt_id=attempt_id, reason=reason
            )

    @asynccontextmanager
    async def hold(
        self,
        record_id: str,
        timeout: float | None = None,
    ) -> AsyncIterator[RecordGuard]:
        """
        Hold ``record_id``'s critical section for the duration of the block.

        Args:
            record_id: The record
            timeout: Seconds to wait for the section (defaults to lock_timeout)

        Yields:
            RecordGuard for reading the state and transitioning it

        Raises:
            ConflictError: The section was not acquired in time
        """
        async with self._critical_section(record_id, timeout or self._lock_timeout):
            guard = RecordGuard(self, record_id)
            try:
                yield guard
            finally:
                guard._active = False

    @asynccontextmanager
    async def _critical_section(self, record_id: str, timeout: float) -> AsyncIterator[None]:
        lock = self._locks.get(record_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[record_id] = lock
        try:
            await asyncio.wait_for(lock.acquire(), timeout)
        except TimeoutError as e:
            raise ConflictError(
                record_id,
                actual=self.get(record_id),
                reason=f"record busy for more than {timeout:.2f}s",
            ) from e
        try:
            yield
        finally:
            lock.release()

    async def _apply(
        self,
        record_id: str,
        expected_from: MigrationState | Iterable[MigrationState],
        to: MigrationState,
        *,
        attempt_id: str,
        reason: str | None = None,
    ) -> ConsistencyLogEntry:
        # Caller holds the record's critical section
        expected = (
            (expected_from,)
            if isinstance(expected_from, MigrationState)
            else tuple(expected_from)
        )
        current = self._states.get(record_id)
        state = current.state if current is not None else MigrationState.NONE

        if state not in expected:
            raise ConflictError(record_id, expected=expected, actual=state)
        if not state.can_transition_to(to):
            raise InvalidTransitionError(record_id, state, to)

        with self._tracer.span(
            "ledgertier.tracker.transition",
            {
                ATTR_RECORD_ID: record_id,
                ATTR_MIGRATION_STATE: state.value,
                ATTR_MIGRATION_TARGET_STATE: to.value,
                ATTR_ATTEMPT_ID: attempt_id,
            },
        ):
            now = self._clock()
            stored = await self._append(
                ConsistencyLogEntry(
                    record_id=record_id,
                    from_state=state,
                    to_state=to,
                    timestamp=now,
                    attempt_id=attempt_id,
                    reason=reason,
                )
            )
            self._states_apply(self._states, stored, stale=current.stale if current else False)

        logger.debug(
            "Record %s: %s -> %s (attempt %s%s)",
            record_id,
            state.value,
            to.value,
            attempt_id,
            f", {reason}" if reason else "",
        )
        return stored

    async def _append(self, entry: ConsistencyLogEntry) -> ConsistencyLogEntry:
        try:
            return await self._log.append(entry)
        except ConflictError:
            # Another process moved the record first
            await self._refresh(entry.record_id)
            raise
        except TRANSIENT_ADAPTER_ERRORS as e:
            raise TransientIOError("log.append", record_id=entry.record_id, cause=e) from e

    async def _refresh(self, record_id: str) -> TrackedState | None:
        # Caller holds the record's critical section
        try:
            entries = await self._log.entries_for(record_id)
        except TRANSIENT_ADAPTER_ERRORS as e:
            raise TransientIOError("log.entries_for", record_id=record_id, cause=e) from e

        previous = self._states.get(record_id)
        stale = previous.stale if previous is not None else False
        rebuilt: dict[str, TrackedState] = {}
        for entry in entries:
            self._states_apply(rebuilt, entry, stale=stale)

        refreshed = rebuilt.get(record_id)
        if refreshed is None:
            self._states.pop(record_id, None)
        else:
            self._states[record_id] = refreshed

        before = previous.state if previous is not None else MigrationState.NONE
        after = refreshed.state if refreshed is not None else MigrationState.NONE
        if before != after:
            logger.info(
                "Record %s moved from %s to %s outside this tracker",
                record_id,
                before.value,
                after.value,
            )
        return refreshed

    @staticmethod
    def _states_apply(
        states: dict[str, TrackedState],
        entry: ConsistencyLogEntry,
        stale: bool = False,
    ) -> None:
        if not entry.to_state.tracked:
            states.pop(entry.record_id, None)
            return

        previous = states.get(entry.record_id)
        if previous is not None and previous.state == entry.to_state:
            # Release acknowledgement; the state itself did not move
            states[entry.record_id] = replace(previous, stale=stale)
            return

        if entry.to_state == MigrationState.ARCHIVED_SOFT_FLAGGED:
            archived_at: datetime | None = entry.timestamp
        elif entry.to_state == MigrationState.PENDING_DELETE and previous is not None:
            archived_at = previous.archived_at
        else:
            archived_at = None

        states[entry.record_id] = TrackedState(
            record_id=entry.record_id,
            state=entry.to_state,
            since=entry.timestamp,
            attempt_id=entry.attempt_id,
            archived_at=archived_at,
            stale=stale,
        )

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def _replay(self) -> _ReplayResult:
        result = _ReplayResult()
        stale_ids: set[str] = set()

        async for entry in self._log.replay():
            result.entries += 1
            previous = result.states.get(entry.record_id)
            replayed = previous.state if previous is not None else MigrationState.NONE

            if entry.reason == RELEASE_REASON:
                stale_ids.discard(entry.record_id)
            elif entry.from_state != replayed:
                stale_ids.add(entry.record_id)
                result.gaps.append(
                    StaleStateError(
                        entry.record_id,
                        tracked_state=replayed,
                        logged_state=entry.from_state,
                        detail=f"gap before sequence {entry.sequence}",
                    )
                )

            self._states_apply(result.states, entry, stale=entry.record_id in stale_ids)

        return result

    async def recover(
        self,
        stuck_after: timedelta = timedelta(hours=1),
        now: datetime | None = None,
        *,
        revert_in_flight: bool = True,
    ) -> RecoveryReport:
        """
        Rebuild the state map from the consistency log.

        The last entry per record wins. Histories with gaps mark the record
        stale. In-flight attempts younger than ``stuck_after`` are reverted
        to FAILED (they were interrupted by the crash and the next scan will
        retry them); older ones are left as they are and reported as stuck.

        Args:
            stuck_after: Age at which an in-flight attempt counts as stuck
            now: Reference time (defaults to the tracker clock)
            revert_in_flight: When False, nothing is written to the log and
                young in-flight attempts are left as they are (read-only tools)

        Returns:
            RecoveryReport describing what was replayed and changed
        """
        with self._tracer.span("ledgertier.tracker.recover", {}) as span:
            now = now or self._clock()
            replay = await self._replay()
            self._states = replay.states

            report = RecoveryReport(
                entries_replayed=replay.entries,
                inconsistencies=list(replay.gaps),
            )

            for status in list(self._states.values()):
                if not status.state.is_in_flight or status.stale:
                    continue
                idle = now - status.since
                if idle >= stuck_after:
                    report.stuck.append(
                        StuckMigration(
                            record_id=status.record_id,
                            state=status.state,
                            since=status.since,
                            attempt_id=status.attempt_id,
                            stuck_for=idle,
                        )
                    )
                    continue
                if not revert_in_flight:
                    continue
                try:
                    await self.transition(
                        status.record_id,
                        status.state,
                        MigrationState.FAILED,
                        attempt_id=status.attempt_id,
                        reason=RECOVERY_REASON,
                    )
                except ConflictError as e:
                    logger.warning(
                        "Record %s moved on during recovery, not reverted: %s",
                        status.record_id,
                        e,
                    )
                    continue
                report.reverted.append(status.record_id)

            report.records_tracked = len(self._states)
            if span is not None:
                span.set_attribute(ATTR_RECORDS_PROCESSED, replay.entries)

        for error in report.inconsistencies:
            logger.error("Consistency log gap for record %s: %s", error.record_id, error)
        for stuck in report.stuck:
            logger.warning(
                "Record %s stuck in %s since %s",
                stuck.record_id,
                stuck.state.value,
                stuck.since.isoformat(),
            )
        logger.info(
            "Recovered tracker from %d log entries: %d tracked, %d reverted, %d stuck, %d stale",
            report.entries_replayed,
            report.records_tracked,
            len(report.reverted),
            len(report.stuck),
            len(report.inconsistencies),
        )
        return report

    async def check_consistency(self) -> list[StaleStateError]:
        """
        Compare the live map with a fresh replay of the log.

        Returns:
            Gaps found in the log plus every record whose tracked state
            differs from the logged one. Nothing is corrected.
        """
        replay = await self._replay()
        errors = list(replay.gaps)
        for record_id in sorted(set(self._states) | set(replay.states)):
            tracked = self.get(record_id)
            logged_status = replay.states.get(record_id)
            logged = logged_status.state if logged_status else MigrationState.NONE
            if tracked != logged:
                errors.append(
                    StaleStateError(
                        record_id,
                        tracked_state=tracked,
                        logged_state=logged,
                        detail="tracker and consistency log disagree",
                    )
                )
        for error in errors:
            logger.error("Consistency check failed for record %s: %s", error.record_id, error)
        return errors

    async def release(self, record_id: str) -> TrackedState | None:
        """
        Operator action: clear a stuck or stale record.

        Records that can fail are moved to FAILED so the next scan retries
        them. Records that cannot (ARCHIVED_SOFT_FLAGGED, FAILED) keep their
        state and only lose the stale mark. Either way a log entry with
        reason ``operator_release`` is written so the release survives a
        restart.

        Returns:
            The record's new tracker entry, or None if it is not tracked
        """
        async with self.hold(record_id) as guard:
            current = guard.status
            if current is None:
                return None

            if current.state.can_transition_to(MigrationState.FAILED):
                target = MigrationState.FAILED
            else:
                target = current.state

            stored = await self._append(
                ConsistencyLogEntry(
                    record_id=record_id,
                    from_state=current.state,
                    to_state=target,
                    timestamp=self._clock(),
                    attempt_id=current.attempt_id,
                    reason=RELEASE_REASON,
                )
            )
            self._states_apply(self._states, stored, stale=False)

        logger.warning(
            "Released record %s from %s to %s",
            record_id,
            current.state.value,
            target.value,
        )
        return self._states.get(record_id)


__all__ = [
    "MigrationStateTracker",
    "RecordGuard",
    "RELEASE_REASON",
    "RECOVERY_REASON",
]
