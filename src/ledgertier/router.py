"""
UnifiedAccessRouter - One read/write contract across the hot and cold tiers.

Callers never learn where a record lives. The router asks the tracker for
the record's migration state and picks the tier that holds the canonical
copy:

    +------------------------------+------------------------------------+
    | State                        | Reads                              |
    +------------------------------+------------------------------------+
    | NONE, FAILED, COPY_PENDING,  | hot store; cold store if the hot   |
    | COPIED_UNVERIFIED, VERIFIED  | copy is gone                       |
    | ARCHIVED_SOFT_FLAGGED,       | cache, then cold store             |
    | PENDING_DELETE               |                                    |
    +------------------------------+------------------------------------+

Writes hold the record's critical section. Hot-canonical records are
written in place; a write that lands during an in-flight migration is
picked up by the engine before soft-flagging and the record is migrated
again by a later pass. Cold-canonical records are first restored to the hot
tier, then updated with a new version.

The router only changes migration state to take a record back from the
cold tier: through the RecordRestorer, or after a write when another
process soft-flagged the record while the write was landing.

Several processes:
    Each process has its own tracker. Writes and cold-canonical reads
    reload the record's state from the consistency log inside the held
    section, so a record archived or restored elsewhere is routed by its
    logged state.

Errors:
    Conflicts and transient I/O are retried with exponential backoff. Callers
    only ever see NotFoundError or TemporarilyUnavailableError.

Usage:
    >>> router = UnifiedAccessRouter(hot, cold, tracker, cache=cache)
    >>> record = await router.read("inv-1001")
    >>> updated = await router.update("inv-1001", {"amount_cents": 4300})
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

from ledgertier.adapters.interface import Cache, ColdStore, HotStore, call_adapter
from ledgertier.exceptions import (
    TRANSIENT_ADAPTER_ERRORS,
    ConflictError,
    LedgerTierError,
    NotFoundError,
    TemporarilyUnavailableError,
    TransientIOError,
    VerificationFailedError,
)
from ledgertier.metrics import ArchivalMetrics
from ledgertier.models import ArchivalConfig, MigrationState, Record, utcnow
from ledgertier.observability import (
    ATTR_MIGRATION_STATE,
    ATTR_RECORD_ID,
    ATTR_RECORD_VERSION,
    ATTR_TIER,
    Tracer,
    create_tracer,
)
from ledgertier.restore import RESTORE_REASON, RecordRestorer
from ledgertier.retry import RetriesExhausted, RetryStats, retry_async
from ledgertier.serialization import content_hash, decode_record
from ledgertier.tracker import MigrationStateTracker, RecordGuard

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE = (ConflictError, TransientIOError)


class UnifiedAccessRouter:
    """
    Routes record reads and writes to the tier holding the canonical copy.

    Example:
        >>> router = UnifiedAccessRouter(
        ...     hot, cold, tracker,
        ...     cache=InMemoryCache(),
        ...     config=ArchivalConfig(cache_ttl=60),
        ... )
        >>> record = await router.write("inv-1001", {"amount_cents": 4200})
        >>> record.version
        1
    """

    def __init__(
        self,
        hot: HotStore,
        cold: ColdStore,
        tracker: MigrationStateTracker,
        *,
        restorer: RecordRestorer | None = None,
        cache: Cache | None = None,
        config: ArchivalConfig | None = None,
        metrics: ArchivalMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the router.

        Args:
            hot: Hot store adapter
            cold: Cold store adapter
            tracker: Migration state tracker (read-only use plus hold())
            restorer: Reverse-migration helper (built from hot/cold if omitted)
            cache: Optional cache for cold reads
            config: Archival configuration (cache TTL, retry policy, timeouts)
            metrics: Optional metrics container
            clock: Callable returning the current UTC time
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._hot = hot
        self._cold = cold
        self._tracker = tracker
        self._cache = cache
        self._config = config or ArchivalConfig()
        self._metrics = metrics or ArchivalMetrics(enable_metrics=False)
        self._clock = clock
        self._restorer = restorer or RecordRestorer(
            hot,
            cold,
            step_timeout=self._config.step_timeout,
            metrics=self._metrics,
            tracer=self._tracer,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def read(self, record_id: str) -> Record:
        """
        Read the current revision of a record.

        Raises:
            NotFoundError: Neither tier holds the record
            TemporarilyUnavailableError: Retries were exhausted
        """
        with self._tracer.span(
            "ledgertier.router.read",
            {ATTR_RECORD_ID: record_id},
        ):
            return await self._with_retries("read", record_id, lambda: self._read_once(record_id))

    async def write(
        self,
        record_id: str,
        payload: dict[str, Any],
        schema_version: int = 1,
    ) -> Record:
        """
        Create a record, or replace the payload of an existing one.

        Returns:
            The stored revision

        Raises:
            TemporarilyUnavailableError: Retries were exhausted
        """
        with self._tracer.span(
            "ledgertier.router.write",
            {ATTR_RECORD_ID: record_id},
        ):
            return await self._with_retries(
                "write",
                record_id,
                lambda: self._write_once(record_id, payload, schema_version, must_exist=False),
            )

    async def update(
        self,
        record_id: str,
        payload: dict[str, Any],
        schema_version: int | None = None,
    ) -> Record:
        """
        Replace the payload of an existing record.

        Archived records are restored to the hot tier first.

        Returns:
            The new revision (``version`` incremented)

        Raises:
            NotFoundError: The record does not exist in either tier
            TemporarilyUnavailableError: Retries were exhausted
        """
        with self._tracer.span(
            "ledgertier.router.update",
            {ATTR_RECORD_ID: record_id},
        ):
            return await self._with_retries(
                "update",
                record_id,
                lambda: self._write_once(record_id, payload, schema_version, must_exist=True),
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _read_once(self, record_id: str) -> Record:
        status = self._tracker.status(record_id)
        if status is not None and status.state.is_cold_canonical:
            # Confirm against the log; another process may have restored it
            async with self._tracker.hold(record_id) as guard:
                status = await guard.refresh()
        state = status.state if status is not None else MigrationState.NONE

        if status is not None and state.is_cold_canonical:
            key = f"{record_id}:{status.attempt_id}"
            cached = await self._cache_get(key)
            if cached is not None:
                return cached
            record = await self._read_cold(record_id)
            await self._cache_set(key, record)
            return record

        try:
            return await call_adapter(
                "hot.get", record_id, self._hot.get(record_id), self._config.step_timeout
            )
        except NotFoundError:
            logger.debug(
                "Record %s missing from hot store in state %s, trying cold store",
                record_id,
                state.value,
            )
        return await self._read_cold(record_id)

    async def _read_cold(self, record_id: str) -> Record:
        try:
            data = await call_adapter(
                "cold.get", record_id, self._cold.get(record_id), self._config.step_timeout
            )
        except NotFoundError:
            raise NotFoundError(record_id) from None
        try:
            return decode_record(data)
        except ValueError as e:
            raise VerificationFailedError(
                record_id, content_hash(data), detail=f"undecodable cold copy: {e}"
            ) from e

    async def _cache_get(self, key: str) -> Record | None:
        if self._cache is None:
            return None
        try:
            return await self._cache.get(key)
        except TRANSIENT_ADAPTER_ERRORS as e:
            logger.warning("Cache read failed for %s, reading through: %s", key, e)
            return None

    async def _cache_set(self, key: str, record: Record) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.set(key, record, self._config.cache_ttl)
        except TRANSIENT_ADAPTER_ERRORS as e:
            logger.warning("Cache write failed for %s: %s", key, e)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _write_once(
        self,
        record_id: str,
        payload: dict[str, Any],
        schema_version: int | None,
        *,
        must_exist: bool,
    ) -> Record:
        async with self._tracker.hold(record_id) as guard:
            await guard.refresh()
            existing = await self._current_for_write(guard)
            now = self._clock()

            if existing is None:
                if must_exist:
                    raise NotFoundError(record_id)
                record = Record(
                    id=record_id,
                    payload=payload,
                    schema_version=schema_version or 1,
                    created_at=now,
                    last_modified_at=now,
                )
            else:
                record = existing.with_payload(payload, schema_version, now=now)

            await call_adapter(
                "hot.put", record_id, self._hot.put(record_id, record), self._config.step_timeout
            )
            await self._reclaim_after_write(guard)

        logger.debug("Wrote record %s version %d", record_id, record.version)
        return record

    async def _current_for_write(self, guard: RecordGuard) -> Record | None:
        """
        Current revision of the guarded record, restored to the hot tier if needed.

        Cold-canonical records are restored (and moved back to NONE). A
        hot-canonical record whose hot copy is gone, e.g. deleted by a cleanup
        that crashed before logging DELETED and was then released, is copied
        back from the cold tier so its version and created_at carry over.
        Returns None when neither tier holds the record.
        """
        record_id = guard.record_id
        state = guard.state

        with self._tracer.span(
            "ledgertier.router.locate",
            {ATTR_RECORD_ID: record_id, ATTR_MIGRATION_STATE: state.value},
        ) as span:
            if state.is_cold_canonical:
                record = await self._restorer.restore(guard)
                tier = "cold"
            else:
                try:
                    record = await call_adapter(
                        "hot.get", record_id, self._hot.get(record_id), self._config.step_timeout
                    )
                    tier = "hot"
                except NotFoundError:
                    try:
                        record = await self._restorer.restore(guard)
                    except NotFoundError:
                        return None
                    logger.warning(
                        "Hot copy of record %s missing in state %s, restored version %d "
                        "from the cold tier",
                        record_id,
                        state.value,
                        record.version,
                    )
                    tier = "cold"

            if span is not None:
                span.set_attribute(ATTR_TIER, tier)
                span.set_attribute(ATTR_RECORD_VERSION, record.version)
            return record

    async def _reclaim_after_write(self, guard: RecordGuard) -> None:
        """Move the record back to NONE if it was soft-flagged while the write landed."""
        status = await guard.refresh()
        if status is None or not status.state.is_cold_canonical:
            return

        logger.warning(
            "Record %s was soft-flagged elsewhere during a write, returning it to the hot tier",
            guard.record_id,
        )
        try:
            await guard.transition(
                status.state,
                MigrationState.NONE,
                attempt_id=status.attempt_id,
                reason=RESTORE_REASON,
            )
        except ConflictError:
            # The engine may have taken it back first; the conflict reloaded the state
            if guard.state.is_cold_canonical:
                raise

    # ------------------------------------------------------------------
    # Retries
    # ------------------------------------------------------------------

    async def _with_retries(
        self,
        operation: str,
        record_id: str,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        stats = RetryStats()
        try:
            return await retry_async(
                call,
                self._config.router_retry,
                _RETRYABLE,
                operation_name=f"router.{operation}({record_id})",
                stats=stats,
                on_retry=lambda _n, _e: self._metrics.record_router_retry(operation),
            )
        except RetriesExhausted as e:
            raise TemporarilyUnavailableError(record_id, e.attempts, e.last_error) from e
        except NotFoundError:
            raise
        except LedgerTierError as e:
            logger.log(
                e.severity.log_level,
                "Router %s of record %s failed: %s",
                operation,
                record_id,
                e,
            )
            raise TemporarilyUnavailableError(record_id, stats.attempts, e) from e


__all__ = ["UnifiedAccessRouter"]
