"""
ArchivalMigrationEngine - Moves aged records from the hot tier to the cold tier.

The engine runs only when an external scheduler calls one of its passes;
it keeps no timers or background tasks of its own. Each pass is
idempotent, so running one twice (or after a crash) never duplicates or
loses data.

Protocol per record:
    1. Claim: NONE|FAILED -> COPY_PENDING (compare-and-set; a lost race skips)
    2. Copy: serialize the hot record and write it to the cold store, unless
       an identical copy is already there
    3. Verify: the cold copy must hash to the hot payload, else -> FAILED
    4. COPY_PENDING -> VERIFIED
    5. Soft-flag under the record's critical section: if the hot copy changed
       since step 2, VERIFIED -> FAILED (source_changed), else
       VERIFIED -> ARCHIVED_SOFT_FLAGGED; a hot copy that changed right after
       the flag sends the record back to NONE (source_changed)
    6. (cleanup pass) ARCHIVED_SOFT_FLAGGED -> PENDING_DELETE after the
       grace period
    7. (cleanup pass) re-verify, delete the hot copy, PENDING_DELETE -> DELETED

Failure policy:
    Every adapter call is bounded by ``step_timeout``. Timeouts and I/O
    errors become TransientIOError and the record reverts to FAILED so the
    next scan picks it up again. Verification failures and stale records
    are never retried inside a pass. Any other exception is contained to its
    record: it is logged, the attempt reverts to FAILED and the pass goes on.

Usage:
    >>> engine = ArchivalMigrationEngine(hot, cold, tracker, ArchivalConfig())
    >>> report = await engine.run_migration_pass()
    >>> print(report.archived, report.failed)
    >>> cleanup = await engine.run_cleanup_pass()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TypeVar
from uuid import uuid4

from ledgertier.adapters.interface import ColdStore, HotStore, ScanPage, call_adapter
from ledgertier.exceptions import (
    ConflictError,
    NotFoundError,
    TransientIOError,
    VerificationFailedError,
)
from ledgertier.metrics import ArchivalMetrics
from ledgertier.models import (
    ArchivalConfig,
    CleanupPassReport,
    MigrationOutcome,
    MigrationPassReport,
    MigrationResult,
    MigrationState,
    StuckMigration,
    TrackedState,
    utcnow,
)
from ledgertier.observability import (
    ATTR_ATTEMPT_ID,
    ATTR_BATCH_SIZE,
    ATTR_RECORD_ID,
    ATTR_RECORDS_PROCESSED,
    Tracer,
    create_tracer,
)
from ledgertier.serialization import content_hash, decode_record, encode_record, record_hash
from ledgertier.tracker import MigrationStateTracker, RecordGuard

logger = logging.getLogger(__name__)

T = TypeVar("T")

_IN_FLIGHT = (
    MigrationState.COPY_PENDING,
    MigrationState.COPIED_UNVERIFIED,
    MigrationState.VERIFIED,
)


class ArchivalMigrationEngine:
    """
    Runs scan-and-migrate and deferred-delete passes.

    Example:
        >>> engine = ArchivalMigrationEngine(
        ...     hot, cold, tracker, ArchivalConfig(batch_size=500, max_concurrency=16)
        ... )
        >>> report = await engine.run_migration_pass()
    """

    def __init__(
        self,
        hot: HotStore,
        cold: ColdStore,
        tracker: MigrationStateTracker,
        config: ArchivalConfig | None = None,
        *,
        metrics: ArchivalMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
        attempt_id_factory: Callable[[], str] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the engine.

        Args:
            hot: Hot store adapter
            cold: Cold store adapter
            tracker: Migration state tracker
            config: Archival configuration (defaults to ArchivalConfig())
            metrics: Optional metrics container
            clock: Callable returning the current UTC time
            attempt_id_factory: Callable producing attempt ids (uuid4 by default)
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._hot = hot
        self._cold = cold
        self._tracker = tracker
        self._config = config or ArchivalConfig()
        self._metrics = metrics or ArchivalMetrics(enable_metrics=False)
        self._clock = clock
        self._new_attempt_id = attempt_id_factory or (lambda: str(uuid4()))

    @property
    def config(self) -> ArchivalConfig:
        return self._config

    async def _call(self, operation: str, record_id: str | None, call: Awaitable[T]) -> T:
        return await call_adapter(operation, record_id, call, self._config.step_timeout)

    # ------------------------------------------------------------------
    # Migration pass
    # ------------------------------------------------------------------

    async def run_migration_pass(self) -> MigrationPassReport:
        """
        Scan the hot store for aged records and migrate each eligible one.

        Candidates are fetched in pages of ``batch_size``; each page is
        migrated concurrently, at most ``max_concurrency`` records at a time.
        A scan failure ends the pass early with what was done so far.

        Returns:
            MigrationPassReport with one result per candidate
        """
        report = MigrationPassReport(started_at=self._clock())
        semaphore = asyncio.Semaphore(self._config.max_concurrency)

        async def migrate_bounded(record_id: str) -> MigrationResult:
            async with semaphore:
                return await self._migrate(record_id, self._new_attempt_id())

        with (
            self._metrics.time_pass("migration"),
            self._tracer.span(
                "ledgertier.engine.migration_pass",
                {ATTR_BATCH_SIZE: self._config.batch_size},
            ) as span,
        ):
            cursor: str | None = None
            while True:
                try:
                    page: ScanPage = await self._call(
                        "hot.scan_older_than",
                        None,
                        self._hot.scan_older_than(
                            self._config.age_threshold, cursor, self._config.batch_size
                        ),
                    )
                except TransientIOError as e:
                    logger.warning("Hot store scan failed, ending migration pass early: %s", e)
                    break

                report.scanned += len(page.ids)
                candidates = []
                for record_id in page.ids:
                    if self._tracker.is_stale(record_id):
                        report.results.append(
                            MigrationResult(record_id, MigrationOutcome.SKIPPED_STALE)
                        )
                    elif not self._tracker.get(record_id).is_eligible_for_archival:
                        report.results.append(
                            MigrationResult(record_id, MigrationOutcome.SKIPPED_NOT_ELIGIBLE)
                        )
                    else:
                        candidates.append(record_id)

                report.results.extend(
                    await asyncio.gather(*(migrate_bounded(rid) for rid in candidates))
                )

                if page.is_last:
                    break
                cursor = page.next_cursor

            report.finished_at = self._clock()
            if span is not None:
                span.set_attribute(ATTR_RECORDS_PROCESSED, report.scanned)

        logger.info(
            "Migration pass finished: scanned=%d archived=%d failed=%d conflicts=%d",
            report.scanned,
            report.archived,
            report.failed,
            report.count(MigrationOutcome.SKIPPED_CONFLICT),
        )
        return report

    async def migrate_record(
        self,
        record_id: str,
        attempt_id: str | None = None,
    ) -> MigrationOutcome:
        """
        Run the forward-migration protocol for one record.

        Safe to call repeatedly: a record that is already archived, claimed
        by another worker or too young is skipped, and a cold copy that
        already matches is not written again.

        Args:
            record_id: The record to migrate
            attempt_id: Attempt identifier (generated when omitted)

        Returns:
            The outcome of the attempt
        """
        result = await self._migrate(record_id, attempt_id or self._new_attempt_id())
        return result.outcome

    async def _migrate(self, record_id: str, attempt_id: str) -> MigrationResult:
        try:
            with self._tracer.span(
                "ledgertier.engine.migrate_record",
                {ATTR_RECORD_ID: record_id, ATTR_ATTEMPT_ID: attempt_id},
            ):
                result = await self._attempt(record_id, attempt_id)
        except Exception as e:
            # One broken record must not abort the rest of the batch
            logger.exception(
                "Unexpected error migrating record %s (attempt %s)", record_id, attempt_id
            )
            status = self._tracker.status(record_id)
            if (
                status is not None
                and status.attempt_id == attempt_id
                and status.state.is_in_flight
            ):
                await self._revert(record_id, attempt_id, "unexpected_error")
            result = MigrationResult(
                record_id, MigrationOutcome.FAILED_UNEXPECTED, attempt_id, error=str(e)
            )

        if result.outcome.is_failure:
            self._metrics.record_migration_failure(result.outcome.value)
        elif result.outcome == MigrationOutcome.ARCHIVED:
            self._metrics.record_archived()
        return result

    async def _attempt(self, record_id: str, attempt_id: str) -> MigrationResult:
        if self._tracker.is_stale(record_id):
            return MigrationResult(record_id, MigrationOutcome.SKIPPED_STALE, attempt_id)
        if not self._tracker.get(record_id).is_eligible_for_archival:
            return MigrationResult(record_id, MigrationOutcome.SKIPPED_NOT_ELIGIBLE, attempt_id)

        try:
            record = await self._call("hot.get", record_id, self._hot.get(record_id))
        except NotFoundError:
            return MigrationResult(record_id, MigrationOutcome.NOT_FOUND, attempt_id)
        except TransientIOError as e:
            return MigrationResult(
                record_id, MigrationOutcome.FAILED_TRANSIENT, attempt_id, error=str(e)
            )

        if not record.is_archivable(self._config.age_threshold, self._clock()):
            return MigrationResult(record_id, MigrationOutcome.SKIPPED_NOT_ELIGIBLE, attempt_id)

        # Step 1: claim
        try:
            await self._tracker.transition(
                record_id,
                (MigrationState.NONE, MigrationState.FAILED),
                MigrationState.COPY_PENDING,
                attempt_id=attempt_id,
            )
        except ConflictError:
            logger.debug("Record %s claimed elsewhere, skipping", record_id)
            return MigrationResult(record_id, MigrationOutcome.SKIPPED_CONFLICT, attempt_id)
        except TransientIOError as e:
            return MigrationResult(
                record_id, MigrationOutcome.FAILED_TRANSIENT, attempt_id, error=str(e)
            )

        try:
            outcome = await self._copy_verify_flag(record_id, attempt_id)
        except TransientIOError as e:
            logger.warning("Transient failure migrating record %s: %s", record_id, e)
            await self._revert(record_id, attempt_id, "transient_io")
            return MigrationResult(
                record_id, MigrationOutcome.FAILED_TRANSIENT, attempt_id, error=str(e)
            )
        except NotFoundError as e:
            logger.warning("Record %s vanished from the hot store mid-migration", record_id)
            await self._revert(record_id, attempt_id, "source_missing")
            return MigrationResult(record_id, MigrationOutcome.NOT_FOUND, attempt_id, error=str(e))
        except ConflictError as e:
            logger.warning("Record %s busy during soft-flag: %s", record_id, e)
            await self._revert(record_id, attempt_id, "conflict")
            return MigrationResult(
                record_id, MigrationOutcome.SKIPPED_CONFLICT, attempt_id, error=str(e)
            )
        return MigrationResult(record_id, outcome, attempt_id)

    async def _copy_verify_flag(self, record_id: str, attempt_id: str) -> MigrationOutcome:
        # Step 2: copy
        record = await self._call("hot.get", record_id, self._hot.get(record_id))

        data = encode_record(record)
        digest = content_hash(data)
        if await self._call("cold.verify", record_id, self._cold.verify(record_id, digest)):
            logger.debug("Cold copy of %s already present, not rewriting", record_id)
        else:
            await self._call("cold.put", record_id, self._cold.put(record_id, data))

        # Step 3: verify
        if not await self._call("cold.verify", record_id, self._cold.verify(record_id, digest)):
            error = VerificationFailedError(record_id, digest, attempt_id=attempt_id)
            logger.error("Verification failed for record %s: %s", record_id, error)
            self._metrics.record_verification_failure()
            await self._tracker.transition(
                record_id,
                MigrationState.COPY_PENDING,
                MigrationState.FAILED,
                attempt_id=attempt_id,
                reason="verification_failed",
            )
            return MigrationOutcome.VERIFICATION_FAILED

        # Step 4
        await self._tracker.transition(
            record_id,
            MigrationState.COPY_PENDING,
            MigrationState.VERIFIED,
            attempt_id=attempt_id,
        )

        # Step 5: soft-flag, linearized with router writes
        async with self._tracker.hold(record_id) as guard:
            if guard.state != MigrationState.VERIFIED:
                return MigrationOutcome.SKIPPED_CONFLICT
            current = await self._call("hot.get", record_id, self._hot.get(record_id))
            if record_hash(current) != digest:
                await guard.transition(
                    MigrationState.VERIFIED,
                    MigrationState.FAILED,
                    attempt_id=attempt_id,
                    reason="source_changed",
                )
                logger.warning(
                    "Record %s changed during migration (version %d -> %d), will retry",
                    record_id,
                    record.version,
                    current.version,
                )
                return MigrationOutcome.SOURCE_CHANGED

            await guard.transition(
                MigrationState.VERIFIED,
                MigrationState.ARCHIVED_SOFT_FLAGGED,
                attempt_id=attempt_id,
            )

            # A router in another process can write between the read and the flag
            if await self._changed_after_flag(guard, digest, attempt_id):
                return MigrationOutcome.SOURCE_CHANGED

        logger.info("Archived record %s (attempt %s)", record_id, attempt_id)
        return MigrationOutcome.ARCHIVED

    async def _changed_after_flag(self, guard: RecordGuard, digest: str, attempt_id: str) -> bool:
        """Hand a just-flagged record back to the hot tier if its hot copy moved on."""
        record_id = guard.record_id
        try:
            latest = await self._call("hot.get", record_id, self._hot.get(record_id))
        except (NotFoundError, TransientIOError) as e:
            logger.warning("Could not re-read record %s after soft-flag: %s", record_id, e)
            return False
        if record_hash(latest) == digest:
            return False

        logger.warning(
            "Record %s was written during soft-flag (now version %d), returning it to hot",
            record_id,
            latest.version,
        )
        try:
            await guard.transition(
                MigrationState.ARCHIVED_SOFT_FLAGGED,
                MigrationState.NONE,
                attempt_id=attempt_id,
                reason="source_changed",
            )
        except ConflictError:
            # The writer's router may have taken it back first
            if guard.state.is_cold_canonical:
                raise
        return True

    async def _revert(self, record_id: str, attempt_id: str, reason: str) -> None:
        """Move an interrupted attempt to FAILED; leave it for recovery if that fails too."""
        try:
            await self._tracker.transition(
                record_id,
                _IN_FLIGHT,
                MigrationState.FAILED,
                attempt_id=attempt_id,
                reason=reason,
            )
        except ConflictError as e:
            logger.warning("Could not revert record %s to FAILED: %s", record_id, e)
        except TransientIOError as e:
            logger.error(
                "Could not log revert of record %s to FAILED, left in %s: %s",
                record_id,
                self._tracker.get(record_id).value,
                e,
            )

    # ------------------------------------------------------------------
    # Cleanup pass
    # ------------------------------------------------------------------

    async def run_cleanup_pass(self) -> CleanupPassReport:
        """
        Promote expired soft-flags and delete verified hot copies.

        Records soft-flagged for at least ``delete_grace_period`` move to
        PENDING_DELETE. Every PENDING_DELETE record then has its cold copy
        re-verified against the hot copy before the hot copy is deleted. A
        failed re-verification moves the record to FAILED with its hot copy
        intact.

        Returns:
            CleanupPassReport listing promoted, deleted, failed and skipped ids
        """
        now = self._clock()
        report = CleanupPassReport(started_at=now)

        with (
            self._metrics.time_pass("cleanup"),
            self._tracer.span("ledgertier.engine.cleanup_pass", {}),
        ):
            for record_id in self._tracker.list(MigrationState.ARCHIVED_SOFT_FLAGGED):
                status = self._tracker.status(record_id)
                if status is None or status.stale:
                    report.skipped.append(record_id)
                    continue
                if (
                    status.archived_at is not None
                    and status.archived_at + self._config.delete_grace_period > now
                ):
                    continue
                try:
                    await self._tracker.transition(
                        record_id,
                        MigrationState.ARCHIVED_SOFT_FLAGGED,
                        MigrationState.PENDING_DELETE,
                        attempt_id=status.attempt_id,
                    )
                    report.promoted.append(record_id)
                except (ConflictError, TransientIOError) as e:
                    logger.warning("Could not promote record %s: %s", record_id, e)
                    report.skipped.append(record_id)

            semaphore = asyncio.Semaphore(self._config.max_concurrency)

            async def delete_bounded(record_id: str) -> tuple[str, str]:
                async with semaphore:
                    try:
                        return record_id, await self._delete_hot_copy(record_id)
                    except Exception:
                        logger.exception(
                            "Unexpected error deleting hot copy of record %s", record_id
                        )
                        return record_id, "skipped"

            outcomes = await asyncio.gather(
                *(
                    delete_bounded(rid)
                    for rid in self._tracker.list(MigrationState.PENDING_DELETE)
                )
            )
            for record_id, outcome in outcomes:
                getattr(report, outcome).append(record_id)

            report.finished_at = self._clock()

        if report.deleted:
            self._metrics.record_deleted(len(report.deleted))
        logger.info(
            "Cleanup pass finished: promoted=%d deleted=%d failed=%d skipped=%d",
            len(report.promoted),
            len(report.deleted),
            len(report.failed),
            len(report.skipped),
        )
        return report

    async def _delete_hot_copy(self, record_id: str) -> str:
        """Returns the CleanupPassReport field the record belongs in."""
        if self._tracker.is_stale(record_id):
            return "skipped"
        try:
            async with self._tracker.hold(record_id) as guard:
                status = guard.status
                if status is None or status.state != MigrationState.PENDING_DELETE:
                    return "skipped"

                try:
                    record = await self._call("hot.get", record_id, self._hot.get(record_id))
                except NotFoundError:
                    record = None

                if record is None:
                    # Deleted before a crash cut off the log entry; only the archive is left
                    data = await self._call("cold.get", record_id, self._cold.get(record_id))
                    digest = content_hash(data)
                    detail = self._check_archive(record_id, data, digest)
                    if detail is not None:
                        await self._fail_reverification(guard, status, digest, detail)
                        return "failed"
                else:
                    digest = record_hash(record)
                    if not await self._call(
                        "cold.verify", record_id, self._cold.verify(record_id, digest)
                    ):
                        await self._fail_reverification(
                            guard, status, digest, "re-verification before delete"
                        )
                        return "failed"
                    await self._call("hot.delete", record_id, self._hot.delete(record_id))

                await guard.transition(
                    MigrationState.PENDING_DELETE,
                    MigrationState.DELETED,
                    attempt_id=status.attempt_id,
                )
        except NotFoundError as e:
            logger.error("Cold copy missing for PENDING_DELETE record %s: %s", record_id, e)
            return "skipped"
        except (ConflictError, TransientIOError) as e:
            logger.warning("Deferred delete of record %s postponed: %s", record_id, e)
            return "skipped"

        logger.info("Deleted hot copy of record %s", record_id)
        return "deleted"

    @staticmethod
    def _check_archive(record_id: str, data: bytes, digest: str) -> str | None:
        """Why ``data`` is not a sound archive of ``record_id``, or None if it is."""
        try:
            archived = decode_record(data)
        except ValueError as e:
            return f"undecodable cold copy with no hot copy left: {e}"
        if archived.id != record_id or record_hash(archived) != digest:
            return "cold copy is not the canonical encoding of this record"
        return None

    async def _fail_reverification(
        self,
        guard: RecordGuard,
        status: TrackedState,
        digest: str,
        detail: str,
    ) -> None:
        error = VerificationFailedError(
            guard.record_id, digest, attempt_id=status.attempt_id, detail=detail
        )
        logger.error("Not completing delete of %s: %s", guard.record_id, error)
        self._metrics.record_verification_failure()
        await guard.transition(
            MigrationState.PENDING_DELETE,
            MigrationState.FAILED,
            attempt_id=status.attempt_id,
            reason="verification_failed",
        )

    def stuck_migrations(self, now: datetime | None = None) -> list[StuckMigration]:
        """Records idle in an in-flight state for longer than ``stuck_after``."""
        return self._tracker.find_stuck(self._config.stuck_after, now or self._clock())


__all__ = ["ArchivalMigrationEngine"]
