"""
Data models for tiered billing-record storage.

Models in this module:

Enums:
    - MigrationState: Per-record archival state machine
    - MigrationOutcome: Result of one forward-migration attempt

Configuration:
    - ArchivalConfig: Thresholds, batch sizes, timeouts and retry policy

Core Models:
    - Record: A billing record as held by the hot store
    - ConsistencyLogEntry: Immutable log line for one state transition
    - TrackedState: Tracker entry for a record that is not in NONE
    - StuckMigration: Non-terminal entry that has not moved for too long

Reports:
    - MigrationResult / MigrationPassReport: Output of a scan-and-migrate pass
    - CleanupPassReport: Output of a deferred-delete pass
    - RecoveryReport: Output of a log replay
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from ledgertier.retry import RetryConfig

if TYPE_CHECKING:
    from ledgertier.exceptions import StaleStateError


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


class Record(BaseModel):
    """
    A billing record.

    Records are immutable value objects; every write produces a new instance
    with a bumped ``version``. The age tier is derived from ``created_at``
    and never stored.

    Attributes:
        id: Immutable primary key
        payload: Schema-versioned billing data
        schema_version: Version of the payload schema
        version: Revision counter, incremented by every write
        created_at: When the record was first written (UTC)
        last_modified_at: When the current revision was written (UTC)

    Example:
        >>> record = Record(id="inv-1001", payload={"amount_cents": 4200})
        >>> updated = record.with_payload({"amount_cents": 4300})
        >>> updated.version
        2
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Primary key")
    payload: dict[str, Any] = Field(default_factory=dict, description="Billing data")
    schema_version: int = Field(default=1, ge=1, description="Payload schema version")
    version: int = Field(default=1, ge=1, description="Revision counter")
    created_at: datetime = Field(default_factory=utcnow, description="Creation time (UTC)")
    last_modified_at: datetime = Field(
        default_factory=utcnow,
        description="Time of the current revision (UTC)",
    )

    def age(self, now: datetime | None = None) -> timedelta:
        """Age of the record relative to ``now``."""
        return (now or utcnow()) - self.created_at

    def is_archivable(self, threshold: timedelta, now: datetime | None = None) -> bool:
        """True when the record is strictly older than ``threshold``."""
        return self.age(now) > threshold

    def with_payload(
        self,
        payload: dict[str, Any],
        schema_version: int | None = None,
        now: datetime | None = None,
    ) -> Record:
        """
        Create the next revision of this record.

        Args:
            payload: New payload
            schema_version: New schema version (unchanged if None)
            now: Modification time (defaults to current UTC time)

        Returns:
            New record with ``version + 1``
        """
        return self.model_copy(
            update={
                "payload": payload,
                "schema_version": schema_version or self.schema_version,
                "version": self.version + 1,
                "last_modified_at": now or utcnow(),
            }
        )


class MigrationState(Enum):
    """
    Per-record archival state machine.

    Forward path:
        NONE -> COPY_PENDING -> VERIFIED -> ARCHIVED_SOFT_FLAGGED
             -> PENDING_DELETE -> DELETED

    Failure and retry:
        COPY_PENDING | COPIED_UNVERIFIED | VERIFIED | PENDING_DELETE -> FAILED
        FAILED -> COPY_PENDING

    Reverse migration (update of an archived record):
        ARCHIVED_SOFT_FLAGGED | PENDING_DELETE -> NONE

    NONE is implicit: a record without a tracker entry is in NONE. DELETED
    removes the entry once logged.
    """

    NONE = "none"
    """Not migrating; no tracker entry."""

    COPY_PENDING = "copy_pending"
    """Claimed by a worker; cold copy being written."""

    COPIED_UNVERIFIED = "copied_unverified"
    """Cold copy written but not yet verified. Routed like COPY_PENDING."""

    VERIFIED = "verified"
    """Cold copy matches the hot payload; hot store still canonical."""

    ARCHIVED_SOFT_FLAGGED = "archived_soft_flagged"
    """Cold store canonical; hot copy kept for the grace period."""

    PENDING_DELETE = "pending_delete"
    """Grace period over; hot copy awaiting cleanup."""

    DELETED = "deleted"
    """Hot copy removed; entry dropped from the tracker."""

    FAILED = "failed"
    """Attempt aborted; eligible for the next scan."""

    @property
    def is_hot_canonical(self) -> bool:
        """True when the hot store holds the canonical copy."""
        return self in _HOT_CANONICAL

    @property
    def is_cold_canonical(self) -> bool:
        """True when the cold store holds the canonical copy."""
        return self in (MigrationState.ARCHIVED_SOFT_FLAGGED, MigrationState.PENDING_DELETE)

    @property
    def is_in_flight(self) -> bool:
        """True while a forward copy attempt owns the record."""
        return self in (
            MigrationState.COPY_PENDING,
            MigrationState.COPIED_UNVERIFIED,
            MigrationState.VERIFIED,
        )

    @property
    def is_eligible_for_archival(self) -> bool:
        """True when a scan may claim the record."""
        return self in (MigrationState.NONE, MigrationState.FAILED)

    @property
    def tracked(self) -> bool:
        """True when the tracker keeps an entry for this state."""
        return self not in (MigrationState.NONE, MigrationState.DELETED)

    def can_transition_to(self, target: MigrationState) -> bool:
        """Check if transition to ``target`` is an edge of the state machine."""
        return target in VALID_TRANSITIONS.get(self, frozenset())


_HOT_CANONICAL = frozenset(
    {
        MigrationState.NONE,
        MigrationState.FAILED,
        MigrationState.COPY_PENDING,
        MigrationState.COPIED_UNVERIFIED,
        MigrationState.VERIFIED,
    }
)

VALID_TRANSITIONS: dict[MigrationState, frozenset[MigrationState]] = {
    MigrationState.NONE: frozenset({MigrationState.COPY_PENDING}),
    MigrationState.FAILED: frozenset({MigrationState.COPY_PENDING}),
    MigrationState.COPY_PENDING: frozenset(
        {
            MigrationState.COPIED_UNVERIFIED,
            MigrationState.VERIFIED,
            MigrationState.FAILED,
        }
    ),
    MigrationState.COPIED_UNVERIFIED: frozenset(
        {MigrationState.VERIFIED, MigrationState.FAILED}
    ),
    MigrationState.VERIFIED: frozenset(
        {MigrationState.ARCHIVED_SOFT_FLAGGED, MigrationState.FAILED}
    ),
    MigrationState.ARCHIVED_SOFT_FLAGGED: frozenset(
        {MigrationState.PENDING_DELETE, MigrationState.NONE}
    ),
    MigrationState.PENDING_DELETE: frozenset(
        {MigrationState.DELETED, MigrationState.FAILED, MigrationState.NONE}
    ),
    MigrationState.DELETED: frozenset(),
}


class MigrationOutcome(Enum):
    """Result of one forward-migration attempt for a record."""

    ARCHIVED = "archived"
    SKIPPED_CONFLICT = "skipped_conflict"
    SKIPPED_NOT_ELIGIBLE = "skipped_not_eligible"
    SKIPPED_STALE = "skipped_stale"
    NOT_FOUND = "not_found"
    VERIFICATION_FAILED = "verification_failed"
    SOURCE_CHANGED = "source_changed"
    FAILED_TRANSIENT = "failed_transient"
    FAILED_UNEXPECTED = "failed_unexpected"

    @property
    def is_failure(self) -> bool:
        return self in (
            MigrationOutcome.VERIFICATION_FAILED,
            MigrationOutcome.SOURCE_CHANGED,
            MigrationOutcome.FAILED_TRANSIENT,
            MigrationOutcome.FAILED_UNEXPECTED,
        )


@dataclass(frozen=True)
class ArchivalConfig:
    """
    Configuration for archival and routing.

    Immutable so that a running engine cannot have its thresholds changed
    underneath it.

    Attributes:
        age_threshold: Records strictly older than this are archived (default 90 days).
        delete_grace_period: Time between soft-flag and hot delete (default 7 days).
        batch_size: Candidates fetched per hot-store scan page (default 100).
        max_concurrency: Records migrated in parallel within a batch (default 8).
        step_timeout: Seconds allowed for each adapter call (default 30).
        lock_timeout: Seconds to wait for a record's critical section (default 5).
        stuck_after: Non-terminal entries idle longer than this are stuck (default 1 hour).
        cache_ttl: Seconds a cold read stays in the cache (default 300).
        router_retry: Router retry policy for conflicts and transient I/O.

    Example:
        >>> config = ArchivalConfig(batch_size=500, delete_grace_period=timedelta(days=14))
        >>> config.batch_size
        500
    """

    age_threshold: timedelta = timedelta(days=90)
    delete_grace_period: timedelta = timedelta(days=7)
    batch_size: int = 100
    max_concurrency: int = 8
    step_timeout: float = 30.0
    lock_timeout: float = 5.0
    stuck_after: timedelta = timedelta(hours=1)
    cache_ttl: float = 300.0
    router_retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.age_threshold <= timedelta(0):
            raise ValueError(f"age_threshold must be positive, got {self.age_threshold}")

        if self.delete_grace_period < timedelta(0):
            raise ValueError(
                f"delete_grace_period must be >= 0, got {self.delete_grace_period}"
            )

        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")

        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")

        if self.step_timeout <= 0:
            raise ValueError(f"step_timeout must be > 0, got {self.step_timeout}")

        if self.lock_timeout <= 0:
            raise ValueError(f"lock_timeout must be > 0, got {self.lock_timeout}")

        if self.stuck_after <= timedelta(0):
            raise ValueError(f"stuck_after must be positive, got {self.stuck_after}")

        if self.cache_ttl < 0:
            raise ValueError(f"cache_ttl must be >= 0, got {self.cache_ttl}")

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON storage.

        Durations are expressed in seconds.
        """
        return {
            "age_threshold_seconds": self.age_threshold.total_seconds(),
            "delete_grace_period_seconds": self.delete_grace_period.total_seconds(),
            "batch_size": self.batch_size,
            "max_concurrency": self.max_concurrency,
            "step_timeout": self.step_timeout,
            "lock_timeout": self.lock_timeout,
            "stuck_after_seconds": self.stuck_after.total_seconds(),
            "cache_ttl": self.cache_ttl,
            "router_retry": self.router_retry.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchivalConfig:
        """
        Create from dictionary.

        Missing keys fall back to the defaults.
        """
        defaults = cls()
        return cls(
            age_threshold=_seconds(data, "age_threshold_seconds", defaults.age_threshold),
            delete_grace_period=_seconds(
                data, "delete_grace_period_seconds", defaults.delete_grace_period
            ),
            batch_size=data.get("batch_size", defaults.batch_size),
            max_concurrency=data.get("max_concurrency", defaults.max_concurrency),
            step_timeout=data.get("step_timeout", defaults.step_timeout),
            lock_timeout=data.get("lock_timeout", defaults.lock_timeout),
            stuck_after=_seconds(data, "stuck_after_seconds", defaults.stuck_after),
            cache_ttl=data.get("cache_ttl", defaults.cache_ttl),
            router_retry=RetryConfig.from_dict(data.get("router_retry", {})),
        )


def _seconds(data: dict[str, Any], key: str, default: timedelta) -> timedelta:
    value = data.get(key)
    return default if value is None else timedelta(seconds=value)


@dataclass(frozen=True)
class ConsistencyLogEntry:
    """
    One state transition, as written to the consistency log.

    Immutable once written. ``sequence`` is assigned by the log backend on
    append and defines replay order.

    Attributes:
        record_id: Record whose state changed.
        from_state: State before the transition.
        to_state: State after the transition.
        timestamp: When the transition was committed (UTC).
        attempt_id: Identifier shared by all transitions of one attempt.
        reason: Optional short reason (e.g. "verification_failed").
        sequence: Position in the log, None before append.
    """

    record_id: str
    from_state: MigrationState
    to_state: MigrationState
    timestamp: datetime
    attempt_id: str
    reason: str | None = None
    sequence: int | None = None

    def with_sequence(self, sequence: int) -> ConsistencyLogEntry:
        return ConsistencyLogEntry(
            record_id=self.record_id,
            from_state=self.from_state,
            to_state=self.to_state,
            timestamp=self.timestamp,
            attempt_id=self.attempt_id,
            reason=self.reason,
            sequence=sequence,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "record_id": self.record_id,
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "timestamp": self.timestamp.isoformat(),
            "attempt_id": self.attempt_id,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class TrackedState:
    """
    Tracker entry for a record in a non-NONE state.

    Attributes:
        record_id: The record.
        state: Current migration state.
        since: When the record entered ``state``.
        attempt_id: Attempt that produced ``state``.
        archived_at: When the record was soft-flagged (for the delete grace period).
        stale: True when replay found a gap in the record's log history.
    """

    record_id: str
    state: MigrationState
    since: datetime
    attempt_id: str
    archived_at: datetime | None = None
    stale: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "state": self.state.value,
            "since": self.since.isoformat(),
            "attempt_id": self.attempt_id,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
            "stale": self.stale,
        }


@dataclass(frozen=True)
class StuckMigration:
    """
    A non-terminal tracker entry that has not moved within the grace window.

    Surfaced for operator review; never advanced automatically.
    """

    record_id: str
    state: MigrationState
    since: datetime
    attempt_id: str
    stuck_for: timedelta

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "state": self.state.value,
            "since": self.since.isoformat(),
            "attempt_id": self.attempt_id,
            "stuck_for_seconds": self.stuck_for.total_seconds(),
        }


@dataclass(frozen=True)
class MigrationResult:
    """Outcome of one forward-migration attempt."""

    record_id: str
    outcome: MigrationOutcome
    attempt_id: str | None = None
    error: str | None = None


@dataclass
class MigrationPassReport:
    """
    Summary of one scan-and-migrate pass.

    Attributes:
        started_at: When the pass began.
        finished_at: When the pass ended (None while running).
        scanned: Candidate ids returned by the hot-store scan.
        results: One result per candidate that was attempted or skipped.
    """

    started_at: datetime
    finished_at: datetime | None = None
    scanned: int = 0
    results: list[MigrationResult] = field(default_factory=list)

    def count(self, outcome: MigrationOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def archived(self) -> int:
        return self.count(MigrationOutcome.ARCHIVED)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.outcome.is_failure)

    @property
    def duration(self) -> timedelta | None:
        if self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def to_dict(self) -> dict[str, Any]:
        counts: dict[str, int] = {}
        for result in self.results:
            counts[result.outcome.value] = counts.get(result.outcome.value, 0) + 1
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "scanned": self.scanned,
            "outcomes": counts,
            "failures": [
                {"record_id": r.record_id, "outcome": r.outcome.value, "error": r.error}
                for r in self.results
                if r.outcome.is_failure
            ],
        }


@dataclass
class CleanupPassReport:
    """
    Summary of one deferred-delete pass.

    Attributes:
        promoted: Records moved from ARCHIVED_SOFT_FLAGGED to PENDING_DELETE.
        deleted: Records whose hot copy was removed.
        failed: Records whose cold copy failed re-verification.
        skipped: Records left for a later pass (conflicts, transient errors).
    """

    started_at: datetime
    finished_at: datetime | None = None
    promoted: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "promoted": list(self.promoted),
            "deleted": list(self.deleted),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
        }


@dataclass
class RecoveryReport:
    """
    Summary of a tracker rebuild from the consistency log.

    Attributes:
        entries_replayed: Log entries read.
        records_tracked: Records left with a non-NONE state.
        reverted: In-flight records moved to FAILED so the next scan retries them.
        stuck: In-flight records older than the stuck window, left untouched.
        inconsistencies: Gaps found in per-record histories.
    """

    entries_replayed: int = 0
    records_tracked: int = 0
    reverted: list[str] = field(default_factory=list)
    stuck: list[StuckMigration] = field(default_factory=list)
    inconsistencies: list[StaleStateError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries_replayed": self.entries_replayed,
            "records_tracked": self.records_tracked,
            "reverted": list(self.reverted),
            "stuck": [s.to_dict() for s in self.stuck],
            "inconsistencies": [e.to_dict() for e in self.inconsistencies],
        }


__all__ = [
    "utcnow",
    "Record",
    "MigrationState",
    "VALID_TRANSITIONS",
    "MigrationOutcome",
    "ArchivalConfig",
    "ConsistencyLogEntry",
    "TrackedState",
    "StuckMigration",
    "MigrationResult",
    "MigrationPassReport",
    "CleanupPassReport",
    "RecoveryReport",
]
