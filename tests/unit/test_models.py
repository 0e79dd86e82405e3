"""
Unit tests for ledgertier data models.

Tests cover:
- Record immutability, age and revisions
- MigrationState routing properties and the transition table
- ArchivalConfig validation and dict round-trip
- Report helpers
"""

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from ledgertier.models import (
    VALID_TRANSITIONS,
    ArchivalConfig,
    CleanupPassReport,
    ConsistencyLogEntry,
    MigrationOutcome,
    MigrationPassReport,
    MigrationResult,
    MigrationState,
    Record,
    TrackedState,
)
from ledgertier.retry import RetryConfig

NOW = datetime(2026, 1, 1, tzinfo=UTC)


class TestRecord:
    def test_defaults(self):
        record = Record(id="inv-1", payload={"amount_cents": 100})

        assert record.version == 1
        assert record.schema_version == 1
        assert record.created_at.tzinfo is not None

    def test_is_frozen(self):
        record = Record(id="inv-1")

        with pytest.raises(ValidationError):
            record.version = 2

    def test_empty_id_rejected(self):
        with pytest.raises(ValidationError):
            Record(id="")

    def test_age_and_archivable(self):
        record = Record(id="inv-1", created_at=NOW - timedelta(days=91))

        assert record.age(NOW) == timedelta(days=91)
        assert record.is_archivable(timedelta(days=90), NOW)

    def test_exactly_threshold_is_not_archivable(self):
        """Eligibility is strictly older than the threshold."""
        record = Record(id="inv-1", created_at=NOW - timedelta(days=90))

        assert not record.is_archivable(timedelta(days=90), NOW)

    def test_with_payload_bumps_version(self):
        record = Record(id="inv-1", payload={"a": 1}, created_at=NOW, last_modified_at=NOW)
        later = NOW + timedelta(hours=1)

        updated = record.with_payload({"a": 2}, now=later)

        assert updated.version == 2
        assert updated.payload == {"a": 2}
        assert updated.created_at == NOW
        assert updated.last_modified_at == later
        assert updated.schema_version == 1
        assert record.payload == {"a": 1}

    def test_with_payload_changes_schema_version(self):
        record = Record(id="inv-1")

        assert record.with_payload({}, schema_version=3).schema_version == 3


class TestMigrationState:
    @pytest.mark.parametrize(
        "state",
        [
            MigrationState.NONE,
            MigrationState.FAILED,
            MigrationState.COPY_PENDING,
            MigrationState.COPIED_UNVERIFIED,
            MigrationState.VERIFIED,
        ],
    )
    def test_hot_canonical_states(self, state):
        assert state.is_hot_canonical
        assert not state.is_cold_canonical

    @pytest.mark.parametrize(
        "state",
        [MigrationState.ARCHIVED_SOFT_FLAGGED, MigrationState.PENDING_DELETE],
    )
    def test_cold_canonical_states(self, state):
        assert state.is_cold_canonical
        assert not state.is_hot_canonical

    def test_eligible_for_archival(self):
        eligible = {s for s in MigrationState if s.is_eligible_for_archival}

        assert eligible == {MigrationState.NONE, MigrationState.FAILED}

    def test_untracked_states(self):
        assert not MigrationState.NONE.tracked
        assert not MigrationState.DELETED.tracked
        assert MigrationState.FAILED.tracked

    def test_deleted_has_no_outgoing_edges(self):
        assert VALID_TRANSITIONS[MigrationState.DELETED] == frozenset()

    def test_forward_path_is_valid(self):
        path = [
            MigrationState.NONE,
            MigrationState.COPY_PENDING,
            MigrationState.VERIFIED,
            MigrationState.ARCHIVED_SOFT_FLAGGED,
            MigrationState.PENDING_DELETE,
            MigrationState.DELETED,
        ]
        for current, target in zip(path, path[1:], strict=False):
            assert current.can_transition_to(target), f"{current} -> {target}"

    def test_reverse_migration_edges(self):
        assert MigrationState.ARCHIVED_SOFT_FLAGGED.can_transition_to(MigrationState.NONE)
        assert MigrationState.PENDING_DELETE.can_transition_to(MigrationState.NONE)
        assert not MigrationState.VERIFIED.can_transition_to(MigrationState.NONE)

    def test_cannot_skip_verification(self):
        assert not MigrationState.COPY_PENDING.can_transition_to(
            MigrationState.ARCHIVED_SOFT_FLAGGED
        )

    def test_every_state_has_an_entry(self):
        assert set(VALID_TRANSITIONS) == set(MigrationState)


class TestMigrationOutcome:
    def test_failures(self):
        failures = {o for o in MigrationOutcome if o.is_failure}

        assert failures == {
            MigrationOutcome.VERIFICATION_FAILED,
            MigrationOutcome.SOURCE_CHANGED,
            MigrationOutcome.FAILED_TRANSIENT,
            MigrationOutcome.FAILED_UNEXPECTED,
        }


class TestArchivalConfig:
    def test_defaults(self):
        config = ArchivalConfig()

        assert config.age_threshold == timedelta(days=90)
        assert config.delete_grace_period == timedelta(days=7)
        assert config.batch_size == 100

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"age_threshold": timedelta(0)},
            {"delete_grace_period": timedelta(seconds=-1)},
            {"batch_size": 0},
            {"max_concurrency": 0},
            {"step_timeout": 0},
            {"lock_timeout": -1},
            {"stuck_after": timedelta(0)},
            {"cache_ttl": -1},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            ArchivalConfig(**kwargs)

    def test_dict_round_trip(self):
        config = ArchivalConfig(
            age_threshold=timedelta(days=30),
            batch_size=7,
            router_retry=RetryConfig(max_attempts=5),
        )

        restored = ArchivalConfig.from_dict(config.to_dict())

        assert restored == config

    def test_from_empty_dict_uses_defaults(self):
        assert ArchivalConfig.from_dict({}) == ArchivalConfig()


class TestReports:
    def test_migration_pass_counts(self):
        report = MigrationPassReport(started_at=NOW)
        report.results = [
            MigrationResult("a", MigrationOutcome.ARCHIVED),
            MigrationResult("b", MigrationOutcome.ARCHIVED),
            MigrationResult("c", MigrationOutcome.VERIFICATION_FAILED, error="bad"),
            MigrationResult("d", MigrationOutcome.SKIPPED_CONFLICT),
        ]
        report.finished_at = NOW + timedelta(seconds=3)

        assert report.archived == 2
        assert report.failed == 1
        assert report.duration == timedelta(seconds=3)

        data = report.to_dict()
        assert data["outcomes"] == {
            "archived": 2,
            "verification_failed": 1,
            "skipped_conflict": 1,
        }
        assert data["failures"] == [
            {"record_id": "c", "outcome": "verification_failed", "error": "bad"}
        ]

    def test_cleanup_report_to_dict(self):
        report = CleanupPassReport(started_at=NOW, deleted=["a"], skipped=["b"])

        data = report.to_dict()

        assert data["deleted"] == ["a"]
        assert data["skipped"] == ["b"]
        assert data["finished_at"] is None

    def test_log_entry_with_sequence(self):
        entry = ConsistencyLogEntry(
            record_id="a",
            from_state=MigrationState.NONE,
            to_state=MigrationState.COPY_PENDING,
            timestamp=NOW,
            attempt_id="x",
        )

        stored = entry.with_sequence(4)

        assert stored.sequence == 4
        assert entry.sequence is None
        assert stored.to_dict()["to_state"] == "copy_pending"

    def test_tracked_state_to_dict(self):
        status = TrackedState(
            record_id="a",
            state=MigrationState.ARCHIVED_SOFT_FLAGGED,
            since=NOW,
            attempt_id="x",
            archived_at=NOW,
        )

        assert status.to_dict()["archived_at"] == NOW.isoformat()
        assert status.to_dict()["stale"] is False
