"""
Unit tests for archival metrics.

Tests for:
- NoOp instruments when OTel is unavailable or metrics are disabled
- Recording methods and the local snapshot
- Pass timing
- Export through a real OpenTelemetry meter provider
"""

from __future__ import annotations

from unittest.mock import Mock

import pytest

from ledgertier.metrics import (
    ArchivalMetrics,
    ArchivalMetricSnapshot,
    NoOpCounter,
    NoOpHistogram,
    reset_meter,
)


class TestNoOpInstruments:
    """Tests for no-op metric instruments."""

    def test_noop_counter_add_does_nothing(self):
        """NoOpCounter.add accepts values and attributes."""
        counter = NoOpCounter()
        counter.add(1)
        counter.add(5, {"deployment": "x"})

    def test_noop_histogram_record_does_nothing(self):
        """NoOpHistogram.record accepts values and attributes."""
        histogram = NoOpHistogram()
        histogram.record(1.5)
        histogram.record(2.0, {"kind": "migration"})

    def test_disabled_metrics_use_noops(self):
        """Disabled metrics never touch a meter."""
        metrics = ArchivalMetrics(enable_metrics=False)

        assert isinstance(metrics._archived_counter, NoOpCounter)
        assert isinstance(metrics._pass_duration_histogram, NoOpHistogram)


class TestSnapshot:
    """Tests for ArchivalMetricSnapshot and local counting."""

    def test_defaults(self):
        """A fresh snapshot is all zeros."""
        snapshot = ArchivalMetricSnapshot()

        assert snapshot.archived == 0
        assert snapshot.migration_failures == {}
        assert snapshot.pass_durations == {}

    def test_counts_accumulate(self):
        """Every record_* call is reflected in the snapshot."""
        metrics = ArchivalMetrics(enable_metrics=False)

        metrics.record_archived(3)
        metrics.record_migration_failure("verification_failed")
        metrics.record_migration_failure("verification_failed")
        metrics.record_migration_failure("failed_transient")
        metrics.record_verification_failure()
        metrics.record_deleted(2)
        metrics.record_restored()
        metrics.record_router_retry("read")
        metrics.record_pass_duration("cleanup", 0.25)

        assert metrics.get_snapshot().to_dict() == {
            "archived": 3,
            "migration_failures": {"verification_failed": 2, "failed_transient": 1},
            "verification_failures": 1,
            "deleted": 2,
            "restored": 1,
            "router_retries": 1,
            "pass_durations": {"cleanup": [0.25]},
        }

    def test_snapshot_is_a_copy(self):
        """Later recordings do not change an earlier snapshot."""
        metrics = ArchivalMetrics(enable_metrics=False)
        metrics.record_migration_failure("source_changed")
        snapshot = metrics.get_snapshot()

        metrics.record_migration_failure("source_changed")

        assert snapshot.migration_failures == {"source_changed": 1}


class TestTimePass:
    def test_records_duration(self):
        metrics = ArchivalMetrics(enable_metrics=False)

        with metrics.time_pass("migration"):
            pass

        durations = metrics.get_snapshot().pass_durations["migration"]
        assert len(durations) == 1
        assert durations[0] >= 0

    def test_records_duration_on_error(self):
        metrics = ArchivalMetrics(enable_metrics=False)

        with pytest.raises(RuntimeError), metrics.time_pass("cleanup"):
            raise RuntimeError("boom")

        assert len(metrics.get_snapshot().pass_durations["cleanup"]) == 1


class TestMetricsWithMockedInstruments:
    """Tests that instruments receive the deployment attribute."""

    @pytest.fixture(autouse=True)
    def reset_global_meter(self):
        """Reset global meter state between tests."""
        reset_meter()
        yield
        reset_meter()

    def test_archived_counter(self):
        """record_archived adds to the counter with the deployment label."""
        metrics = ArchivalMetrics(deployment="billing-eu")
        counter = Mock()
        metrics._archived_counter = counter

        metrics.record_archived(4)

        counter.add.assert_called_once_with(4, {"deployment": "billing-eu"})

    def test_failure_counter_carries_outcome(self):
        """record_migration_failure labels the outcome."""
        metrics = ArchivalMetrics(deployment="billing-eu")
        counter = Mock()
        metrics._failures_counter = counter

        metrics.record_migration_failure("source_changed")

        counter.add.assert_called_once_with(
            1, {"deployment": "billing-eu", "outcome": "source_changed"}
        )

    def test_pass_histogram_carries_kind(self):
        """record_pass_duration labels the pass kind."""
        metrics = ArchivalMetrics()
        histogram = Mock()
        metrics._pass_duration_histogram = histogram

        metrics.record_pass_duration("migration", 1.5)

        histogram.record.assert_called_once_with(
            1.5, {"deployment": "default", "kind": "migration"}
        )


def test_exported_through_meter_provider(metric_reader):
    """Counters show up in an OpenTelemetry metric reader."""
    metrics = ArchivalMetrics(deployment="test")

    metrics.record_archived()
    metrics.record_router_retry("write")

    data = metric_reader.get_metrics_data()
    names = {
        metric.name
        for resource in data.resource_metrics
        for scope in resource.scope_metrics
        for metric in scope.metrics
    }
    assert {"ledgertier.records.archived", "ledgertier.router.retries"} <= names
