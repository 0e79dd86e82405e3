"""
OpenTelemetry metrics for archival operations.

Metrics Exposed:
    - ledgertier.records.archived (Counter): Records soft-flagged into the cold tier
    - ledgertier.migration.failures (Counter): Failed attempts, by outcome
    - ledgertier.verification.failures (Counter): Cold copies that failed verification
    - ledgertier.records.deleted (Counter): Hot copies removed by cleanup
    - ledgertier.records.restored (Counter): Records reverse-migrated to the hot tier
    - ledgertier.router.retries (Counter): Router retries, by operation
    - ledgertier.pass.duration (Histogram): Duration of migration and cleanup passes

All metrics carry a 'deployment' attribute. Every method is a no-op when
OpenTelemetry is not installed.

Example:
    >>> metrics = ArchivalMetrics("billing-eu")
    >>> metrics.record_archived()
    >>> with metrics.time_pass("migration"):
    ...     await engine.run_migration_pass()
"""

from __future__ import annotations

import time
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

# Optional OpenTelemetry import - single source of truth
try:
    from opentelemetry import metrics

    OTEL_METRICS_AVAILABLE = True
except ImportError:
    OTEL_METRICS_AVAILABLE = False
    metrics = None  # type: ignore[assignment]


_meter: Any = None


def _get_meter() -> Any:
    global _meter
    if _meter is None and OTEL_METRICS_AVAILABLE and metrics is not None:
        _meter = metrics.get_meter("ledgertier", version="1.0.0")
    return _meter


def reset_meter() -> None:
    """Reset the global meter instance (for tests)."""
    global _meter
    _meter = None


class NoOpCounter:
    """Counter stand-in used when OpenTelemetry is not available."""

    def add(
        self,
        amount: int | float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


class NoOpHistogram:
    """Histogram stand-in used when OpenTelemetry is not available."""

    def record(
        self,
        value: float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


@dataclass(frozen=True)
class ArchivalMetricSnapshot:
    """
    Snapshot of the values recorded so far.

    Lets tests and the CLI see what was reported without an OTel exporter.
    """

    archived: int = 0
    migration_failures: dict[str, int] = field(default_factory=dict)
    verification_failures: int = 0
    deleted: int = 0
    restored: int = 0
    router_retries: int = 0
    pass_durations: dict[str, list[float]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "archived": self.archived,
            "migration_failures": dict(self.migration_failures),
            "verification_failures": self.verification_failures,
            "deleted": self.deleted,
            "restored": self.restored,
            "router_retries": self.router_retries,
            "pass_durations": {k: list(v) for k, v in self.pass_durations.items()},
        }


@dataclass
class ArchivalMetrics:
    """
    Container for archival metric instruments.

    Attributes:
        deployment: Label attached to every metric
        enable_metrics: Whether metrics are exported (default True)
    """

    deployment: str = "default"
    enable_metrics: bool = True

    _meter: Any = field(default=None, init=False, repr=False)
    _archived_counter: Any = field(default=None, init=False, repr=False)
    _failures_counter: Any = field(default=None, init=False, repr=False)
    _verification_counter: Any = field(default=None, init=False, repr=False)
    _deleted_counter: Any = field(default=None, init=False, repr=False)
    _restored_counter: Any = field(default=None, init=False, repr=False)
    _retries_counter: Any = field(default=None, init=False, repr=False)
    _pass_duration_histogram: Any = field(default=None, init=False, repr=False)

    _archived: int = field(default=0, init=False, repr=False)
    _failures: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _verification_failures: int = field(default=0, init=False, repr=False)
    _deleted: int = field(default=0, init=False, repr=False)
    _restored: int = field(default=0, init=False, repr=False)
    _retries: int = field(default=0, init=False, repr=False)
    _pass_durations: dict[str, list[float]] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.enable_metrics and OTEL_METRICS_AVAILABLE:
            self._setup_metrics()
        else:
            self._setup_noop()

    def _setup_metrics(self) -> None:
        self._meter = _get_meter()
        if self._meter is None:
            self._setup_noop()
            return

        self._archived_counter = self._meter.create_counter(
            name="ledgertier.records.archived",
            unit="records",
            description="Records soft-flagged into the cold tier",
        )
        self._failures_counter = self._meter.create_counter(
            name="ledgertier.migration.failures",
            unit="records",
            description="Forward-migration attempts that ended in FAILED",
        )
        self._verification_counter = self._meter.create_counter(
            name="ledgertier.verification.failures",
            unit="records",
            description="Cold copies that did not match the hot-store source",
        )
        self._deleted_counter = self._meter.create_counter(
            name="ledgertier.records.deleted",
            unit="records",
            description="Hot copies removed after the grace period",
        )
        self._restored_counter = self._meter.create_counter(
            name="ledgertier.records.restored",
            unit="records",
            description="Archived records reverse-migrated to the hot tier",
        )
        self._retries_counter = self._meter.create_counter(
            name="ledgertier.router.retries",
            unit="retries",
            description="Router retries after conflicts or transient I/O errors",
        )
        self._pass_duration_histogram = self._meter.create_histogram(
            name="ledgertier.pass.duration",
            unit="s",
            description="Duration of migration and cleanup passes in seconds",
        )

    def _setup_noop(self) -> None:
        self._archived_counter = NoOpCounter()
        self._failures_counter = NoOpCounter()
        self._verification_counter = NoOpCounter()
        self._deleted_counter = NoOpCounter()
        self._restored_counter = NoOpCounter()
        self._retries_counter = NoOpCounter()
        self._pass_duration_histogram = NoOpHistogram()

    def _attrs(self, **extra: str) -> dict[str, str]:
        return {"deployment": self.deployment, **extra}

    def record_archived(self, count: int = 1) -> None:
        self._archived_counter.add(count, self._attrs())
        self._archived += count

    def record_migration_failure(self, outcome: str) -> None:
        """
        Record a failed attempt.

        Args:
            outcome: MigrationOutcome value (e.g. 'verification_failed')
        """
        self._failures_counter.add(1, self._attrs(outcome=outcome))
        self._failures[outcome] = self._failures.get(outcome, 0) + 1

    def record_verification_failure(self) -> None:
        self._verification_counter.add(1, self._attrs())
        self._verification_failures += 1

    def record_deleted(self, count: int = 1) -> None:
        self._deleted_counter.add(count, self._attrs())
        self._deleted += count

    def record_restored(self) -> None:
        self._restored_counter.add(1, self._attrs())
        self._restored += 1

    def record_router_retry(self, operation: str) -> None:
        self._retries_counter.add(1, self._attrs(operation=operation))
        self._retries += 1

    def record_pass_duration(self, kind: str, duration_seconds: float) -> None:
        self._pass_duration_histogram.record(duration_seconds, self._attrs(kind=kind))
        self._pass_durations.setdefault(kind, []).append(duration_seconds)

    @contextmanager
    def time_pass(self, kind: str) -> Generator[None, None, None]:
        """
        Time a pass and record its duration, even if it raises.

        Args:
            kind: 'migration' or 'cleanup'
        """
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_pass_duration(kind, time.perf_counter() - start)

    def get_snapshot(self) -> ArchivalMetricSnapshot:
        return ArchivalMetricSnapshot(
            archived=self._archived,
            migration_failures=dict(self._failures),
            verification_failures=self._verification_failures,
            deleted=self._deleted,
            restored=self._restored,
            router_retries=self._retries,
            pass_durations={k: list(v) for k, v in self._pass_durations.items()},
        )


__all__ = [
    "OTEL_METRICS_AVAILABLE",
    "ArchivalMetrics",
    "ArchivalMetricSnapshot",
    "NoOpCounter",
    "NoOpHistogram",
    "reset_meter",
]
