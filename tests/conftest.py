"""
Shared pytest fixtures for the ledgertier tests.

This module provides:
- A controllable clock and a test-friendly ArchivalConfig
- In-memory hot store, cold store, cache and consistency log
- Tracker, engine, restorer, router and service wired over them
- SQLite availability checks and the ``sqlite`` marker
- OpenTelemetry metrics reader fixture
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Generator
from datetime import timedelta

import pytest
import pytest_asyncio

from ledgertier.adapters import InMemoryCache, InMemoryColdStore, InMemoryHotStore
from ledgertier.engine import ArchivalMigrationEngine
from ledgertier.log import InMemoryConsistencyLog
from ledgertier.metrics import ArchivalMetrics
from ledgertier.models import ArchivalConfig, Record
from ledgertier.observability import MockTracer
from ledgertier.restore import RecordRestorer
from ledgertier.retry import RetryConfig
from ledgertier.router import UnifiedAccessRouter
from ledgertier.service import ArchivalService
from ledgertier.tracker import MigrationStateTracker
from tests.fixtures import FakeClock, FakeMonotonic, make_record

# ============================================================================
# SQLite Availability Check
# ============================================================================

AIOSQLITE_AVAILABLE = False
try:
    import aiosqlite  # noqa: F401

    AIOSQLITE_AVAILABLE = True
except ImportError:
    pass


# ============================================================================
# OpenTelemetry Metrics Availability Check
# ============================================================================

OTEL_METRICS_AVAILABLE = False
try:
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import InMemoryMetricReader

    OTEL_METRICS_AVAILABLE = True
except ImportError:
    MeterProvider = None  # type: ignore[assignment, misc]
    InMemoryMetricReader = None  # type: ignore[assignment, misc]


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for tests."""
    config.addinivalue_line("markers", "sqlite: marks tests that require SQLite (aiosqlite)")


skip_if_no_aiosqlite = pytest.mark.skipif(not AIOSQLITE_AVAILABLE, reason="aiosqlite not installed")
skip_if_no_otel_metrics = pytest.mark.skipif(
    not OTEL_METRICS_AVAILABLE, reason="opentelemetry-sdk not installed"
)


# =============================================================================
# Time and configuration
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    """Wall clock starting at 2026-01-01T00:00:00Z."""
    return FakeClock()


@pytest.fixture
def ttl_clock() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def config() -> ArchivalConfig:
    """
    Default thresholds with short timeouts and instant retries.

    Age threshold 90 days, grace period 7 days.
    """
    return ArchivalConfig(
        step_timeout=1.0,
        lock_timeout=0.5,
        router_retry=RetryConfig(max_attempts=3, initial_delay=0.0, max_delay=0.0, jitter=0.0),
    )


# =============================================================================
# Adapters and log
# =============================================================================


@pytest.fixture
def hot(clock: FakeClock) -> InMemoryHotStore:
    return InMemoryHotStore(clock=clock, enable_tracing=False)


@pytest.fixture
def cold() -> InMemoryColdStore:
    return InMemoryColdStore(enable_tracing=False)


@pytest.fixture
def cache(ttl_clock: FakeMonotonic) -> InMemoryCache:
    return InMemoryCache(clock=ttl_clock)


@pytest.fixture
def log() -> InMemoryConsistencyLog:
    return InMemoryConsistencyLog()


@pytest.fixture
def metrics() -> ArchivalMetrics:
    return ArchivalMetrics(enable_metrics=False)


@pytest.fixture
def tracer() -> MockTracer:
    return MockTracer()


# =============================================================================
# Components
# =============================================================================


@pytest.fixture
def tracker(
    log: InMemoryConsistencyLog,
    clock: FakeClock,
    config: ArchivalConfig,
) -> MigrationStateTracker:
    return MigrationStateTracker(
        log,
        lock_timeout=config.lock_timeout,
        clock=clock,
        enable_tracing=False,
    )


@pytest.fixture
def engine(
    hot: InMemoryHotStore,
    cold: InMemoryColdStore,
    tracker: MigrationStateTracker,
    config: ArchivalConfig,
    metrics: ArchivalMetrics,
    clock: FakeClock,
) -> ArchivalMigrationEngine:
    return ArchivalMigrationEngine(
        hot,
        cold,
        tracker,
        config,
        metrics=metrics,
        clock=clock,
        enable_tracing=False,
    )


@pytest.fixture
def restorer(
    hot: InMemoryHotStore,
    cold: InMemoryColdStore,
    metrics: ArchivalMetrics,
) -> RecordRestorer:
    return RecordRestorer(hot, cold, step_timeout=1.0, metrics=metrics, enable_tracing=False)


@pytest.fixture
def router(
    hot: InMemoryHotStore,
    cold: InMemoryColdStore,
    tracker: MigrationStateTracker,
    restorer: RecordRestorer,
    cache: InMemoryCache,
    config: ArchivalConfig,
    metrics: ArchivalMetrics,
    clock: FakeClock,
) -> UnifiedAccessRouter:
    return UnifiedAccessRouter(
        hot,
        cold,
        tracker,
        restorer=restorer,
        cache=cache,
        config=config,
        metrics=metrics,
        clock=clock,
        enable_tracing=False,
    )


@pytest_asyncio.fixture
async def service(
    config: ArchivalConfig,
    clock: FakeClock,
) -> AsyncGenerator[ArchivalService, None]:
    """In-memory service, started (log replayed) and closed around the test."""
    svc = ArchivalService.in_memory(config, clock=clock)
    async with svc:
        yield svc


# =============================================================================
# Records
# =============================================================================


@pytest.fixture
def old_record(clock: FakeClock) -> Record:
    """A record created 120 days before the clock's current time."""
    return make_record("inv-old", created_at=clock(), age=timedelta(days=120))


@pytest.fixture
def young_record(clock: FakeClock) -> Record:
    """A record created 10 days before the clock's current time."""
    return make_record("inv-young", created_at=clock(), age=timedelta(days=10))


# =============================================================================
# OpenTelemetry metrics
# =============================================================================


@pytest.fixture
def metric_reader() -> Generator[InMemoryMetricReader, None, None]:
    """
    Install an in-memory metric reader as the global meter provider.

    Resets the ledgertier meter before and after so instruments bind to it.
    """
    if not OTEL_METRICS_AVAILABLE:
        pytest.skip("opentelemetry-sdk not installed")

    from opentelemetry import metrics as otel_metrics

    from ledgertier.metrics import reset_meter

    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    reset_meter()
    original_get_meter = otel_metrics.get_meter
    otel_metrics.get_meter = provider.get_meter  # type: ignore[assignment]
    try:
        yield reader
    finally:
        otel_metrics.get_meter = original_get_meter  # type: ignore[assignment]
        reset_meter()
