"""
ArchivalService - Wires the tiering components together.

One object owns the tracker, the migration engine, the restorer and the
access router for a pair of stores and a consistency log. Applications build
one at startup, call ``start()`` (which replays the log) and then hand the
router to request handlers and the engine passes to their scheduler.

Example:
    >>> service = ArchivalService(hot, cold, SQLiteConsistencyLog("ledger.db"))
    >>> async with service:
    ...     record = await service.read("inv-1001")
    ...     report = await service.run_migration_pass()
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from ledgertier.adapters import (
    Cache,
    ColdStore,
    HotStore,
    InMemoryCache,
    InMemoryColdStore,
    InMemoryHotStore,
)
from ledgertier.engine import ArchivalMigrationEngine
from ledgertier.log import ConsistencyLog, InMemoryConsistencyLog
from ledgertier.metrics import ArchivalMetrics
from ledgertier.models import (
    ArchivalConfig,
    CleanupPassReport,
    MigrationPassReport,
    Record,
    RecoveryReport,
    StuckMigration,
    TrackedState,
    utcnow,
)
from ledgertier.observability import Tracer, create_tracer
from ledgertier.restore import RecordRestorer
from ledgertier.router import UnifiedAccessRouter
from ledgertier.tracker import MigrationStateTracker

logger = logging.getLogger(__name__)


class ArchivalService:
    """
    Facade over tracker, engine, restorer and router.

    Attributes:
        config: Archival configuration shared by every component
        metrics: Metrics container shared by every component
        tracker: Migration state tracker
        engine: Archival migration engine
        router: Unified access router
    """

    def __init__(
        self,
        hot: HotStore,
        cold: ColdStore,
        log: ConsistencyLog,
        *,
        cache: Cache | None = None,
        config: ArchivalConfig | None = None,
        metrics: ArchivalMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self.config = config or ArchivalConfig()
        self.metrics = metrics or ArchivalMetrics()
        self.hot = hot
        self.cold = cold
        self.log = log

        self.tracker = MigrationStateTracker(
            log,
            lock_timeout=self.config.lock_timeout,
            clock=clock,
            tracer=self._tracer,
        )
        self.engine = ArchivalMigrationEngine(
            hot,
            cold,
            self.tracker,
            self.config,
            metrics=self.metrics,
            clock=clock,
            tracer=self._tracer,
        )
        self.restorer = RecordRestorer(
            hot,
            cold,
            step_timeout=self.config.step_timeout,
            metrics=self.metrics,
            tracer=self._tracer,
        )
        self.router = UnifiedAccessRouter(
            hot,
            cold,
            self.tracker,
            restorer=self.restorer,
            cache=cache,
            config=self.config,
            metrics=self.metrics,
            clock=clock,
            tracer=self._tracer,
        )

    @classmethod
    def in_memory(
        cls,
        config: ArchivalConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        enable_tracing: bool = False,
    ) -> ArchivalService:
        """Build a service over in-memory stores, cache and log."""
        return cls(
            InMemoryHotStore(clock=clock, enable_tracing=enable_tracing),
            InMemoryColdStore(enable_tracing=enable_tracing),
            InMemoryConsistencyLog(),
            cache=InMemoryCache(),
            config=config,
            metrics=ArchivalMetrics(enable_metrics=False),
            clock=clock,
            enable_tracing=enable_tracing,
        )

    async def start(self) -> RecoveryReport:
        """
        Open the log (if it needs opening) and rebuild tracker state from it.

        Returns:
            The recovery report
        """
        initialize = getattr(self.log, "initialize", None)
        if initialize is not None:
            await initialize()
        report = await self.tracker.recover(self.config.stuck_after)
        logger.info(
            "Archival service started with %d tracked records",
            report.records_tracked,
        )
        return report

    async def close(self) -> None:
        close = getattr(self.log, "close", None)
        if close is not None:
            await close()

    async def __aenter__(self) -> ArchivalService:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # Router

    async def read(self, record_id: str) -> Record:
        return await self.router.read(record_id)

    async def write(
        self,
        record_id: str,
        payload: dict[str, Any],
        schema_version: int = 1,
    ) -> Record:
        return await self.router.write(record_id, payload, schema_version)

    async def update(
        self,
        record_id: str,
        payload: dict[str, Any],
        schema_version: int | None = None,
    ) -> Record:
        return await self.router.update(record_id, payload, schema_version)

    # Engine

    async def run_migration_pass(self) -> MigrationPassReport:
        return await self.engine.run_migration_pass()

    async def run_cleanup_pass(self) -> CleanupPassReport:
        return await self.engine.run_cleanup_pass()

    def stuck_migrations(self) -> list[StuckMigration]:
        return self.engine.stuck_migrations()

    # Operator

    async def status(self, record_id: str) -> dict[str, Any]:
        """State, tracker entry and logged history of one record."""
        tracked = self.tracker.status(record_id)
        history = await self.tracker.history(record_id)
        return {
            "record_id": record_id,
            "state": self.tracker.get(record_id).value,
            "tracked": tracked.to_dict() if tracked else None,
            "history": [entry.to_dict() for entry in history],
        }

    async def release(self, record_id: str) -> TrackedState | None:
        return await self.tracker.release(record_id)


__all__ = ["ArchivalService"]
