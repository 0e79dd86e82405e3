"""
Unit tests for ArchivalService.

Tests cover:
- Wiring of the in-memory service
- Start-up recovery from the consistency log
- Delegation to the router and the engine
- Operator status and release
- Opening and closing the log through the async context manager
"""

from datetime import timedelta

import pytest

from ledgertier.adapters import InMemoryColdStore, InMemoryHotStore
from ledgertier.exceptions import NotFoundError
from ledgertier.log import InMemoryConsistencyLog
from ledgertier.metrics import ArchivalMetrics
from ledgertier.models import ConsistencyLogEntry, MigrationState
from ledgertier.service import ArchivalService
from ledgertier.tracker import RECOVERY_REASON, RELEASE_REASON
from tests.fixtures import make_record

S = MigrationState


class ClosableLog(InMemoryConsistencyLog):
    """In-memory log that records initialize and close calls."""

    def __init__(self) -> None:
        super().__init__()
        self.initialized = False
        self.closed = False

    async def initialize(self) -> None:
        self.initialized = True

    async def close(self) -> None:
        self.closed = True


def build_service(log, clock, config=None):
    return ArchivalService(
        InMemoryHotStore(clock=clock, enable_tracing=False),
        InMemoryColdStore(enable_tracing=False),
        log,
        config=config,
        metrics=ArchivalMetrics(enable_metrics=False),
        clock=clock,
        enable_tracing=False,
    )


class TestWiring:
    def test_in_memory_shares_components(self, config, clock):
        service = ArchivalService.in_memory(config, clock=clock)

        assert service.router._tracker is service.tracker
        assert service.engine._tracker is service.tracker
        assert service.tracker.log is service.log
        assert service.config is config
        assert service.metrics.enable_metrics is False


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_reverts_interrupted_attempts(self, log, clock, config):
        await log.append(
            ConsistencyLogEntry(
                record_id="inv-1",
                from_state=S.NONE,
                to_state=S.COPY_PENDING,
                timestamp=clock(),
                attempt_id="a1",
            )
        )
        service = build_service(log, clock, config)

        report = await service.start()

        assert report.reverted == ["inv-1"]
        assert service.tracker.get("inv-1") == S.FAILED
        history = await service.tracker.history("inv-1")
        assert history[-1].reason == RECOVERY_REASON

    @pytest.mark.asyncio
    async def test_start_leaves_old_attempts_as_stuck(self, log, clock, config):
        await log.append(
            ConsistencyLogEntry(
                record_id="inv-1",
                from_state=S.NONE,
                to_state=S.COPY_PENDING,
                timestamp=clock(),
                attempt_id="a1",
            )
        )
        clock.advance(hours=2)
        service = build_service(log, clock, config)

        report = await service.start()

        assert report.reverted == []
        assert [s.record_id for s in report.stuck] == ["inv-1"]
        assert [s.record_id for s in service.stuck_migrations()] == ["inv-1"]

    @pytest.mark.asyncio
    async def test_context_manager_opens_and_closes_log(self, clock):
        log = ClosableLog()

        async with build_service(log, clock) as service:
            assert log.initialized
            assert not log.closed
            assert service.log is log

        assert log.closed


class TestDelegation:
    @pytest.mark.asyncio
    async def test_write_read_update(self, service):
        created = await service.write("inv-1", {"amount_cents": 100})
        updated = await service.update("inv-1", {"amount_cents": 150})

        assert updated.version == created.version + 1
        assert await service.read("inv-1") == updated

    @pytest.mark.asyncio
    async def test_read_missing(self, service):
        with pytest.raises(NotFoundError):
            await service.read("missing")

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, service, clock):
        record = make_record("inv-1", created_at=clock(), age=timedelta(days=120))
        await service.hot.put("inv-1", record)

        migration = await service.run_migration_pass()
        assert migration.archived == 1
        assert service.tracker.get("inv-1") == S.ARCHIVED_SOFT_FLAGGED

        clock.advance(days=service.config.delete_grace_period.days)
        cleanup = await service.run_cleanup_pass()

        assert cleanup.deleted == ["inv-1"]
        assert "inv-1" not in service.hot
        assert await service.read("inv-1") == record
        assert service.metrics.get_snapshot().archived == 1
        assert service.metrics.get_snapshot().deleted == 1


class TestOperator:
    @pytest.mark.asyncio
    async def test_status_of_untracked_record(self, service):
        status = await service.status("inv-1")

        assert status == {
            "record_id": "inv-1",
            "state": "none",
            "tracked": None,
            "history": [],
        }

    @pytest.mark.asyncio
    async def test_status_of_archived_record(self, service, clock):
        record = make_record("inv-1", created_at=clock(), age=timedelta(days=120))
        await service.hot.put("inv-1", record)
        await service.run_migration_pass()

        status = await service.status("inv-1")

        assert status["state"] == "archived_soft_flagged"
        assert status["tracked"]["archived_at"] == clock().isoformat()
        assert [e["to_state"] for e in status["history"]] == [
            "copy_pending",
            "verified",
            "archived_soft_flagged",
        ]

    @pytest.mark.asyncio
    async def test_release_in_flight_record(self, service):
        await service.tracker.transition("inv-1", S.NONE, S.COPY_PENDING, attempt_id="a1")

        released = await service.release("inv-1")

        assert released is not None
        assert released.state == S.FAILED
        history = await service.tracker.history("inv-1")
        assert history[-1].reason == RELEASE_REASON

    @pytest.mark.asyncio
    async def test_release_untracked_record(self, service):
        assert await service.release("inv-1") is None
