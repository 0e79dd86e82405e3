"""
Service factories for CLI tests.

Referenced as ``tests.fixtures.services:<name>`` by ``ledgertier migrate``
and ``ledgertier cleanup``.
"""

from datetime import timedelta

from ledgertier.models import ArchivalConfig, utcnow
from ledgertier.service import ArchivalService
from tests.fixtures import CorruptingColdStore, make_record


def _seeded(service: ArchivalService) -> ArchivalService:
    now = utcnow()
    for record_id, days in (("inv-old", 200), ("inv-young", 5)):
        service.hot._records[record_id] = make_record(
            record_id, created_at=now, age=timedelta(days=days)
        )
    return service


def seeded_service() -> ArchivalService:
    return _seeded(ArchivalService.in_memory(ArchivalConfig(step_timeout=1.0)))


async def seeded_service_async() -> ArchivalService:
    return seeded_service()


def corrupting_service() -> ArchivalService:
    service = ArchivalService.in_memory(ArchivalConfig(step_timeout=1.0))
    service.engine._cold = CorruptingColdStore(enable_tracing=False)
    return _seeded(service)


def not_a_service() -> dict:
    return {}
