"""
Shared test helpers for the ledgertier tests.

Usage:
    from tests.fixtures import FakeClock, CorruptingColdStore, make_record
"""

from datetime import datetime, timedelta

from ledgertier.models import Record
from tests.fixtures.clock import FakeClock, FakeMonotonic
from tests.fixtures.stores import (
    CorruptingColdStore,
    ExplodingColdStore,
    ExplodingHotStore,
    FlakyColdStore,
    FlakyHotStore,
    InterferingHotStore,
    SlowColdStore,
)


def make_record(
    record_id: str = "inv-1001",
    *,
    created_at: datetime,
    age: timedelta = timedelta(0),
    payload: dict | None = None,
) -> Record:
    """Build a record created ``age`` before ``created_at``."""
    created = created_at - age
    return Record(
        id=record_id,
        payload=payload if payload is not None else {"amount_cents": 4200, "currency": "EUR"},
        created_at=created,
        last_modified_at=created,
    )


__all__ = [
    "FakeClock",
    "FakeMonotonic",
    "CorruptingColdStore",
    "ExplodingColdStore",
    "ExplodingHotStore",
    "FlakyColdStore",
    "FlakyHotStore",
    "InterferingHotStore",
    "SlowColdStore",
    "make_record",
]
