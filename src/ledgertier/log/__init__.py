"""Consistency log backends for ledgertier."""

from ledgertier.log.in_memory import InMemoryConsistencyLog
from ledgertier.log.interface import ConsistencyLog, resulting_state
from ledgertier.log.postgresql import POSTGRESQL_SCHEMA, PostgreSQLConsistencyLog

# SQLite support is optional - only import if aiosqlite is available
try:
    from ledgertier.log.sqlite import SQLITE_SCHEMA, SQLiteConsistencyLog  # noqa: F401

    _SQLITE_AVAILABLE = True
except ImportError:
    _SQLITE_AVAILABLE = False

__all__ = [
    "ConsistencyLog",
    "InMemoryConsistencyLog",
    "PostgreSQLConsistencyLog",
    "POSTGRESQL_SCHEMA",
    "resulting_state",
]

if _SQLITE_AVAILABLE:
    __all__.extend(["SQLiteConsistencyLog", "SQLITE_SCHEMA"])
