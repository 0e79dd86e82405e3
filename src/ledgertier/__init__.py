"""
ledgertier - Tiered storage for billing records.

This library provides:
- A unified access router that reads and writes records wherever they live
- An archival migration engine with a crash-safe copy-verify-flag-delete protocol
- A per-record migration state tracker backed by a durable consistency log
- Consistency log backends for in-memory, SQLite and PostgreSQL
- In-memory reference adapters for the hot store, cold store and cache
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("ledgertier")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from ledgertier.adapters import (
    Cache,
    ColdStore,
    HotStore,
    InMemoryCache,
    InMemoryColdStore,
    InMemoryHotStore,
    ScanPage,
)
from ledgertier.engine import ArchivalMigrationEngine
from ledgertier.exceptions import (
    ConflictError,
    ErrorClassification,
    ErrorRecoverability,
    ErrorSeverity,
    InvalidTransitionError,
    LedgerTierError,
    NotFoundError,
    StaleStateError,
    TemporarilyUnavailableError,
    TransientIOError,
    VerificationFailedError,
)
from ledgertier.log import ConsistencyLog, InMemoryConsistencyLog, PostgreSQLConsistencyLog
from ledgertier.metrics import ArchivalMetrics
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
    RecoveryReport,
    StuckMigration,
    TrackedState,
)
from ledgertier.restore import RecordRestorer
from ledgertier.retry import RetryConfig
from ledgertier.router import UnifiedAccessRouter
from ledgertier.service import ArchivalService
from ledgertier.tracker import MigrationStateTracker, RecordGuard

# SQLite support is optional - only import if aiosqlite is available
try:
    from ledgertier.log.sqlite import SQLiteConsistencyLog  # noqa: F401

    _SQLITE_AVAILABLE = True
except ImportError:
    _SQLITE_AVAILABLE = False

__all__ = [
    "__version__",
    # Models
    "Record",
    "MigrationState",
    "VALID_TRANSITIONS",
    "MigrationOutcome",
    "ArchivalConfig",
    "RetryConfig",
    "ConsistencyLogEntry",
    "TrackedState",
    "StuckMigration",
    "MigrationResult",
    "MigrationPassReport",
    "CleanupPassReport",
    "RecoveryReport",
    # Adapters
    "ScanPage",
    "HotStore",
    "ColdStore",
    "Cache",
    "InMemoryHotStore",
    "InMemoryColdStore",
    "InMemoryCache",
    # Consistency log
    "ConsistencyLog",
    "InMemoryConsistencyLog",
    "PostgreSQLConsistencyLog",
    # Components
    "MigrationStateTracker",
    "RecordGuard",
    "ArchivalMigrationEngine",
    "RecordRestorer",
    "UnifiedAccessRouter",
    "ArchivalService",
    "ArchivalMetrics",
    # Exceptions
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "LedgerTierError",
    "NotFoundError",
    "ConflictError",
    "InvalidTransitionError",
    "VerificationFailedError",
    "TransientIOError",
    "StaleStateError",
    "TemporarilyUnavailableError",
]

if _SQLITE_AVAILABLE:
    __all__.append("SQLiteConsistencyLog")
