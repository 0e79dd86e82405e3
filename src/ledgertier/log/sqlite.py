"""
SQLite consistency log.

One row per state transition in an AUTOINCREMENT table, so the row id is
the replay order. Processes on one host may share the file: each append
checks the record's logged state in the same statement that inserts the
row. Engine hosts on several machines need PostgreSQLConsistencyLog.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from ledgertier.exceptions import ConflictError, TransientIOError
from ledgertier.log.interface import resulting_state
from ledgertier.models import ConsistencyLogEntry, MigrationState
from ledgertier.observability import (
    ATTR_DB_NAME,
    ATTR_DB_SYSTEM,
    ATTR_MIGRATION_TARGET_STATE,
    ATTR_RECORD_ID,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS consistency_log (
    sequence INTEGER PRIMARY KEY AUTOINCREMENT,
    record_id TEXT NOT NULL,
    from_state TEXT NOT NULL,
    to_state TEXT NOT NULL,
    attempt_id TEXT NOT NULL,
    reason TEXT,
    recorded_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_consistency_log_record_id
    ON consistency_log (record_id, sequence);
"""

_SELECT_COLUMNS = "sequence, record_id, from_state, to_state, attempt_id, reason, recorded_at"


class SQLiteConsistencyLog:
    """
    SQLite implementation of the ConsistencyLog protocol.

    Each append is committed before returning. Timestamps are stored as
    ISO 8601 TEXT; states as their enum values.

    Example:
        >>> async with SQLiteConsistencyLog("ledgertier.db") as log:
        ...     await log.initialize()
        ...     stored = await log.append(entry)
    """

    def __init__(
        self,
        database: str,
        *,
        wal_mode: bool = True,
        busy_timeout: int = 5000,
        read_only: bool = False,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Args:
            database: Log file path, or ':memory:'
            wal_mode: Let the CLI read while the engine appends
            busy_timeout: Milliseconds to wait on a locked database
            read_only: Open an existing log for queries only; no schema
                script, no journal mode change, no appends
        """
        self._database = database
        self._wal_mode = wal_mode
        self._busy_timeout = busy_timeout
        self._read_only = read_only
        self._connection: aiosqlite.Connection | None = None

        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def __aenter__(self) -> SQLiteConsistencyLog:
        await self._connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    async def _connect(self) -> None:
        if self._connection is not None:
            return

        if self._read_only:
            # mode=rw fails on a missing file instead of creating it
            uri = f"{Path(self._database).resolve().as_uri()}?mode=rw"
            self._connection = await aiosqlite.connect(uri, uri=True)
        else:
            self._connection = await aiosqlite.connect(self._database)
        await self._connection.execute(f"PRAGMA busy_timeout = {self._busy_timeout}")
        if self._wal_mode and not self._read_only:
            await self._connection.execute("PRAGMA journal_mode = WAL")
        self._connection.row_factory = aiosqlite.Row

        logger.debug(
            "Connected to SQLite consistency log: %s (wal_mode=%s, busy_timeout=%d, read_only=%s)",
            self._database,
            self._wal_mode,
            self._busy_timeout,
            self._read_only,
        )

    async def close(self) -> None:
        """Close the connection; a second call does nothing."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.debug("Closed SQLite consistency log: %s", self._database)

    async def initialize(self) -> None:
        """
        Create the consistency_log table if it does not exist.

        Idempotent; connects first when needed.
        """
        self._check_writable()
        if self._connection is None:
            await self._connect()
        conn = self._ensure_connected()
        await conn.executescript(SQLITE_SCHEMA)
        await conn.commit()
        logger.info("Initialized SQLite consistency log schema: %s", self._database)

    def _ensure_connected(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError(
                "Not connected to database. Use 'async with log:' or call initialize() first."
            )
        return self._connection

    def _check_writable(self) -> None:
        if self._read_only:
            raise RuntimeError(f"Consistency log {self._database} was opened read-only")

    async def append(self, entry: ConsistencyLogEntry) -> ConsistencyLogEntry:
        with self._tracer.span(
            "ledgertier.consistency_log.append",
            {
                ATTR_RECORD_ID: entry.record_id,
                ATTR_MIGRATION_TARGET_STATE: entry.to_state.value,
                ATTR_DB_SYSTEM: "sqlite",
                ATTR_DB_NAME: self._database,
            },
        ):
            self._check_writable()
            conn = self._ensure_connected()
            # A single INSERT ... SELECT runs under SQLite's write lock, so the
            # state check and the insert are atomic across processes
            if entry.from_state == MigrationState.NONE:
                accepted = (MigrationState.NONE.value, MigrationState.DELETED.value)
            else:
                accepted = (entry.from_state.value, entry.from_state.value)
            try:
                cursor = await conn.execute(
                    """
                    INSERT INTO consistency_log (
                        record_id, from_state, to_state, attempt_id, reason, recorded_at
                    )
                    SELECT ?, ?, ?, ?, ?, ?
                    WHERE COALESCE(
                        (SELECT to_state FROM consistency_log
                         WHERE record_id = ? ORDER BY sequence DESC LIMIT 1),
                        'none'
                    ) IN (?, ?)
                    """,
                    (
                        entry.record_id,
                        entry.from_state.value,
                        entry.to_state.value,
                        entry.attempt_id,
                        entry.reason,
                        entry.timestamp.isoformat(),
                        entry.record_id,
                        *accepted,
                    ),
                )
                if cursor.rowcount == 0:
                    await conn.rollback()
                    actual = await self._logged_state(conn, entry.record_id)
                    raise ConflictError(
                        entry.record_id, expected=(entry.from_state,), actual=actual
                    )
                await conn.commit()
            except aiosqlite.OperationalError as e:
                # Leave no uncommitted row behind for the next commit to pick up
                await conn.rollback()
                raise TransientIOError("log.append", record_id=entry.record_id, cause=e) from e

            sequence = cursor.lastrowid
            if sequence is None:
                raise RuntimeError("Failed to append log entry - no rowid returned")
            return entry.with_sequence(int(sequence))

    async def _logged_state(self, conn: aiosqlite.Connection, record_id: str) -> MigrationState:
        async with conn.execute(
            "SELECT to_state FROM consistency_log "
            "WHERE record_id = ? ORDER BY sequence DESC LIMIT 1",
            (record_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return resulting_state(MigrationState(row["to_state"]) if row else None)

    async def replay(self) -> AsyncIterator[ConsistencyLogEntry]:
        conn = self._ensure_connected()
        async with conn.execute(
            f"SELECT {_SELECT_COLUMNS} FROM consistency_log ORDER BY sequence ASC"
        ) as cursor:
            async for row in cursor:
                yield self._row_to_entry(row)

    async def entries_for(self, record_id: str) -> list[ConsistencyLogEntry]:
        with self._tracer.span(
            "ledgertier.consistency_log.entries_for",
            {ATTR_RECORD_ID: record_id, ATTR_DB_SYSTEM: "sqlite"},
        ):
            conn = self._ensure_connected()
            async with conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM consistency_log "
                "WHERE record_id = ? ORDER BY sequence ASC",
                (record_id,),
            ) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_entry(row) for row in rows]

    def _row_to_entry(self, row: aiosqlite.Row) -> ConsistencyLogEntry:
        return ConsistencyLogEntry(
            record_id=row["record_id"],
            from_state=MigrationState(row["from_state"]),
            to_state=MigrationState(row["to_state"]),
            timestamp=datetime.fromisoformat(row["recorded_at"]),
            attempt_id=row["attempt_id"],
            reason=row["reason"],
            sequence=int(row["sequence"]),
        )


__all__ = ["SQLiteConsistencyLog", "SQLITE_SCHEMA"]
