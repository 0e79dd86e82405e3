"""
PostgreSQL consistency log.

Production backend for deployments where several engine or router
processes share one log. Uses a SQLAlchemy async engine (or an existing
connection) and raw ``text()`` statements.

Database Table:
    consistency_log (see POSTGRESQL_SCHEMA)

Usage:
    >>> engine = create_async_engine("postgresql+asyncpg://...")
    >>> log = PostgreSQLConsistencyLog(engine)
    >>> await log.initialize()
    >>> stored = await log.append(entry)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from ledgertier.exceptions import ConflictError, TransientIOError
from ledgertier.log.interface import resulting_state
from ledgertier.models import ConsistencyLogEntry, MigrationState
from ledgertier.observability import (
    ATTR_DB_SYSTEM,
    ATTR_MIGRATION_TARGET_STATE,
    ATTR_RECORD_ID,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

POSTGRESQL_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS consistency_log (
        sequence BIGSERIAL PRIMARY KEY,
        record_id TEXT NOT NULL,
        from_state VARCHAR(32) NOT NULL,
        to_state VARCHAR(32) NOT NULL,
        attempt_id TEXT NOT NULL,
        reason TEXT,
        recorded_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_consistency_log_record_id
        ON consistency_log (record_id, sequence)
    """,
)


@asynccontextmanager
async def _connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection for ``conn``.

    An AsyncEngine gets a fresh connection (inside a transaction when
    ``transactional``); an AsyncConnection is used as-is and the caller owns
    its transaction.
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn


class PostgreSQLConsistencyLog:
    """
    PostgreSQL implementation of the ConsistencyLog protocol.

    ``sequence`` is a BIGSERIAL, so write order is the commit order of the
    INSERT statements. Each append takes a transaction-scoped advisory lock
    on the record id, then checks the record's latest to_state before
    inserting, so processes sharing the database cannot both advance a
    record from the same state. Connection-level failures surface as
    TransientIOError.

    Example:
        >>> async with engine.begin() as conn:
        ...     log = PostgreSQLConsistencyLog(conn)
        ...     history = await log.entries_for("inv-1001")
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ):
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._conn = conn

    async def initialize(self) -> None:
        """Create the consistency_log table and index if missing."""
        async with _connection(self._conn, transactional=True) as conn:
            for statement in POSTGRESQL_SCHEMA:
                await conn.execute(text(statement))
        logger.info("Initialized PostgreSQL consistency log schema")

    async def append(self, entry: ConsistencyLogEntry) -> ConsistencyLogEntry:
        with self._tracer.span(
            "ledgertier.consistency_log.append",
            {
                ATTR_RECORD_ID: entry.record_id,
                ATTR_MIGRATION_TARGET_STATE: entry.to_state.value,
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            # Serializes appends for one record across sessions until commit
            lock_query = text("SELECT pg_advisory_xact_lock(hashtext(:record_id))")
            state_query = text("""
                SELECT to_state
                FROM consistency_log
                WHERE record_id = :record_id
                ORDER BY sequence DESC
                LIMIT 1
            """)
            insert_query = text("""
                INSERT INTO consistency_log (
                    record_id, from_state, to_state, attempt_id, reason, recorded_at
                ) VALUES (
                    :record_id, :from_state, :to_state, :attempt_id, :reason, :recorded_at
                )
                RETURNING sequence
            """)

            params = {
                "record_id": entry.record_id,
                "from_state": entry.from_state.value,
                "to_state": entry.to_state.value,
                "attempt_id": entry.attempt_id,
                "reason": entry.reason,
                "recorded_at": entry.timestamp,
            }

            try:
                async with _connection(self._conn, transactional=True) as conn:
                    await conn.execute(lock_query, {"record_id": entry.record_id})
                    result = await conn.execute(state_query, {"record_id": entry.record_id})
                    latest = result.fetchone()
                    logged = resulting_state(MigrationState(latest[0]) if latest else None)
                    if logged != entry.from_state:
                        raise ConflictError(
                            entry.record_id, expected=(entry.from_state,), actual=logged
                        )
                    result = await conn.execute(insert_query, params)
                    row = result.fetchone()
            except DBAPIError as e:
                if not (isinstance(e, OperationalError) or e.connection_invalidated):
                    raise
                raise TransientIOError("log.append", record_id=entry.record_id, cause=e) from e

            if row is None:
                raise RuntimeError("Failed to append log entry - no row returned")
            return entry.with_sequence(int(row[0]))

    async def replay(self) -> AsyncIterator[ConsistencyLogEntry]:
        query = text("""
            SELECT sequence, record_id, from_state, to_state, attempt_id, reason, recorded_at
            FROM consistency_log
            ORDER BY sequence ASC
        """)
        async with _connection(self._conn, transactional=False) as conn:
            result = await conn.stream(query)
            async for row in result:
                yield self._row_to_entry(row)

    async def entries_for(self, record_id: str) -> list[ConsistencyLogEntry]:
        with self._tracer.span(
            "ledgertier.consistency_log.entries_for",
            {ATTR_RECORD_ID: record_id, ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text("""
                SELECT sequence, record_id, from_state, to_state, attempt_id, reason, recorded_at
                FROM consistency_log
                WHERE record_id = :record_id
                ORDER BY sequence ASC
            """)
            async with _connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, {"record_id": record_id})
                rows = result.fetchall()
            return [self._row_to_entry(row) for row in rows]

    def _row_to_entry(self, row: Any) -> ConsistencyLogEntry:
        return ConsistencyLogEntry(
            record_id=row[1],
            from_state=MigrationState(row[2]),
            to_state=MigrationState(row[3]),
            timestamp=row[6],
            attempt_id=row[4],
            reason=row[5],
            sequence=int(row[0]),
        )


__all__ = ["PostgreSQLConsistencyLog", "POSTGRESQL_SCHEMA"]
