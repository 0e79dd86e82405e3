"""
Reverse migration: bring an archived record back to the hot tier.

Archived records are immutable. Before an update can be applied the record
is copied back from the cold store, checked, written to the hot store and
moved back to NONE. There is no delete phase: the cold copy stays where it
is and is simply overwritten if the record is archived again later.

Repeating a restore is harmless; the hot put is idempotent and a record that
is already in NONE is not transitioned again.
"""

from __future__ import annotations

import logging

from ledgertier.adapters.interface import ColdStore, HotStore, call_adapter
from ledgertier.exceptions import VerificationFailedError
from ledgertier.metrics import ArchivalMetrics
from ledgertier.models import MigrationState, Record
from ledgertier.observability import (
    ATTR_MIGRATION_STATE,
    ATTR_RECORD_ID,
    Tracer,
    create_tracer,
)
from ledgertier.serialization import content_hash, decode_record, record_hash
from ledgertier.tracker import RecordGuard

logger = logging.getLogger(__name__)

RESTORE_REASON = "restored_for_update"


class RecordRestorer:
    """
    Copies archived records from the cold tier back into the hot tier.

    Called by the access router with the record's critical section held, so
    no cleanup pass can delete the hot copy halfway through.

    Example:
        >>> async with tracker.hold(record_id) as guard:
        ...     record = await restorer.restore(guard)
    """

    def __init__(
        self,
        hot: HotStore,
        cold: ColdStore,
        *,
        step_timeout: float = 30.0,
        metrics: ArchivalMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._hot = hot
        self._cold = cold
        self._step_timeout = step_timeout
        self._metrics = metrics or ArchivalMetrics(enable_metrics=False)

    async def restore(self, guard: RecordGuard) -> Record:
        """
        Restore the guarded record to the hot store.

        Cold-canonical records move back to NONE. In any other state only
        the data is copied back (the hot copy went missing) and the state is
        left as it is.

        Args:
            guard: Guard for the record to restore

        Returns:
            The record as read from the cold store

        Raises:
            NotFoundError: The cold store has no copy
            VerificationFailedError: The cold bytes are not a valid record
            TransientIOError: An adapter call or the log append failed
        """
        record_id = guard.record_id
        status = guard.status
        state = guard.state

        with self._tracer.span(
            "ledgertier.restorer.restore",
            {ATTR_RECORD_ID: record_id, ATTR_MIGRATION_STATE: state.value},
        ):
            data = await call_adapter(
                "cold.get", record_id, self._cold.get(record_id), self._step_timeout
            )
            digest = content_hash(data)
            try:
                record = decode_record(data)
            except ValueError as e:
                raise VerificationFailedError(
                    record_id, digest, detail=f"undecodable cold copy: {e}"
                ) from e
            # Cold copies are always written in canonical form
            if record_hash(record) != digest or record.id != record_id:
                raise VerificationFailedError(
                    record_id, digest, detail="cold copy is not a canonical encoding"
                )

            await call_adapter(
                "hot.put", record_id, self._hot.put(record_id, record), self._step_timeout
            )

            if status is not None and state.is_cold_canonical:
                await guard.transition(
                    state,
                    MigrationState.NONE,
                    attempt_id=status.attempt_id,
                    reason=RESTORE_REASON,
                )

        self._metrics.record_restored()
        logger.info(
            "Restored record %s (version %d) from %s to the hot tier",
            record_id,
            record.version,
            state.value,
        )
        return record


__all__ = ["RecordRestorer", "RESTORE_REASON"]
