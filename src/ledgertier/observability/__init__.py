"""
Tracing for ledgertier.

Components build their tracer with ``create_tracer(__name__, enable_tracing)``
or accept one through ``tracer=``. Span attributes use the ``ATTR_*`` names
from ``ledgertier.observability.attributes``.

OpenTelemetry is optional; without it every tracer is a NullTracer.
"""

from ledgertier.observability.attributes import (
    ATTR_ATTEMPT_ID,
    ATTR_BATCH_SIZE,
    ATTR_DB_NAME,
    ATTR_DB_SYSTEM,
    ATTR_ERROR_TYPE,
    ATTR_MIGRATION_STATE,
    ATTR_MIGRATION_TARGET_STATE,
    ATTR_RECORD_ID,
    ATTR_RECORD_VERSION,
    ATTR_RECORDS_PROCESSED,
    ATTR_TIER,
)
from ledgertier.observability.tracer import (
    OTEL_AVAILABLE,
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    RecordedSpan,
    Tracer,
    create_tracer,
)

__all__ = [
    "OTEL_AVAILABLE",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "RecordedSpan",
    "create_tracer",
    "ATTR_RECORD_ID",
    "ATTR_RECORD_VERSION",
    "ATTR_TIER",
    "ATTR_MIGRATION_STATE",
    "ATTR_MIGRATION_TARGET_STATE",
    "ATTR_ATTEMPT_ID",
    "ATTR_BATCH_SIZE",
    "ATTR_RECORDS_PROCESSED",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_NAME",
    "ATTR_ERROR_TYPE",
]
