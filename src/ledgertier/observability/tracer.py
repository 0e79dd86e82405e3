"""
Tracers for ledgertier components.

Every component takes ``tracer=`` (or ``enable_tracing=``) and wraps its
public operations in ``tracer.span(name, attributes)``. The span yielded is
an OpenTelemetry span, a ``RecordedSpan`` in tests, or None when tracing is
off, so callers guard ``set_attribute`` with ``if span is not None``.

OpenTelemetry is optional. It is imported here and nowhere else.

Example:
    >>> tracer = create_tracer(__name__, enable_tracing=True)
    >>> with tracer.span("ledgertier.router.read", {ATTR_RECORD_ID: "inv-1"}) as span:
    ...     record = await hot.get("inv-1")
    ...     if span is not None:
    ...         span.set_attribute(ATTR_TIER, "hot")
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator, Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ledgertier.observability.attributes import ATTR_ERROR_TYPE

# Optional OpenTelemetry import - single source of truth
try:
    from opentelemetry import trace
    from opentelemetry.trace import Status, StatusCode

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False
    trace = None  # type: ignore[assignment]


@runtime_checkable
class Tracer(Protocol):
    """Creates spans around component operations."""

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> contextlib.AbstractContextManager[Any]: ...

    @property
    def enabled(self) -> bool:
        """True when spans are real (attributes are worth computing)."""
        ...


class NullTracer:
    """Tracer used when tracing is disabled; yields None."""

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Tracer backed by the global OpenTelemetry tracer provider.

    Exceptions escaping a span are recorded on it, the span status is set to
    ERROR and the exception class is stored under ATTR_ERROR_TYPE.
    """

    def __init__(self, tracer_name: str) -> None:
        if trace is None:
            raise ImportError("opentelemetry-api is required for OpenTelemetryTracer")
        self._tracer = trace.get_tracer(tracer_name)

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Iterator[Any]:
        with self._tracer.start_as_current_span(
            name,
            attributes=attributes or {},
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            try:
                yield span
            except Exception as e:
                span.record_exception(e)
                span.set_attribute(ATTR_ERROR_TYPE, type(e).__name__)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

    @property
    def enabled(self) -> bool:
        return True


@dataclass
class RecordedSpan:
    """A span captured by MockTracer."""

    name: str
    attributes: dict[str, Any] = field(default_factory=dict)
    error: BaseException | None = None

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value


class MockTracer:
    """
    Tracer for tests. Records every span in the order it was opened.

    Example:
        >>> tracer = MockTracer()
        >>> router = UnifiedAccessRouter(hot, cold, tracker, tracer=tracer)
        >>> await router.read("inv-1")
        >>> tracer.span_names
        ['ledgertier.router.read']
        >>> tracer.find("ledgertier.router.read")[0].attributes[ATTR_RECORD_ID]
        'inv-1'
    """

    def __init__(self) -> None:
        self.spans: list[RecordedSpan] = []

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Iterator[RecordedSpan]:
        recorded = RecordedSpan(name, dict(attributes or {}))
        self.spans.append(recorded)
        try:
            yield recorded
        except Exception as e:
            recorded.error = e
            raise

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [s.name for s in self.spans]

    def find(self, name: str) -> list[RecordedSpan]:
        return [s for s in self.spans if s.name == name]

    def clear(self) -> None:
        self.spans.clear()


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """
    Build the tracer a component should use.

    Returns an OpenTelemetryTracer when ``enable_tracing`` is set and
    OpenTelemetry is installed, a NullTracer otherwise.
    """
    if enable_tracing and OTEL_AVAILABLE:
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "OTEL_AVAILABLE",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "RecordedSpan",
    "MockTracer",
    "create_tracer",
]
