"""
Exceptions raised by ledgertier components.

Exception Hierarchy:
    LedgerTierError (base)
    +-- NotFoundError                (client-facing)
    +-- TemporarilyUnavailableError  (client-facing)
    +-- ConflictError
    +-- InvalidTransitionError
    +-- VerificationFailedError
    +-- TransientIOError
    +-- StaleStateError

Every exception carries an ErrorClassification describing its severity,
whether it may be retried, and what an operator should do about it. Only
NotFoundError and TemporarilyUnavailableError are meant to reach API
callers; the rest are internal signals consumed by the migration engine's
logging and by the router's bounded retries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from ledgertier.retry import RetryConfig

if TYPE_CHECKING:
    from ledgertier.models import MigrationState


class ErrorSeverity(Enum):
    """
    Severity level of ledgertier errors.

    Used for alerting and logging decisions.
    """

    CRITICAL = "critical"
    """Possible data corruption; requires immediate attention."""

    ERROR = "error"
    """Significant failure that may require operator intervention."""

    WARNING = "warning"
    """Issue that should be monitored but usually resolves itself."""

    INFO = "info"
    """Informational condition, not a failure."""

    @property
    def should_alert(self) -> bool:
        """True for CRITICAL and ERROR levels."""
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """Corresponding Python logging level."""
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for ledgertier errors.

    Attributes:
        RECOVERABLE: Needs operator action or the next scheduled pass.
        TRANSIENT: May resolve on retry; retried locally with backoff.
        FATAL: Programming or data error; never retried.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT


@dataclass(frozen=True)
class ErrorClassification:
    """
    Rich metadata for error classification.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
        retry_config: Configuration for automatic retry (if applicable).
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config:
            result["retry_config"] = self.retry_config.to_dict()
        return result


class LedgerTierError(Exception):
    """
    Base exception for all ledgertier errors.

    Attributes:
        message: Human-readable error description.
        record_id: The record involved, if any.
        suggested_action: Suggested action for recovery.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="LEDGERTIER_ERROR",
        category="general",
        suggested_action="Review logs and the consistency log for the record",
    )

    def __init__(
        self,
        message: str,
        *,
        record_id: str | None = None,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.record_id = record_id
        self.suggested_action = suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        if self.record_id is not None:
            return f"{self.message} record_id={self.record_id}"
        return self.message

    @property
    def classification(self) -> ErrorClassification:
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def is_transient(self) -> bool:
        return self.classification.recoverability.should_retry

    def to_dict(self) -> dict[str, Any]:
        """Convert the exception to a dictionary for logging and API responses."""
        return {
            "message": self.message,
            "record_id": self.record_id,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class NotFoundError(LedgerTierError):
    """
    Raised when a record is absent from every tier that was consulted.

    Adapters raise it for a single tier (``tier`` set); the router raises it
    once hot store and cold store have both missed.

    Attributes:
        tier: The tier that reported the miss, or None for "anywhere".
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.INFO,
        recoverability=ErrorRecoverability.FATAL,
        error_code="RECORD_NOT_FOUND",
        category="lookup",
        suggested_action="Verify the record id",
    )

    def __init__(self, record_id: str, tier: str | None = None) -> None:
        self.tier = tier
        where = f" in {tier} store" if tier else ""
        super().__init__(f"Record not found{where}", record_id=record_id)


class ConflictError(LedgerTierError):
    """
    Raised when a compare-and-set on the migration state loses a race.

    Another worker (or a concurrent request) owns the record right now.
    Callers back off and retry.

    Attributes:
        expected: The states the caller expected.
        actual: The state actually found, or None if the record's critical
            section could not be entered in time.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="STATE_CONFLICT",
        category="concurrency",
        suggested_action="Retry with backoff; a migration step is in flight",
        retry_config=RetryConfig(max_attempts=3, initial_delay=0.05, max_delay=1.0),
    )

    def __init__(
        self,
        record_id: str,
        expected: tuple[MigrationState, ...] = (),
        actual: MigrationState | None = None,
        reason: str | None = None,
    ) -> None:
        self.expected = expected
        self.actual = actual
        self.reason = reason
        if reason:
            message = f"State conflict: {reason}"
        else:
            wanted = "|".join(s.value for s in expected) or "?"
            found = actual.value if actual is not None else "?"
            message = f"State conflict: expected {wanted}, found {found}"
        super().__init__(message, record_id=record_id)


class InvalidTransitionError(LedgerTierError):
    """
    Raised when a requested transition is not an edge of the state machine.

    Attributes:
        from_state: Current state.
        to_state: Requested state.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_STATE_TRANSITION",
        category="state",
        suggested_action="Review the migration state machine",
    )

    def __init__(
        self,
        record_id: str,
        from_state: MigrationState,
        to_state: MigrationState,
    ) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid state transition: {from_state.value} -> {to_state.value}",
            record_id=record_id,
        )


class VerificationFailedError(LedgerTierError):
    """
    Raised when the cold copy does not match the hot-store source.

    The migration attempt is aborted and never retried inside the same pass:
    retrying silently could hide real corruption in the archive.

    Attributes:
        expected_hash: Hash computed from the hot-store payload.
        attempt_id: The migration attempt that detected the mismatch.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="VERIFICATION_FAILED",
        category="integrity",
        suggested_action=(
            "Inspect the cold store object for the record; the next scan retries "
            "from FAILED once the archive is healthy"
        ),
    )

    def __init__(
        self,
        record_id: str,
        expected_hash: str,
        attempt_id: str | None = None,
        detail: str | None = None,
    ) -> None:
        self.expected_hash = expected_hash
        self.attempt_id = attempt_id
        self.detail = detail
        message = f"Cold copy failed verification against {expected_hash[:12]}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message, record_id=record_id)


class TransientIOError(LedgerTierError):
    """
    Raised for timeouts and connection errors on any adapter or the log.

    Attributes:
        operation: The adapter operation that failed (e.g. "cold.put").
        cause: The underlying exception, if any.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="TRANSIENT_IO",
        category="connectivity",
        suggested_action="Check store connectivity; the operation is retried automatically",
        retry_config=RetryConfig(max_attempts=3, initial_delay=0.1, max_delay=2.0),
    )

    def __init__(
        self,
        operation: str,
        record_id: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.operation = operation
        self.cause = cause
        detail = f": {cause!r}" if cause is not None else ""
        super().__init__(f"Transient I/O failure during {operation}{detail}", record_id=record_id)


class StaleStateError(LedgerTierError):
    """
    Raised (or reported) when tracked state disagrees with the consistency log.

    Never resolved automatically; the record is quarantined until an operator
    releases it.

    Attributes:
        tracked_state: State held by the tracker (or the state implied by
            the previous log entry during replay).
        logged_state: State the log says the record should be in.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="STALE_STATE",
        category="integrity",
        suggested_action="Review the record's consistency log history, then release it",
    )

    def __init__(
        self,
        record_id: str,
        tracked_state: MigrationState,
        logged_state: MigrationState,
        detail: str | None = None,
    ) -> None:
        self.tracked_state = tracked_state
        self.logged_state = logged_state
        self.detail = detail
        message = (
            f"Tracked state {tracked_state.value} disagrees with logged state {logged_state.value}"
        )
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message, record_id=record_id)


class TemporarilyUnavailableError(LedgerTierError):
    """
    Raised to API callers once the router's local retries are exhausted.

    Attributes:
        attempts: Number of attempts made.
        last_error: The last internal error observed.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="TEMPORARILY_UNAVAILABLE",
        category="availability",
        suggested_action="Retry the request later",
    )

    def __init__(
        self,
        record_id: str,
        attempts: int,
        last_error: BaseException | None = None,
    ) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Record temporarily unavailable after {attempts} attempts",
            record_id=record_id,
        )


# Adapter exceptions that are treated as TransientIOError at component boundaries
TRANSIENT_ADAPTER_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    OSError,
)


__all__ = [
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
    "TRANSIENT_ADAPTER_ERRORS",
]
