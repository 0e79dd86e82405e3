"""
Standard span and metric attributes for ledgertier.

This module defines attribute constants used across all ledgertier components
for consistent span naming and metrics labeling. These follow OpenTelemetry
semantic conventions where applicable.

Example:
    >>> from ledgertier.observability.attributes import (
    ...     ATTR_RECORD_ID,
    ...     ATTR_MIGRATION_STATE,
    ... )
    >>>
    >>> with tracer.span(
    ...     "ledgertier.router.read",
    ...     {ATTR_RECORD_ID: record_id},
    ... ):
    ...     pass
"""

# =============================================================================
# Record Attributes
# =============================================================================

ATTR_RECORD_ID = "ledgertier.record.id"
"""Primary key of the billing record (string)."""

ATTR_RECORD_VERSION = "ledgertier.record.version"
"""Revision counter of the billing record (integer)."""

ATTR_TIER = "ledgertier.tier"
"""Storage tier that served or received the operation ('hot', 'cold', 'cache')."""

# =============================================================================
# Migration Attributes
# =============================================================================

ATTR_MIGRATION_STATE = "ledgertier.migration.state"
"""Current migration state of the record."""

ATTR_MIGRATION_TARGET_STATE = "ledgertier.migration.target_state"
"""State a transition is moving the record to."""

ATTR_ATTEMPT_ID = "ledgertier.migration.attempt_id"
"""Identifier shared by all transitions of one migration attempt."""

ATTR_BATCH_SIZE = "ledgertier.batch.size"
"""Number of candidates in a scan batch (integer)."""

ATTR_RECORDS_PROCESSED = "ledgertier.records.processed"
"""Number of records processed by a pass (integer)."""

# =============================================================================
# Database Attributes (OpenTelemetry semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier ('postgresql', 'sqlite')."""

ATTR_DB_NAME = "db.name"
"""Database name or file path."""

# =============================================================================
# Error Attributes
# =============================================================================

ATTR_ERROR_TYPE = "ledgertier.error.type"
"""Exception class name of an error that escaped a span."""


__all__ = [
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
