"""Logging field schema - v1.0

Standard fields (added to all logs):
- schema_version: Log schema version
- service: Service name (brokerlease)
- event: Event type (lease_acquired, lease_update_failed, etc.)
- holder_id: Lease holder id of the running broker

Use the `event` extra field with the LogEvent values below so that lease
transitions can be filtered and alerted on.
"""

from enum import StrEnum


class LogEvent(StrEnum):
    """Standard log event types."""

    # Lease events
    LEASE_ACQUIRED = "lease_acquired"
    LEASE_LOST = "lease_lost"
    LEASE_RENEWED = "lease_renewed"
    LEASE_REJECTED = "lease_rejected"
    LEASE_RELEASED = "lease_released"
    LEASE_UPDATE_FAILED = "lease_update_failed"

    # Clock sync
    CLOCK_SYNCED = "clock_synced"
    CLOCK_SKEW_EXCEEDED = "clock_skew_exceeded"
    CLOCK_SYNC_FAILED = "clock_sync_failed"

    # Schema bootstrap
    SCHEMA_STATEMENT_FAILED = "schema_statement_failed"
    SCHEMA_CREATED = "schema_created"
    SCHEMA_COMMIT_FAILED = "schema_commit_failed"

    # Failure handling / fencing
    IO_ERROR_IGNORED = "io_error_ignored"
    CONNECTORS_STOPPED = "connectors_stopped"
    CONNECTORS_RESTARTED = "connectors_restarted"
    FENCED = "fenced"
    CONFIG_OVERRIDDEN = "config_overridden"

    # Lifecycle events
    BROKER_STARTED = "broker_started"
    BROKER_STOPPED = "broker_stopped"

    # DB
    DB_CONNECTED = "db_connected"
    DB_ERROR = "db_error"


class ErrorClass(StrEnum):
    """Error classification for structured error logging."""

    TRANSIENT = "transient"  # Storage unreachable, may recover
    PERMANENT = "permanent"  # Misconfiguration, missing table
    TIMEOUT = "timeout"  # Statement timeout
