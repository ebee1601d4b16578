"""Error handling module for brokerlease.

This module defines error codes and exception classes.

Storage failures are surfaced as LeaseIOError, the generic I/O failure
reported to the host broker's failure handler. Lease loss is a LeaseIOError
too, so a handler that stops on I/O errors also stops on lease loss.

Usage:
    from brokerlease.core.errors import LeaseIOError, LeaseLostError

    try:
        held = await locker.keep_alive()
    except LeaseIOError:
        # lease status unknown, assume lost
        ...
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Error codes."""

    LEASE_IO_ERROR = "LEASE_IO_ERROR"
    SCHEMA_BOOTSTRAP_FAILED = "SCHEMA_BOOTSTRAP_FAILED"
    LEASE_LOST = "LEASE_LOST"
    LEASE_HELD = "LEASE_HELD"
    LEASE_CONFIG_INVALID = "LEASE_CONFIG_INVALID"


class BrokerLeaseError(Exception):
    """Base exception for brokerlease.

    Attributes:
        code: The error code from ErrorCode enum
        message: Human-readable error message
    """

    def __init__(self, code: ErrorCode, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(message)


class LeaseIOError(BrokerLeaseError):
    """Storage operation failed; lease status is unknown."""

    def __init__(self, message: str = "Lease storage operation failed") -> None:
        super().__init__(ErrorCode.LEASE_IO_ERROR, message)


class SchemaBootstrapError(LeaseIOError):
    """Lease table bootstrap could not be committed."""

    def __init__(self, message: str = "Lease schema bootstrap failed") -> None:
        super().__init__(message)
        self.code = ErrorCode.SCHEMA_BOOTSTRAP_FAILED


class LeaseLostError(LeaseIOError):
    """The lease is no longer held by this broker."""

    def __init__(self, message: str = "Lease lock no longer valid") -> None:
        super().__init__(message)
        self.code = ErrorCode.LEASE_LOST


class LeaseHeldError(BrokerLeaseError):
    """Another holder owns an unexpired lease and fail_if_locked is set."""

    def __init__(self, message: str = "Lease is held by another broker") -> None:
        super().__init__(ErrorCode.LEASE_HELD, message)


class LeaseConfigError(BrokerLeaseError):
    """Lease configuration is incomplete or invalid."""

    def __init__(self, message: str = "Invalid lease configuration") -> None:
        super().__init__(ErrorCode.LEASE_CONFIG_INVALID, message)
