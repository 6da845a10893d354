"""
Custom exceptions for the MirrorSync application.
"""

from datetime import datetime
from typing import Optional


class MirrorSyncException(Exception):
    """Base exception for all application-specific errors."""
    pass


class ConfigurationError(MirrorSyncException):
    """Error related to synchronization or mapping configuration."""
    pass


class NotFoundError(MirrorSyncException):
    """An unknown synchronization, mapping or contract was requested."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ConnectorError(MirrorSyncException):
    """Transport-level failure reported by a source or target connector."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class RateLimitedError(ConnectorError):
    """The source signalled throttling.

    Recoverable by rescheduling the run at ``reset_at``, never by retrying inside
    the same run.
    """

    def __init__(self, message: str, reset_at: Optional[datetime] = None, status_code: Optional[int] = 429):
        self.reset_at = reset_at
        super().__init__(message, status_code=status_code)


class TransformError(MirrorSyncException):
    """Malformed mapping or cast configuration."""
    pass


class FingerprintError(MirrorSyncException):
    """A document could not be canonicalized for hashing."""
    pass


class NotSortableError(FingerprintError):
    """The value handed to the fingerprinter is not a map or list."""
    pass


class ContractConflictError(MirrorSyncException):
    """Another writer changed a contract between read and upsert."""
    pass


class ObjectProcessingError(MirrorSyncException):
    """Wraps any failure scoped to a single source object."""

    def __init__(self, origin_id: Optional[str], message: str, cause: Optional[Exception] = None):
        self.origin_id = origin_id
        self.cause = cause
        super().__init__(message)
