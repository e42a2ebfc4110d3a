"""
errors.py - Error taxonomy for the offline sync engine
"""

from typing import Optional


class OfflineSyncError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(OfflineSyncError):
    """A mutation is malformed and was rejected before being queued."""


class TransientNetworkError(OfflineSyncError):
    """Timeout or connection failure. Retried with backoff."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class PermanentRemoteError(OfflineSyncError):
    """The remote service explicitly rejected the request. Retrying will not help."""

    def __init__(self, message: str, status: Optional[int] = None, response: Optional[dict] = None):
        super().__init__(message)
        self.status = status
        self.response = response


class StorageError(OfflineSyncError):
    """Durable storage failed. Queue bookkeeping cannot safely continue."""


class StorageQuotaExceeded(StorageError):
    """Durable storage is full. Raised instead of silently dropping data."""


class LockContention(OfflineSyncError):
    """A drain pass is already running."""


class SyncAlreadyRunning(LockContention):
    """Raised by an explicit manual sync while another drain holds the lock."""


class NotOnline(OfflineSyncError):
    """The network monitor reports the device offline."""


class RecordNotFound(OfflineSyncError):
    """No queued mutation has the given id."""


class InvalidTransition(OfflineSyncError):
    """A status change was requested from the wrong state."""
