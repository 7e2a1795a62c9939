"""Custom error types for fittrackr-py."""

from typing import Any, Optional


class FittrackrError(Exception):
    """Base error for all fittrackr errors."""
    pass


class StorageFailure(FittrackrError):
    """Raised when durable local storage rejects a read or write.

    The operation that triggered it has already been applied in memory for
    the current process lifetime. ``accepted`` carries the object that was
    kept in memory, when there is one.
    """

    def __init__(self, key: str, cause: Optional[BaseException] = None, accepted: Any = None):
        msg = f"Durable storage failed for key '{key}'"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)
        self.key = key
        self.cause = cause
        self.accepted = accepted


class SyncFailure(FittrackrError):
    """Base error for a failed delivery of a queued mutation."""

    def __init__(self, message: str, mutation_id: Optional[str] = None):
        super().__init__(message)
        self.mutation_id = mutation_id


class TransientSyncFailure(SyncFailure):
    """Network or server-side failure. Retried with backoff."""
    pass


class PermanentSyncFailure(SyncFailure):
    """Validation or client-side failure. Never retried automatically."""

    def __init__(self, message: str, mutation_id: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, mutation_id)
        self.status_code = status_code
