"""Sync engine for fittrackr-py."""

from .engine import (
    DeliveryFailure,
    DrainOutcome,
    DrainResult,
    SyncEngine,
    SyncState,
    SyncTrigger,
)
from .remote import AppliedMutation, HttpRemoteStore, InMemoryRemoteStore, RemoteStore
from .retry import ErrorClass, ErrorClassifier, RetryPolicy, RetryTimer

__all__ = [
    "DeliveryFailure",
    "DrainOutcome",
    "DrainResult",
    "SyncEngine",
    "SyncState",
    "SyncTrigger",
    "AppliedMutation",
    "HttpRemoteStore",
    "InMemoryRemoteStore",
    "RemoteStore",
    "ErrorClass",
    "ErrorClassifier",
    "RetryPolicy",
    "RetryTimer",
]
