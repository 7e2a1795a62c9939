"""
fittrackr-py

Client-side resilience layer for the fittrackr workout tracker: a durable
queue of pending remote writes, a sync engine that drains it when the
network returns, checkpoints for in-progress workouts, and undo/redo
history for edits.
"""

__version__ = "0.1.0"

# Errors
from .errors import (
    FittrackrError,
    StorageFailure,
    SyncFailure,
    TransientSyncFailure,
    PermanentSyncFailure,
)

# Configuration
from .config import ResilienceConfig

# Storage
from .storage import (
    DurableStorage,
    StorageArea,
    StorageChange,
    VolatileStorage,
    SqliteStorage,
)

# Connectivity
from .connectivity import ConnectivityMonitor, ConnectivityProbe, ConnectivityState

# Queue and sync
from .mutations import MutationKind, MutationQueue, QueuedMutation, new_idempotency_token
from .sync import (
    DrainOutcome,
    DrainResult,
    ErrorClass,
    ErrorClassifier,
    HttpRemoteStore,
    InMemoryRemoteStore,
    RemoteStore,
    RetryPolicy,
    SyncEngine,
    SyncState,
    SyncTrigger,
)

# Checkpoints and history
from .checkpoint import ActiveSession, ActiveSessionLocator, CheckpointStore, SessionCheckpoint, SetEntry
from .history import HistoryStack

# Sessions and runtime
from .session import WorkoutSession
from .runtime import ResilienceRuntime

# Event journal
from .logs import NDJSONLogger, EventType, create_logger

__all__ = [
    "__version__",
    # Errors
    "FittrackrError",
    "StorageFailure",
    "SyncFailure",
    "TransientSyncFailure",
    "PermanentSyncFailure",
    # Configuration
    "ResilienceConfig",
    # Storage
    "DurableStorage",
    "StorageArea",
    "StorageChange",
    "VolatileStorage",
    "SqliteStorage",
    # Connectivity
    "ConnectivityMonitor",
    "ConnectivityProbe",
    "ConnectivityState",
    # Queue and sync
    "MutationKind",
    "MutationQueue",
    "QueuedMutation",
    "new_idempotency_token",
    "DrainOutcome",
    "DrainResult",
    "ErrorClass",
    "ErrorClassifier",
    "HttpRemoteStore",
    "InMemoryRemoteStore",
    "RemoteStore",
    "RetryPolicy",
    "SyncEngine",
    "SyncState",
    "SyncTrigger",
    # Checkpoints and history
    "ActiveSession",
    "ActiveSessionLocator",
    "CheckpointStore",
    "SessionCheckpoint",
    "SetEntry",
    "HistoryStack",
    # Sessions and runtime
    "WorkoutSession",
    "ResilienceRuntime",
    # Event journal
    "NDJSONLogger",
    "EventType",
    "create_logger",
]
