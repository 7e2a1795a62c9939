"""Durable local storage for fittrackr-py."""

from .base import (
    DurableStorage,
    StorageChange,
    StorageListener,
    Unsubscribe,
    namespaced,
)
from .volatile import StorageArea, VolatileStorage
from .sqlite import SqliteStorage

__all__ = [
    # Base protocol
    "DurableStorage",
    "StorageChange",
    "StorageListener",
    "Unsubscribe",
    "namespaced",
    # Stores
    "StorageArea",
    "VolatileStorage",
    "SqliteStorage",
]
