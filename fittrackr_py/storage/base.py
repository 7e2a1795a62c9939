"""Base durable storage protocol and change notifications."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Protocol


Unsubscribe = Callable[[], None]


@dataclass
class StorageChange:
    """A write observed on the shared storage, as a browser storage event.

    ``new_value`` is None when the key was removed.
    """
    key: str
    new_value: Any
    origin: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


StorageListener = Callable[[StorageChange], None]


class DurableStorage(Protocol):
    """Protocol for local key/value storage shared by every tab of a profile.

    Writes are synchronous: they are durable when the call returns.
    Listeners are only told about writes made by *other* tabs.
    """

    tab_id: str

    def get(self, key: str) -> Any:
        """Get value for key. Returns None if not found."""
        ...

    def set(self, key: str, value: Any) -> None:
        """Overwrite the value for key. Raises StorageFailure."""
        ...

    def remove(self, key: str) -> None:
        """Delete key. Missing keys are ignored."""
        ...

    def update(self, key: str, fn: Callable[[Any], Any]) -> Any:
        """Atomically replace the value with ``fn(current)`` and return it.

        A result of None removes the key.
        """
        ...

    def keys(self, prefix: str = "") -> List[str]:
        """Return stored keys starting with prefix."""
        ...

    def subscribe(self, listener: StorageListener) -> Unsubscribe:
        """Register a listener for writes made by other tabs."""
        ...


def namespaced(namespace: str, *parts: str) -> str:
    """Build a storage key under the application namespace."""
    return ":".join((namespace,) + parts)


def serialize_value(value: Any) -> str:
    """Serialize value to a compact JSON string."""
    return json.dumps(value, ensure_ascii=False, separators=(',', ':'))


def deserialize_value(value_str: Optional[str]) -> Any:
    """Deserialize JSON string to value."""
    if value_str is None:
        return None
    return json.loads(value_str)
