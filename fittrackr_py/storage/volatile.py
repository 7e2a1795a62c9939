"""Volatile (in-memory) durable storage implementation.

A ``StorageArea`` plays the role of one browser profile's local storage;
each ``VolatileStorage`` is one tab's view of it. Values are kept in their
serialized form so that quota accounting and copy semantics match the
persistent store.
"""

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from ..errors import StorageFailure
from .base import (
    StorageChange,
    StorageListener,
    Unsubscribe,
    deserialize_value,
    serialize_value,
)

logger = logging.getLogger(__name__)


class StorageArea:
    """Shared key/value area with an optional byte quota."""

    def __init__(self, quota_bytes: Optional[int] = None) -> None:
        self.quota_bytes = quota_bytes
        self._data: Dict[str, str] = {}
        self._views: List["VolatileStorage"] = []

    def attach(self, view: "VolatileStorage") -> None:
        self._views.append(view)

    def detach(self, view: "VolatileStorage") -> None:
        if view in self._views:
            self._views.remove(view)

    def used_bytes(self) -> int:
        return sum(len(k) + len(v) for k, v in self._data.items())

    def write(self, key: str, value_str: Optional[str], origin: str) -> None:
        """Apply a serialized write and broadcast it to the other views."""
        if value_str is None:
            self._data.pop(key, None)
        else:
            if self.quota_bytes is not None:
                current = len(key) + len(self._data[key]) if key in self._data else 0
                projected = self.used_bytes() - current + len(key) + len(value_str)
                if projected > self.quota_bytes:
                    raise StorageFailure(key, RuntimeError("quota exceeded"))
            self._data[key] = value_str

        change = StorageChange(
            key=key,
            new_value=deserialize_value(value_str),
            origin=origin,
        )
        for view in list(self._views):
            if view.tab_id != origin:
                view._dispatch(change)

    def read(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def keys(self) -> List[str]:
        return list(self._data.keys())


class VolatileStorage:
    """In-memory storage view with cross-tab change notifications."""

    def __init__(self, area: Optional[StorageArea] = None, tab_id: Optional[str] = None) -> None:
        self.area = area or StorageArea()
        self.tab_id = tab_id or f"tab-{uuid.uuid4().hex[:8]}"
        self._listeners: List[StorageListener] = []
        self.area.attach(self)

    def get(self, key: str) -> Any:
        """Get value for key from current state."""
        return deserialize_value(self.area.read(key))

    def set(self, key: str, value: Any) -> None:
        """Overwrite value for key."""
        if value is None:
            self.remove(key)
            return
        self.area.write(key, self._serialize(key, value), self.tab_id)

    def remove(self, key: str) -> None:
        if self.area.read(key) is None:
            return
        self.area.write(key, None, self.tab_id)

    def update(self, key: str, fn: Callable[[Any], Any]) -> Any:
        """Read-modify-write. Atomic because the area is single-threaded."""
        new_value = fn(self.get(key))
        self.set(key, new_value)
        return new_value

    def keys(self, prefix: str = "") -> List[str]:
        return [k for k in self.area.keys() if k.startswith(prefix)]

    def subscribe(self, listener: StorageListener) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def close(self) -> None:
        """Detach from the shared area and drop listeners."""
        self._listeners.clear()
        self.area.detach(self)

    def _serialize(self, key: str, value: Any) -> str:
        try:
            return serialize_value(value)
        except (TypeError, ValueError) as e:
            raise StorageFailure(key, e) from e

    def _dispatch(self, change: StorageChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Storage listener failed for key %s", change.key)

    def __len__(self) -> int:
        return len(self.area.keys())
