"""Bounded undo/redo history.

Values are stored as deep copies so callers cannot change recorded states
behind the stack's back. Two values are equal when their JSON forms match.
"""

import copy
import json
import logging
from typing import Any, Callable, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_HISTORY = 50

HistoryListener = Callable[[Optional[T]], None]


def fingerprint(value: Any) -> str:
    """Structural identity of a value."""
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json")
    return json.dumps(value, sort_keys=True, default=str)


class HistoryStack(Generic[T]):
    """Past/present/future stack for one editing session.

    Never persisted. ``past`` holds at most ``limit`` states; the oldest
    is evicted first.
    """

    def __init__(self, initial: Optional[T] = None, limit: int = MAX_HISTORY):
        self.limit = limit
        self._past: List[T] = []
        self._present: Optional[T] = copy.deepcopy(initial)
        self._future: List[T] = []
        self._listeners: List[HistoryListener] = []
        self._replaying = False

    # ── State ───────────────────────────────────────────────────────────

    @property
    def present(self) -> Optional[T]:
        return copy.deepcopy(self._present)

    @property
    def past(self) -> List[T]:
        return copy.deepcopy(self._past)

    @property
    def future(self) -> List[T]:
        return copy.deepcopy(self._future)

    @property
    def can_undo(self) -> bool:
        return bool(self._past)

    @property
    def can_redo(self) -> bool:
        return bool(self._future)

    # ── Operations ──────────────────────────────────────────────────────

    def set_state(self, value: T, add_to_history: bool = True) -> bool:
        """Record a new present.

        With ``add_to_history=False`` the present is replaced without an
        undo point. Returns False when the call was ignored.
        """
        if self._replaying:
            logger.debug("Ignoring set_state during undo/redo replay")
            return False
        if self._present is not None and fingerprint(value) == fingerprint(self._present):
            return False

        if add_to_history:
            if self._present is not None:
                self._past.append(self._present)
                if len(self._past) > self.limit:
                    del self._past[:len(self._past) - self.limit]
            self._future.clear()

        self._present = copy.deepcopy(value)
        self._publish(replaying=False)
        return True

    def undo(self) -> Optional[T]:
        if not self._past:
            return self.present
        if self._present is not None:
            self._future.insert(0, self._present)
        self._present = self._past.pop()
        self._publish(replaying=True)
        return self.present

    def redo(self) -> Optional[T]:
        if not self._future:
            return self.present
        if self._present is not None:
            self._past.append(self._present)
        self._present = self._future.pop(0)
        self._publish(replaying=True)
        return self.present

    def clear(self) -> None:
        """Drop past and future, keeping the present."""
        self._past.clear()
        self._future.clear()

    def reset(self, value: Optional[T] = None) -> None:
        """Start over with ``value`` as the only state."""
        self.clear()
        self._present = copy.deepcopy(value)
        self._publish(replaying=False)

    def subscribe(self, listener: HistoryListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, replaying: bool) -> None:
        self._replaying = replaying
        try:
            for listener in list(self._listeners):
                try:
                    listener(self.present)
                except Exception:
                    logger.exception("History listener failed")
        finally:
            self._replaying = False
