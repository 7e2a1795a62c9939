"""Connectivity monitor.

Wraps the runtime's online/offline signal into a single state value and
notifies subscribers on transitions. It never touches the mutation queue;
the sync engine subscribes and decides what to do.
"""

import logging
from dataclasses import dataclass, replace
from typing import Callable, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectivityState:
    """Current connectivity as shown to the UI."""
    is_online: bool
    is_syncing: bool = False

    @property
    def is_offline(self) -> bool:
        return not self.is_online


ConnectivityListener = Callable[[ConnectivityState, ConnectivityState], None]


class ConnectivityMonitor:
    """Holds ``ConnectivityState`` and fires change notifications.

    Listeners receive ``(previous, current)``. A listener that raises is
    logged and skipped; the monitor itself cannot fail.
    """

    def __init__(self, initially_online: bool = True) -> None:
        self._state = ConnectivityState(is_online=initially_online)
        self._listeners: List[ConnectivityListener] = []

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state.is_online

    def set_online(self, online: bool) -> None:
        """Feed the runtime signal. Only transitions are published."""
        if online == self._state.is_online:
            return
        # Going offline also ends any syncing indicator
        syncing = self._state.is_syncing if online else False
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        self._publish(ConnectivityState(is_online=online, is_syncing=syncing))

    def set_syncing(self, syncing: bool) -> None:
        """Publish whether a drain cycle is running."""
        if syncing == self._state.is_syncing:
            return
        self._publish(replace(self._state, is_syncing=syncing))

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def on_online(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Subscribe to offline -> online transitions only."""
        def listener(previous: ConnectivityState, current: ConnectivityState) -> None:
            if current.is_online and not previous.is_online:
                callback()

        return self.subscribe(listener)

    def close(self) -> None:
        """Remove all listeners."""
        self._listeners.clear()

    def _publish(self, new_state: ConnectivityState) -> None:
        previous, self._state = self._state, new_state
        for listener in list(self._listeners):
            try:
                listener(previous, new_state)
            except Exception:
                logger.exception("Connectivity listener failed")
