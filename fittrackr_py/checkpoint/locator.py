"""Active-session locator.

Finds the in-progress workout a user can resume. It polls the checkpoint
store at a fixed interval and also refreshes as soon as another tab writes
a checkpoint key. When several routines have an active checkpoint, the most
recently written one wins.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from ..storage.base import DurableStorage, StorageChange
from .models import SessionCheckpoint
from .store import CheckpointStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActiveSession:
    """A resumable workout, as shown in the resume banner."""
    routine_id: Optional[str]
    started_at: datetime
    last_written_at: datetime
    set_count: int

    @property
    def is_free_workout(self) -> bool:
        return self.routine_id is None

    @classmethod
    def from_checkpoint(cls, checkpoint: SessionCheckpoint) -> "ActiveSession":
        return cls(
            routine_id=checkpoint.routine_id,
            started_at=checkpoint.started_at,
            last_written_at=checkpoint.written_at,
            set_count=len(checkpoint.logged_sets),
        )


ActiveSessionListener = Callable[[Optional[ActiveSession]], None]


class ActiveSessionLocator:
    """Tracks the most recently written active checkpoint."""

    def __init__(
        self,
        checkpoints: CheckpointStore,
        storage: Optional[DurableStorage] = None,
        poll_interval: float = 2.0,
    ):
        self.checkpoints = checkpoints
        self.storage = storage
        self.poll_interval = poll_interval
        self._current: Optional[ActiveSession] = None
        self._listeners: List[ActiveSessionListener] = []
        self._task: Optional[asyncio.Task] = None
        self._unsubscribe_storage: Optional[Callable[[], None]] = None

    @property
    def current(self) -> Optional[ActiveSession]:
        return self._current

    def refresh(self) -> Optional[ActiveSession]:
        """Re-scan checkpoints and notify subscribers if the result changed."""
        candidates = []
        routine_ids: List[Optional[str]] = list(self.checkpoints.list_active_checkpoint_keys())
        if self.checkpoints.has_free_workout():
            routine_ids.append(None)

        for routine_id in routine_ids:
            checkpoint = self.checkpoints.peek_checkpoint(routine_id)
            if checkpoint is not None and checkpoint.is_active:
                candidates.append(checkpoint)

        newest = max(candidates, key=lambda c: c.written_at, default=None)
        session = ActiveSession.from_checkpoint(newest) if newest is not None else None
        if session != self._current:
            self._current = session
            self._publish(session)
        return session

    def discard(self) -> Optional[ActiveSession]:
        """Clear the checkpoint of the current active session."""
        session = self.refresh()
        if session is None:
            return None
        self.checkpoints.clear_checkpoint(session.routine_id)
        logger.info("Discarded active session %s", session.routine_id or "(free workout)")
        self.refresh()
        return session

    def subscribe(self, listener: ActiveSessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def start(self) -> None:
        """Refresh now, then poll on the running loop."""
        if self.storage is not None and self._unsubscribe_storage is None:
            self._unsubscribe_storage = self.storage.subscribe(self._on_storage_change)
        self.refresh()

        if self._task is not None and not self._task.done():
            return

        async def poll_loop():
            while True:
                await asyncio.sleep(self.poll_interval)
                try:
                    self.refresh()
                except Exception:
                    logger.exception("Active session refresh failed")

        self._task = asyncio.get_running_loop().create_task(poll_loop())

    async def stop(self) -> None:
        if self._unsubscribe_storage is not None:
            self._unsubscribe_storage()
            self._unsubscribe_storage = None
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._listeners.clear()

    def _on_storage_change(self, change: StorageChange) -> None:
        if change.key.startswith(self.checkpoints.prefix):
            self.refresh()

    def _publish(self, session: Optional[ActiveSession]) -> None:
        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception:
                logger.exception("Active session listener failed")
