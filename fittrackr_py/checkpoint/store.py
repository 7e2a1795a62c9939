"""Checkpoint store for in-progress workouts.

One checkpoint per routine, plus one slot for a workout started without a
routine. Writes are full overwrites and the last write wins across tabs.
Checkpoints older than ``max_age`` are abandoned: reading one clears it.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from ..errors import StorageFailure
from ..logs import EventType, NDJSONLogger
from ..storage.base import DurableStorage, namespaced
from .models import SessionCheckpoint

logger = logging.getLogger(__name__)

PROGRESS_PREFIX = "workout-progress"
ROUTINE_SLOT = "routine"
FREE_WORKOUT_SLOT = "new"

Clock = Callable[[], datetime]


class CheckpointStore:
    """Reads and writes ``SessionCheckpoint`` values in durable storage."""

    def __init__(
        self,
        storage: DurableStorage,
        namespace: str = "fittrackr",
        clock: Optional[Clock] = None,
        max_age: timedelta = timedelta(hours=24),
        journal: Optional[NDJSONLogger] = None,
    ):
        self.storage = storage
        self.namespace = namespace
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.max_age = max_age
        self.journal = journal
        # last_written_at of the version this store last wrote or read, per key
        self._seen: Dict[str, Optional[datetime]] = {}
        # Writes storage refused, kept for the process lifetime
        self._fallback: Dict[str, SessionCheckpoint] = {}

    @property
    def prefix(self) -> str:
        return namespaced(self.namespace, PROGRESS_PREFIX)

    def key_for(self, routine_id: Optional[str]) -> str:
        if routine_id is None:
            return namespaced(self.namespace, PROGRESS_PREFIX, FREE_WORKOUT_SLOT)
        return namespaced(self.namespace, PROGRESS_PREFIX, ROUTINE_SLOT, routine_id)

    # ── Public API ──────────────────────────────────────────────────────

    def write_checkpoint(self, routine_id: Optional[str], state: SessionCheckpoint) -> SessionCheckpoint:
        """Overwrite the checkpoint for a routine.

        Raises StorageFailure if storage refuses the write; the checkpoint
        is then still returned by reads in this process.
        """
        key = self.key_for(routine_id)
        stamped = state.model_copy(update={"routine_id": routine_id, "last_written_at": self.clock()})

        stored = self._load(key)
        if stored is not None and self._written_elsewhere(key, stored):
            self._log_overwrite(routine_id, stored, stamped)

        try:
            self.storage.set(key, stamped.model_dump(mode="json"))
        except StorageFailure as e:
            self._fallback[key] = stamped
            self._seen[key] = stamped.last_written_at
            e.accepted = stamped
            logger.error("Checkpoint for %s kept in memory only: %s", key, e)
            if self.journal:
                self.journal.log(EventType.STORAGE_FAILURE, {"key": key, "error": str(e)}, routine_id=routine_id)
            raise

        self._fallback.pop(key, None)
        self._seen[key] = stamped.last_written_at
        if self.journal:
            self.journal.log(
                EventType.CHECKPOINT_WRITE,
                {"sets": len(stamped.logged_sets)},
                routine_id=routine_id,
            )
        return stamped

    def read_checkpoint(self, routine_id: Optional[str]) -> Optional[SessionCheckpoint]:
        """Return the checkpoint for a routine, or None if missing or expired."""
        checkpoint = self.peek_checkpoint(routine_id)
        if checkpoint is not None:
            self._seen[self.key_for(routine_id)] = checkpoint.last_written_at
        return checkpoint

    def peek_checkpoint(self, routine_id: Optional[str]) -> Optional[SessionCheckpoint]:
        """Like ``read_checkpoint`` but does not count as having seen it."""
        key = self.key_for(routine_id)
        checkpoint = self._current(key)
        if checkpoint is None:
            return None

        if self.clock() - checkpoint.written_at > self.max_age:
            logger.info("Checkpoint %s expired, clearing", key)
            self.clear_checkpoint(routine_id)
            return None
        return checkpoint

    def clear_checkpoint(self, routine_id: Optional[str]) -> None:
        key = self.key_for(routine_id)
        self._fallback.pop(key, None)
        self._seen.pop(key, None)
        self.storage.remove(key)
        if self.journal:
            self.journal.log(EventType.CHECKPOINT_CLEAR, {}, routine_id=routine_id)

    def list_active_checkpoint_keys(self) -> List[str]:
        """Routine identifiers that have a stored checkpoint."""
        routine_prefix = namespaced(self.namespace, PROGRESS_PREFIX, ROUTINE_SLOT, "")
        keys = set(self._keys(routine_prefix)) | {k for k in self._fallback if k.startswith(routine_prefix)}
        return sorted(k[len(routine_prefix):] for k in keys)

    def has_free_workout(self) -> bool:
        key = self.key_for(None)
        return key in self._fallback or key in self._keys(key)

    # ── Internals ───────────────────────────────────────────────────────

    def _keys(self, prefix: str) -> List[str]:
        try:
            return self.storage.keys(prefix)
        except StorageFailure as e:
            logger.warning("Could not list checkpoints: %s", e)
            return []

    def _load(self, key: str) -> Optional[SessionCheckpoint]:
        try:
            raw = self.storage.get(key)
        except StorageFailure as e:
            logger.warning("Checkpoint read failed for %s: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            return SessionCheckpoint.model_validate(raw)
        except ValidationError as e:
            logger.warning("Ignoring unreadable checkpoint %s: %s", key, e)
            if self.journal:
                self.journal.warning("ignored unreadable checkpoint", {"key": key, "error": str(e)})
            return None

    def _current(self, key: str) -> Optional[SessionCheckpoint]:
        """Newest of the stored checkpoint and the in-memory fallback."""
        stored = self._load(key)
        fallback = self._fallback.get(key)
        if fallback is None:
            return stored
        if stored is None or fallback.written_at >= stored.written_at:
            return fallback.model_copy(deep=True)
        return stored

    def _written_elsewhere(self, key: str, stored: SessionCheckpoint) -> bool:
        seen = self._seen.get(key)
        if stored.last_written_at is None:
            return False
        return seen is None or stored.last_written_at > seen

    def _log_overwrite(
        self,
        routine_id: Optional[str],
        stored: SessionCheckpoint,
        incoming: SessionCheckpoint,
    ) -> None:
        logger.warning(
            "Checkpoint overwrite for %s: replacing version written at %s",
            routine_id or FREE_WORKOUT_SLOT,
            stored.last_written_at.isoformat(),
        )
        if self.journal:
            self.journal.log(
                EventType.CHECKPOINT_OVERWRITE,
                {
                    "replaced_written_at": stored.last_written_at.isoformat(),
                    "replaced_sets": len(stored.logged_sets),
                    "sets": len(incoming.logged_sets),
                },
                routine_id=routine_id,
            )
