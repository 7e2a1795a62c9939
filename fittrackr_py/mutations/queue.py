"""Durable FIFO log of pending remote writes.

The whole log lives under one storage key. Every change is a
read-modify-write of that key, so two tabs appending at the same time both
keep their entries. If storage rejects a write the change is applied to the
in-memory copy, remembered as an overlay, and replayed onto the durable log
with the next write that succeeds.
"""

import logging
from typing import Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from ..errors import StorageFailure
from ..logs import EventType, NDJSONLogger
from ..storage.base import DurableStorage, namespaced
from .models import QueuedMutation

logger = logging.getLogger(__name__)

QUEUE_KEY = "sync-queue"


class MutationQueue:
    """Ordered, durable queue of ``QueuedMutation`` entries.

    Order is append order. Failures never move an entry, and nothing but
    ``mark_succeeded`` and ``acknowledge`` removes one.
    """

    def __init__(
        self,
        storage: DurableStorage,
        namespace: str = "fittrackr",
        journal: Optional[NDJSONLogger] = None,
    ):
        self.storage = storage
        self.key = namespaced(namespace, QUEUE_KEY)
        self.journal = journal
        self._entries: List[QueuedMutation] = []
        # Changes not yet written to durable storage
        self._unpersisted: Dict[str, QueuedMutation] = {}
        self._removed: Set[str] = set()
        self._refresh()

    # ── Public API ──────────────────────────────────────────────────────

    def enqueue(self, mutation: QueuedMutation) -> QueuedMutation:
        """Append a mutation to the end of the log.

        Enqueueing a token that is already queued returns the queued entry.
        If durable storage fails the mutation is still queued in memory and
        ``StorageFailure`` is raised with it as ``accepted``.
        """
        self._refresh()
        existing = self.get(mutation.id)
        if existing is not None:
            if mutation.id in self._unpersisted:
                try:
                    self.flush()
                except StorageFailure as e:
                    e.accepted = existing
                    raise
            return existing

        entry = mutation.model_copy(update={"attempts": 0, "last_error": None, "terminal": False})

        def append(entries: List[QueuedMutation]) -> None:
            entries.append(entry.model_copy())

        try:
            self._commit(append)
        except StorageFailure as e:
            e.accepted = entry
            raise
        finally:
            if self.journal:
                self.journal.log(
                    EventType.QUEUE_ENQUEUE,
                    {"kind": entry.kind.value, "entity_type": entry.entity_type,
                     "entity_id": entry.entity_id},
                    mutation_id=entry.id,
                )
        logger.debug("Enqueued %s %s (%s)", entry.kind.value, entry.entity_type, entry.id)
        return entry

    def flush(self) -> None:
        """Write changes held only in memory to durable storage."""
        if self.is_degraded:
            self._commit(lambda entries: None)

    def peek_batch(self, n: int) -> List[QueuedMutation]:
        """Return up to ``n`` oldest non-terminal mutations in enqueue order."""
        self._refresh()
        return [m.model_copy() for m in self._entries if m.is_pending][:n]

    def mark_succeeded(self, mutation_id: str) -> bool:
        """Remove an acknowledged mutation. Returns False if it was not queued."""
        self._refresh()
        if self._find(self._entries, mutation_id) is None:
            return False

        def remove(entries: List[QueuedMutation]) -> None:
            entries[:] = [m for m in entries if m.id != mutation_id]

        self._commit(remove)
        return True

    def mark_failed(self, mutation_id: str, error: str, terminal: bool = False) -> Optional[QueuedMutation]:
        """Record a failed attempt without moving the entry."""

        def record(entries: List[QueuedMutation]) -> None:
            entry = self._find(entries, mutation_id)
            if entry is None:
                return
            entry.attempts += 1
            entry.last_error = error
            entry.terminal = entry.terminal or terminal

        self._commit(record)
        return self.get(mutation_id)

    def mark_terminal(self, mutation_id: str) -> Optional[QueuedMutation]:
        """Exclude a mutation from automatic drains without counting an attempt."""

        def flag(entries: List[QueuedMutation]) -> None:
            entry = self._find(entries, mutation_id)
            if entry is not None:
                entry.terminal = True

        self._commit(flag)
        return self.get(mutation_id)

    def retry(self, mutation_id: str) -> Optional[QueuedMutation]:
        """Manual resolution: put a terminal mutation back into automatic drains."""

        def reset(entries: List[QueuedMutation]) -> None:
            entry = self._find(entries, mutation_id)
            if entry is not None:
                entry.terminal = False
                entry.attempts = 0

        self._commit(reset)
        return self.get(mutation_id)

    def acknowledge(self, mutation_id: str) -> bool:
        """Discard a terminal mutation after the user has seen it."""
        entry = self.get(mutation_id)
        if entry is None:
            return False
        if not entry.terminal:
            raise ValueError(f"Mutation {mutation_id} is still pending and cannot be discarded")

        removed = self.mark_succeeded(mutation_id)
        if removed and self.journal:
            self.journal.log(EventType.QUEUE_ACK, {"last_error": entry.last_error}, mutation_id=mutation_id)
        return removed

    def get(self, mutation_id: str) -> Optional[QueuedMutation]:
        entry = self._find(self._entries, mutation_id)
        return entry.model_copy() if entry is not None else None

    def pending(self) -> List[QueuedMutation]:
        self._refresh()
        return [m.model_copy() for m in self._entries if m.is_pending]

    def failed(self) -> List[QueuedMutation]:
        """Terminal mutations waiting for manual resolution."""
        self._refresh()
        return [m.model_copy() for m in self._entries if m.terminal]

    def all(self) -> List[QueuedMutation]:
        self._refresh()
        return [m.model_copy() for m in self._entries]

    @property
    def is_degraded(self) -> bool:
        """True while some changes only exist in memory."""
        return bool(self._unpersisted or self._removed)

    def __len__(self) -> int:
        return len(self._entries)

    # ── Persistence ─────────────────────────────────────────────────────

    @staticmethod
    def _find(entries: List[QueuedMutation], mutation_id: str) -> Optional[QueuedMutation]:
        for entry in entries:
            if entry.id == mutation_id:
                return entry
        return None

    def _parse(self, raw) -> List[QueuedMutation]:
        entries = []
        for item in raw or []:
            try:
                entries.append(QueuedMutation.model_validate(item))
            except ValidationError as e:
                logger.warning("Dropping unreadable queue entry: %s", e)
                if self.journal:
                    self.journal.warning("dropped unreadable queue entry", {"key": self.key, "error": str(e)})
        return entries

    def _merge(self, entries: List[QueuedMutation]) -> List[QueuedMutation]:
        """Lay in-memory-only changes over a log read from storage."""
        if not self.is_degraded:
            return entries
        merged = [m for m in entries if m.id not in self._removed]
        for mutation_id, entry in self._unpersisted.items():
            position = next((i for i, m in enumerate(merged) if m.id == mutation_id), None)
            if position is None:
                merged.append(entry.model_copy())
            else:
                merged[position] = entry.model_copy()
        return merged

    def _refresh(self) -> None:
        """Reload the log so writes from other tabs are visible."""
        try:
            raw = self.storage.get(self.key)
        except StorageFailure as e:
            logger.warning("Queue read failed, using in-memory copy: %s", e)
            return
        self._entries = self._merge(self._parse(raw))

    def _commit(self, change: Callable[[List[QueuedMutation]], None]) -> None:
        """Apply ``change`` to the durable log, or to memory if storage fails."""

        def apply(raw):
            entries = self._merge(self._parse(raw))
            change(entries)
            return [m.model_dump(mode="json") for m in entries]

        try:
            raw = self.storage.update(self.key, apply)
        except StorageFailure as e:
            before = {m.id: m.model_copy() for m in self._entries}
            change(self._entries)
            after = {m.id: m for m in self._entries}
            for mutation_id in before.keys() - after.keys():
                self._removed.add(mutation_id)
                self._unpersisted.pop(mutation_id, None)
            for mutation_id, entry in after.items():
                if before.get(mutation_id) != entry:
                    self._unpersisted[mutation_id] = entry.model_copy()
            logger.error("Queue write not durable: %s", e)
            if self.journal:
                self.journal.log(EventType.STORAGE_FAILURE, {"key": self.key, "error": str(e)})
            raise

        self._unpersisted.clear()
        self._removed.clear()
        self._entries = self._parse(raw)
