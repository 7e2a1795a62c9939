"""
Workout Session

Ties the history stack, the checkpoint store and the mutation queue
together for one workout:
- every edit becomes a new present in the history and is checkpointed
- undo/redo replay a recorded state and checkpoint it
- finishing turns the workout into queued mutations, then clears the
  checkpoint once they are durable
"""

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional
from uuid import uuid4

from .checkpoint.models import SessionCheckpoint, SetEntry
from .checkpoint.store import CheckpointStore
from .errors import StorageFailure
from .history.stack import HistoryStack, MAX_HISTORY
from .logs import EventType, NDJSONLogger
from .mutations.models import MutationKind, QueuedMutation
from .mutations.queue import MutationQueue

logger = logging.getLogger(__name__)


class WorkoutSession:
    """One in-progress workout, for a routine or a free workout."""

    def __init__(
        self,
        checkpoints: CheckpointStore,
        queue: MutationQueue,
        routine_id: Optional[str] = None,
        history_limit: int = MAX_HISTORY,
        clock: Optional[Callable[[], datetime]] = None,
        journal: Optional[NDJSONLogger] = None,
        on_finished: Optional[Callable[[List[QueuedMutation]], None]] = None,
    ):
        self.checkpoints = checkpoints
        self.queue = queue
        self.routine_id = routine_id
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.journal = journal
        self.on_finished = on_finished
        self.history: HistoryStack[SessionCheckpoint] = HistoryStack(limit=history_limit)
        self.resumed = False
        self._finish_mutations: Optional[List[QueuedMutation]] = None

    @property
    def state(self) -> Optional[SessionCheckpoint]:
        return self.history.present

    @property
    def can_undo(self) -> bool:
        return self.history.can_undo

    @property
    def can_redo(self) -> bool:
        return self.history.can_redo

    def start(self, fresh: bool = False) -> SessionCheckpoint:
        """Resume the stored checkpoint, or begin a new workout.

        Restoring a checkpoint does not create an undo point. With
        ``fresh=True`` any stored checkpoint is superseded.
        """
        existing = None if fresh else self.checkpoints.read_checkpoint(self.routine_id)
        self.history.reset(None)
        self._finish_mutations = None

        if existing is not None and existing.is_active:
            self.history.set_state(existing, add_to_history=False)
            self.resumed = True
            logger.info("Resumed workout %s with %d sets", self.routine_id or "(free)", len(existing.logged_sets))
            return self.state

        if fresh:
            self.checkpoints.clear_checkpoint(self.routine_id)
        now = self.clock()
        self.history.set_state(
            SessionCheckpoint(routine_id=self.routine_id, started_at=now, date=now.date().isoformat()),
            add_to_history=False,
        )
        self.resumed = False
        return self.state

    # ── Edits ───────────────────────────────────────────────────────────

    def log_set(
        self,
        exercise_id: str,
        reps: int,
        weight: float,
        rest_time: int = 0,
        exercise_name: Optional[str] = None,
    ) -> SetEntry:
        entry = SetEntry(
            exercise_id=exercise_id,
            reps=reps,
            weight=weight,
            rest_time=rest_time,
            exercise_name=exercise_name,
        )
        state = self._require_state()
        self._apply(state.model_copy(update={"logged_sets": state.logged_sets + [entry]}))
        return entry

    def update_set(self, temp_id: str, **changes) -> SetEntry:
        state = self._require_state()
        sets = list(state.logged_sets)
        for i, entry in enumerate(sets):
            if entry.temp_id == temp_id:
                sets[i] = entry.model_copy(update=changes)
                self._apply(state.model_copy(update={"logged_sets": sets}))
                return sets[i]
        raise KeyError(temp_id)

    def remove_set(self, temp_id: str) -> None:
        state = self._require_state()
        sets = [s for s in state.logged_sets if s.temp_id != temp_id]
        if len(sets) == len(state.logged_sets):
            raise KeyError(temp_id)
        self._apply(state.model_copy(update={"logged_sets": sets}))

    def set_notes(self, notes: str) -> None:
        state = self._require_state()
        self._apply(state.model_copy(update={"notes": notes}))

    def set_duration(self, minutes: int) -> None:
        """Update the elapsed time. Timer ticks are not undoable."""
        state = self._require_state()
        self._apply(state.model_copy(update={"duration": minutes}), add_to_history=False)

    def undo(self) -> Optional[SessionCheckpoint]:
        if not self.history.can_undo:
            return self.state
        state = self.history.undo()
        self._save(state)
        return state

    def redo(self) -> Optional[SessionCheckpoint]:
        if not self.history.can_redo:
            return self.state
        state = self.history.redo()
        self._save(state)
        return state

    # ── Completion ──────────────────────────────────────────────────────

    def finish(self) -> List[QueuedMutation]:
        """Queue the workout for the remote store.

        Enqueues one workout create followed by one create per set. The
        checkpoint is cleared only when every mutation is durably queued;
        otherwise it stays so the workout can be resumed, and calling
        ``finish`` again re-queues the same idempotency tokens.
        """
        state = self._require_state()
        if not state.is_active:
            raise ValueError("Cannot finish a workout with no logged sets")

        if self._finish_mutations is None:
            self._finish_mutations = self._build_mutations(state)

        durable = True
        for mutation in self._finish_mutations:
            try:
                self.queue.enqueue(mutation)
            except StorageFailure as e:
                durable = False
                logger.warning("Workout mutation %s only queued in memory: %s", mutation.id, e)

        if durable:
            self.checkpoints.clear_checkpoint(self.routine_id)
            self.history.clear()
        else:
            logger.warning("Keeping checkpoint for %s until the workout is durably queued", self.routine_id or "(free)")

        if self.journal:
            self.journal.log(
                EventType.SESSION_FINISH,
                {"sets": len(state.logged_sets), "durable": durable},
                routine_id=self.routine_id,
            )
        if self.on_finished:
            self.on_finished(list(self._finish_mutations))
        return list(self._finish_mutations)

    def discard(self) -> None:
        """Abandon the workout and its checkpoint."""
        self.checkpoints.clear_checkpoint(self.routine_id)
        self.history.reset(None)
        self._finish_mutations = None

    # ── Internals ───────────────────────────────────────────────────────

    def _require_state(self) -> SessionCheckpoint:
        state = self.history.present
        if state is None:
            raise RuntimeError("Workout session has not been started")
        return state

    def _apply(self, state: SessionCheckpoint, add_to_history: bool = True) -> None:
        if self.history.set_state(state, add_to_history=add_to_history):
            self._save(state)

    def _save(self, state: SessionCheckpoint) -> None:
        # StorageFailure propagates; the store keeps the write in memory
        self.checkpoints.write_checkpoint(self.routine_id, state)

    def _build_mutations(self, state: SessionCheckpoint) -> List[QueuedMutation]:
        workout_id = str(uuid4())
        mutations = [QueuedMutation(
            kind=MutationKind.CREATE,
            entity_type="workout",
            entity_id=workout_id,
            payload={
                "routine_id": state.routine_id,
                "date": state.date or state.started_at.date().isoformat(),
                "duration": max(state.duration, 1),
                "notes": state.notes or None,
            },
        )]
        for order, entry in enumerate(state.logged_sets, start=1):
            mutations.append(QueuedMutation(
                kind=MutationKind.CREATE,
                entity_type="set",
                entity_id=entry.temp_id,
                payload={
                    "workout_id": workout_id,
                    "exercise_id": entry.exercise_id,
                    "reps": entry.reps,
                    "weight": entry.weight,
                    "rest_time": entry.rest_time,
                    "set_order": order,
                },
            ))
        return mutations
