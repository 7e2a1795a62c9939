"""Workout checkpoints and the active-session locator."""

from .locator import ActiveSession, ActiveSessionLocator
from .models import SessionCheckpoint, SetEntry
from .store import CheckpointStore, FREE_WORKOUT_SLOT, PROGRESS_PREFIX

__all__ = [
    "ActiveSession",
    "ActiveSessionLocator",
    "SessionCheckpoint",
    "SetEntry",
    "CheckpointStore",
    "FREE_WORKOUT_SLOT",
    "PROGRESS_PREFIX",
]
