"""Pydantic models for workout checkpoints."""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SetEntry(BaseModel):
    """One logged set of an exercise."""

    model_config = {"extra": "ignore"}

    exercise_id: str
    reps: int = 0
    weight: float = 0.0
    rest_time: int = 0
    exercise_name: Optional[str] = None
    temp_id: str = Field(default_factory=lambda: uuid4().hex)


class SessionCheckpoint(BaseModel):
    """Local snapshot of an in-progress workout.

    Never sent to the remote store. ``last_written_at`` is stamped by the
    checkpoint store on every write.
    """

    model_config = {"extra": "ignore"}

    routine_id: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    logged_sets: List[SetEntry] = Field(default_factory=list)
    notes: str = ""
    date: Optional[str] = None
    duration: int = 0
    last_written_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return bool(self.logged_sets)

    @property
    def written_at(self) -> datetime:
        return self.last_written_at or self.started_at
