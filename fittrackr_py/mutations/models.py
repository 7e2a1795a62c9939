"""Queued mutation model."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class MutationKind(str, Enum):
    """Kind of write sent to the remote store."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def new_idempotency_token() -> str:
    """Client-generated token identifying one logical write."""
    return str(uuid.uuid4())


class QueuedMutation(BaseModel):
    """A pending write operation, keyed by its idempotency token.

    ``attempts``, ``last_error`` and ``terminal`` are only changed by the
    sync engine. A terminal mutation is excluded from automatic drains and
    waits for the user to retry or acknowledge it.
    """

    model_config = {"extra": "ignore"}

    id: str = Field(default_factory=new_idempotency_token)
    kind: MutationKind
    entity_type: str
    entity_id: Optional[str] = None
    payload: Any = None
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: int = 0
    last_error: Optional[str] = None
    terminal: bool = False

    @property
    def is_pending(self) -> bool:
        return not self.terminal
