"""Mutation queue for fittrackr-py."""

from .models import MutationKind, QueuedMutation, new_idempotency_token
from .queue import MutationQueue, QUEUE_KEY

__all__ = [
    "MutationKind",
    "QueuedMutation",
    "new_idempotency_token",
    "MutationQueue",
    "QUEUE_KEY",
]
