"""Failure classification and backoff policy for the sync engine.

Implements:
- Error classification (transient vs permanent)
- Exponential backoff with jitter, capped, with a bounded attempt count
- A one-shot retry timer on the running loop
"""

import asyncio
import random
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import httpx

from ..errors import PermanentSyncFailure, TransientSyncFailure


class ErrorClass(str, Enum):
    """Classification of delivery failures."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class ErrorClassifier:
    """Classifies errors as transient (retry) or permanent (surface to user).

    Based on HTTP status codes and exception types.
    """

    TRANSIENT_STATUS_CODES = {408, 425, 429}
    TRANSIENT_EXCEPTIONS = (
        TimeoutError,
        ConnectionError,
        asyncio.TimeoutError,
        httpx.TransportError,
    )

    def classify(self, error: Exception) -> ErrorClass:
        """Classify an error.

        Args:
            error: The exception raised by the remote call

        Returns:
            ErrorClass.TRANSIENT or ErrorClass.PERMANENT
        """
        if isinstance(error, TransientSyncFailure):
            return ErrorClass.TRANSIENT
        if isinstance(error, PermanentSyncFailure):
            return ErrorClass.PERMANENT

        if isinstance(error, httpx.HTTPStatusError):
            status = error.response.status_code
            if status >= 500 or status in self.TRANSIENT_STATUS_CODES:
                return ErrorClass.TRANSIENT
            return ErrorClass.PERMANENT

        if isinstance(error, self.TRANSIENT_EXCEPTIONS):
            return ErrorClass.TRANSIENT

        error_msg = str(error).lower()
        if any(
            phrase in error_msg
            for phrase in ["rate limit", "too many requests", "network"]
        ):
            return ErrorClass.TRANSIENT

        # Unknown errors are not retried blindly
        return ErrorClass.PERMANENT


@dataclass
class RetryPolicy:
    """Bounded exponential backoff.

    Defaults: 5 attempts, 1s doubling, capped at 30s, up to 10% jitter.
    """

    max_attempts: int = 5
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1

    def calculate_backoff(self, attempt: int) -> float:
        """Calculate backoff time after a given failed attempt.

        Args:
            attempt: Number of failed attempts so far (1-based)

        Returns:
            Backoff time in seconds with jitter applied
        """
        exponent = max(attempt - 1, 0)
        backoff = min(
            self.initial_backoff_seconds * (self.backoff_multiplier ** exponent),
            self.max_backoff_seconds,
        )
        jitter = backoff * self.jitter_factor * random.random()
        return backoff + jitter

    def is_exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


class RetryTimer:
    """Single pending retry on the running loop.

    Scheduling replaces any earlier pending retry.
    """

    def __init__(self) -> None:
        self._handle: Optional[asyncio.TimerHandle] = None
        self.delay: Optional[float] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None and not self._handle.cancelled()

    def schedule(self, delay: float, callback: Callable[[], None]) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self.delay = delay

        def fire() -> None:
            self._handle = None
            self.delay = None
            callback()

        self._handle = loop.call_later(delay, fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
            self.delay = None
