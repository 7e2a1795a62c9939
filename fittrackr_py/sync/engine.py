"""
Sync Engine

Drains the mutation queue against the remote store:
1. Take the oldest batch of pending mutations
2. Deliver each one in FIFO order, tagged with its idempotency token
3. Remove it on success, or classify the failure:
   - transient: record the attempt, stop the cycle, retry with backoff
   - permanent: mark terminal, surface to the user, continue
4. Repeat until the queue has nothing pending or the cycle stops

Only one drain cycle runs at a time. Triggers that arrive while a cycle is
running are coalesced into a single follow-up cycle. A cycle is never
cancelled mid-request.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

import httpx

from ..connectivity.monitor import ConnectivityMonitor, ConnectivityState
from ..errors import StorageFailure
from ..logs import EventType, NDJSONLogger
from ..mutations.models import QueuedMutation
from ..mutations.queue import MutationQueue
from .remote import RemoteStore
from .retry import ErrorClass, ErrorClassifier, RetryPolicy, RetryTimer

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    """Engine state between and during drain cycles."""
    IDLE = "idle"
    DRAINING = "draining"


class DrainOutcome(str, Enum):
    """How a drain cycle ended."""
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    OFFLINE = "offline"


class SyncTrigger(str, Enum):
    """What started a drain cycle."""
    CONNECTIVITY = "connectivity"
    MANUAL = "manual"
    PERIODIC = "periodic"
    RETRY = "retry"
    STARTUP = "startup"
    ENQUEUE = "enqueue"


@dataclass
class DeliveryFailure:
    """One failed delivery within a cycle."""
    mutation_id: str
    error: str
    error_class: ErrorClass
    attempts: int
    terminal: bool


@dataclass
class DrainResult:
    """Outcome of one drain cycle."""
    trigger: SyncTrigger
    outcome: DrainOutcome = DrainOutcome.SUCCESS
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    succeeded: List[str] = field(default_factory=list)
    failures: List[DeliveryFailure] = field(default_factory=list)
    remaining: int = 0
    retry_in: Optional[float] = None

    @property
    def terminal(self) -> List[str]:
        return [f.mutation_id for f in self.failures if f.terminal]


DrainListener = Callable[[DrainResult], None]


class SyncEngine:
    """Delivers queued mutations to the remote store."""

    def __init__(
        self,
        queue: MutationQueue,
        monitor: ConnectivityMonitor,
        remote: RemoteStore,
        policy: Optional[RetryPolicy] = None,
        classifier: Optional[ErrorClassifier] = None,
        batch_size: int = 20,
        periodic_interval: Optional[float] = None,
        journal: Optional[NDJSONLogger] = None,
    ):
        self.queue = queue
        self.monitor = monitor
        self.remote = remote
        self.policy = policy or RetryPolicy()
        self.classifier = classifier or ErrorClassifier()
        self.batch_size = batch_size
        self.periodic_interval = periodic_interval
        self.journal = journal

        self.last_result: Optional[DrainResult] = None
        self._state = SyncState.IDLE
        self._cycle_task: Optional[asyncio.Task] = None
        self._rerun_trigger: Optional[SyncTrigger] = None
        self._retry = RetryTimer()
        self._periodic_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._listeners: List[DrainListener] = []
        self._closed = False

    # ── Lifecycle ───────────────────────────────────────────────────────

    def start(self) -> None:
        """Listen for connectivity changes and drain anything left over."""
        self._closed = False
        if self._unsubscribe is None:
            self._unsubscribe = self.monitor.subscribe(self._on_connectivity)

        if self.periodic_interval and self._periodic_task is None:
            self._periodic_task = asyncio.get_running_loop().create_task(self._periodic_loop())

        if self.monitor.is_online and self.queue.pending():
            self.request_sync(SyncTrigger.STARTUP)

    async def shutdown(self) -> None:
        """Stop timers and listeners, letting an in-flight cycle finish."""
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._retry.cancel()
        if self._periodic_task is not None:
            self._periodic_task.cancel()
            try:
                await self._periodic_task
            except asyncio.CancelledError:
                pass
            self._periodic_task = None
        self._rerun_trigger = None
        if self._cycle_task is not None and not self._cycle_task.done():
            await self._cycle_task
        self._listeners.clear()

    # ── Public API ──────────────────────────────────────────────────────

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def retry_pending(self) -> bool:
        return self._retry.pending

    def subscribe(self, listener: DrainListener) -> Callable[[], None]:
        """Receive every ``DrainResult``."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def request_sync(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> "asyncio.Task[DrainResult]":
        """Start a drain cycle, or coalesce into the running one.

        Returns the task of the cycle that will cover this request.
        """
        if self._closed:
            raise RuntimeError("Sync engine is shut down")
        if self._cycle_task is not None and not self._cycle_task.done():
            logger.debug("Drain in progress, queued follow-up (%s)", trigger.value)
            self._rerun_trigger = trigger
            return self._cycle_task

        self._cycle_task = asyncio.get_running_loop().create_task(self._run_cycles(trigger))
        return self._cycle_task

    async def sync(self) -> DrainResult:
        """Manual "sync now"."""
        return await self.request_sync(SyncTrigger.MANUAL)

    async def wait_idle(self) -> Optional[DrainResult]:
        """Wait until no drain cycle is running."""
        while self._cycle_task is not None and not self._cycle_task.done():
            await self._cycle_task
        return self.last_result

    def failed_mutations(self) -> List[QueuedMutation]:
        """Mutations that need manual resolution."""
        return self.queue.failed()

    def pending_count(self) -> int:
        return len(self.queue.pending())

    # ── Triggers ────────────────────────────────────────────────────────

    def _on_connectivity(self, previous: ConnectivityState, current: ConnectivityState) -> None:
        if current.is_online and not previous.is_online:
            self._retry.cancel()
            self._request_from_callback(SyncTrigger.CONNECTIVITY)
        elif previous.is_online and not current.is_online:
            # Reconnection triggers the next attempt
            self._retry.cancel()

    def _request_from_callback(self, trigger: SyncTrigger) -> None:
        try:
            self.request_sync(trigger)
        except RuntimeError:
            logger.debug("No running event loop, %s drain deferred", trigger.value)

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self.periodic_interval)
            if self.monitor.is_online and not self._retry.pending:
                self.request_sync(SyncTrigger.PERIODIC)

    # ── Drain cycle ─────────────────────────────────────────────────────

    async def _run_cycles(self, trigger: SyncTrigger) -> DrainResult:
        try:
            result = await self._drain_cycle(trigger)
            while self._rerun_trigger is not None:
                trigger, self._rerun_trigger = self._rerun_trigger, None
                if result.retry_in is not None:
                    logger.debug("Dropping follow-up (%s), retry already scheduled", trigger.value)
                    break
                result = await self._drain_cycle(trigger)
        finally:
            self._state = SyncState.IDLE
            self.monitor.set_syncing(False)
        return result

    async def _drain_cycle(self, trigger: SyncTrigger) -> DrainResult:
        result = DrainResult(trigger=trigger)

        if not self.monitor.is_online:
            result.outcome = DrainOutcome.OFFLINE
            result.remaining = self._safe_pending_count()
            return self._finish(result)

        self._state = SyncState.DRAINING
        self.monitor.set_syncing(True)
        if self.journal:
            self.journal.log(EventType.SYNC_START, {"trigger": trigger.value})
        logger.info("Drain cycle started (%s)", trigger.value)

        retry_after_attempts: Optional[int] = None
        try:
            stalled = False
            while not stalled:
                batch = self.queue.peek_batch(self.batch_size)
                if not batch:
                    break
                for mutation in batch:
                    if not self.monitor.is_online:
                        logger.info("Went offline during drain, stopping")
                        stalled = True
                        break
                    attempts = await self._deliver(mutation, result)
                    if attempts is not None:
                        retry_after_attempts = attempts
                        stalled = True
                        break
        except Exception as e:
            logger.exception("Drain cycle aborted")
            if self.journal:
                self.journal.error("drain cycle aborted", {"error": str(e)})

        result.remaining = self._safe_pending_count()
        if result.failures or result.remaining:
            result.outcome = DrainOutcome.PARTIAL_FAILURE

        if retry_after_attempts is not None and result.remaining and self.monitor.is_online and not self._closed:
            result.retry_in = self._schedule_retry(retry_after_attempts)

        return self._finish(result)

    async def _deliver(self, mutation: QueuedMutation, result: DrainResult) -> Optional[int]:
        """Deliver one mutation.

        Returns None to continue the cycle, or the attempt count of a
        transient failure that must stop it.
        """
        try:
            await self.remote.apply_mutation(
                mutation.id,
                mutation.kind,
                mutation.entity_type,
                mutation.entity_id,
                mutation.payload,
            )
        except Exception as e:
            return self._handle_failure(mutation, e, result)

        self._record(lambda: self.queue.mark_succeeded(mutation.id))
        result.succeeded.append(mutation.id)
        if self.journal:
            self.journal.log(EventType.MUTATION_SENT, {"entity_type": mutation.entity_type}, mutation_id=mutation.id)
        return None

    def _handle_failure(self, mutation: QueuedMutation, error: Exception, result: DrainResult) -> Optional[int]:
        error_class = self.classifier.classify(error)
        message = self._describe(error)
        permanent = error_class == ErrorClass.PERMANENT

        updated = self._record(lambda: self.queue.mark_failed(mutation.id, message, terminal=permanent))
        if updated is None:
            updated = self.queue.get(mutation.id)
        attempts = updated.attempts if updated is not None else mutation.attempts + 1

        exhausted = not permanent and self.policy.is_exhausted(attempts)
        if exhausted:
            self._record(lambda: self.queue.mark_terminal(mutation.id))

        terminal = permanent or exhausted
        result.failures.append(DeliveryFailure(
            mutation_id=mutation.id,
            error=message,
            error_class=error_class,
            attempts=attempts,
            terminal=terminal,
        ))
        if self.journal:
            self.journal.mutation_failed(mutation.id, message, attempts, terminal)

        if permanent:
            logger.warning("Mutation %s rejected permanently: %s", mutation.id, message)
            return None
        if exhausted:
            logger.warning("Mutation %s gave up after %d attempts: %s", mutation.id, attempts, message)
            return None
        logger.info("Mutation %s failed (attempt %d): %s", mutation.id, attempts, message)
        return attempts

    def _schedule_retry(self, attempts: int) -> float:
        delay = self.policy.calculate_backoff(attempts)
        self._retry.schedule(delay, lambda: self._request_from_callback(SyncTrigger.RETRY))
        if self.journal:
            self.journal.log(EventType.RETRY_SCHEDULED, {"delay": delay, "attempts": attempts})
        logger.info("Retry scheduled in %.1fs", delay)
        return delay

    def _finish(self, result: DrainResult) -> DrainResult:
        result.finished_at = datetime.now(timezone.utc)
        self.last_result = result
        if self.journal and result.outcome != DrainOutcome.OFFLINE:
            self.journal.log(EventType.SYNC_END, {
                "outcome": result.outcome.value,
                "succeeded": len(result.succeeded),
                "failed": len(result.failures),
                "remaining": result.remaining,
            })
        logger.info(
            "Drain cycle %s: %d sent, %d failed, %d remaining",
            result.outcome.value, len(result.succeeded), len(result.failures), result.remaining,
        )
        for listener in list(self._listeners):
            try:
                listener(result)
            except Exception:
                logger.exception("Drain listener failed")
        return result

    # ── Helpers ─────────────────────────────────────────────────────────

    def _record(self, fn):
        """Run a queue update; storage failures leave it in memory only."""
        try:
            return fn()
        except StorageFailure as e:
            logger.error("Queue update kept in memory only: %s", e)
            return None

    def _safe_pending_count(self) -> int:
        try:
            return self.pending_count()
        except StorageFailure:
            return len(self.queue)

    @staticmethod
    def _describe(error: Exception) -> str:
        if isinstance(error, httpx.HTTPStatusError):
            body = error.response.text[:200] if error.response.text else ""
            return f"HTTP {error.response.status_code}: {body}".rstrip(": ")
        return f"{type(error).__name__}: {error}"
