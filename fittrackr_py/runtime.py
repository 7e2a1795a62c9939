"""
Resilience Runtime

Builds every component from a ``ResilienceConfig`` and wires them:

    storage ─┬─ MutationQueue ── SyncEngine ── RemoteStore
             ├─ CheckpointStore ── ActiveSessionLocator
             └─ device id
    ConnectivityProbe ── ConnectivityMonitor ── SyncEngine

``start()`` subscribes listeners and starts the background tasks;
``shutdown()`` removes them again.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .checkpoint import ActiveSessionLocator, CheckpointStore
from .config import ResilienceConfig
from .connectivity import ConnectivityMonitor, ConnectivityProbe, ConnectivityState
from .errors import StorageFailure
from .logs import EventType, NDJSONLogger, create_logger
from .mutations import MutationQueue, QueuedMutation
from .session import WorkoutSession
from .storage import DurableStorage, SqliteStorage, namespaced
from .sync import HttpRemoteStore, RemoteStore, RetryPolicy, SyncEngine, SyncTrigger

logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "device-id"


class ResilienceRuntime:
    """Owns the resilience layer for one tab or process."""

    def __init__(
        self,
        config: Optional[ResilienceConfig] = None,
        storage: Optional[DurableStorage] = None,
        remote: Optional[RemoteStore] = None,
        monitor: Optional[ConnectivityMonitor] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or ResilienceConfig.from_env()
        cfg = self.config

        self.storage = storage if storage is not None else SqliteStorage(cfg.db_path)
        self._owns_storage = storage is None
        self.device_id = self._load_device_id()

        self.journal: Optional[NDJSONLogger] = None
        if cfg.journal_enabled:
            self.journal = create_logger(self.device_id, cfg.log_dir)

        self.monitor = monitor or ConnectivityMonitor()
        self.probe: Optional[ConnectivityProbe] = None
        if cfg.health_url:
            self.probe = ConnectivityProbe(
                self.monitor, cfg.health_url, interval=cfg.probe_interval, timeout=cfg.request_timeout
            )

        self._owns_remote = remote is None and cfg.remote_url is not None
        if remote is None and cfg.remote_url:
            remote = HttpRemoteStore(cfg.remote_url, auth_token=cfg.auth_token, timeout=cfg.request_timeout)
        self.remote = remote

        self.clock = clock
        self.queue = MutationQueue(self.storage, cfg.namespace, journal=self.journal)
        self.checkpoints = CheckpointStore(
            self.storage,
            cfg.namespace,
            clock=clock,
            max_age=timedelta(hours=cfg.checkpoint_max_age_hours),
            journal=self.journal,
        )
        self.locator = ActiveSessionLocator(self.checkpoints, self.storage, poll_interval=cfg.locator_interval)

        self.engine: Optional[SyncEngine] = None
        if self.remote is not None:
            self.engine = SyncEngine(
                self.queue,
                self.monitor,
                self.remote,
                policy=RetryPolicy(
                    max_attempts=cfg.max_attempts,
                    initial_backoff_seconds=cfg.initial_backoff_seconds,
                    max_backoff_seconds=cfg.max_backoff_seconds,
                    backoff_multiplier=cfg.backoff_multiplier,
                    jitter_factor=cfg.jitter_factor,
                ),
                batch_size=cfg.batch_size,
                periodic_interval=cfg.periodic_sync_interval,
                journal=self.journal,
            )

        self.started = False
        self._watch_task: Optional[asyncio.Task] = None
        self._unsubscribers: List[Callable[[], None]] = []

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def start(self) -> None:
        if self.started:
            return
        self._unsubscribers.append(self.monitor.subscribe(self._on_connectivity))

        if self.probe is not None:
            await self.probe.check()
            self.probe.start()

        self.locator.start()
        if isinstance(self.storage, SqliteStorage):
            self._watch_task = asyncio.get_running_loop().create_task(self._watch_storage())
        if self.engine is not None:
            self.engine.start()

        self.started = True
        logger.info("Runtime started for device %s", self.device_id)

    async def shutdown(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        if self.engine is not None:
            await self.engine.shutdown()
        if self.probe is not None:
            await self.probe.stop()
        await self.locator.stop()
        if self._watch_task is not None:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None

        if self._owns_remote and isinstance(self.remote, HttpRemoteStore):
            await self.remote.aclose()
        if self.journal is not None:
            self.journal.close()
        if self._owns_storage and isinstance(self.storage, SqliteStorage):
            self.storage.close()

        self.started = False
        logger.info("Runtime stopped")

    async def __aenter__(self) -> "ResilienceRuntime":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    # ── Public API ──────────────────────────────────────────────────────

    def new_session(self, routine_id: Optional[str] = None, fresh: bool = False) -> WorkoutSession:
        """Start or resume a workout."""
        session = WorkoutSession(
            self.checkpoints,
            self.queue,
            routine_id=routine_id,
            history_limit=self.config.history_limit,
            clock=self.clock,
            journal=self.journal,
            on_finished=self._flush_soon,
        )
        session.start(fresh=fresh)
        self.locator.refresh()
        return session

    async def sync(self):
        """Manual "sync now"."""
        if self.engine is None:
            raise RuntimeError("No remote store configured (set FITTRACKR_REMOTE_URL)")
        return await self.engine.sync()

    def status(self) -> Dict[str, Any]:
        state = self.monitor.state
        active = self.locator.refresh()
        return {
            "device_id": self.device_id,
            "online": state.is_online,
            "syncing": state.is_syncing,
            "pending": len(self.queue.pending()),
            "failed": len(self.queue.failed()),
            "degraded": self.queue.is_degraded,
            "active_session": active,
        }

    # ── Internals ───────────────────────────────────────────────────────

    def _load_device_id(self) -> str:
        key = namespaced(self.config.namespace, DEVICE_ID_KEY)
        try:
            device_id = self.storage.get(key)
            if not device_id:
                device_id = uuid.uuid4().hex[:12]
                self.storage.set(key, device_id)
        except StorageFailure as e:
            device_id = f"ephemeral-{uuid.uuid4().hex[:8]}"
            logger.warning("Device id not persisted, using %s: %s", device_id, e)
        return device_id

    def _on_connectivity(self, previous: ConnectivityState, current: ConnectivityState) -> None:
        if self.journal and previous.is_online != current.is_online:
            self.journal.log(EventType.CONNECTIVITY_CHANGE, {"online": current.is_online})

    def _flush_soon(self, mutations: List[QueuedMutation]) -> None:
        if self.engine is None or not self.monitor.is_online:
            return
        try:
            self.engine.request_sync(SyncTrigger.ENQUEUE)
        except RuntimeError:
            logger.debug("No running event loop, %d mutations wait for the next drain", len(mutations))

    async def _watch_storage(self) -> None:
        """Deliver writes made by other processes as change notifications."""
        while True:
            await asyncio.sleep(self.config.storage_poll_interval)
            try:
                self.storage.poll_changes()
            except StorageFailure as e:
                logger.warning("Storage change poll failed: %s", e)
