"""Reachability probe feeding the connectivity monitor.

A process has no ``navigator.onLine``. The probe requests a health URL at a
fixed interval: any HTTP response counts as online (the server is
reachable even if it answers 503), a transport error counts as offline.
"""

import asyncio
import logging
from typing import Optional

import httpx

from .monitor import ConnectivityMonitor

logger = logging.getLogger(__name__)


class ConnectivityProbe:
    """Polls ``health_url`` and reports the result to a monitor."""

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        health_url: str,
        interval: float = 15.0,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.monitor = monitor
        self.health_url = health_url
        self.interval = interval
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._task: Optional[asyncio.Task] = None

    async def check(self) -> bool:
        """Run one probe and publish the result."""
        try:
            await self._client.head(self.health_url)
            online = True
        except httpx.TransportError as e:
            logger.debug("Health probe failed: %s", e)
            online = False
        self.monitor.set_online(online)
        return online

    def start(self) -> None:
        """Start periodic probing on the running loop."""
        if self._task is not None and not self._task.done():
            return

        async def probe_loop():
            while True:
                await self.check()
                await asyncio.sleep(self.interval)

        self._task = asyncio.get_running_loop().create_task(probe_loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._owns_client:
            await self._client.aclose()
