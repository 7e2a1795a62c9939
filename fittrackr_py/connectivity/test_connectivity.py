"""Tests for the connectivity monitor and probe."""

import asyncio

import httpx
import pytest

from .monitor import ConnectivityMonitor, ConnectivityState
from .probe import ConnectivityProbe


class TestConnectivityMonitor:
    def test_initial_state(self):
        monitor = ConnectivityMonitor(initially_online=False)
        assert monitor.state == ConnectivityState(is_online=False, is_syncing=False)
        assert monitor.state.is_offline

    def test_only_transitions_are_published(self):
        monitor = ConnectivityMonitor(initially_online=True)
        seen = []
        monitor.subscribe(lambda prev, cur: seen.append((prev.is_online, cur.is_online)))

        monitor.set_online(True)
        monitor.set_online(False)
        monitor.set_online(False)
        monitor.set_online(True)

        assert seen == [(True, False), (False, True)]

    def test_on_online_fires_only_when_coming_online(self):
        monitor = ConnectivityMonitor(initially_online=True)
        calls = []
        monitor.on_online(lambda: calls.append("online"))

        monitor.set_online(False)
        assert calls == []

        monitor.set_online(True)
        assert calls == ["online"]

    def test_syncing_flag(self):
        monitor = ConnectivityMonitor()
        seen = []
        monitor.subscribe(lambda prev, cur: seen.append(cur))

        monitor.set_syncing(True)
        monitor.set_syncing(True)
        assert monitor.state.is_syncing
        assert len(seen) == 1

        # Going offline clears the syncing indicator
        monitor.set_online(False)
        assert not monitor.state.is_syncing

    def test_listener_failure_does_not_break_monitor(self):
        monitor = ConnectivityMonitor()
        seen = []

        def broken(prev, cur):
            raise RuntimeError("boom")

        monitor.subscribe(broken)
        monitor.subscribe(lambda prev, cur: seen.append(cur.is_online))

        monitor.set_online(False)
        assert seen == [False]
        assert not monitor.is_online

    def test_unsubscribe_and_close(self):
        monitor = ConnectivityMonitor()
        seen = []
        unsubscribe = monitor.subscribe(lambda prev, cur: seen.append(1))
        unsubscribe()
        monitor.set_online(False)
        assert seen == []

        monitor.subscribe(lambda prev, cur: seen.append(2))
        monitor.close()
        monitor.set_online(True)
        assert seen == []


class TestConnectivityProbe:
    @pytest.mark.asyncio
    async def test_any_response_means_online(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        monitor = ConnectivityMonitor(initially_online=False)
        async with httpx.AsyncClient(transport=transport) as client:
            probe = ConnectivityProbe(monitor, "http://api.test/health", client=client)
            assert await probe.check() is True
        assert monitor.is_online

    @pytest.mark.asyncio
    async def test_transport_error_means_offline(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        transport = httpx.MockTransport(handler)
        monitor = ConnectivityMonitor(initially_online=True)
        async with httpx.AsyncClient(transport=transport) as client:
            probe = ConnectivityProbe(monitor, "http://api.test/health", client=client)
            assert await probe.check() is False
        assert not monitor.is_online

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200)

        monitor = ConnectivityMonitor(initially_online=False)
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        probe = ConnectivityProbe(monitor, "http://api.test/health", interval=0.01, client=client)

        probe.start()
        await asyncio.sleep(0.05)
        await probe.stop()
        await client.aclose()

        assert len(requests) >= 1
        assert monitor.is_online
