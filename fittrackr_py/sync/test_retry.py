"""Tests for failure classification and backoff."""

import asyncio

import httpx
import pytest

from ..errors import PermanentSyncFailure, TransientSyncFailure
from .retry import ErrorClass, ErrorClassifier, RetryPolicy, RetryTimer


def status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.example.test/mutations")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError(f"HTTP {code}", request=request, response=response)


class TestErrorClassifier:
    @pytest.mark.parametrize("code", [408, 425, 429, 500, 502, 503, 504])
    def test_transient_status_codes(self, code):
        assert ErrorClassifier().classify(status_error(code)) == ErrorClass.TRANSIENT

    @pytest.mark.parametrize("code", [400, 401, 403, 404, 409, 422])
    def test_permanent_status_codes(self, code):
        assert ErrorClassifier().classify(status_error(code)) == ErrorClass.PERMANENT

    def test_network_exceptions_are_transient(self):
        classifier = ErrorClassifier()
        assert classifier.classify(httpx.ConnectError("refused")) == ErrorClass.TRANSIENT
        assert classifier.classify(httpx.ReadTimeout("slow")) == ErrorClass.TRANSIENT
        assert classifier.classify(TimeoutError()) == ErrorClass.TRANSIENT
        assert classifier.classify(ConnectionResetError()) == ErrorClass.TRANSIENT

    def test_own_failure_types(self):
        classifier = ErrorClassifier()
        assert classifier.classify(TransientSyncFailure("down")) == ErrorClass.TRANSIENT
        assert classifier.classify(PermanentSyncFailure("gone", status_code=410)) == ErrorClass.PERMANENT

    def test_message_hints(self):
        assert ErrorClassifier().classify(RuntimeError("Rate limit hit")) == ErrorClass.TRANSIENT

    def test_unknown_errors_are_permanent(self):
        assert ErrorClassifier().classify(KeyError("x")) == ErrorClass.PERMANENT


class TestRetryPolicy:
    def test_backoff_doubles_and_caps(self):
        policy = RetryPolicy(jitter_factor=0.0)

        delays = [policy.calculate_backoff(n) for n in range(1, 8)]

        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]

    def test_jitter_stays_within_factor(self):
        policy = RetryPolicy(initial_backoff_seconds=10.0, jitter_factor=0.1)

        for _ in range(50):
            delay = policy.calculate_backoff(1)
            assert 10.0 <= delay <= 11.0

    def test_exhaustion(self):
        policy = RetryPolicy(max_attempts=3)
        assert not policy.is_exhausted(2)
        assert policy.is_exhausted(3)


class TestRetryTimer:
    @pytest.mark.asyncio
    async def test_fires_once(self):
        timer = RetryTimer()
        fired = []

        timer.schedule(0.01, lambda: fired.append(True))
        assert timer.pending
        await asyncio.sleep(0.05)

        assert fired == [True]
        assert not timer.pending

    @pytest.mark.asyncio
    async def test_reschedule_replaces_previous(self):
        timer = RetryTimer()
        fired = []

        timer.schedule(0.01, lambda: fired.append("first"))
        timer.schedule(0.02, lambda: fired.append("second"))
        await asyncio.sleep(0.05)

        assert fired == ["second"]

    @pytest.mark.asyncio
    async def test_cancel(self):
        timer = RetryTimer()
        fired = []

        timer.schedule(0.01, lambda: fired.append(True))
        timer.cancel()
        await asyncio.sleep(0.03)

        assert fired == []
        assert timer.delay is None
