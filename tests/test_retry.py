"""Tests for RetryPolicy, attempts_for and cancellable pauses."""

import asyncio
import time

import pytest

from operator_cluster.exceptions import OrchestrationCancelled
from operator_cluster.retry import RetryPolicy, attempts_for, check_cancelled, pause


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()

        assert policy.max_attempts == 10
        assert policy.backoff_seconds == 1.0

    def test_attempts_are_one_based(self):
        assert list(RetryPolicy(max_attempts=3).attempts()) == [1, 2, 3]

    def test_should_retry(self):
        policy = RetryPolicy(max_attempts=3)

        assert policy.should_retry(1) is True
        assert policy.should_retry(2) is True
        assert policy.should_retry(3) is False

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError, match="max_attempts"):
            RetryPolicy(max_attempts=0)

    def test_rejects_negative_backoff(self):
        with pytest.raises(ValueError, match="backoff_seconds"):
            RetryPolicy(backoff_seconds=-1)


class TestAttemptsFor:
    @pytest.mark.parametrize(
        "timeout,interval,expected",
        [(30, 1, 30), (10, 3, 4), (0.5, 1, 1), (0, 1, 1)],
    )
    def test_attempts(self, timeout, interval, expected):
        assert attempts_for(timeout, interval) == expected

    def test_rejects_zero_interval(self):
        with pytest.raises(ValueError, match="interval"):
            attempts_for(10, 0)


class TestPause:
    def test_check_cancelled(self):
        event = asyncio.Event()
        check_cancelled(event)
        check_cancelled(None)

        event.set()
        with pytest.raises(OrchestrationCancelled):
            check_cancelled(event)

    @pytest.mark.asyncio
    async def test_pause_without_event_sleeps(self):
        start = time.monotonic()

        await pause(0.05)

        assert time.monotonic() - start >= 0.04

    @pytest.mark.asyncio
    async def test_pause_elapses_without_cancellation(self):
        await pause(0.01, asyncio.Event())

    @pytest.mark.asyncio
    async def test_pause_raises_if_already_cancelled(self):
        event = asyncio.Event()
        event.set()

        with pytest.raises(OrchestrationCancelled):
            await pause(10, event)

    @pytest.mark.asyncio
    async def test_pause_wakes_early_on_cancel(self):
        """A long pause ends as soon as cancellation is signalled."""
        event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, event.set)
        start = time.monotonic()

        with pytest.raises(OrchestrationCancelled):
            await pause(10, event)

        assert time.monotonic() - start < 1.0
