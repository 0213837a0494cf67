"""Tests for the cancellation token."""

import asyncio

import pytest

from llmloop.cancellation import CancellationToken
from llmloop.exceptions import RunCancelledError


class TestCancellationToken:
    def test_cancel_is_idempotent(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.is_cancelled
        assert token.reason == "first"

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel("stop")
        with pytest.raises(RunCancelledError, match="stop"):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_race_returns_result(self):
        async def work():
            return 42

        assert await CancellationToken().race(work()) == 42

    @pytest.mark.asyncio
    async def test_race_timeout(self):
        with pytest.raises(asyncio.TimeoutError):
            await CancellationToken().race(asyncio.sleep(10), timeout=0.01)

    @pytest.mark.asyncio
    async def test_race_cancelled_midway(self):
        token = CancellationToken()
        finished = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(10)
            finally:
                finished.set()

        asyncio.get_running_loop().call_later(0.01, token.cancel, "user abort")
        with pytest.raises(RunCancelledError, match="user abort"):
            await token.race(slow())
        assert finished.is_set()

    @pytest.mark.asyncio
    async def test_race_after_cancel_does_not_start_work(self):
        token = CancellationToken()
        token.cancel()
        started = []

        async def work():
            started.append(True)

        with pytest.raises(RunCancelledError):
            await token.race(work())
        assert started == []

    @pytest.mark.asyncio
    async def test_race_propagates_exceptions(self):
        async def boom():
            raise ValueError("bad")

        with pytest.raises(ValueError, match="bad"):
            await CancellationToken().race(boom())
