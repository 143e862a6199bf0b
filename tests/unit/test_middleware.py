"""
Tests for disconnect-aware request work.
"""

import asyncio
import time

import pytest

from core.middleware import ClientDisconnected, run_cancellable


class FakeRequest:
    """Stands in for a Starlette request; flip ``disconnected`` to hang up."""

    def __init__(self):
        self.disconnected = False
        self.polls = 0

    async def is_disconnected(self) -> bool:
        self.polls += 1
        return self.disconnected


class Work:
    """Long-running work that records when it is cancelled."""

    def __init__(self, duration: float = 10.0, result=None):
        self.duration = duration
        self.result = result
        self.started = asyncio.Event()
        self.cancelled = asyncio.Event()
        self.cancelled_at = None

    async def __call__(self):
        self.started.set()
        try:
            await asyncio.sleep(self.duration)
        except asyncio.CancelledError:
            self.cancelled_at = time.perf_counter()
            self.cancelled.set()
            raise
        return self.result


class TestRunCancellable:
    async def test_returns_result(self):
        request = FakeRequest()
        work = Work(duration=0.03, result={"items": [1, 2]})

        result = await run_cancellable(request, work(), poll_interval=0.01)

        assert result == {"items": [1, 2]}
        assert request.polls >= 1
        assert not work.cancelled.is_set()

    async def test_work_errors_propagate(self):
        async def failing():
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            await run_cancellable(FakeRequest(), failing())

    async def test_disconnect_cancels_work_promptly(self):
        request = FakeRequest()
        work = Work()

        async def hang_up():
            await work.started.wait()
            await asyncio.sleep(0.02)
            request.disconnected = True
            return time.perf_counter()

        hang_up_task = asyncio.ensure_future(hang_up())

        with pytest.raises(ClientDisconnected):
            await run_cancellable(request, work())
        hung_up_at = await hang_up_task
        await asyncio.wait_for(work.cancelled.wait(), timeout=0.1)

        assert work.cancelled_at - hung_up_at < 0.1

    async def test_outer_cancellation_reaches_work(self):
        work = Work()
        outer = asyncio.ensure_future(run_cancellable(FakeRequest(), work()))
        await work.started.wait()

        outer.cancel()

        with pytest.raises(asyncio.CancelledError):
            await outer
        await asyncio.wait_for(work.cancelled.wait(), timeout=0.1)
