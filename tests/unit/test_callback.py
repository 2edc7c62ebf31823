"""
Unit tests for debounced progress callbacks.
"""

from unittest.mock import AsyncMock

import pytest
from pymongo.errors import AutoReconnect

from kiln.constants import INITIAL_PROGRESS
from kiln.worker.callback import WorkerCallback


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestWorkerCallback:
    """Tests for the in-process worker callback."""

    @pytest.fixture
    def clock(self) -> FakeClock:
        return FakeClock()

    @pytest.fixture
    def kiln(self) -> AsyncMock:
        kiln = AsyncMock()
        kiln.progress = AsyncMock()
        return kiln

    @pytest.fixture
    def callback(self, kiln: AsyncMock, clock: FakeClock) -> WorkerCallback:
        return WorkerCallback(
            kiln,
            "65a000000000000000000001",
            "pool:1",
            reset_seconds=30,
            debounce_seconds=1.0,
            clock=clock,
        )

    @pytest.mark.asyncio
    async def test_first_call_flushes(self, callback: WorkerCallback, kiln: AsyncMock):
        """Nothing has been flushed yet, so the first line goes out at once."""
        await callback.log("started")

        kiln.progress.assert_awaited_once_with(
            "65a000000000000000000001", ["started"], INITIAL_PROGRESS, 30, "pool:1"
        )

    @pytest.mark.asyncio
    async def test_calls_within_debounce_are_buffered(
        self,
        callback: WorkerCallback,
        kiln: AsyncMock,
        clock: FakeClock,
    ):
        """A second call inside the interval only buffers."""
        await callback.log("one")
        clock.advance(0.5)
        await callback.log("two")

        assert kiln.progress.await_count == 1
        assert callback.pending_lines == ["two"]

    @pytest.mark.asyncio
    async def test_flush_after_debounce(
        self,
        callback: WorkerCallback,
        kiln: AsyncMock,
        clock: FakeClock,
    ):
        """Buffered lines and the latest progress go out once the interval passed."""
        await callback.log("one")
        clock.advance(0.5)
        await callback.progress(0.25, "two")
        clock.advance(0.6)
        await callback.progress(0.5)

        assert kiln.progress.await_count == 2
        kiln.progress.assert_awaited_with(
            "65a000000000000000000001", ["two"], 0.5, 30, "pool:1"
        )
        assert callback.pending_lines == []

    @pytest.mark.asyncio
    async def test_completion_forces_flush(
        self,
        callback: WorkerCallback,
        kiln: AsyncMock,
        clock: FakeClock,
    ):
        """Progress of 1.0 flushes regardless of the interval."""
        await callback.log("one")
        clock.advance(0.1)
        await callback.progress(1.0, "done")

        assert kiln.progress.await_count == 2
        kiln.progress.assert_awaited_with(
            "65a000000000000000000001", ["done"], 1.0, 30, "pool:1"
        )

    @pytest.mark.asyncio
    async def test_log_order_is_preserved(
        self,
        callback: WorkerCallback,
        kiln: AsyncMock,
        clock: FakeClock,
    ):
        """Lines are delivered in the order they were logged."""
        await callback.log("a")
        await callback.log("b")
        await callback.log("c")
        await callback.progress(1.0)

        sent = [line for call in kiln.progress.await_args_list for line in call.args[1]]
        assert sent == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_storage_failure_is_not_raised(
        self,
        callback: WorkerCallback,
        kiln: AsyncMock,
    ):
        """A failed heart-beat is logged; the task body keeps running."""
        kiln.progress.side_effect = AutoReconnect("connection lost")

        await callback.log("still running")

        assert callback.pending_lines == []
