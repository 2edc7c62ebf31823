"""
Unit tests for the worker pool.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from kiln.constants import TaskStatus
from kiln.exceptions import DistributorClosedError
from kiln.tasks.base import Task
from kiln.tasks.builtin import AddingTask, FailingTask
from kiln.worker.main import WorkerPool


def submitted(task: Task, task_id: str) -> Task:
    task.id = task_id
    return task


class FakeDistributor:
    """Hands out fixed tasks, then either closes or blocks."""

    def __init__(self, tasks: list[Task], block_when_empty: bool = False):
        self._tasks = list(tasks)
        self._block = block_when_empty
        self.workers: list[str] = []

    async def get(self, worker: str) -> Task:
        self.workers.append(worker)
        if self._tasks:
            return self._tasks.pop(0)
        if self._block:
            await asyncio.Event().wait()
        raise DistributorClosedError("closed")


class TestWorkerPool:
    """Tests for executing and acknowledging tasks."""

    def make_pool(
        self,
        fake_kiln: MagicMock,
        distributor: FakeDistributor,
        parallelism: int = 1,
    ) -> WorkerPool:
        fake_kiln.get_distributor.return_value = distributor
        return WorkerPool(fake_kiln, parallelism=parallelism, name="pool", task_types=["adding"])

    @pytest.mark.asyncio
    async def test_successful_task_is_completed(self, fake_kiln: MagicMock):
        """A body that returns is acknowledged COMPLETED with its mutated fields."""
        task = submitted(AddingTask(a=2, b=3), "65a000000000000000000001")
        pool = self.make_pool(fake_kiln, FakeDistributor([task]))

        await pool.start()
        await asyncio.wait_for(pool.wait(), timeout=1)

        fake_kiln.completed.assert_awaited_once_with(task, TaskStatus.COMPLETED)
        assert task.c == 5.0

    @pytest.mark.asyncio
    async def test_final_progress_is_flushed(self, fake_kiln: MagicMock):
        """The last heart-beat reports progress 1.0 before the ack."""
        task = submitted(AddingTask(a=2, b=3), "65a000000000000000000001")
        pool = self.make_pool(fake_kiln, FakeDistributor([task]))

        await pool.start()
        await asyncio.wait_for(pool.wait(), timeout=1)

        task_id, lines, progress, reset_seconds, worker = fake_kiln.progress.await_args.args
        assert task_id == "65a000000000000000000001"
        assert progress == 1.0
        assert reset_seconds == fake_kiln.settings.worker_lease_seconds
        assert worker == "pool:1"

    @pytest.mark.asyncio
    async def test_failing_task_is_failed(self, fake_kiln: MagicMock):
        """A body that raises is acknowledged FAILED with the error logged."""
        task = submitted(FailingTask(message="boom"), "65a000000000000000000002")
        pool = self.make_pool(fake_kiln, FakeDistributor([task]))

        await pool.start()
        await asyncio.wait_for(pool.wait(), timeout=1)

        fake_kiln.completed.assert_awaited_once_with(task, TaskStatus.FAILED)
        logged = [line for call in fake_kiln.progress.await_args_list for line in call.args[1]]
        assert "RuntimeError: boom" in logged

    @pytest.mark.asyncio
    async def test_ack_failure_does_not_stop_runner(self, fake_kiln: MagicMock):
        """An error while acknowledging is logged and the runner moves on."""
        first = submitted(AddingTask(a=1, b=1), "65a000000000000000000001")
        second = submitted(AddingTask(a=2, b=2), "65a000000000000000000002")
        fake_kiln.completed.side_effect = [RuntimeError("storage down"), None]
        pool = self.make_pool(fake_kiln, FakeDistributor([first, second]))

        await pool.start()
        await asyncio.wait_for(pool.wait(), timeout=1)

        assert fake_kiln.completed.await_count == 2

    @pytest.mark.asyncio
    async def test_runner_names(self, fake_kiln: MagicMock):
        """Runners are named after the pool and numbered from one."""
        distributor = FakeDistributor([])
        pool = self.make_pool(fake_kiln, distributor, parallelism=3)

        await pool.start()
        await asyncio.wait_for(pool.wait(), timeout=1)

        assert pool.runner_names == ["pool:1", "pool:2", "pool:3"]
        assert sorted(distributor.workers) == ["pool:1", "pool:2", "pool:3"]

    @pytest.mark.asyncio
    async def test_stop_cancels_idle_runners(self, fake_kiln: MagicMock):
        """Stopping returns promptly when every runner is waiting for work."""
        pool = self.make_pool(fake_kiln, FakeDistributor([], block_when_empty=True), parallelism=2)

        await pool.start()
        await asyncio.sleep(0.01)
        await asyncio.wait_for(pool.stop(), timeout=1)

        assert pool.busy_runners == set()
        fake_kiln.completed.assert_not_awaited()

    def test_distributor_requested_for_task_types(self, fake_kiln: MagicMock):
        """The pool asks the façade for a distributor of its types."""
        self.make_pool(fake_kiln, FakeDistributor([]), parallelism=2)

        names, = fake_kiln.get_distributor.call_args.args
        assert names == ["adding"]
