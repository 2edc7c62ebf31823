"""
Unit tests for task graph submission.
"""

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

from kiln.constants import TaskStatus
from kiln.dag import TaskDAG
from kiln.exceptions import TaskNotFoundError
from kiln.tasks.builtin import AddingTask, EchoTask
from kiln.types.task import IdAndStatus, TaskMeta

NOW = datetime(2024, 1, 1, tzinfo=UTC)


def meta(task_id: str, status: TaskStatus) -> TaskMeta:
    return TaskMeta(
        id=task_id,
        type="adding",
        status=status,
        created=NOW,
        earliest_get=NOW,
        reset_timestamp=NOW,
        priority=0.0,
        progress=0.0,
        attempt=0,
    )


class TestTaskDAG:
    """Tests for depth-first graph submission."""

    @pytest.fixture
    def kiln(self, fake_kiln: MagicMock) -> MagicMock:
        ids = iter(f"id-{i}" for i in range(1, 100))

        async def submit(task, delay_ms=0, parents=None, priority=0.0):
            task.id = next(ids)
            return task.id

        fake_kiln.submit.side_effect = submit
        return fake_kiln

    def submissions(self, kiln: MagicMock) -> list[tuple[str, list[str]]]:
        return [
            (call.args[0].id, call.kwargs["parents"]) for call in kiln.submit.await_args_list
        ]

    @pytest.mark.asyncio
    async def test_single_node(self, kiln: MagicMock):
        """A node without parents is submitted QUEUED."""
        result = await TaskDAG.create(kiln, AddingTask(a=1, b=2)).submit()

        assert result == IdAndStatus("id-1", TaskStatus.QUEUED)
        assert self.submissions(kiln) == [("id-1", [])]

    @pytest.mark.asyncio
    async def test_parents_submitted_first(self, kiln: MagicMock):
        """Parents are submitted before the child, which is blocked on them."""
        dag = TaskDAG.create(kiln, EchoTask(message="child")).after(
            AddingTask(a=1, b=2),
            AddingTask(a=3, b=4),
        )

        result = await dag.submit()

        assert result == IdAndStatus("id-3", TaskStatus.BLOCKED)
        assert self.submissions(kiln) == [
            ("id-1", []),
            ("id-2", []),
            ("id-3", ["id-1", "id-2"]),
        ]

    @pytest.mark.asyncio
    async def test_chain(self, kiln: MagicMock):
        """Grand-parents are submitted depth-first."""
        dag = TaskDAG.create(kiln, EchoTask(message="c")).after(
            TaskDAG.create(kiln, EchoTask(message="b")).after(EchoTask(message="a"))
        )

        await dag.submit()

        assert self.submissions(kiln) == [
            ("id-1", []),
            ("id-2", ["id-1"]),
            ("id-3", ["id-2"]),
        ]

    @pytest.mark.asyncio
    async def test_diamond_submits_shared_node_once(self, kiln: MagicMock):
        """A node shared by two parents of the same child is submitted once."""
        root = TaskDAG.create(kiln, AddingTask(a=1, b=1))
        left = TaskDAG.create(kiln, AddingTask(a=2, b=2)).after(root)
        right = TaskDAG.create(kiln, AddingTask(a=3, b=3)).after(root)
        sink = TaskDAG.create(kiln, EchoTask(message="sink")).after(left, right)

        await sink.submit()

        assert self.submissions(kiln) == [
            ("id-1", []),
            ("id-2", ["id-1"]),
            ("id-3", ["id-1"]),
            ("id-4", ["id-2", "id-3"]),
        ]
        assert root.submitted == IdAndStatus("id-1", TaskStatus.QUEUED)

    @pytest.mark.asyncio
    async def test_completed_existing_parent_does_not_block(self, kiln: MagicMock):
        """Already completed tasks referenced by id are not waited for."""
        kiln.get_task_meta.return_value = meta("done-1", TaskStatus.COMPLETED)

        result = await TaskDAG.create(kiln, EchoTask(message="x")).after("done-1").submit()

        assert result.status == TaskStatus.QUEUED
        assert self.submissions(kiln) == [("id-1", [])]

    @pytest.mark.asyncio
    async def test_running_existing_parent_blocks(self, kiln: MagicMock):
        """Referenced tasks that are still running block the child."""
        running = meta("run-1", TaskStatus.RUNNING)
        kiln.get_task_meta.return_value = running

        result = await TaskDAG.create(kiln, EchoTask(message="x")).after(running).submit()

        assert result.status == TaskStatus.BLOCKED
        assert self.submissions(kiln) == [("id-1", ["run-1"])]

    @pytest.mark.asyncio
    async def test_missing_existing_parent(self, kiln: MagicMock):
        """Referencing an unknown id fails the submission."""
        kiln.get_task_meta.return_value = None

        with pytest.raises(TaskNotFoundError):
            await TaskDAG.create(kiln, EchoTask(message="x")).after("missing").submit()

        kiln.submit.assert_not_awaited()

    def test_create_rejects_other_types(self, kiln: MagicMock):
        """Only tasks, metadata, ids and nodes make graph nodes."""
        with pytest.raises(TypeError):
            TaskDAG.create(kiln, 42)

    @pytest.mark.asyncio
    async def test_submission_delay(self, kiln: MagicMock):
        """Graph tasks are submitted with the configured delay."""
        kiln.settings.dag_submit_delay_ms = 250

        await TaskDAG.create(kiln, EchoTask(message="x")).submit()

        assert kiln.submit.await_args.kwargs["delay_ms"] == 250
