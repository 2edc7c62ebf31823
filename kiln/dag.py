"""
Task graphs: submit tasks that wait for their parents.

Example:
    dag = kiln.dag(UploadTask(...)).after(
        kiln.dag(ResizeTask(...)).after(fetch_id),
        ThumbnailTask(...),
    )
    result = await dag.submit()

Parents are submitted depth-first before their children. A child is
stored BLOCKED on every parent that has not completed yet, and the queue
releases it once all of them complete (or fails it when one fails).
"""

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Union

from kiln.constants import TaskStatus
from kiln.exceptions import TaskNotFoundError
from kiln.tasks.base import Task
from kiln.types.task import IdAndStatus, TaskMeta

if TYPE_CHECKING:
    from kiln.core import Kiln

logger = logging.getLogger(__name__)

Supplier = Callable[[list[str]], Awaitable[IdAndStatus]]
DAGItem = Union[Task, TaskMeta, str, "TaskDAG"]


def on_submission(kiln: "Kiln", task: Task) -> Supplier:
    """Supplier submitting ``task`` blocked on the given parents."""

    async def supply(parent_ids: list[str]) -> IdAndStatus:
        task_id = await kiln.submit(
            task,
            delay_ms=kiln.settings.dag_submit_delay_ms,
            parents=parent_ids,
        )
        status = TaskStatus.BLOCKED if parent_ids else TaskStatus.QUEUED
        return IdAndStatus(task_id, status)

    return supply


def existing(kiln: "Kiln", task_id: str) -> Supplier:
    """Supplier referring to an already submitted task."""

    async def supply(parent_ids: list[str]) -> IdAndStatus:
        meta = await kiln.get_task_meta(task_id)
        if meta is None:
            raise TaskNotFoundError(task_id)
        return IdAndStatus(task_id, meta.status)

    return supply


class TaskDAG:
    """A node of a task graph and its parents."""

    def __init__(self, kiln: "Kiln", supplier: Supplier):
        self._kiln = kiln
        self._supplier = supplier
        self.parents: list[TaskDAG] = []
        self._result: IdAndStatus | None = None

    @classmethod
    def create(cls, kiln: "Kiln", item: DAGItem) -> "TaskDAG":
        """
        Make a node from a task, task metadata, task id or existing node.

        New tasks are submitted when the graph is; metadata and ids refer
        to tasks already in the queue.
        """
        if isinstance(item, TaskDAG):
            return item
        if isinstance(item, Task):
            return cls(kiln, on_submission(kiln, item))
        if isinstance(item, TaskMeta):
            return cls(kiln, existing(kiln, item.id))
        if isinstance(item, str):
            return cls(kiln, existing(kiln, item))
        raise TypeError(f"Cannot build a task graph node from {type(item).__name__}")

    def after(self, *items: DAGItem) -> "TaskDAG":
        """Make this node wait for each of ``items``."""
        for item in items:
            self.parents.append(TaskDAG.create(self._kiln, item))
        return self

    @property
    def submitted(self) -> IdAndStatus | None:
        return self._result

    async def submit(self) -> IdAndStatus:
        """
        Submit this node and, first, every parent.

        A node shared by several children (a diamond) is submitted once.

        Returns:
            The node's id and status right after submission.
        """
        if self._result is not None:
            return self._result

        blocking: list[str] = []
        for parent in self.parents:
            result = await parent.submit()
            if result.status != TaskStatus.COMPLETED and result.id not in blocking:
                blocking.append(result.id)

        self._result = await self._supplier(blocking)
        logger.debug(
            "Submitted graph node",
            extra={"task_id": self._result.id, "blocked_on": blocking},
        )
        return self._result
