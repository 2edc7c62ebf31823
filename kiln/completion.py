"""
Completion registry: single-shot futures resolved when tasks finish.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from kiln.constants import TaskStatus
from kiln.db.models import STATUS, document_to_payload
from kiln.exceptions import TaskNotFoundError
from kiln.tasks.base import Task
from kiln.types.events import StatusChange

logger = logging.getLogger(__name__)

Lookup = Callable[[str], Awaitable[dict[str, Any] | None]]
Decoder = Callable[[dict[str, Any]], Task]


class CompletionRegistry:
    """
    Maps task ids to futures resolved with the task's final payload.

    Terminal status events from the monitor resolve futures; a one-shot
    lookup at registration covers tasks that finished before anyone asked.
    Each future is resolved at most once.
    """

    def __init__(self, lookup: Lookup, decode: Decoder):
        """
        Initialize the registry.

        Args:
            lookup: Fetches the stored record for a task id.
            decode: Turns a payload (with ``id``) into a task.
        """
        self._lookup = lookup
        self._decode = decode
        self._futures: dict[str, asyncio.Future] = {}

    def __len__(self) -> int:
        return len(self._futures)

    async def register(self, task_id: str) -> asyncio.Future:
        """
        Get the completion future for a task.

        Args:
            task_id: The task to wait for.

        Returns:
            A future resolving to the final task, or to None when the
            terminal event carried no payload.

        Raises:
            TaskNotFoundError: If no record exists for ``task_id``.
        """
        future = self._futures.get(task_id)
        if future is not None:
            return future

        # Stored before the lookup so a concurrent terminal event resolves it
        future = asyncio.get_running_loop().create_future()
        self._futures[task_id] = future

        try:
            document = await self._lookup(task_id)
        except asyncio.CancelledError:
            self._abandon(task_id, future, None)
            raise
        except Exception as e:
            self._abandon(task_id, future, e)
            raise

        if document is None:
            error = TaskNotFoundError(task_id)
            self._abandon(task_id, future, error)
            raise error

        status = TaskStatus(document[STATUS])
        if status.is_finished:
            self._complete(task_id, document_to_payload(document))
        return future

    def resolve(self, change: StatusChange) -> None:
        """Resolve the future of a task that reached a terminal status."""
        if not change.is_finished:
            return
        self._complete(change.task_id, change.payload)

    def _abandon(
        self, task_id: str, future: asyncio.Future, error: Exception | None
    ) -> None:
        """
        Drop a future whose registration failed.

        Callers that picked the future up from a concurrent ``register``
        see the same error, or a cancellation when ``error`` is None.
        """
        if self._futures.get(task_id) is future:
            del self._futures[task_id]
        if future.done():
            return
        if error is None:
            future.cancel()
            return
        future.set_exception(error)
        # Retrieved so an unawaited future does not warn
        future.exception()

    def _complete(self, task_id: str, payload: dict[str, Any] | None) -> None:
        future = self._futures.pop(task_id, None)
        if future is None or future.done():
            return
        if payload is None:
            future.set_result(None)
            return
        try:
            future.set_result(self._decode(payload))
        except Exception as e:
            logger.warning(
                f"Could not decode completed task: {e}",
                extra={"task_id": task_id},
            )
            future.set_exception(e)
