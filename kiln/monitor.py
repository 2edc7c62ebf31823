"""
Change-stream monitor for task status transitions.

Watches the task collection and turns every insert, replace or update that
carries a ``status`` into a StatusChange, dispatched first to the registered
listeners and then to the completion registry.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo.errors import PyMongoError

from kiln.config import get_settings
from kiln.constants import TaskStatus
from kiln.db.models import PAYLOAD, STATUS
from kiln.types.events import StatusChange

logger = logging.getLogger(__name__)

StatusListener = Callable[[StatusChange], None]

_WATCHED_OPERATIONS = ("insert", "replace", "update")


def translate(change: dict[str, Any]) -> StatusChange | None:
    """
    Turn a raw change event into a StatusChange.

    Returns None for events that do not carry a status: deletes, and
    updates that did not touch ``status``.
    """
    if change.get("operationType") not in _WATCHED_OPERATIONS:
        return None

    task_id = str(change["documentKey"]["_id"])
    full_document = change.get("fullDocument") or {}

    if change["operationType"] == "update":
        updated = (change.get("updateDescription") or {}).get("updatedFields") or {}
        if STATUS not in updated:
            return None
        raw_status = updated[STATUS]
        payload = updated.get(PAYLOAD, full_document.get(PAYLOAD))
    else:
        if STATUS not in full_document:
            return None
        raw_status = full_document[STATUS]
        payload = full_document.get(PAYLOAD)

    try:
        status = TaskStatus(raw_status)
    except ValueError:
        logger.warning(
            "Ignoring change with unknown status",
            extra={"task_id": task_id, "status": raw_status},
        )
        return None

    if payload is not None:
        payload = {**payload, "id": task_id}
    return StatusChange(task_id=task_id, status=status, payload=payload)


class StatusChangeMonitor:
    """
    Dispatches task status transitions observed on the change stream.

    Listeners run on the monitor's task, in registration order, and must
    not block. A listener that raises is logged and skipped. Events for the
    same record are dispatched in change-stream order. After a stream
    failure the monitor resubscribes from the last resume token, so events
    may be delivered more than once.
    """

    def __init__(
        self,
        collection: AsyncIOMotorCollection,
        completions: Any | None = None,
        restart_backoff_seconds: float | None = None,
    ):
        """
        Initialize the monitor.

        Args:
            collection: The task collection to watch.
            completions: Registry whose ``resolve`` is called after listeners.
            restart_backoff_seconds: Pause before resubscribing after a failure.
        """
        self._collection = collection
        self._completions = completions
        self._backoff = (
            restart_backoff_seconds
            if restart_backoff_seconds is not None
            else get_settings().monitor_restart_backoff_seconds
        )
        self._listeners: list[StatusListener] = []
        self._resume_token: dict[str, Any] | None = None
        self._stream: Any = None
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def add_listener(self, listener: StatusListener) -> None:
        """Register a listener for every status change."""
        self._listeners.append(listener)

    async def start(self) -> None:
        """
        Open the change stream and start dispatching.

        The stream cursor is opened before this returns, so changes made
        afterwards are observed.

        Raises:
            pymongo.errors.PyMongoError: If the stream cannot be opened,
                e.g. the server is not a replica set.
        """
        if self._running:
            return
        self._stream = self._open_stream()
        first = await self._stream.try_next()
        self._running = True
        if first is not None:
            self._handle(first)
        self._task = asyncio.create_task(self._watch_loop())
        logger.info("Status change monitor started")

    async def stop(self) -> None:
        """Stop dispatching and close the stream."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._close_stream()
        logger.info("Status change monitor stopped")

    def _open_stream(self) -> Any:
        kwargs: dict[str, Any] = {"full_document": "updateLookup"}
        if self._resume_token is not None:
            kwargs["resume_after"] = self._resume_token
        return self._collection.watch(**kwargs)

    async def _close_stream(self) -> None:
        if self._stream is not None:
            stream, self._stream = self._stream, None
            try:
                await stream.close()
            except PyMongoError as e:
                logger.debug(f"Error closing change stream: {e}")

    async def _watch_loop(self) -> None:
        while self._running:
            try:
                if self._stream is None:
                    self._stream = self._open_stream()
                async for change in self._stream:
                    self._handle(change)
                # Stream invalidated, e.g. the collection was dropped
                await self._close_stream()
                await asyncio.sleep(self._backoff)
            except PyMongoError as e:
                logger.warning(
                    f"Change stream interrupted, resubscribing: {e}",
                    extra={"backoff": self._backoff},
                )
                await self._close_stream()
                await asyncio.sleep(self._backoff)

    def _handle(self, change: dict[str, Any]) -> None:
        if change.get("operationType") == "invalidate":
            self._resume_token = None
            return
        self._resume_token = change.get("_id", self._resume_token)
        status_change = translate(change)
        if status_change is not None:
            self.dispatch(status_change)

    def dispatch(self, change: StatusChange) -> None:
        """Deliver a status change to every listener, then the completion registry."""
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception(
                    "Status listener failed",
                    extra={"task_id": change.task_id, "status": change.status.value},
                )
        if self._completions is not None:
            self._completions.resolve(change)
