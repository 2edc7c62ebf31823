"""
Remote execution over HTTP.

A scheduler process claims tasks without running them and publishes each
as a TaskMessage to a remote executor. The executor runs the body and
publishes WorkerResponses back: responses without a task are progress
updates, responses with a task are terminal acknowledgements.
"""

import asyncio
import logging
import signal
import time
from collections.abc import Callable
from typing import Any, Protocol
from uuid import uuid4

import httpx
from pydantic import BaseModel, ConfigDict, Field

from kiln.config import get_settings
from kiln.constants import INITIAL_PROGRESS, TaskStatus
from kiln.core import Kiln
from kiln.observability.logging import setup_logging
from kiln.observability.metrics import setup_metrics
from kiln.observability.tracing import setup_tracing
from kiln.tasks.base import (
    Task,
    TaskSerializer,
    get_all_task_types,
    load_task_types,
    type_name,
)
from kiln.types.events import StatusChange
from kiln.worker.callback import BufferedCallback

logger = logging.getLogger(__name__)


class TaskMessage(BaseModel):
    """A claimed task sent to a remote executor; ``task`` includes ``id``."""

    task: dict[str, Any]


class WorkerResponse(BaseModel):
    """Progress or outcome reported by a remote executor."""

    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(alias="taskId")
    task: dict[str, Any] | None = None
    progress: float = INITIAL_PROGRESS
    log: list[str] = Field(default_factory=list)
    success: bool = False
    worker: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.task is not None


class Publisher(Protocol):
    async def publish(self, message: BaseModel) -> None: ...


class HttpPublisher:
    """Posts messages as JSON to a fixed URL."""

    def __init__(
        self,
        url: str,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float | None = None,
    ):
        self.url = url
        self._client = client or httpx.AsyncClient(
            timeout=timeout_seconds or get_settings().remote_timeout_seconds
        )
        self._owns_client = client is None

    async def publish(self, message: BaseModel) -> None:
        """
        Send a message.

        Raises:
            httpx.HTTPError: If the request fails or is answered with an error.
        """
        response = await self._client.post(
            self.url,
            content=message.model_dump_json(by_alias=True),
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class ResponseHandler:
    """Applies executor responses to the queue."""

    def __init__(self, kiln: Kiln):
        self._kiln = kiln

    async def handle(self, response: WorkerResponse) -> None:
        """
        Apply one response.

        Log lines are appended first; a terminal response then acknowledges
        the task as COMPLETED or FAILED with the returned payload.
        """
        lease = self._kiln.settings.worker_lease_seconds
        if not response.is_terminal:
            await self._kiln.progress(
                response.task_id, response.log, response.progress, lease, response.worker
            )
            return

        if response.log:
            await self._kiln.progress(
                response.task_id, response.log, response.progress, lease, response.worker
            )
        status = TaskStatus.COMPLETED if response.success else TaskStatus.FAILED
        message = {**response.task, "id": response.task_id}
        await self._kiln.queue.ack(message, status)
        logger.info(
            "Remote task finished",
            extra={"task_id": response.task_id, "status": status.value, "worker": response.worker},
        )


class RemoteScheduler:
    """
    Claims tasks and publishes them to a remote executor.

    Idles on the change stream like the distributor: when a bounded claim
    finds nothing it waits for a QUEUED event (or ``idle_seconds``).
    """

    def __init__(
        self,
        kiln: Kiln,
        publisher: Publisher,
        task_types: list[str | type[Task]],
        idle_seconds: float | None = None,
    ):
        self._kiln = kiln
        self._publisher = publisher
        self.task_types = [type_name(t) for t in task_types]
        self._idle_seconds = idle_seconds or kiln.settings.reaper_interval_seconds
        self._wake = asyncio.Event()
        self._running = False
        kiln.monitor.add_listener(self.task_status_changed)

    def task_status_changed(self, change: StatusChange) -> None:
        if change.status == TaskStatus.QUEUED:
            self._wake.set()

    async def start(self) -> None:
        """Run the claim-and-publish loop until stopped."""
        logger.info("Remote scheduler starting", extra={"task_types": self.task_types})
        self._running = True
        while self._running:
            self._wake.clear()
            try:
                published = await self.run_once()
            except Exception as e:
                logger.exception(f"Error in remote scheduler loop: {e}")
                published = False
            if not published and self._running:
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self._idle_seconds)
                except TimeoutError:
                    pass
        logger.info("Remote scheduler stopped")

    async def stop(self) -> None:
        self._running = False
        self._wake.set()

    async def run_once(self) -> bool:
        """
        Claim and publish one task.

        A task whose publication fails stays RUNNING until its lease expires.

        Returns:
            Whether a task was published.
        """
        payload = await self._kiln.poll_scheduler(self.task_types)
        if payload is None:
            return False
        await self._publisher.publish(TaskMessage(task=payload))
        logger.info(
            "Published task to remote executor",
            extra={"task_id": payload["id"], "type": payload.get("type")},
        )
        return True


class RemoteCallback(BufferedCallback):
    """Callback of a remote executor: each flush publishes a WorkerResponse."""

    def __init__(
        self,
        task_id: str,
        publisher: Publisher,
        worker: str,
        debounce_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(debounce_seconds=debounce_seconds, clock=clock)
        self.task_id = task_id
        self.worker = worker
        self._publisher = publisher
        self._task: dict[str, Any] | None = None
        self._success = False

    async def complete(self, task: dict[str, Any]) -> None:
        """Publish the final payload as a success."""
        self._task = task
        self._success = True
        await self.flush()

    async def fail(self, task: dict[str, Any], error: Exception) -> None:
        """Publish the final payload as a failure, logging the error."""
        self._task = task
        self._success = False
        self._lines.append(f"{type(error).__name__}: {error}")
        await self.flush()

    async def _send(self, lines: list[str], progress: float) -> None:
        await self._publisher.publish(
            WorkerResponse(
                task_id=self.task_id,
                task=self._task,
                progress=progress,
                log=lines,
                success=self._success,
                worker=self.worker,
            )
        )


class RemoteWorker:
    """Executes TaskMessages received from a scheduler."""

    def __init__(
        self,
        publisher: Publisher,
        name: str | None = None,
        serializer: TaskSerializer | None = None,
    ):
        self.name = name or str(uuid4())
        self._publisher = publisher
        self._serializer = serializer or TaskSerializer()
        self._debounce = get_settings().progress_debounce_seconds

    async def perform(self, message: TaskMessage) -> None:
        """
        Run one task and publish its outcome.

        Raises:
            UnknownTaskTypeError: If the task type is not registered here.
        """
        task = self._serializer.deserialize(message.task)
        callback = RemoteCallback(task.id, self._publisher, self.name, self._debounce)
        try:
            await task.run(callback)
        except Exception as e:
            logger.warning(
                "Remote task failed",
                extra={"task_id": task.id, "error": str(e)},
            )
            await callback.fail(self._serializer.serialize(task), e)
        else:
            await callback.complete(self._serializer.serialize(task))


async def run_async() -> None:
    """Run a remote scheduler publishing to REMOTE_WORKER_URL until SIGTERM/SIGINT."""
    settings = get_settings()
    setup_logging("scheduler")
    setup_metrics()
    setup_tracing("scheduler")
    if not settings.remote_worker_url:
        raise SystemExit("REMOTE_WORKER_URL must be set to run the remote scheduler")

    load_task_types(settings.task_type_modules)
    task_types = get_all_task_types()

    kiln = await Kiln.connect()
    publisher = HttpPublisher(settings.remote_worker_url)
    scheduler = RemoteScheduler(kiln, publisher, task_types)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(scheduler.stop())
        )

    try:
        await scheduler.start()
    finally:
        await publisher.close()
        await kiln.close()


def run() -> None:
    """Run the remote scheduler."""
    asyncio.run(run_async())
