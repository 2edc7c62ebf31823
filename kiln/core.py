"""
The Kiln façade.

One explicit object per process holds the queue core, the change-stream
monitor, the completion registry, the serializer and the distributors.
Construct it at program entry (``await Kiln.connect()``) and pass it by
reference.
"""

import asyncio
import logging
import os
from datetime import datetime, timedelta
from typing import Any

from motor.motor_asyncio import AsyncIOMotorCollection
from pydantic import ValidationError
from pymongo.errors import PyMongoError

from kiln.completion import CompletionRegistry
from kiln.config import Settings, get_settings
from kiln.constants import (
    DEFAULT_PRIORITY,
    SPAN_ACK_TASK,
    SPAN_CLAIM_TASK,
    SPAN_SUBMIT_TASK,
    TaskStatus,
)
from kiln.dag import DAGItem, TaskDAG
from kiln.db import connection, models
from kiln.db.models import ID, LOG, PAYLOAD, STATUS
from kiln.db.queue_core import QueueCore
from kiln.distributor import Distributor
from kiln.exceptions import TaskNotFoundError, TaskValidationError
from kiln.monitor import StatusChangeMonitor
from kiln.observability.metrics import get_metrics
from kiln.observability.tracing import task_span
from kiln.tasks.base import Task, TaskSerializer, list_task_types, type_name
from kiln.types.task import TaskMeta

logger = logging.getLogger(__name__)


class Kiln:
    """
    Entry point for producers and workers.

    Producers submit tasks and await their completion; workers obtain a
    distributor and acknowledge what they ran.
    """

    def __init__(
        self,
        collection: AsyncIOMotorCollection,
        settings: Settings | None = None,
        serializer: TaskSerializer | None = None,
    ):
        """
        Initialize the façade over a task collection.

        Args:
            collection: The task collection.
            settings: Defaults to the process settings.
            serializer: Payload codec. Defaults to the registry-backed one.
        """
        self.settings = settings or get_settings()
        self.serializer = serializer or TaskSerializer()
        self.queue = QueueCore(collection, self.settings)
        self.completions = CompletionRegistry(self.queue.find_one, self.serializer.deserialize)
        self.monitor = StatusChangeMonitor(
            collection,
            self.completions,
            restart_backoff_seconds=self.settings.monitor_restart_backoff_seconds,
        )
        self._distributors: dict[frozenset[str], Distributor] = {}
        self._owns_connection = False
        self._metrics = get_metrics()

    @classmethod
    async def connect(cls, settings: Settings | None = None) -> "Kiln":
        """
        Connect to the configured database and start the façade.

        The returned instance closes the process-wide client on ``close``.
        """
        settings = settings or get_settings()
        await connection.init_db(settings)
        kiln = cls(connection.get_collection(settings=settings), settings)
        kiln._owns_connection = True
        await kiln.start()
        return kiln

    async def start(self) -> None:
        """Create indexes and start the change-stream monitor."""
        await self.queue.ensure_get_index()
        await self.monitor.start()
        logger.info("Kiln started", extra={"collection": self.queue.collection.name})

    async def close(self) -> None:
        """Stop distributors and the monitor; close the client if owned."""
        for distributor in self._distributors.values():
            await distributor.shutdown()
        self._distributors.clear()
        await self.monitor.stop()
        if self._owns_connection:
            await connection.close_db()
        logger.info("Kiln closed")

    async def ping(self) -> bool:
        """Whether the database answers."""
        try:
            await self.queue.collection.database.command("ping")
            return True
        except PyMongoError:
            return False

    # ------------------------------------------------------------------
    # Producer operations
    # ------------------------------------------------------------------

    async def submit(
        self,
        task: Task,
        delay_ms: int = 0,
        parents: list[str] | None = None,
        priority: float = DEFAULT_PRIORITY,
    ) -> str:
        """
        Submit a task.

        Args:
            task: The task to run; its ``id`` is set on return.
            delay_ms: Milliseconds before the task may be claimed.
            parents: Tasks that must complete first.
            priority: Lower values are claimed first.

        Returns:
            The task id.
        """
        payload = self.serializer.serialize(task)
        with task_span(SPAN_SUBMIT_TASK, task_type=task.task_type, priority=priority) as span:
            task_id = await self.queue.send(
                payload,
                earliest_get=self._earliest_get(delay_ms),
                priority=priority,
                parents=parents,
            )
            span.set_attribute("task_id", task_id)

        task.id = task_id
        self._metrics.record_task_submitted(task.task_type)
        logger.info(
            "Task submitted",
            extra={
                "task_id": task_id,
                "type": task.task_type,
                "priority": priority,
                "parents": parents or [],
            },
        )
        return task_id

    async def submit_many(
        self,
        tasks: list[Task],
        delay_ms: int = 0,
        priority: float = DEFAULT_PRIORITY,
    ) -> list[str]:
        """
        Submit a batch of tasks with identical timings.

        Returns:
            The ids in the order of ``tasks``; each task's ``id`` is set.
        """
        payloads = [self.serializer.serialize(t) for t in tasks]
        with task_span(SPAN_SUBMIT_TASK, batch_size=len(tasks)):
            ids = await self.queue.send_many(
                payloads,
                earliest_get=self._earliest_get(delay_ms),
                priority=priority,
            )
        for task, task_id in zip(tasks, ids, strict=True):
            task.id = task_id
            self._metrics.record_task_submitted(task.task_type)
        logger.info("Task batch submitted", extra={"count": len(ids)})
        return ids

    async def resubmit(self, task_id: str) -> str:
        """
        Put an existing task back in the queue with fresh timings.

        The attempt counter, progress and log are reset.

        Raises:
            TaskNotFoundError: If the task does not exist.
        """
        document = await self.queue.find_one(task_id)
        if document is None:
            raise TaskNotFoundError(task_id)
        message = models.document_to_payload(document)
        result = await self.queue.requeue(message, models.utcnow(), DEFAULT_PRIORITY)
        logger.info("Task resubmitted", extra={"task_id": task_id})
        return result

    def dag(self, item: DAGItem) -> TaskDAG:
        """Start a task graph rooted at ``item``."""
        return TaskDAG.create(self, item)

    # ------------------------------------------------------------------
    # Worker operations
    # ------------------------------------------------------------------

    async def completed(self, task: Task, status: TaskStatus) -> None:
        """
        Acknowledge a task, storing its fields as the final payload.

        Args:
            task: The task, as mutated by its body.
            status: COMPLETED, FAILED or CANCELLED.
        """
        message = self.serializer.serialize(task, include_id=True)
        with task_span(SPAN_ACK_TASK, task_id=task.id, status=status):
            await self.queue.ack(message, status)
        self._metrics.record_task_acked(str(status))

    async def progress(
        self,
        task_id: str,
        lines: list[str],
        progress: float,
        reset_seconds: float,
        worker: str | None,
    ) -> None:
        """Heart-beat a running task: extend its lease and append log lines."""
        await self.queue.progress(task_id, lines, progress, reset_seconds, worker)

    def get_distributor(
        self,
        task_types: list[str] | None = None,
        capacity: int | None = None,
    ) -> Distributor:
        """
        Get the distributor for a set of task types, creating it on first use.

        Args:
            task_types: Type tags to claim. Defaults to every registered type.
            capacity: Claimed tasks that may wait untaken. Defaults to the CPU
                count; a reused distributor grows to the largest capacity asked for.
        """
        names = frozenset(task_types or list_task_types())
        distributor = self._distributors.get(names)
        if distributor is None:
            distributor = Distributor(
                self,
                sorted(names),
                capacity=capacity or os.cpu_count() or 1,
                error_backoff_seconds=self.settings.storage_retry_backoff_seconds,
            )
            self.monitor.add_listener(distributor.task_status_changed)
            self._distributors[names] = distributor
        elif capacity:
            distributor.ensure_capacity(capacity)
        return distributor

    async def poll_worker(self, task_types: list[str], worker: str) -> Task | None:
        """
        Claim a task for a worker with a bounded number of tries.

        Payloads that cannot be decoded are acknowledged as FAILED and the
        claim is retried.

        Returns:
            The claimed task, or None when nothing was eligible.
        """
        while True:
            with task_span(SPAN_CLAIM_TASK, worker=worker) as span:
                payload = await self.queue.get(
                    self._type_query(task_types),
                    lease_seconds=self.settings.worker_lease_seconds,
                    poll_millis=self.settings.worker_poll_interval_ms,
                    max_attempts=self.settings.distributor_poll_attempts,
                    worker=worker,
                )
                if payload is None:
                    return None
                span.set_attribute("task_id", payload["id"])

            task = await self._decode_claimed(payload)
            if task is not None:
                self._metrics.record_lease_acquired(worker)
                return task

    async def poll_scheduler(self, task_types: list[str]) -> dict[str, Any] | None:
        """
        Claim a task on behalf of a remote executor.

        No worker is recorded; the remote side reports it with progress.

        Returns:
            The claimed payload with ``id``, or None when nothing was eligible.
        """
        return await self.queue.get(
            self._type_query(task_types),
            lease_seconds=self.settings.worker_lease_seconds,
            poll_millis=self.settings.worker_poll_interval_ms,
            max_attempts=self.settings.distributor_poll_attempts,
            is_scheduler=True,
        )

    async def poll(self, task_types: list[str], worker: str) -> Task:
        """Claim a task for a worker, polling until one is available."""
        while True:
            payload = await self.queue.get(
                self._type_query(task_types),
                lease_seconds=self.settings.worker_lease_seconds,
                poll_millis=self.settings.worker_poll_interval_ms,
                max_attempts=None,
                worker=worker,
            )
            task = await self._decode_claimed(payload)
            if task is not None:
                self._metrics.record_lease_acquired(worker)
                return task

    async def next_earliest_get(self, task_types: list[str]) -> datetime | None:
        """When the next delayed task of these types becomes claimable."""
        return await self.queue.next_earliest_get(self._type_query(task_types))

    async def _decode_claimed(self, payload: dict[str, Any]) -> Task | None:
        try:
            return self.serializer.deserialize(payload)
        except (TaskValidationError, ValidationError) as e:
            logger.error(
                f"Claimed task could not be decoded: {e}",
                extra={"task_id": payload["id"], "type": payload.get("type")},
            )
            await self.queue.ack(payload, TaskStatus.FAILED)
            return None

    @staticmethod
    def _type_query(task_types: list[str]) -> dict[str, Any]:
        return {"type": {"$in": list(task_types)}}

    @staticmethod
    def _earliest_get(delay_ms: int) -> datetime:
        return models.utcnow() + timedelta(milliseconds=delay_ms)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_task(
        self,
        task_id: str,
        task_type: str | type[Task] | None = None,
    ) -> Task | None:
        """
        Load a task by id.

        Args:
            task_id: The task id.
            task_type: Forces the type instead of the stored ``type`` tag.

        Returns:
            The task with its id bound, or None if it does not exist.
        """
        document = await self.queue.find_one(task_id, {PAYLOAD: 1})
        if document is None:
            return None
        return self.serializer.deserialize(models.document_to_payload(document), task_type)

    async def get_tasks(self, task_type: str | type[Task]) -> list[Task]:
        """Load every task of a type, oldest first."""
        documents = await self.queue.find(
            {models.payload_field("type"): type_name(task_type)}, {PAYLOAD: 1}
        )
        return [
            self.serializer.deserialize(models.document_to_payload(d), task_type)
            for d in documents
        ]

    async def get_task_meta(self, task_id: str) -> TaskMeta | None:
        """Load a task's metadata, or None if it does not exist."""
        document = await self.queue.find_one(task_id, models.META_PROJECTION)
        if document is None:
            return None
        return models.document_to_meta(document)

    async def get_task_logs(self, task_id: str) -> list[str]:
        """
        Load a task's log lines in stored order.

        Raises:
            TaskNotFoundError: If the task does not exist.
        """
        document = await self.queue.find_one(task_id, {LOG: 1})
        if document is None:
            raise TaskNotFoundError(task_id)
        return list(document.get(LOG) or [])

    async def get_tasks_metadata(
        self,
        statuses: list[TaskStatus] | None = None,
        payload_filter: dict[str, Any] | None = None,
    ) -> list[TaskMeta]:
        """
        Query task metadata.

        Args:
            statuses: Only tasks in one of these statuses.
            payload_filter: Payload field filters, e.g. ``{"type": "adding"}``.
        """
        selector = QueueCore.payload_selector(payload_filter)
        if statuses:
            selector[STATUS] = {"$in": [TaskStatus(s).value for s in statuses]}
        documents = await self.queue.find(selector, models.META_PROJECTION)
        return [models.document_to_meta(d) for d in documents]

    async def get_tasks_metadata_by_ids(self, task_ids: list[str]) -> list[TaskMeta]:
        """Query metadata of specific tasks; unknown ids are skipped."""
        ids = [models.to_object_id(i) for i in task_ids]
        documents = await self.queue.find({ID: {"$in": ids}}, models.META_PROJECTION)
        return [models.document_to_meta(d) for d in documents]

    async def count(
        self,
        task_type: str | type[Task] | None = None,
        status: TaskStatus | None = None,
    ) -> int:
        """Count tasks, optionally of one type and status."""
        query = {"type": type_name(task_type)} if task_type is not None else None
        return await self.queue.count(query, status)

    async def get_completion(self, task_id: str) -> asyncio.Future:
        """
        Get a future resolved with the task once it reaches a terminal status.

        Raises:
            TaskNotFoundError: If the task does not exist.
        """
        return await self.completions.register(task_id)
