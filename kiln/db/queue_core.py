"""
Lease-based priority queue over a MongoDB collection.

The queue core is the only writer of the task state machine:
- send / send_many insert QUEUED (or BLOCKED) records
- get claims the best eligible record with an atomic find-and-modify
- progress extends a lease and appends log lines
- ack moves a record to a terminal status and releases (or fails) its children
- requeue / ack_send put a record back in the queue with fresh timings

Correctness relies only on single-document atomic updates; there are no
cross-process locks. Losers of a claim race simply observe the record
already RUNNING and move on.
"""

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import ConnectionFailure, PyMongoError

from kiln.config import Settings, get_settings
from kiln.constants import DEFAULT_PRIORITY, TaskStatus
from kiln.db import models
from kiln.db.models import (
    ATTEMPT,
    CREATED,
    EARLIEST_GET,
    FAR_FUTURE,
    ID,
    LOG,
    PARENT,
    PARENTS,
    PAYLOAD,
    PRIORITY,
    PROGRESS,
    RESET_TIMESTAMP,
    STATUS,
    WORKER,
)
from kiln.exceptions import TaskNotFoundError, TaskValidationError
from kiln.observability.metrics import get_metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

_FAILURE_STATUSES = (TaskStatus.FAILED.value, TaskStatus.CANCELLED.value)


class QueueCore:
    """
    Durable, lease-based priority queue.

    Lower ``priority`` values are claimed first; ties go to the oldest
    ``created``. A claimed record's lease ends at ``resetTimestamp``; once
    that passes, the next recovery sweep returns it to the queue and
    increments ``attempt``.
    """

    def __init__(
        self,
        collection: AsyncIOMotorCollection,
        settings: Settings | None = None,
    ):
        """
        Initialize the queue core.

        Args:
            collection: The task collection.
            settings: Retry and index settings. Defaults to the process settings.
        """
        self.collection = collection
        self._settings = settings or get_settings()
        self._metrics = get_metrics()

    # ------------------------------------------------------------------
    # Indexes
    # ------------------------------------------------------------------

    async def ensure_get_index(
        self,
        before_sort: dict[str, int] | None = None,
        after_sort: dict[str, int] | None = None,
    ) -> None:
        """
        Create the claim, recovery and parent indexes.

        The claim index is ``status, [payload.<before>...], priority,
        created, [payload.<after>...], earliestGet``.

        Args:
            before_sort: Payload fields placed before the sort fields.
            after_sort: Payload fields placed after the sort fields.

        Raises:
            ValueError: If a field direction is not 1 or -1.
        """
        keys: list[tuple[str, int]] = [(STATUS, ASCENDING)]
        keys.extend(self._payload_index_keys(before_sort))
        keys.extend([(PRIORITY, ASCENDING), (CREATED, ASCENDING)])
        keys.extend(self._payload_index_keys(after_sort))
        keys.append((EARLIEST_GET, ASCENDING))

        await self._ensure_index(keys)
        await self._ensure_index(models.RECOVERY_INDEX)
        await self._ensure_index(models.PARENTS_INDEX)

    async def ensure_count_index(self, index: dict[str, int], include_status: bool) -> None:
        """
        Create an index supporting ``count`` over payload fields.

        Args:
            index: Payload fields and their directions.
            include_status: Prefix the index with ``status``.

        Raises:
            ValueError: If a field direction is not 1 or -1.
        """
        keys: list[tuple[str, int]] = []
        if include_status:
            keys.append((STATUS, ASCENDING))
        keys.extend(self._payload_index_keys(index))
        await self._ensure_index(keys)

    @staticmethod
    def _payload_index_keys(fields: dict[str, int] | None) -> list[tuple[str, int]]:
        keys = []
        for field, direction in (fields or {}).items():
            if direction not in (1, -1):
                raise ValueError(f"Index direction for {field!r} must be 1 or -1, got {direction!r}")
            keys.append((models.payload_field(field), direction))
        return keys

    async def _ensure_index(self, keys: list[tuple[str, int]]) -> None:
        attempts = self._settings.index_create_attempts
        for attempt in range(1, attempts + 1):
            try:
                await self.collection.create_index(keys, background=True)
                return
            except PyMongoError as e:
                logger.info(
                    f"Index creation failed: {e}",
                    extra={"keys": str(keys), "attempt": attempt},
                )
                if attempt < attempts:
                    await asyncio.sleep(self._settings.storage_retry_backoff_seconds)
        logger.warning(
            "Could not create index; continuing without it",
            extra={"keys": str(keys), "attempts": attempts},
        )

    # ------------------------------------------------------------------
    # Inserts
    # ------------------------------------------------------------------

    async def send(
        self,
        payload: dict[str, Any],
        earliest_get: datetime | None = None,
        priority: float = DEFAULT_PRIORITY,
        parents: list[str] | None = None,
    ) -> str:
        """
        Insert a new task record.

        The record is QUEUED when it has no parents or every parent already
        completed, otherwise BLOCKED on the outstanding parents.

        Args:
            payload: Task payload; must contain ``type``.
            earliest_get: Instant before which the record is not claimable.
            priority: Finite number; lower is claimed first.
            parents: Ids of tasks that must complete first.

        Returns:
            The new record's id.

        Raises:
            TaskValidationError: If the payload is missing or priority is not finite.
            TaskNotFoundError: If a parent does not exist.
        """
        self._validate(payload, priority)
        now = models.utcnow()

        outstanding = await self._outstanding_parents(parents or [])
        status = TaskStatus.BLOCKED if outstanding else TaskStatus.QUEUED
        document = models.new_task_document(
            payload=payload,
            status=status,
            earliest_get=earliest_get or now,
            priority=float(priority),
            created=now,
            parents=outstanding,
        )

        result = await self._retry(lambda: self.collection.insert_one(document))
        task_id = result.inserted_id

        if outstanding:
            # A parent may have been acked between the lookup and the insert
            await self._reconcile_blocked(task_id, outstanding)

        return str(task_id)

    async def send_many(
        self,
        payloads: list[dict[str, Any]],
        earliest_get: datetime | None = None,
        priority: float = DEFAULT_PRIORITY,
    ) -> list[str]:
        """
        Insert a batch of QUEUED records with identical timing fields.

        Returns:
            The new ids, in the order of ``payloads``.
        """
        if not payloads:
            return []
        for payload in payloads:
            self._validate(payload, priority)
        now = models.utcnow()
        documents = [
            models.new_task_document(
                payload=payload,
                status=TaskStatus.QUEUED,
                earliest_get=earliest_get or now,
                priority=float(priority),
                created=now,
            )
            for payload in payloads
        ]
        result = await self._retry(
            lambda: self.collection.insert_many(documents, ordered=True)
        )
        return [str(i) for i in result.inserted_ids]

    @staticmethod
    def _validate(payload: dict[str, Any] | None, priority: float) -> None:
        if payload is None:
            raise TaskValidationError("Task payload is required")
        if not isinstance(priority, int | float) or not math.isfinite(priority):
            raise TaskValidationError(f"Priority must be a finite number, got {priority!r}")

    async def _outstanding_parents(self, parents: list[str]) -> list[ObjectId]:
        if not parents:
            return []
        ids = list(dict.fromkeys(models.to_object_id(p) for p in parents))
        documents = await self._retry(
            lambda: self.collection.find(
                {ID: {"$in": ids}}, {STATUS: 1}
            ).to_list(None)
        )
        statuses = {d[ID]: d[STATUS] for d in documents}
        for parent_id in ids:
            if parent_id not in statuses:
                raise TaskNotFoundError(str(parent_id))
        return [p for p in ids if statuses[p] != TaskStatus.COMPLETED.value]

    async def _reconcile_blocked(self, task_id: ObjectId, parents: list[ObjectId]) -> None:
        documents = await self._retry(
            lambda: self.collection.find(
                {ID: {"$in": parents}}, {STATUS: 1}
            ).to_list(None)
        )
        if any(d[STATUS] in _FAILURE_STATUSES for d in documents):
            await self._fail_blocked([task_id])
            return
        completed = [d[ID] for d in documents if d[STATUS] == TaskStatus.COMPLETED.value]
        if completed:
            await self._retry(
                lambda: self.collection.update_one(
                    {ID: task_id, STATUS: TaskStatus.BLOCKED.value},
                    self._release_pipeline(completed),
                )
            )

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    async def get(
        self,
        query: dict[str, Any] | None,
        lease_seconds: float,
        poll_millis: int | None = None,
        max_attempts: int | None = None,
        is_scheduler: bool = False,
        worker: str | None = None,
    ) -> dict[str, Any] | None:
        """
        Claim the best eligible record.

        Runs a recovery sweep, then tries to claim up to ``max_attempts``
        times, sleeping ``poll_millis`` between tries.

        Args:
            query: Payload field filters, e.g. ``{"type": {"$in": [...]}}``.
            lease_seconds: Lease length of the claim.
            poll_millis: Pause between unsuccessful tries.
            max_attempts: Number of tries; None retries forever.
            is_scheduler: The claimant forwards the task elsewhere, so no
                worker name is recorded.
            worker: Name recorded as the lease holder.

        Returns:
            The claimed payload with ``id`` set, or None when nothing was
            eligible after every try.

        Raises:
            ValueError: If the query uses a top-level operator.
        """
        selector = self.payload_selector(query)
        selector[STATUS] = TaskStatus.QUEUED.value
        poll_seconds = (
            poll_millis if poll_millis is not None else self._settings.worker_poll_interval_ms
        ) / 1000

        await self.recover_expired_leases()

        attempts = 0
        while True:
            now = models.utcnow()
            selector[EARLIEST_GET] = {"$lte": now}
            updates: dict[str, Any] = {
                STATUS: TaskStatus.RUNNING.value,
                RESET_TIMESTAMP: models.lease_expiry(lease_seconds, now),
                PROGRESS: 0.0,
            }
            if worker is not None and not is_scheduler:
                updates[WORKER] = worker

            document = await self._retry(
                lambda: self.collection.find_one_and_update(
                    selector,
                    {"$set": updates},
                    sort=[(PRIORITY, ASCENDING), (CREATED, ASCENDING)],
                    return_document=ReturnDocument.AFTER,
                )
            )
            if document is not None:
                return models.document_to_payload(document)

            attempts += 1
            if max_attempts is not None and attempts >= max_attempts:
                return None
            await asyncio.sleep(poll_seconds)

    @staticmethod
    def payload_selector(query: dict[str, Any] | None) -> dict[str, Any]:
        selector: dict[str, Any] = {}
        for key, value in (query or {}).items():
            if key.startswith("$"):
                raise ValueError(f"Top-level operator {key!r} is not supported in task queries")
            selector[models.payload_field(key)] = value
        return selector

    async def recover_expired_leases(self) -> int:
        """
        Return every RUNNING record whose lease has passed to the queue.

        Returns:
            Number of records recovered.
        """
        result = await self._retry(
            lambda: self.collection.update_many(
                {
                    STATUS: TaskStatus.RUNNING.value,
                    RESET_TIMESTAMP: {"$lte": models.utcnow()},
                },
                {
                    "$set": {
                        STATUS: TaskStatus.QUEUED.value,
                        RESET_TIMESTAMP: FAR_FUTURE,
                    },
                    "$inc": {ATTEMPT: 1},
                },
            )
        )
        if result.modified_count:
            self._metrics.record_lease_expired(result.modified_count)
            logger.info(
                "Recovered expired leases",
                extra={"count": result.modified_count},
            )
        return result.modified_count

    # ------------------------------------------------------------------
    # Running records
    # ------------------------------------------------------------------

    async def progress(
        self,
        task_id: str,
        log_lines: list[str],
        progress: float,
        reset_seconds: float,
        worker: str | None,
    ) -> None:
        """
        Heart-beat a running record.

        Extends the lease, records the worker, stores ``progress`` when it is
        not negative and appends ``log_lines`` in order.
        """
        update: dict[str, Any] = {
            "$set": {
                RESET_TIMESTAMP: models.lease_expiry(reset_seconds),
                STATUS: TaskStatus.RUNNING.value,
                WORKER: worker,
            }
        }
        if progress >= 0:
            update["$set"][PROGRESS] = progress
        if log_lines:
            update["$push"] = {LOG: {"$each": list(log_lines)}}

        object_id = models.to_object_id(task_id)
        await self._retry(lambda: self.collection.update_one({ID: object_id}, update))

    async def ack(self, message: dict[str, Any], status: TaskStatus) -> None:
        """
        Move a record to a terminal status and resolve its children.

        On COMPLETED, children blocked on this record drop it from their
        outstanding parents and become QUEUED once none remain. On FAILED
        or CANCELLED, every blocked descendant becomes FAILED.

        Args:
            message: Final payload including ``id``.
            status: COMPLETED, FAILED or CANCELLED.

        Raises:
            TaskValidationError: If status is not terminal or ``id`` is missing.
        """
        status = TaskStatus(status)
        if not status.is_finished:
            raise TaskValidationError(f"Cannot ack with non-terminal status {status.value!r}")
        task_id = self._message_id(message)
        payload = {k: v for k, v in message.items() if k != "id"}

        await self._retry(
            lambda: self.collection.update_one(
                {ID: task_id},
                {"$set": {STATUS: status.value, PAYLOAD: payload}},
            )
        )

        if status == TaskStatus.COMPLETED:
            await self._retry(
                lambda: self.collection.update_many(
                    {STATUS: TaskStatus.BLOCKED.value, PARENTS: task_id},
                    self._release_pipeline([task_id]),
                )
            )
        else:
            await self._fail_descendants(task_id)

    @staticmethod
    def _release_pipeline(parent_ids: list[ObjectId]) -> list[dict[str, Any]]:
        remaining = {"$setDifference": [f"${PARENTS}", parent_ids]}
        return [
            {"$set": {PARENTS: remaining}},
            {
                "$set": {
                    STATUS: {
                        "$cond": [
                            {"$eq": [{"$size": f"${PARENTS}"}, 0]},
                            TaskStatus.QUEUED.value,
                            TaskStatus.BLOCKED.value,
                        ]
                    },
                    PARENT: {"$ifNull": [{"$arrayElemAt": [f"${PARENTS}", 0]}, f"${PARENT}"]},
                }
            },
        ]

    async def _fail_descendants(self, task_id: ObjectId) -> None:
        frontier = [task_id]
        while frontier:
            parents = frontier
            children = await self._retry(
                lambda: self.collection.find(
                    {STATUS: TaskStatus.BLOCKED.value, PARENTS: {"$in": parents}},
                    {ID: 1},
                ).to_list(None)
            )
            frontier = [c[ID] for c in children]
            if frontier:
                await self._fail_blocked(frontier)

    async def _fail_blocked(self, task_ids: list[ObjectId]) -> None:
        await self._retry(
            lambda: self.collection.update_many(
                {ID: {"$in": task_ids}, STATUS: TaskStatus.BLOCKED.value},
                {"$set": {STATUS: TaskStatus.FAILED.value}},
            )
        )
        logger.info(
            "Failed blocked tasks after parent failure",
            extra={"task_ids": [str(i) for i in task_ids]},
        )

    async def ack_send(
        self,
        message: dict[str, Any],
        payload: dict[str, Any],
        earliest_get: datetime,
        priority: float,
    ) -> None:
        """
        Put a record back in the queue with a new payload and fresh timings.

        Upserts, so a record deleted in the meantime is re-created.
        """
        self._validate(payload, priority)
        task_id = self._message_id(message)
        now = models.utcnow()
        await self._retry(
            lambda: self.collection.update_one(
                {ID: task_id},
                {
                    "$set": {
                        PAYLOAD: payload,
                        STATUS: TaskStatus.QUEUED.value,
                        RESET_TIMESTAMP: FAR_FUTURE,
                        EARLIEST_GET: earliest_get,
                        PRIORITY: float(priority),
                        CREATED: now,
                        LOG: [],
                        PROGRESS: 0.0,
                        ATTEMPT: 0,
                    },
                    "$unset": {PARENT: "", PARENTS: "", WORKER: ""},
                },
                upsert=True,
            )
        )

    async def requeue(
        self,
        message: dict[str, Any],
        earliest_get: datetime,
        priority: float,
    ) -> str:
        """
        Re-queue a record with its current payload.

        Returns:
            The record's id.
        """
        payload = {k: v for k, v in message.items() if k != "id"}
        await self.ack_send(message, payload, earliest_get, priority)
        return str(message["id"])

    @staticmethod
    def _message_id(message: dict[str, Any]) -> ObjectId:
        if "id" not in message:
            raise TaskValidationError("Message has no id")
        return models.to_object_id(message["id"])

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_one(
        self,
        task_id: str,
        projection: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Fetch a record by id."""
        object_id = models.to_object_id(task_id)
        return await self._retry(
            lambda: self.collection.find_one({ID: object_id}, projection)
        )

    async def find(
        self,
        selector: dict[str, Any],
        projection: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch every record matching a raw selector, oldest first."""
        return await self._retry(
            lambda: self.collection.find(selector, projection)
            .sort(CREATED, ASCENDING)
            .to_list(None)
        )

    async def count(
        self,
        query: dict[str, Any] | None = None,
        status: TaskStatus | None = None,
    ) -> int:
        """Count records matching payload filters and an optional status."""
        selector = self.payload_selector(query)
        if status is not None:
            selector[STATUS] = TaskStatus(status).value
        return await self._retry(lambda: self.collection.count_documents(selector))

    async def status_counts(self) -> dict[TaskStatus, int]:
        """Number of records in every status."""
        rows = await self._retry(
            lambda: self.collection.aggregate(
                [{"$group": {"_id": f"${STATUS}", "count": {"$sum": 1}}}]
            ).to_list(None)
        )
        counts = {status: 0 for status in TaskStatus}
        for row in rows:
            counts[TaskStatus(row["_id"])] = row["count"]
        return counts

    async def next_earliest_get(self, query: dict[str, Any] | None) -> datetime | None:
        """Earliest ``earliestGet`` among QUEUED records matching ``query``."""
        selector = self.payload_selector(query)
        selector[STATUS] = TaskStatus.QUEUED.value
        document = await self._retry(
            lambda: self.collection.find_one(
                selector,
                {EARLIEST_GET: 1},
                sort=[(EARLIEST_GET, ASCENDING)],
            )
        )
        return document[EARLIEST_GET] if document else None

    # ------------------------------------------------------------------

    async def _retry(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run a storage operation, retrying transient connection failures."""
        attempts = max(self._settings.storage_retry_attempts, 1)
        delay = self._settings.storage_retry_backoff_seconds
        attempt = 1
        while True:
            try:
                return await operation()
            except ConnectionFailure as e:
                if attempt >= attempts:
                    raise
                logger.warning(
                    f"Transient storage failure, retrying: {e}",
                    extra={"attempt": attempt, "delay": delay},
                )
                await asyncio.sleep(delay)
                delay *= 2
                attempt += 1
