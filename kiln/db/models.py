"""
Task record layout.

One document per submitted task. Field names are the stored names; the
payload is an open map with at least a ``type`` key.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from bson import ObjectId
from bson.errors import InvalidId

from kiln.constants import TaskStatus
from kiln.exceptions import TaskValidationError
from kiln.types.task import TaskMeta

# Stored field names
ID = "_id"
PAYLOAD = "payload"
STATUS = "status"
PRIORITY = "priority"
CREATED = "created"
EARLIEST_GET = "earliestGet"
RESET_TIMESTAMP = "resetTimestamp"
ATTEMPT = "attempt"
PROGRESS = "progress"
LOG = "log"
WORKER = "worker"
PARENT = "parent"
PARENTS = "parents"

# resetTimestamp of every record that is not running
FAR_FUTURE = datetime(9999, 12, 31, 23, 59, 59, tzinfo=UTC)

# Index used by recovery sweeps
RECOVERY_INDEX = [(STATUS, 1), (RESET_TIMESTAMP, 1)]

# Index used by parent lookups on ack
PARENTS_INDEX = [(STATUS, 1), (PARENTS, 1)]


def utcnow() -> datetime:
    """Current instant truncated to the millisecond precision MongoDB stores."""
    now = datetime.now(UTC)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def lease_expiry(seconds: float, now: datetime | None = None) -> datetime:
    """Instant at which a lease taken now for ``seconds`` expires."""
    return (now or utcnow()) + timedelta(seconds=seconds)


def to_object_id(task_id: str | ObjectId) -> ObjectId:
    """
    Parse a task id.

    Raises:
        TaskValidationError: If the id is not a 24-character hex string.
    """
    if isinstance(task_id, ObjectId):
        return task_id
    try:
        return ObjectId(task_id)
    except (InvalidId, TypeError) as e:
        raise TaskValidationError(f"Malformed task id: {task_id!r}") from e


def payload_field(key: str) -> str:
    """Stored path of a payload key."""
    return f"{PAYLOAD}.{key}"


def new_task_document(
    payload: dict[str, Any],
    status: TaskStatus,
    earliest_get: datetime,
    priority: float,
    created: datetime,
    parents: list[ObjectId] | None = None,
) -> dict[str, Any]:
    """Build the document inserted for a new task."""
    document: dict[str, Any] = {
        PAYLOAD: payload,
        STATUS: status.value,
        RESET_TIMESTAMP: FAR_FUTURE,
        EARLIEST_GET: earliest_get,
        PRIORITY: priority,
        CREATED: created,
        LOG: [],
        PROGRESS: 0.0,
        ATTEMPT: 0,
    }
    if parents:
        document[PARENT] = parents[0]
        document[PARENTS] = list(parents)
    return document


def document_to_payload(document: dict[str, Any]) -> dict[str, Any]:
    """The stored payload with the record's id copied in as ``id``."""
    return {**(document.get(PAYLOAD) or {}), "id": str(document[ID])}


def document_to_meta(document: dict[str, Any]) -> TaskMeta:
    """Everything but the payload, as a TaskMeta."""
    parent = document.get(PARENT)
    return TaskMeta(
        id=str(document[ID]),
        type=(document.get(PAYLOAD) or {}).get("type"),
        status=TaskStatus(document[STATUS]),
        created=document[CREATED],
        earliest_get=document[EARLIEST_GET],
        reset_timestamp=document[RESET_TIMESTAMP],
        priority=document[PRIORITY],
        progress=document.get(PROGRESS, 0.0),
        attempt=document.get(ATTEMPT, 0),
        log=list(document.get(LOG) or []),
        worker=document.get(WORKER),
        parent=str(parent) if parent is not None else None,
        parents=[str(p) for p in document.get(PARENTS) or []],
    )


# Projection excluding the payload body
META_PROJECTION = {
    f"{PAYLOAD}.type": 1,
    STATUS: 1,
    PRIORITY: 1,
    CREATED: 1,
    EARLIEST_GET: 1,
    RESET_TIMESTAMP: 1,
    ATTEMPT: 1,
    PROGRESS: 1,
    LOG: 1,
    WORKER: 1,
    PARENT: 1,
    PARENTS: 1,
}
