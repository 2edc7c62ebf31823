"""
Task management routes.
"""

import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, status

from kiln.api.deps import KilnDep
from kiln.constants import API_V1_PREFIX, TaskStatus
from kiln.exceptions import TaskNotFoundError
from kiln.types.api import (
    CompletionResponse,
    SubmitBatchRequest,
    SubmitBatchResponse,
    SubmitTaskRequest,
    SubmitTaskResponse,
    TaskIdsRequest,
    TaskListResponse,
    TaskLogsResponse,
    TaskResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/tasks", tags=["Tasks"])


@router.post(
    "",
    response_model=SubmitTaskResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a task",
    description="Submit a task; it is blocked until every listed parent completes.",
)
async def submit_task(request: SubmitTaskRequest, kiln: KilnDep) -> SubmitTaskResponse:
    """
    Submit a task.

    The payload is validated against the registered task type before it
    is stored.

    Args:
        request: Task payload and submission options.
        kiln: The task queue.

    Returns:
        SubmitTaskResponse with the new id and status.
    """
    task = kiln.serializer.deserialize(request.task)
    task_id = await kiln.submit(
        task,
        delay_ms=request.delay_ms,
        parents=request.parents,
        priority=request.priority,
    )
    meta = await kiln.get_task_meta(task_id)
    return SubmitTaskResponse(
        id=task_id,
        status=meta.status if meta else TaskStatus.QUEUED,
    )


@router.post(
    "/batch",
    response_model=SubmitBatchResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a batch of tasks",
)
async def submit_batch(request: SubmitBatchRequest, kiln: KilnDep) -> SubmitBatchResponse:
    """
    Submit several tasks with identical timings.

    Args:
        request: Task payloads.
        kiln: The task queue.

    Returns:
        The ids in submission order.
    """
    tasks = [kiln.serializer.deserialize(payload) for payload in request.tasks]
    ids = await kiln.submit_many(tasks, delay_ms=request.delay_ms, priority=request.priority)
    return SubmitBatchResponse(ids=ids)


@router.get(
    "",
    response_model=TaskListResponse,
    summary="List task metadata",
)
async def list_tasks(
    kiln: KilnDep,
    status_filter: Annotated[list[TaskStatus] | None, Query(alias="status")] = None,
    task_type: Annotated[str | None, Query(alias="type")] = None,
) -> TaskListResponse:
    """
    List task metadata, optionally filtered by status and type.

    Args:
        kiln: The task queue.
        status_filter: Statuses to include (repeatable).
        task_type: Type tag to include.

    Returns:
        TaskListResponse, oldest first.
    """
    payload_filter = {"type": task_type} if task_type else None
    tasks = await kiln.get_tasks_metadata(status_filter, payload_filter)
    return TaskListResponse(tasks=tasks, total=len(tasks))


@router.post(
    "/metadata",
    response_model=TaskListResponse,
    summary="Get metadata of specific tasks",
)
async def tasks_metadata(request: TaskIdsRequest, kiln: KilnDep) -> TaskListResponse:
    """
    Get metadata for a list of ids; unknown ids are skipped.

    Args:
        request: The ids.
        kiln: The task queue.
    """
    tasks = await kiln.get_tasks_metadata_by_ids(request.ids)
    return TaskListResponse(tasks=tasks, total=len(tasks))


@router.get(
    "/{task_id}",
    response_model=TaskResponse,
    summary="Get a task",
)
async def get_task(task_id: str, kiln: KilnDep) -> TaskResponse:
    """
    Get a task's metadata and payload.

    Args:
        task_id: The task id.
        kiln: The task queue.

    Returns:
        TaskResponse.

    Raises:
        HTTPException: If the task doesn't exist.
    """
    meta = await kiln.get_task_meta(task_id)
    if meta is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    task = await kiln.get_task(task_id)
    return TaskResponse(
        meta=meta,
        task=kiln.serializer.serialize(task, include_id=True) if task else None,
    )


@router.get(
    "/{task_id}/logs",
    response_model=TaskLogsResponse,
    summary="Get a task's log",
)
async def get_task_logs(task_id: str, kiln: KilnDep) -> TaskLogsResponse:
    """
    Get a task's log lines in stored order.

    Args:
        task_id: The task id.
        kiln: The task queue.
    """
    return TaskLogsResponse(id=task_id, log=await kiln.get_task_logs(task_id))


@router.post(
    "/{task_id}/resubmit",
    response_model=SubmitTaskResponse,
    summary="Resubmit a task",
    description="Put a task back in the queue with fresh timings and a reset attempt counter.",
)
async def resubmit_task(task_id: str, kiln: KilnDep) -> SubmitTaskResponse:
    """
    Resubmit a task.

    Args:
        task_id: The task id.
        kiln: The task queue.
    """
    await kiln.resubmit(task_id)
    return SubmitTaskResponse(
        id=task_id,
        status=TaskStatus.QUEUED,
        message="Task resubmitted",
    )


@router.get(
    "/{task_id}/completion",
    response_model=CompletionResponse,
    summary="Wait for a task to finish",
    responses={408: {"description": "Task did not finish within the timeout"}},
)
async def wait_for_completion(
    task_id: str,
    kiln: KilnDep,
    timeout: Annotated[float, Query(gt=0, le=300)] = 30.0,
) -> CompletionResponse:
    """
    Wait until a task reaches a terminal status.

    Args:
        task_id: The task id.
        kiln: The task queue.
        timeout: Seconds to wait.

    Raises:
        HTTPException: 408 if the task is still running after ``timeout``.
    """
    future = await kiln.get_completion(task_id)
    try:
        task = await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
    except TimeoutError:
        raise HTTPException(
            status_code=status.HTTP_408_REQUEST_TIMEOUT,
            detail="Task did not finish within the timeout",
        ) from None

    meta = await kiln.get_task_meta(task_id)
    if meta is None:
        raise TaskNotFoundError(task_id)
    return CompletionResponse(
        id=task_id,
        status=meta.status,
        task=kiln.serializer.serialize(task, include_id=True) if task else None,
    )
