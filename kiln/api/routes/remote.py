"""
Remote execution routes.

``/responses`` is served by the scheduler side and applies executor
responses; ``/execute`` is served by executors and runs a published task.
"""

import logging

from fastapi import APIRouter, status

from kiln.api.deps import KilnDep, RemoteWorkerDep
from kiln.constants import API_V1_PREFIX
from kiln.remote import ResponseHandler, TaskMessage, WorkerResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/remote", tags=["Remote"])


@router.post(
    "/responses",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Apply an executor response",
    description="Progress updates extend the lease; responses carrying a task acknowledge it.",
)
async def receive_response(response: WorkerResponse, kiln: KilnDep) -> dict:
    """
    Apply a progress update or terminal response from a remote executor.

    Args:
        response: The executor's response.
        kiln: The task queue.
    """
    await ResponseHandler(kiln).handle(response)
    return {"accepted": True}


@router.post(
    "/execute",
    summary="Execute a published task",
)
async def execute_task(message: TaskMessage, worker: RemoteWorkerDep) -> dict:
    """
    Run a task published by a scheduler and report back.

    Args:
        message: The claimed task.
        worker: The remote executor.
    """
    await worker.perform(message)
    return {"executed": message.task.get("id")}
