"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from kiln.constants import DEFAULT_PRIORITY, TaskStatus
from kiln.types.task import TaskMeta


class SubmitTaskRequest(BaseModel):
    """Request body for submitting a task."""

    task: dict[str, Any] = Field(..., description="Task payload including its 'type'")
    delay_ms: int = Field(default=0, ge=0, description="Delay before the task may be claimed")
    priority: float = Field(
        default=DEFAULT_PRIORITY, description="Lower values are claimed first"
    )
    parents: list[str] = Field(
        default_factory=list, description="Tasks that must complete first"
    )


class SubmitTaskResponse(BaseModel):
    """Response body after submitting a task."""

    id: str
    status: TaskStatus
    message: str = "Task submitted successfully"


class SubmitBatchRequest(BaseModel):
    """Request body for submitting several tasks at once."""

    tasks: list[dict[str, Any]] = Field(..., min_length=1)
    delay_ms: int = Field(default=0, ge=0)
    priority: float = DEFAULT_PRIORITY


class SubmitBatchResponse(BaseModel):
    """Ids of a submitted batch, in submission order."""

    ids: list[str]


class TaskResponse(BaseModel):
    """A task's metadata together with its payload."""

    meta: TaskMeta
    task: dict[str, Any] | None


class TaskIdsRequest(BaseModel):
    """Request body naming specific tasks."""

    ids: list[str] = Field(..., min_length=1)


class TaskListResponse(BaseModel):
    """List of task metadata."""

    tasks: list[TaskMeta]
    total: int


class TaskLogsResponse(BaseModel):
    """Log lines of a task in the order they were stored."""

    id: str
    log: list[str]


class CompletionResponse(BaseModel):
    """Terminal state of a task."""

    id: str
    status: TaskStatus
    task: dict[str, Any] | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    change_stream: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
