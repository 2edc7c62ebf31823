"""
Type definitions for the task queue.
Contains input/output type definitions, grouped by module.
"""

from kiln.types.api import (
    CompletionResponse,
    ErrorResponse,
    HealthResponse,
    SubmitBatchRequest,
    SubmitBatchResponse,
    SubmitTaskRequest,
    SubmitTaskResponse,
    TaskIdsRequest,
    TaskListResponse,
    TaskLogsResponse,
    TaskResponse,
)
from kiln.types.events import StatusChange, WebSocketCommand, WebSocketMessage
from kiln.types.task import IdAndStatus, TaskMeta

__all__ = [
    # API types
    "SubmitTaskRequest",
    "SubmitTaskResponse",
    "SubmitBatchRequest",
    "SubmitBatchResponse",
    "TaskIdsRequest",
    "TaskResponse",
    "TaskListResponse",
    "TaskLogsResponse",
    "CompletionResponse",
    "HealthResponse",
    "ErrorResponse",
    # Task types
    "TaskMeta",
    "IdAndStatus",
    # Event types
    "StatusChange",
    "WebSocketMessage",
    "WebSocketCommand",
]
