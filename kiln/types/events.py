"""
Event type definitions for change-stream dispatch and WebSocket messaging.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from kiln.constants import WS_EVENT_TYPES, TaskStatus


@dataclass(frozen=True)
class StatusChange:
    """
    A status transition observed on the change stream.

    ``payload`` carries the task payload (with ``id`` injected) when the
    change event included it, otherwise None.
    """

    task_id: str
    status: TaskStatus
    payload: dict[str, Any] | None = None

    @property
    def is_finished(self) -> bool:
        return self.status.is_finished


class WebSocketMessage(BaseModel):
    """Message format for WebSocket communication."""

    type: str
    task_id: str
    status: TaskStatus
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    data: dict[str, Any] | None = None

    @classmethod
    def from_change(cls, change: StatusChange) -> "WebSocketMessage":
        """Create a WebSocket message from a status change."""
        return cls(
            type=WS_EVENT_TYPES[change.status],
            task_id=change.task_id,
            status=change.status,
            data={"payload": change.payload} if change.payload is not None else None,
        )


class WebSocketCommand(BaseModel):
    """
    A client request on ``/ws/tasks``.

    ``subscribe`` and ``unsubscribe`` take a ``task_id`` or a list of
    ``statuses``; ``ping`` takes nothing.
    """

    action: Literal["subscribe", "unsubscribe", "ping"]
    task_id: str | None = None
    statuses: list[TaskStatus] = Field(default_factory=list)
