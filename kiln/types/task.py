"""
Task metadata type definitions.
"""

from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, Field

from kiln.constants import TaskStatus


class TaskMeta(BaseModel):
    """Everything stored about a task except its payload."""

    id: str
    type: str | None = None
    status: TaskStatus
    created: datetime
    earliest_get: datetime
    reset_timestamp: datetime
    priority: float
    progress: float
    attempt: int
    log: list[str] = Field(default_factory=list)
    worker: str | None = None
    parent: str | None = None
    parents: list[str] = Field(default_factory=list)

    @property
    def is_finished(self) -> bool:
        """Whether the task reached a terminal status."""
        return self.status.is_finished


@dataclass(frozen=True)
class IdAndStatus:
    """The id of a submitted (or looked-up) task and its status at that time."""

    id: str
    status: TaskStatus
