"""
Exception hierarchy for the task queue.
"""


class KilnError(Exception):
    """Base class for all task queue errors."""


class TaskValidationError(KilnError, ValueError):
    """
    Raised synchronously when a request is malformed.

    Covers non-finite priorities, missing payloads, non-terminal ack
    statuses and malformed task ids. Never recorded on a task.
    """


class UnknownTaskTypeError(TaskValidationError):
    """Raised when a payload names a task type that is not registered."""

    def __init__(self, task_type: str | None):
        super().__init__(f"Unknown task type: {task_type!r}")
        self.task_type = task_type


class TaskNotFoundError(KilnError):
    """Raised when an operation refers to a task id that does not exist."""

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class NoTaskTypesRegisteredError(KilnError):
    """Raised when a worker starts without any registered task types."""


class DistributorClosedError(KilnError):
    """Raised when a worker asks a shut-down distributor for work."""
