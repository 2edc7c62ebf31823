"""
Kiln

A distributed task queue backed by MongoDB: leased claims with crash
recovery, priority ordering, progress heart-beats, parent/child task graphs
and change-stream driven completion notifications.
"""

from kiln.constants import VERSION, TaskStatus
from kiln.core import Kiln
from kiln.dag import TaskDAG
from kiln.exceptions import (
    KilnError,
    NoTaskTypesRegisteredError,
    TaskNotFoundError,
    TaskValidationError,
    UnknownTaskTypeError,
)
from kiln.tasks import Callback, Task, register_task_type
from kiln.types.task import IdAndStatus, TaskMeta

__version__ = VERSION

__all__ = [
    "Kiln",
    "Task",
    "Callback",
    "TaskDAG",
    "TaskMeta",
    "TaskStatus",
    "IdAndStatus",
    "register_task_type",
    "KilnError",
    "TaskValidationError",
    "UnknownTaskTypeError",
    "TaskNotFoundError",
    "NoTaskTypesRegisteredError",
]
