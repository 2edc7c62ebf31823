"""
Task kinds: base class, registry and serializer.
"""

from kiln.tasks.base import (
    Callback,
    Task,
    TaskSerializer,
    get_all_task_types,
    get_task_type,
    list_task_types,
    load_task_types,
    register_task_type,
    type_name,
)

__all__ = [
    "Callback",
    "Task",
    "TaskSerializer",
    "register_task_type",
    "get_task_type",
    "list_task_types",
    "get_all_task_types",
    "load_task_types",
    "type_name",
]
