"""
Task base class, type registry and payload serializer.

A task kind is a pydantic model registered under a ``type`` tag. Its fields
are the stored payload; its ``run`` coroutine is the task body. Bodies may
be executed more than once for the same task (leases expire on crashed
workers), so they must be idempotent.
"""

import importlib
import logging
from importlib.metadata import entry_points
from typing import Any, ClassVar, Protocol, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, model_validator

from kiln.constants import TASK_TYPES_ENTRY_POINT_GROUP
from kiln.exceptions import (
    NoTaskTypesRegisteredError,
    TaskValidationError,
    UnknownTaskTypeError,
)

logger = logging.getLogger(__name__)

# Key carrying the task id in the validation context
TASK_ID_CONTEXT_KEY = "task_id"


class Callback(Protocol):
    """What a running task body may report back."""

    async def log(self, message: str) -> None: ...

    async def progress(self, value: float, message: str | None = None) -> None: ...


class Task(BaseModel):
    """
    Base class for all task kinds.

    Subclasses declare their payload fields and implement ``run``. The ``id``
    is never part of the stored payload; it is supplied through the
    validation context when a payload is read back.
    """

    model_config = ConfigDict(extra="ignore", validate_assignment=False)

    task_type: ClassVar[str] = ""

    id: str | None = Field(default=None, exclude=True)

    @model_validator(mode="after")
    def _bind_id(self, info: ValidationInfo) -> "Task":
        context = info.context or {}
        task_id = context.get(TASK_ID_CONTEXT_KEY)
        if task_id is not None:
            self.id = task_id
        return self

    async def run(self, callback: Callback) -> None:
        """
        Execute the task body.

        Raise to fail the task; mutate fields to publish results, since the
        task is written back as the final payload on acknowledgement.
        """
        raise NotImplementedError(f"{type(self).__name__} does not implement run()")


TaskT = TypeVar("TaskT", bound=type[Task])

# Task type registry
_task_types: dict[str, type[Task]] = {}


def register_task_type(name: str):
    """
    Decorator to register a task kind under a type tag.

    Args:
        name: The value stored in the payload's ``type`` field.

    Returns:
        Decorator function.

    Example:
        @register_task_type("resize_image")
        class ResizeImage(Task):
            path: str
            async def run(self, callback: Callback) -> None:
                ...
    """

    def decorator(cls: TaskT) -> TaskT:
        existing = _task_types.get(name)
        if existing is not None and existing is not cls:
            raise ValueError(f"Task type {name!r} is already registered to {existing.__name__}")
        cls.task_type = name
        _task_types[name] = cls
        logger.debug(f"Registered task type: {name}")
        return cls

    return decorator


def get_task_type(name: str) -> type[Task] | None:
    """
    Get the class registered for a type tag.

    Args:
        name: The type tag.

    Returns:
        The task class or None if not registered.
    """
    return _task_types.get(name)


def list_task_types() -> list[str]:
    """List all registered type tags."""
    return list(_task_types.keys())


def get_all_task_types() -> list[type[Task]]:
    """
    Get every registered task class.

    Raises:
        NoTaskTypesRegisteredError: If nothing has been registered.
    """
    if not _task_types:
        raise NoTaskTypesRegisteredError(
            "No task types registered; import a module defining tasks or set TASK_TYPE_MODULES"
        )
    return list(_task_types.values())


def load_task_types(modules: list[str] | None = None) -> list[str]:
    """
    Import modules that register task types.

    Imports every module listed explicitly plus every module published
    under the ``kiln.task_types`` entry point group.

    Args:
        modules: Dotted module paths to import.

    Returns:
        The registered type tags after loading.
    """
    for module in modules or []:
        importlib.import_module(module)
    for entry_point in entry_points(group=TASK_TYPES_ENTRY_POINT_GROUP):
        logger.info(
            "Loading task types",
            extra={"entry_point": entry_point.name, "module": entry_point.value},
        )
        entry_point.load()
    return list_task_types()


def type_name(task_type: str | type[Task]) -> str:
    """Resolve a type tag from either a tag or a registered class."""
    if isinstance(task_type, str):
        return task_type
    if not task_type.task_type:
        raise UnknownTaskTypeError(task_type.__name__)
    return task_type.task_type


class TaskSerializer:
    """Converts between task objects and stored payload maps."""

    def serialize(self, task: Task, include_id: bool = False) -> dict[str, Any]:
        """
        Turn a task into its payload.

        Args:
            task: The task to serialize.
            include_id: Also copy the task id into the map, as acks expect.

        Returns:
            The payload, with the ``type`` tag first.
        """
        if not task.task_type:
            raise UnknownTaskTypeError(type(task).__name__)
        payload = {"type": task.task_type, **task.model_dump(mode="json")}
        if include_id:
            if task.id is None:
                raise TaskValidationError("Task has no id; it was never submitted")
            payload["id"] = task.id
        return payload

    def deserialize(
        self,
        payload: dict[str, Any],
        task_type: str | type[Task] | None = None,
    ) -> Task:
        """
        Hydrate a task from a payload.

        Args:
            payload: The stored payload, optionally containing ``id``.
            task_type: Forces a type instead of reading the ``type`` tag.

        Returns:
            The task, with its id bound when the payload carried one.

        Raises:
            UnknownTaskTypeError: If the type is not registered.
        """
        if task_type is not None and not isinstance(task_type, str):
            cls = task_type
        else:
            name = task_type or payload.get("type")
            cls = get_task_type(name) if name else None
            if cls is None:
                raise UnknownTaskTypeError(name)
        data = {k: v for k, v in payload.items() if k not in ("id", "type")}
        return cls.model_validate(data, context={TASK_ID_CONTEXT_KEY: payload.get("id")})
