"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class TaskStatus(StrEnum):
    """
    Task lifecycle states.

    State transitions:
    - QUEUED -> RUNNING (lease acquired by get)
    - RUNNING -> QUEUED (lease expired - crash recovery, attempt incremented)
    - RUNNING -> COMPLETED / FAILED / CANCELLED (ack)
    - BLOCKED -> QUEUED (every parent completed)
    - BLOCKED -> FAILED (a parent failed or was cancelled)
    - any -> QUEUED (explicit resubmit)
    """

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    BLOCKED = "blocked"

    @property
    def is_finished(self) -> bool:
        """Whether the status is terminal."""
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)

VERSION = "1.0.0"

# Default values
DEFAULT_PRIORITY = 0.0
DEFAULT_LEASE_SECONDS = 300
INITIAL_PROGRESS = -1.0

# API constants
API_V1_PREFIX = "/v1"

# Entry point group scanned for task type modules
TASK_TYPES_ENTRY_POINT_GROUP = "kiln.task_types"

# Metrics names
METRIC_QUEUE_DEPTH = "kiln_queue_depth"
METRIC_TASKS_SUBMITTED = "kiln_tasks_submitted_total"
METRIC_TASKS_COMPLETED = "kiln_tasks_completed_total"
METRIC_TASK_DURATION = "kiln_task_duration_seconds"
METRIC_LEASE_EXPIRED = "kiln_lease_expired_total"
METRIC_LEASE_ACQUIRED = "kiln_lease_acquired_total"
METRIC_PROGRESS_FLUSHES = "kiln_progress_flushes_total"
METRIC_DISTRIBUTOR_PAUSED = "kiln_distributor_paused"

# Trace span names
SPAN_SUBMIT_TASK = "submit_task"
SPAN_CLAIM_TASK = "claim_task"
SPAN_EXECUTE_TASK = "execute_task"
SPAN_ACK_TASK = "ack_task"

# WebSocket event types, keyed by the status that produced them
WS_EVENT_TYPES: dict[TaskStatus, str] = {
    TaskStatus.QUEUED: "task.queued",
    TaskStatus.RUNNING: "task.running",
    TaskStatus.COMPLETED: "task.completed",
    TaskStatus.FAILED: "task.failed",
    TaskStatus.CANCELLED: "task.cancelled",
    TaskStatus.BLOCKED: "task.blocked",
}
