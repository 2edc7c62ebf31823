"""
Per-process distributor multiplexing idle workers onto one claim loop.

Workers announce themselves on a waiting queue; a single runner claims one
task per waiting worker and pushes it on a ready queue. At most
``capacity`` claimed tasks sit in the ready queue untaken.
When a bounded claim finds nothing the runner pauses instead of polling;
a QUEUED status event from the change stream, or a timer set for the next
delayed task, wakes it again.
"""

import asyncio
import logging
from typing import TYPE_CHECKING

from kiln.constants import TaskStatus
from kiln.db.models import utcnow
from kiln.exceptions import DistributorClosedError
from kiln.observability.metrics import get_metrics
from kiln.tasks.base import Task
from kiln.types.events import StatusChange

if TYPE_CHECKING:
    from kiln.core import Kiln

logger = logging.getLogger(__name__)


class Distributor:
    """
    Hands claimed tasks to waiting workers.

    The ready queue is FIFO, so among waiting workers the longest-waiting
    receives the next task. Each claim takes one of ``capacity`` slots and a
    worker taking the task gives it back; with no free slot the runner waits
    before claiming. The waiting queue is unbounded, so putting a worker back
    never blocks the runner.
    """

    def __init__(
        self,
        kiln: "Kiln",
        task_types: list[str],
        capacity: int,
        error_backoff_seconds: float = 1.0,
    ):
        """
        Initialize the distributor.

        Args:
            kiln: Façade used for claims.
            task_types: Type tags this distributor claims.
            capacity: Claimed tasks that may wait in the ready queue untaken.
            error_backoff_seconds: Pause after a failed claim.
        """
        self._kiln = kiln
        self.task_types = list(task_types)
        self.capacity = max(capacity, 1)
        self._error_backoff = error_backoff_seconds
        self._waiting: asyncio.Queue[str] = asyncio.Queue()
        self._ready: asyncio.Queue[Task] = asyncio.Queue()
        self._slots = asyncio.Semaphore(self.capacity)
        self._runner: asyncio.Task | None = None
        self._wake_timer: asyncio.TimerHandle | None = None
        self._paused = False
        self._wake_pending = False
        self._closed = False
        self._metrics = get_metrics()

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def active(self) -> bool:
        return self._runner is not None and not self._runner.done()

    async def get(self, worker: str) -> Task:
        """
        Wait for the next task for a worker.

        Args:
            worker: Name recorded as the lease holder.

        Raises:
            DistributorClosedError: If the distributor was shut down.
        """
        if self._closed:
            raise DistributorClosedError("Distributor is shut down")
        self._waiting.put_nowait(worker)
        self._ensure_runner()
        task = await self._ready.get()
        self._slots.release()
        return task

    def ensure_capacity(self, capacity: int) -> None:
        """Raise the slot count to at least ``capacity``; it never shrinks."""
        for _ in range(capacity - self.capacity):
            self._slots.release()
        self.capacity = max(self.capacity, capacity)

    def task_status_changed(self, change: StatusChange) -> None:
        """Monitor listener: a newly queued task wakes the runner."""
        if change.status == TaskStatus.QUEUED:
            self.wake()

    def wake(self) -> None:
        """Resume claiming if paused."""
        self._wake_pending = True
        if self._closed:
            return
        self._cancel_wake_timer()
        if self._paused:
            self._set_paused(False)
        if self._waiting.qsize():
            self._ensure_runner()

    async def shutdown(self) -> None:
        """
        Stop the runner.

        Tasks already claimed but not yet handed out stay RUNNING until
        their lease expires.
        """
        self._closed = True
        self._cancel_wake_timer()
        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None
        logger.info("Distributor shut down", extra={"task_types": self.task_types})

    def _ensure_runner(self) -> None:
        if self._closed or self.active:
            return
        self._runner = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while not self._closed:
            worker = await self._waiting.get()
            await self._slots.acquire()
            self._wake_pending = False
            try:
                task = await self._kiln.poll_worker(self.task_types, worker)
            except Exception as e:
                logger.exception(
                    f"Claim failed: {e}",
                    extra={"worker": worker, "task_types": self.task_types},
                )
                self._slots.release()
                self._waiting.put_nowait(worker)
                await asyncio.sleep(self._error_backoff)
                continue

            if task is not None:
                self._ready.put_nowait(task)
                continue

            self._slots.release()
            self._waiting.put_nowait(worker)
            if self._wake_pending:
                continue
            await self._pause()
            if self._wake_pending:
                self._set_paused(False)
                continue
            return

    async def _pause(self) -> None:
        self._set_paused(True)
        try:
            next_time = await self._kiln.next_earliest_get(self.task_types)
        except Exception as e:
            logger.warning(f"Could not schedule delayed wake-up: {e}")
            return
        if next_time is not None and not self._closed:
            delay = max((next_time - utcnow()).total_seconds(), 0.0) + 0.01
            self._cancel_wake_timer()
            self._wake_timer = asyncio.get_running_loop().call_later(delay, self.wake)
            logger.debug("Distributor paused until next delayed task", extra={"delay": delay})
        else:
            logger.debug("Distributor paused", extra={"task_types": self.task_types})

    def _set_paused(self, paused: bool) -> None:
        self._paused = paused
        self._metrics.set_distributor_paused(self.task_types, paused)

    def _cancel_wake_timer(self) -> None:
        if self._wake_timer is not None:
            self._wake_timer.cancel()
            self._wake_timer = None
