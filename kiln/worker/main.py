"""
Worker process for executing tasks.

A pool of runner coroutines takes tasks from the distributor, executes
their bodies and acknowledges them as completed or failed.
"""

import asyncio
import logging
import os
import signal
import time
from uuid import uuid4

from kiln.config import get_settings
from kiln.constants import SPAN_EXECUTE_TASK, TaskStatus
from kiln.core import Kiln
from kiln.exceptions import DistributorClosedError
from kiln.observability.logging import bind_task_context, clear_task_context, setup_logging
from kiln.observability.metrics import get_metrics, setup_metrics
from kiln.observability.tracing import setup_tracing, task_span
from kiln.tasks.base import Task, get_all_task_types, load_task_types, type_name
from kiln.worker.callback import WorkerCallback

logger = logging.getLogger(__name__)


class WorkerPool:
    """
    Pool of runners executing tasks from one distributor.

    Features:
    - Runners named ``<pool name>:<index>`` so leases identify their holder
    - Progress heart-beats through a debounced callback extend leases
    - Graceful stop: idle runners are cancelled, running bodies finish
    """

    def __init__(
        self,
        kiln: Kiln,
        parallelism: int | None = None,
        name: str | None = None,
        task_types: list[str | type[Task]] | None = None,
    ):
        """
        Initialize the pool.

        Args:
            kiln: The façade.
            parallelism: Number of runners. Defaults to the configured value,
                then the CPU count.
            name: Pool name. Defaults to a random UUID.
            task_types: Type tags to execute. Defaults to every registered type.
        """
        settings = kiln.settings

        self.kiln = kiln
        self.name = name or str(uuid4())
        self.parallelism = parallelism or settings.worker_parallelism or os.cpu_count() or 1
        self.lease_seconds = settings.worker_lease_seconds
        self.debounce_seconds = settings.progress_debounce_seconds

        names = [type_name(t) for t in task_types] if task_types else None
        self.distributor = kiln.get_distributor(
            names, capacity=max(self.parallelism, os.cpu_count() or 1)
        )

        self._cancelled = False
        self._runners: dict[str, asyncio.Task] = {}
        self._busy: set[str] = set()
        self._metrics = get_metrics()

    @property
    def runner_names(self) -> list[str]:
        return list(self._runners)

    @property
    def busy_runners(self) -> set[str]:
        return set(self._busy)

    async def start(self) -> None:
        """Start every runner."""
        logger.info(
            "Worker pool starting",
            extra={"pool": self.name, "parallelism": self.parallelism},
        )
        self._cancelled = False
        for index in range(self.parallelism):
            runner_name = f"{self.name}:{index + 1}"
            self._runners[runner_name] = asyncio.create_task(
                self._runner_loop(runner_name), name=runner_name
            )

    async def stop(self) -> None:
        """
        Stop the pool gracefully.

        Idle runners are cancelled; runners executing a task finish it
        (including its acknowledgement) and then exit.
        """
        logger.info("Worker pool stopping", extra={"pool": self.name})
        self._cancelled = True
        for runner_name, runner in self._runners.items():
            if runner_name not in self._busy:
                runner.cancel()
        await self.wait()

    async def wait(self) -> None:
        """Wait for every runner to exit."""
        if self._runners:
            await asyncio.gather(*self._runners.values(), return_exceptions=True)
        logger.info("Worker pool stopped", extra={"pool": self.name})

    async def _runner_loop(self, runner_name: str) -> None:
        while not self._cancelled:
            try:
                task = await self.distributor.get(runner_name)
            except DistributorClosedError:
                break

            self._busy.add(runner_name)
            bind_task_context(task.id, runner_name)
            try:
                await self._execute(task, runner_name)
            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker": runner_name, "task_id": task.id},
                )
            finally:
                clear_task_context()
                self._busy.discard(runner_name)

    async def _execute(self, task: Task, runner_name: str) -> None:
        """
        Run one task body and acknowledge the outcome.

        Args:
            task: The claimed task.
            runner_name: The runner executing it.
        """
        callback = WorkerCallback(
            self.kiln,
            task.id,
            runner_name,
            reset_seconds=self.lease_seconds,
            debounce_seconds=self.debounce_seconds,
        )
        start_time = time.monotonic()

        logger.info(
            "Executing task",
            extra={"task_id": task.id, "type": task.task_type, "worker": runner_name},
        )

        with task_span(
            SPAN_EXECUTE_TASK, task_id=task.id, task_type=task.task_type, worker=runner_name
        ) as span:
            try:
                await task.run(callback)
            except Exception as e:
                status = TaskStatus.FAILED
                logger.warning(
                    "Task failed",
                    extra={"task_id": task.id, "type": task.task_type, "error": str(e)},
                )
                await callback.progress(1.0, f"{type(e).__name__}: {e}")
            else:
                status = TaskStatus.COMPLETED
                await callback.progress(1.0)

            span.set_attribute("status", status.value)
            await self.kiln.completed(task, status)

        duration = time.monotonic() - start_time
        self._metrics.record_task_duration(task.task_type, status.value, duration)
        logger.info(
            "Task finished",
            extra={
                "task_id": task.id,
                "status": status.value,
                "duration": f"{duration:.2f}s",
            },
        )


async def run_async() -> None:
    """Run a worker pool until SIGTERM/SIGINT."""
    settings = get_settings()
    setup_logging("worker")
    setup_metrics()
    setup_tracing("worker")

    load_task_types(settings.task_type_modules)
    task_types = get_all_task_types()
    logger.info(
        "Task types loaded",
        extra={"task_types": [t.task_type for t in task_types]},
    )

    kiln = await Kiln.connect()
    pool = WorkerPool(kiln)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(pool.stop())
        )

    try:
        await pool.start()
        await pool.wait()
    finally:
        await kiln.close()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
