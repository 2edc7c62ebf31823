"""
Progress callbacks handed to running task bodies.

Both callbacks buffer log lines and the latest progress value and write
them out at most once per debounce interval, or immediately when progress
reaches 1.0.
"""

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING

from pymongo.errors import PyMongoError

from kiln.constants import INITIAL_PROGRESS
from kiln.observability.metrics import get_metrics

if TYPE_CHECKING:
    from kiln.core import Kiln

logger = logging.getLogger(__name__)


class BufferedCallback(ABC):
    """Debounces log lines and progress into periodic flushes."""

    def __init__(
        self,
        debounce_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.debounce_seconds = debounce_seconds
        self._clock = clock
        self._lines: list[str] = []
        self._progress = INITIAL_PROGRESS
        self._last_flush: float | None = None

    @property
    def pending_lines(self) -> list[str]:
        return list(self._lines)

    @property
    def current_progress(self) -> float:
        return self._progress

    async def log(self, message: str) -> None:
        """Buffer a log line."""
        self._lines.append(message)
        await self._maybe_flush(force=False)

    async def progress(self, value: float, message: str | None = None) -> None:
        """
        Record progress, optionally with a log line.

        Args:
            value: Fraction done; 1.0 or more forces a flush.
            message: Line appended to the task log.
        """
        if message is not None:
            self._lines.append(message)
        self._progress = value
        await self._maybe_flush(force=value >= 1.0)

    async def _maybe_flush(self, force: bool) -> None:
        now = self._clock()
        if force or self._last_flush is None or now - self._last_flush > self.debounce_seconds:
            await self.flush()

    async def flush(self) -> None:
        """Send the buffered lines and progress now."""
        lines, self._lines = self._lines, []
        self._last_flush = self._clock()
        await self._send(lines, self._progress)

    @abstractmethod
    async def _send(self, lines: list[str], progress: float) -> None:
        """Deliver one flush."""


class WorkerCallback(BufferedCallback):
    """
    Callback for tasks executed by an in-process worker.

    Each flush heart-beats the record through ``Kiln.progress``, extending
    the lease by ``reset_seconds``. Flushes are best-effort: a storage
    failure is logged and the task keeps running.
    """

    def __init__(
        self,
        kiln: "Kiln",
        task_id: str,
        worker: str,
        reset_seconds: float,
        debounce_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(debounce_seconds=debounce_seconds, clock=clock)
        self._kiln = kiln
        self.task_id = task_id
        self.worker = worker
        self.reset_seconds = reset_seconds

    async def _send(self, lines: list[str], progress: float) -> None:
        try:
            await self._kiln.progress(
                self.task_id, lines, progress, self.reset_seconds, self.worker
            )
            get_metrics().record_progress_flush()
        except PyMongoError as e:
            logger.warning(
                f"Progress update failed: {e}",
                extra={"task_id": self.task_id, "worker": self.worker},
            )
