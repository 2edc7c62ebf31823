"""
Periodic lease recovery.

Claims already sweep expired leases, but only while somebody is claiming.
The reaper runs the same sweep on a timer, so tasks abandoned by crashed
workers return to QUEUED (and their QUEUED events wake paused
distributors) even when every distributor is idle. Each pass also
refreshes the per-status queue depth gauges.
"""

import asyncio
import logging
import signal

from kiln.config import get_settings
from kiln.db import close_db, get_collection, init_db
from kiln.db.queue_core import QueueCore
from kiln.observability.logging import setup_logging
from kiln.observability.metrics import get_metrics, setup_metrics
from kiln.observability.tracing import setup_tracing

logger = logging.getLogger(__name__)


class Reaper:
    """Recovers expired leases every ``interval`` seconds until stopped."""

    def __init__(self, queue: QueueCore, interval_seconds: float | None = None):
        self.queue = queue
        self.interval = interval_seconds or get_settings().reaper_interval_seconds
        self._stopped = asyncio.Event()
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Run passes until ``stop`` is called; a failed pass is logged and skipped."""
        logger.info("Reaper starting", extra={"interval": self.interval})
        self._stopped.clear()

        while not self._stopped.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Reaper pass failed: {e}")

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except TimeoutError:
                pass

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        self._stopped.set()

    async def run_once(self) -> int:
        """
        Run one pass.

        Returns:
            Number of tasks returned to the queue.
        """
        recovered = await self.queue.recover_expired_leases()
        depths = await self.queue.status_counts()
        for status, depth in depths.items():
            self._metrics.update_queue_depth(status.value, depth)

        logger.debug(
            "Reaper pass finished",
            extra={"recovered": recovered, **{s.value: d for s, d in depths.items()}},
        )
        return recovered


async def run_async() -> None:
    """Run the reaper until SIGTERM/SIGINT."""
    settings = get_settings()
    setup_logging("reaper")
    setup_metrics()
    setup_tracing("reaper")
    await init_db(settings)

    reaper = Reaper(QueueCore(get_collection(settings=settings), settings))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(reaper.stop()))

    try:
        await reaper.start()
    finally:
        await close_db()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
