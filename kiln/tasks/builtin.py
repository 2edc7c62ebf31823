"""
Built-in task types.

Small, idempotent task kinds used for smoke tests, demos and the test
suite. Importing this module registers them.
"""

import asyncio
import logging

import httpx

from kiln.tasks.base import Callback, Task, register_task_type

logger = logging.getLogger(__name__)


@register_task_type("echo")
class EchoTask(Task):
    """Copies ``message`` into ``echoed``."""

    message: str = ""
    echoed: str | None = None

    async def run(self, callback: Callback) -> None:
        logger.info("Echo task executing", extra={"task_id": self.id})
        self.echoed = self.message
        await callback.log(self.message)


@register_task_type("adding")
class AddingTask(Task):
    """Stores ``a + b`` in ``c``."""

    a: float
    b: float
    c: float | None = None

    async def run(self, callback: Callback) -> None:
        self.c = self.a + self.b
        await callback.progress(1.0, f"{self.a} + {self.b} = {self.c}")


@register_task_type("uppercase")
class UppercaseTask(Task):
    """Upper-cases ``input`` into ``output``."""

    input: str
    output: str | None = None

    async def run(self, callback: Callback) -> None:
        self.output = self.input.upper()


@register_task_type("sleep")
class SleepTask(Task):
    """
    Sleeps for ``duration_seconds`` in ``steps`` slices, reporting progress
    after each one.
    """

    duration_seconds: float = 1.0
    steps: int = 4

    async def run(self, callback: Callback) -> None:
        steps = max(self.steps, 1)
        for step in range(1, steps + 1):
            await asyncio.sleep(self.duration_seconds / steps)
            await callback.progress(step / steps, f"step {step}/{steps}")


@register_task_type("failing")
class FailingTask(Task):
    """Always fails - for testing failure handling and cascades."""

    message: str = "Intentional failure"

    async def run(self, callback: Callback) -> None:
        logger.info("Failing task executing (will fail)", extra={"task_id": self.id})
        raise RuntimeError(self.message)


@register_task_type("http_request")
class HttpRequestTask(Task):
    """
    Makes an HTTP request and records the response status.

    Fails when the server answers with a 4xx or 5xx status.
    """

    url: str
    method: str = "GET"
    headers: dict[str, str] = {}
    body: str | None = None
    timeout_seconds: float = 30.0
    status_code: int | None = None

    async def run(self, callback: Callback) -> None:
        await callback.log(f"{self.method} {self.url}")
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.request(
                method=self.method,
                url=self.url,
                headers=self.headers,
                content=self.body,
            )
        self.status_code = response.status_code
        await callback.log(f"HTTP {response.status_code}")
        response.raise_for_status()
