"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator
from typing import Any
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from pymongo.errors import PyMongoError

from kiln.api.main import create_app
from kiln.config import Settings
from kiln.core import Kiln
from kiln.db.connection import create_client
from kiln.tasks import builtin  # noqa: F401  registers the built-in task types
from kiln.tasks.base import TaskSerializer

# Test database URL - change streams need a replica set
TEST_MONGODB_URI = os.getenv(
    "TEST_MONGODB_URI",
    "mongodb://localhost:27017/?replicaSet=rs0&directConnection=true",
)
TEST_MONGODB_DATABASE = os.getenv("TEST_MONGODB_DATABASE", "kiln_test")

# Set MONGODB_URI before anything reads the process settings
os.environ["MONGODB_URI"] = TEST_MONGODB_URI


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings with short timings."""
    return Settings(
        mongodb_uri=TEST_MONGODB_URI,
        mongodb_database=TEST_MONGODB_DATABASE,
        log_level="DEBUG",
        log_format="console",
        worker_lease_seconds=5,
        worker_poll_interval_ms=20,
        distributor_poll_attempts=2,
        progress_debounce_seconds=0.05,
        dag_submit_delay_ms=0,
        storage_retry_backoff_seconds=0.01,
        monitor_restart_backoff_seconds=0.1,
        reaper_interval_seconds=1,
    )


@pytest_asyncio.fixture
async def mongo_client() -> AsyncGenerator[AsyncIOMotorClient]:
    """Motor client for the test server; skips when none is reachable."""
    client = create_client(TEST_MONGODB_URI, serverSelectionTimeoutMS=2000)
    try:
        await client.admin.command("ping")
    except PyMongoError as e:
        client.close()
        pytest.skip(f"MongoDB not available at {TEST_MONGODB_URI}: {e}")

    yield client

    client.close()


@pytest_asyncio.fixture
async def collection(
    mongo_client: AsyncIOMotorClient,
) -> AsyncGenerator[AsyncIOMotorCollection]:
    """A fresh task collection, dropped after the test."""
    coll = mongo_client[TEST_MONGODB_DATABASE][f"tasks_{uuid4().hex[:12]}"]

    yield coll

    await coll.drop()


@pytest_asyncio.fixture
async def kiln(
    collection: AsyncIOMotorCollection,
    test_settings: Settings,
) -> AsyncGenerator[Kiln]:
    """A started façade over a fresh collection."""
    instance = Kiln(collection, test_settings)
    try:
        await instance.start()
    except PyMongoError as e:
        pytest.skip(f"Change streams unavailable (is the server a replica set?): {e}")

    yield instance

    await instance.close()


@pytest.fixture
def fake_kiln(test_settings: Settings) -> MagicMock:
    """A façade double for tests that must not touch the database."""
    fake = MagicMock(spec=Kiln)
    fake.settings = test_settings
    fake.serializer = TaskSerializer()
    fake.queue = MagicMock()
    fake.queue.ack = AsyncMock()
    fake.monitor = MagicMock()
    fake.monitor.running = True
    for name in (
        "submit",
        "submit_many",
        "resubmit",
        "completed",
        "progress",
        "poll_worker",
        "poll_scheduler",
        "next_earliest_get",
        "get_task",
        "get_task_meta",
        "get_task_logs",
        "get_tasks_metadata",
        "get_tasks_metadata_by_ids",
        "get_completion",
        "count",
        "ping",
    ):
        setattr(fake, name, AsyncMock())
    fake.ping.return_value = True
    return fake


@pytest.fixture
def app(fake_kiln: MagicMock) -> FastAPI:
    """Create a FastAPI app serving the façade double."""
    return create_app(kiln=fake_kiln)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def sample_task_payload() -> dict[str, Any]:
    """Create a sample task payload."""
    return {"type": "adding", "a": 2, "b": 3}
