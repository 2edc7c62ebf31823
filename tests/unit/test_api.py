"""
Tests for the HTTP API against a façade double.
"""

import asyncio
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
from httpx import AsyncClient

from kiln.constants import TaskStatus
from kiln.exceptions import TaskNotFoundError
from kiln.tasks.builtin import AddingTask
from kiln.types.task import TaskMeta

TASK_ID = "65a000000000000000000001"
NOW = datetime(2024, 1, 1, tzinfo=UTC)


def meta(status: TaskStatus = TaskStatus.QUEUED, **fields) -> TaskMeta:
    return TaskMeta(
        id=TASK_ID,
        type="adding",
        status=status,
        created=NOW,
        earliest_get=NOW,
        reset_timestamp=NOW,
        priority=0.0,
        progress=0.0,
        attempt=0,
        **fields,
    )


def adding(c: float | None = None) -> AddingTask:
    task = AddingTask(a=2, b=3, c=c)
    task.id = TASK_ID
    return task


class TestTaskAPI:
    """Tests for task endpoints."""

    @pytest.mark.asyncio
    async def test_submit_task(
        self,
        client: AsyncClient,
        fake_kiln: MagicMock,
        sample_task_payload: dict,
    ):
        """A valid payload is submitted with its options."""
        fake_kiln.submit.return_value = TASK_ID
        fake_kiln.get_task_meta.return_value = meta()

        response = await client.post(
            "/v1/tasks",
            json={"task": sample_task_payload, "priority": 5, "delay_ms": 100},
        )

        assert response.status_code == 201
        assert response.json()["id"] == TASK_ID
        assert response.json()["status"] == "queued"
        task = fake_kiln.submit.await_args.args[0]
        assert isinstance(task, AddingTask)
        assert fake_kiln.submit.await_args.kwargs == {
            "delay_ms": 100,
            "parents": [],
            "priority": 5.0,
        }

    @pytest.mark.asyncio
    async def test_submit_unknown_type(self, client: AsyncClient, fake_kiln: MagicMock):
        """Unregistered types are rejected before anything is stored."""
        response = await client.post("/v1/tasks", json={"task": {"type": "nonexistent"}})

        assert response.status_code == 422
        assert response.json()["error"] == "invalid_task"
        fake_kiln.submit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_submit_invalid_fields(self, client: AsyncClient, fake_kiln: MagicMock):
        """Payloads that do not validate against their type are rejected."""
        response = await client.post(
            "/v1/tasks", json={"task": {"type": "adding", "a": "two", "b": 3}}
        )

        assert response.status_code == 422
        assert response.json()["error"] == "invalid_payload"

    @pytest.mark.asyncio
    async def test_submit_batch(self, client: AsyncClient, fake_kiln: MagicMock):
        """Batches are submitted in order."""
        fake_kiln.submit_many.return_value = ["a" * 24, "b" * 24]

        response = await client.post(
            "/v1/tasks/batch",
            json={"tasks": [{"type": "echo", "message": "1"}, {"type": "echo", "message": "2"}]},
        )

        assert response.status_code == 201
        assert response.json() == {"ids": ["a" * 24, "b" * 24]}
        tasks = fake_kiln.submit_many.await_args.args[0]
        assert [t.message for t in tasks] == ["1", "2"]

    @pytest.mark.asyncio
    async def test_submit_empty_batch(self, client: AsyncClient):
        """A batch needs at least one task."""
        response = await client.post("/v1/tasks/batch", json={"tasks": []})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_get_task(self, client: AsyncClient, fake_kiln: MagicMock):
        """Metadata and payload are returned together."""
        fake_kiln.get_task_meta.return_value = meta(TaskStatus.COMPLETED, log=["done"])
        fake_kiln.get_task.return_value = adding(c=5)

        response = await client.get(f"/v1/tasks/{TASK_ID}")

        assert response.status_code == 200
        data = response.json()
        assert data["meta"]["status"] == "completed"
        assert data["meta"]["log"] == ["done"]
        assert data["task"] == {"type": "adding", "a": 2.0, "b": 3.0, "c": 5.0, "id": TASK_ID}

    @pytest.mark.asyncio
    async def test_get_task_not_found(self, client: AsyncClient, fake_kiln: MagicMock):
        """Unknown ids answer 404."""
        fake_kiln.get_task_meta.return_value = None

        response = await client.get(f"/v1/tasks/{TASK_ID}")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_list_tasks_with_filters(self, client: AsyncClient, fake_kiln: MagicMock):
        """Status and type filters are passed through."""
        fake_kiln.get_tasks_metadata.return_value = [meta()]

        response = await client.get("/v1/tasks", params={"status": "queued", "type": "adding"})

        assert response.status_code == 200
        assert response.json()["total"] == 1
        fake_kiln.get_tasks_metadata.assert_awaited_once_with(
            [TaskStatus.QUEUED], {"type": "adding"}
        )

    @pytest.mark.asyncio
    async def test_tasks_metadata_by_ids(self, client: AsyncClient, fake_kiln: MagicMock):
        """Metadata of specific ids is returned."""
        fake_kiln.get_tasks_metadata_by_ids.return_value = [meta()]

        response = await client.post("/v1/tasks/metadata", json={"ids": [TASK_ID]})

        assert response.status_code == 200
        assert response.json()["tasks"][0]["id"] == TASK_ID
        fake_kiln.get_tasks_metadata_by_ids.assert_awaited_once_with([TASK_ID])

    @pytest.mark.asyncio
    async def test_get_logs(self, client: AsyncClient, fake_kiln: MagicMock):
        """Log lines are returned in stored order."""
        fake_kiln.get_task_logs.return_value = ["one", "two"]

        response = await client.get(f"/v1/tasks/{TASK_ID}/logs")

        assert response.json() == {"id": TASK_ID, "log": ["one", "two"]}

    @pytest.mark.asyncio
    async def test_get_logs_not_found(self, client: AsyncClient, fake_kiln: MagicMock):
        """The not-found error maps to 404."""
        fake_kiln.get_task_logs.side_effect = TaskNotFoundError(TASK_ID)

        response = await client.get(f"/v1/tasks/{TASK_ID}/logs")

        assert response.status_code == 404
        assert response.json()["error"] == "task_not_found"

    @pytest.mark.asyncio
    async def test_resubmit(self, client: AsyncClient, fake_kiln: MagicMock):
        """Resubmission puts the task back in the queue."""
        fake_kiln.resubmit.return_value = TASK_ID

        response = await client.post(f"/v1/tasks/{TASK_ID}/resubmit")

        assert response.status_code == 200
        assert response.json()["status"] == "queued"
        fake_kiln.resubmit.assert_awaited_once_with(TASK_ID)

    @pytest.mark.asyncio
    async def test_wait_for_completion(self, client: AsyncClient, fake_kiln: MagicMock):
        """A finished task is returned with its final payload."""
        future = asyncio.get_running_loop().create_future()
        future.set_result(adding(c=5))
        fake_kiln.get_completion.return_value = future
        fake_kiln.get_task_meta.return_value = meta(TaskStatus.COMPLETED)

        response = await client.get(f"/v1/tasks/{TASK_ID}/completion")

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["task"]["c"] == 5.0

    @pytest.mark.asyncio
    async def test_wait_for_completion_timeout(self, client: AsyncClient, fake_kiln: MagicMock):
        """A task still running after the timeout answers 408."""
        fake_kiln.get_completion.return_value = asyncio.get_running_loop().create_future()

        response = await client.get(
            f"/v1/tasks/{TASK_ID}/completion", params={"timeout": 0.05}
        )

        assert response.status_code == 408


class TestRemoteAPI:
    """Tests for remote execution endpoints."""

    @pytest.mark.asyncio
    async def test_receive_progress_response(self, client: AsyncClient, fake_kiln: MagicMock):
        """Executor heart-beats are applied to the queue."""
        response = await client.post(
            "/v1/remote/responses",
            json={"taskId": TASK_ID, "progress": 0.5, "log": ["half"], "worker": "r1"},
        )

        assert response.status_code == 202
        fake_kiln.progress.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_execute_requires_configuration(self, client: AsyncClient):
        """Processes without a response URL do not execute tasks."""
        response = await client.post(
            "/v1/remote/execute", json={"task": {"type": "echo", "id": TASK_ID}}
        )

        assert response.status_code == 503


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient):
        """Test health check endpoint."""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"

    @pytest.mark.asyncio
    async def test_health_check_degraded(self, client: AsyncClient, fake_kiln: MagicMock):
        """An unreachable database degrades the service."""
        fake_kiln.ping.return_value = False

        response = await client.get("/health")

        assert response.json()["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_liveness(self, client: AsyncClient):
        """Test liveness probe."""
        response = await client.get("/live")

        assert response.status_code == 200
        assert response.json()["alive"] is True

    @pytest.mark.asyncio
    async def test_readiness(self, client: AsyncClient):
        """Readiness needs the database and the change stream."""
        response = await client.get("/ready")

        assert response.status_code == 200
        assert response.json()["ready"] is True

    @pytest.mark.asyncio
    async def test_not_ready_without_change_stream(self, client: AsyncClient, fake_kiln: MagicMock):
        """A closed change stream makes the service unready."""
        fake_kiln.monitor.running = False

        response = await client.get("/ready")

        assert response.status_code == 503
        assert response.json()["ready"] is False

    @pytest.mark.asyncio
    async def test_metrics(self, client: AsyncClient):
        """Test Prometheus metrics endpoint."""
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "kiln_" in response.text
