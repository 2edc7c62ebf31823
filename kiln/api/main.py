"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from kiln.api.routes import health_router, remote_router, tasks_router
from kiln.api.websocket import get_ws_manager, websocket_handler
from kiln.config import get_settings
from kiln.constants import VERSION
from kiln.core import Kiln
from kiln.exceptions import TaskNotFoundError, TaskValidationError
from kiln.observability.logging import setup_logging
from kiln.observability.metrics import setup_metrics
from kiln.observability.tracing import instrument_fastapi, setup_tracing
from kiln.remote import HttpPublisher, RemoteWorker
from kiln.tasks.base import load_task_types
from kiln.types.api import ErrorResponse

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Connects the task queue unless one was supplied to ``create_app`` and
    wires the WebSocket manager to the change-stream monitor.
    """
    settings = get_settings()
    setup_logging("api")
    setup_metrics()
    setup_tracing("api")
    load_task_types(settings.task_type_modules)

    owns_kiln = app.state.kiln is None
    if owns_kiln:
        app.state.kiln = await Kiln.connect()
    app.state.kiln.monitor.add_listener(get_ws_manager().task_status_changed)

    publisher = None
    if settings.remote_response_url:
        publisher = HttpPublisher(settings.remote_response_url)
        app.state.remote_worker = RemoteWorker(publisher)

    logger.info("Application started")

    yield

    if publisher is not None:
        await publisher.close()
    if owns_kiln:
        await app.state.kiln.close()
        app.state.kiln = None
    logger.info("Application shutdown")


def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=detail).model_dump(),
    )


def create_app(kiln: Kiln | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        kiln: A started façade to serve; connects on startup when omitted.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Kiln API",
        description="Distributed task queue backed by MongoDB",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.kiln = kiln
    app.state.remote_worker = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(TaskNotFoundError)
    async def task_not_found_handler(request: Request, exc: TaskNotFoundError) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, "task_not_found", str(exc))

    @app.exception_handler(TaskValidationError)
    async def task_validation_handler(request: Request, exc: TaskValidationError) -> JSONResponse:
        return _error(422, "invalid_task", str(exc))

    @app.exception_handler(ValidationError)
    async def payload_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return _error(422, "invalid_payload", str(exc))

    app.include_router(health_router)
    app.include_router(tasks_router)
    app.include_router(remote_router)

    @app.websocket("/ws/tasks")
    async def tasks_websocket(websocket: WebSocket):
        """
        WebSocket endpoint for real-time task status updates.

        Clients receive every transition until they subscribe to specific
        task ids.
        """
        await websocket_handler(websocket)

    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()
    app = create_app()

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
