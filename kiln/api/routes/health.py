"""
Health, readiness and metrics routes.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse, Response

from kiln.api.deps import KilnDep
from kiln.constants import VERSION
from kiln.observability.metrics import get_metrics
from kiln.types.api import HealthResponse

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Report database connectivity and the state of the change stream.",
)
async def health_check(kiln: KilnDep) -> HealthResponse:
    """
    Report service health.

    The service is ``degraded`` when the database does not answer or the
    change stream is closed; completions are not delivered in either case.
    """
    database = "healthy" if await kiln.ping() else "unhealthy"
    change_stream = "open" if kiln.monitor.running else "closed"
    healthy = database == "healthy" and change_stream == "open"

    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=VERSION,
        database=database,
        change_stream=change_stream,
        timestamp=datetime.now(UTC),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to receive traffic.",
)
async def readiness_check(kiln: KilnDep) -> JSONResponse:
    """Readiness probe: 200 when the database answers and the change stream is open, else 503."""
    ready = kiln.monitor.running and await kiln.ping()
    return JSONResponse(
        {"ready": ready},
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
    )


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics() -> Response:
    collector = get_metrics()
    return Response(content=collector.get_metrics(), media_type=collector.get_content_type())
