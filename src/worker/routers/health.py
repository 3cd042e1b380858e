from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from src.worker.schemas.common import HealthResponse, utc_now
from src.worker.schemas.health import HealthReport
from src.worker.state import get_state

router = APIRouter(tags=["Health"])


@router.get(
    "/",
    response_model=HealthResponse,
    summary="Health check",
    description="Basic process liveness check.",
    operation_id="health_check",
)
def health_check() -> HealthResponse:
    """Return service liveness status."""
    return HealthResponse(status="ok", message="Healthy", timestamp=utc_now())


@router.get(
    "/api/health/engine",
    response_model=HealthReport,
    responses={503: {"model": HealthReport, "description": "At least one background loop is not healthy."}},
    summary="Engine loop health",
    description=(
        "Per-loop heartbeat status for the monitoring and alert-lifecycle loops. "
        "Returns 503 when any loop is stale, still starting or stopped."
    ),
    operation_id="engine_health",
)
def engine_health(request: Request):
    """Report loop health; the status code mirrors the overall verdict."""
    report = get_state(request.app).engine.health_report()
    if not report.healthy:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=report.model_dump(mode="json"))
    return report
