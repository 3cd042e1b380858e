from __future__ import annotations

from fastapi import APIRouter, HTTPException, Path, Request

from src.worker.errors import AlertAlreadyTerminal, AlertNotFound
from src.worker.schemas.alerts import Alert, ResolveAlertRequest
from src.worker.schemas.common import ErrorResponse
from src.worker.state import get_state

router = APIRouter(prefix="/api/alerts", tags=["Alerts"])


@router.post(
    "/{alert_id}/resolve",
    response_model=Alert,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Resolve alert",
    description="Manually resolve an open or escalated alert. Resolved alerts are terminal.",
    operation_id="resolve_alert",
)
async def resolve_alert(
    request: Request,
    payload: ResolveAlertRequest,
    alert_id: str = Path(..., description="Alert id."),
) -> Alert:
    """Resolve an alert on behalf of an operator."""
    engine = get_state(request.app).engine
    try:
        return await engine.alerts.resolve(alert_id, payload.resolved_by, payload.notes)
    except AlertNotFound:
        raise HTTPException(status_code=404, detail="alert not found")
    except AlertAlreadyTerminal as exc:
        raise HTTPException(status_code=409, detail=str(exc))
