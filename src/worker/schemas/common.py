from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, Field

# Injectable time source; tests swap in a fake clock.
Clock = Callable[[], datetime]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class HealthResponse(BaseModel):
    """Response model for the liveness endpoint."""

    status: str = Field(..., description="High-level health status string (e.g., 'ok').")
    message: str = Field(..., description="Human-readable status message.")
    timestamp: datetime = Field(..., description="UTC timestamp at time of response.")


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    detail: str = Field(..., description="Human-readable error details.")
    code: Optional[str] = Field(default=None, description="Optional machine-readable error code.")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Optional metadata for debugging.")


# PUBLIC_INTERFACE
def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


# PUBLIC_INTERFACE
def as_utc(ts: datetime) -> datetime:
    """Normalize a datetime to aware UTC (naive values are taken to be UTC already)."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)
