from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class LoopState(str, Enum):
    """Lifecycle of a background loop."""

    stopped = "stopped"
    running = "running"
    stopping = "stopping"


class LoopStatus(str, Enum):
    healthy = "healthy"
    stale = "stale"
    starting = "starting"
    stopped = "stopped"


class LoopHealth(BaseModel):
    """Liveness of one background loop, derived from its heartbeat."""

    name: str = Field(..., description="Loop name.")
    status: LoopStatus = Field(..., description="Derived liveness status.")
    state: LoopState = Field(..., description="Lifecycle state reported by the loop.")
    last_heartbeat: Optional[datetime] = Field(default=None, description="UTC time of the last successful tick.")
    heartbeat_age_seconds: Optional[float] = Field(default=None, description="Seconds since the last heartbeat.")
    threshold_seconds: float = Field(..., description="Heartbeat age above which the loop is reported stale.")


class HealthReport(BaseModel):
    """Per-loop health; a stalled loop never hides behind a healthy one."""

    healthy: bool = Field(..., description="True only when every registered loop is healthy.")
    checked_at: datetime = Field(..., description="UTC time of the check.")
    loops: Dict[str, LoopHealth] = Field(default_factory=dict)


class ShutdownReport(BaseModel):
    """Outcome of a coordinated shutdown."""

    started_at: datetime
    finished_at: datetime
    outstanding_before_drain: int = Field(..., ge=0)
    outstanding_after_drain: int = Field(..., ge=0)
    timed_out: bool = Field(..., description="Whether the grace period elapsed with executions still running.")
    force_released: List[str] = Field(default_factory=list, description="Indicator ids whose locks were force-released.")
