from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AlertState(str, Enum):
    """Alert lifecycle states."""

    open = "open"
    escalated = "escalated"
    resolved = "resolved"
    auto_resolved = "auto_resolved"

    @property
    def is_terminal(self) -> bool:
        return self in (AlertState.resolved, AlertState.auto_resolved)


UNRESOLVED_STATES = (AlertState.open, AlertState.escalated)


class NotificationKind(str, Enum):
    """What a notification is about."""

    triggered = "triggered"
    escalated = "escalated"
    auto_resolved = "auto_resolved"


class Alert(BaseModel):
    """An alert raised by a breaching indicator run."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Alert id.")
    indicator_id: str = Field(..., alias="indicatorId")
    trigger_time: datetime = Field(..., description="UTC time the breach was observed.", alias="triggerTime")
    current_value: Optional[float] = Field(default=None, alias="currentValue")
    historical_value: Optional[float] = Field(default=None, alias="historicalValue")
    deviation_percent: Optional[float] = Field(default=None, alias="deviationPercent")
    message: str = Field("", description="Human-readable summary.")

    state: AlertState = Field(AlertState.open)
    escalation_deadline: Optional[datetime] = Field(default=None, alias="escalationDeadline")
    auto_resolution_deadline: Optional[datetime] = Field(default=None, alias="autoResolutionDeadline")
    escalated_at: Optional[datetime] = Field(default=None, alias="escalatedAt")
    resolved_time: Optional[datetime] = Field(default=None, alias="resolvedTime")
    resolved_by: Optional[str] = Field(default=None, alias="resolvedBy")
    resolution_notes: Optional[str] = Field(default=None, alias="resolutionNotes")

    @model_validator(mode="after")
    def _terminal_has_resolved_time(self) -> "Alert":
        if self.state.is_terminal and self.resolved_time is None:
            raise ValueError("resolved alerts need resolvedTime")
        return self

    def due_transition(
        self, now: datetime, *, escalation_enabled: bool = True, auto_resolution_enabled: bool = True
    ) -> Optional[AlertState]:
        """
        The single lifecycle step this alert is due for at `now`, or None.

        With escalation enabled an open alert only escalates; with it disabled an open alert goes straight
        to auto_resolved once its auto-resolution deadline passes.
        """
        auto_due = (
            auto_resolution_enabled
            and self.auto_resolution_deadline is not None
            and now >= self.auto_resolution_deadline
        )
        if self.state == AlertState.open:
            if escalation_enabled:
                if self.escalation_deadline is not None and now >= self.escalation_deadline:
                    return AlertState.escalated
                return None
            return AlertState.auto_resolved if auto_due else None
        if self.state == AlertState.escalated and auto_due:
            return AlertState.auto_resolved
        return None


class ResolveAlertRequest(BaseModel):
    """Operator request to resolve an alert."""

    model_config = ConfigDict(populate_by_name=True)

    resolved_by: str = Field(..., min_length=1, description="Who resolved the alert.", alias="resolvedBy")
    notes: Optional[str] = Field(default=None, description="Optional resolution notes.")
