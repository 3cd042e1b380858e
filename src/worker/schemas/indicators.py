from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


ThresholdField = Literal["current_value", "historical_value", "deviation_percent"]
Comparator = Literal["gt", "gte", "lt", "lte", "eq", "ne"]
ExecutionStatus = Literal["skipped", "succeeded", "failed"]


class ThresholdRule(BaseModel):
    """Which evaluated quantity to compare, how, and against what."""

    model_config = ConfigDict(populate_by_name=True)

    field: ThresholdField = Field("current_value", description="Evaluated quantity the rule is applied to.")
    comparator: Comparator = Field("gt", description="Comparison operator; a true comparison is a breach.")
    value: float = Field(..., description="Threshold value.")


class Indicator(BaseModel):
    """A monitored metric with a whole-time schedule and a threshold rule."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Indicator id.")
    name: str = Field("", description="Human-friendly indicator name.")
    frequency_minutes: int = Field(..., description="Execution frequency in minutes.", alias="frequencyMinutes")
    data_window_minutes: int = Field(
        60, ge=1, description="How many minutes of data the evaluator looks back over.", alias="dataWindowMinutes"
    )
    threshold: ThresholdRule = Field(..., description="Threshold rule applied to the evaluation.")
    cooldown_minutes: int = Field(
        0, ge=0, description="Minimum minutes between two alerts for this indicator.", alias="cooldownMinutes"
    )
    is_active: bool = Field(True, description="Whether the indicator is scheduled at all.", alias="isActive")
    collector_item: Optional[str] = Field(
        default=None, description="Sample series read by the default evaluator.", alias="collectorItem"
    )
    execution_timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Per-indicator override of the configured execution timeout.",
        alias="executionTimeoutSeconds",
    )

    # Run-state, written only by the executor.
    is_currently_running: bool = Field(False, alias="isCurrentlyRunning")
    execution_start_time: Optional[datetime] = Field(default=None, alias="executionStartTime")
    execution_context: Optional[str] = Field(default=None, alias="executionContext")
    last_run: Optional[datetime] = Field(default=None, alias="lastRun")
    last_run_result: Optional[str] = Field(default=None, alias="lastRunResult")

    @model_validator(mode="after")
    def _run_state_is_complete(self) -> "Indicator":
        if self.is_currently_running and (self.execution_start_time is None or self.execution_context is None):
            raise ValueError("a running indicator needs both executionStartTime and executionContext")
        return self


class ExecutionRecord(BaseModel):
    """One completed execution. Never mutated after it is written."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(..., description="Record id.")
    indicator_id: str = Field(..., alias="indicatorId")
    timestamp: datetime = Field(..., description="UTC start time of the execution.")
    value: Optional[float] = Field(default=None, description="Measured value, when the evaluation succeeded.")
    success: bool = Field(..., description="Whether the evaluator produced a result.")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    duration_ms: float = Field(..., ge=0, alias="durationMs")
    execution_context: Optional[str] = Field(default=None, alias="executionContext")
