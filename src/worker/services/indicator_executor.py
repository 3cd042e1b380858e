from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from src.worker.db.store import Store
from src.worker.errors import EvaluatorFailure, EvaluatorTimeout
from src.worker.schemas.alerts import Alert
from src.worker.schemas.common import Clock, utc_now
from src.worker.schemas.indicators import ExecutionRecord, ExecutionStatus, Indicator
from src.worker.services.alert_lifecycle import AlertLifecycleManager
from src.worker.services.evaluator import EvaluationResult, Evaluator
from src.worker.services.execution_lock import ExecutionLockTable, LockToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of one execute() call. Skipped runs carry no record."""

    indicator_id: str
    status: ExecutionStatus
    record: Optional[ExecutionRecord] = None
    alert: Optional[Alert] = None
    alert_suppressed: bool = False

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"


def _result_summary(evaluation: Optional[EvaluationResult], error: Optional[str]) -> str:
    if error is not None:
        return f"failed: {error}"
    if evaluation is None:
        return "failed: no result"
    return f"{'breached' if evaluation.breached else 'ok'}: value={evaluation.value}"


class IndicatorExecutor:
    """
    Runs one indicator end to end: lock, evaluate under a timeout, record, alert, unlock.

    The lock and its global slot are released on every exit path, including cancellation. Evaluator
    failures and timeouts become failed ExecutionRecords; the indicator stays scheduled and is retried
    at its next whole-time boundary, never within the same cycle.
    """

    def __init__(
        self,
        store: Store,
        evaluator: Evaluator,
        locks: ExecutionLockTable,
        alerts: AlertLifecycleManager,
        *,
        execution_timeout: timedelta,
        clock: Clock = utc_now,
    ):
        self._store = store
        self._evaluator = evaluator
        self._locks = locks
        self._alerts = alerts
        self.execution_timeout = execution_timeout
        self._clock = clock

    # PUBLIC_INTERFACE
    def budget_for(self, indicator: Indicator) -> timedelta:
        """Evaluator timeout for this indicator: its own override, else the global execution timeout."""
        if indicator.execution_timeout_seconds:
            return timedelta(seconds=indicator.execution_timeout_seconds)
        return self.execution_timeout

    async def _evaluate(self, indicator: Indicator) -> EvaluationResult:
        timeout = self.budget_for(indicator).total_seconds()
        try:
            return await asyncio.wait_for(self._evaluator.evaluate(indicator), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise EvaluatorTimeout(indicator.id, timeout) from exc
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise EvaluatorFailure(f"{type(exc).__name__}: {exc}") from exc

    async def _in_cooldown(self, indicator: Indicator, now: datetime) -> bool:
        if indicator.cooldown_minutes <= 0:
            return False
        latest = await self._store.load_latest_alert(indicator.id)
        if latest is None:
            return False
        return (now - latest.trigger_time) < timedelta(minutes=indicator.cooldown_minutes)

    async def _release(self, token: LockToken) -> None:
        owned = self._locks.release(token)
        if not owned:
            # Reclaimed as stale while we ran; the new owner's run-state must stay intact.
            logger.warning(
                "Lock for indicatorId=%s context=%s was reclaimed before release", token.indicator_id, token.context
            )
            return
        try:
            await self._store.update_indicator_run_state(token.indicator_id, False, None, None)
        except Exception:
            logger.exception("Failed clearing run-state for indicatorId=%s", token.indicator_id)

    # PUBLIC_INTERFACE
    async def execute(self, indicator: Indicator) -> ExecutionOutcome:
        """Execute an indicator once; returns a skipped outcome when its lock or a global slot is unavailable."""
        token = self._locks.try_acquire(indicator.id, budget=self.budget_for(indicator))
        if token is None:
            logger.debug("Skipping indicatorId=%s: execution lock unavailable", indicator.id)
            return ExecutionOutcome(indicator_id=indicator.id, status="skipped")

        try:
            return await self._execute_locked(indicator, token)
        finally:
            await self._release(token)

    async def _execute_locked(self, indicator: Indicator, token: LockToken) -> ExecutionOutcome:
        started_at = token.acquired_at
        await self._store.update_indicator_run_state(indicator.id, True, started_at, token.context)

        perf_start = time.perf_counter()
        evaluation: Optional[EvaluationResult] = None
        error: Optional[str] = None
        try:
            evaluation = await self._evaluate(indicator)
        except EvaluatorTimeout as exc:
            error = str(exc)
            logger.warning("Evaluator timeout for indicatorId=%s: %s", indicator.id, exc)
        except EvaluatorFailure as exc:
            error = str(exc)
            logger.warning("Evaluator failure for indicatorId=%s: %s", indicator.id, exc)
        duration_ms = (time.perf_counter() - perf_start) * 1000.0

        record = ExecutionRecord(
            id=uuid.uuid4().hex,
            indicator_id=indicator.id,
            timestamp=started_at,
            value=evaluation.value if evaluation else None,
            success=error is None,
            error_message=error,
            duration_ms=duration_ms,
            execution_context=token.context,
        )
        await self._store.save_execution_record(record)
        await self._store.update_indicator_last_run(indicator.id, started_at, _result_summary(evaluation, error))

        if evaluation is None:
            return ExecutionOutcome(indicator_id=indicator.id, status="failed", record=record)

        if not evaluation.breached:
            return ExecutionOutcome(indicator_id=indicator.id, status="succeeded", record=record)

        now = self._clock()
        if await self._in_cooldown(indicator, now):
            logger.info(
                "Breach for indicatorId=%s suppressed by cooldown (%sm)", indicator.id, indicator.cooldown_minutes
            )
            return ExecutionOutcome(indicator_id=indicator.id, status="succeeded", record=record, alert_suppressed=True)

        alert = await self._alerts.raise_alert(indicator, evaluation, now)
        return ExecutionOutcome(indicator_id=indicator.id, status="succeeded", record=record, alert=alert)
