from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from src.worker.db.store import Store
from src.worker.errors import AlertAlreadyTerminal, AlertNotFound
from src.worker.schemas.alerts import Alert, AlertState, NotificationKind
from src.worker.schemas.common import Clock, utc_now
from src.worker.schemas.indicators import Indicator
from src.worker.services.evaluator import EvaluationResult
from src.worker.services.notifier import Notifier
from src.worker.services.periodic import PeriodicWorker

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "System"


def _alert_message(indicator: Indicator, evaluation: EvaluationResult) -> str:
    rule = indicator.threshold
    label = indicator.name or indicator.id
    return (
        f"{label}: {rule.field} {rule.comparator} {rule.value:g} "
        f"(value={evaluation.value}, historical={evaluation.historical_value}, "
        f"deviation={evaluation.deviation_percent})"
    )


class AlertLifecycleManager(PeriodicWorker):
    """
    Owns the alert state machine.

        open --(escalation deadline)--> escalated --(auto-resolution deadline)--> auto_resolved
        open | escalated --(operator resolve)--> resolved

    Both deadlines are measured from the trigger time. Resolved states are terminal. Each tick loads one
    batch of alerts already due for a step (oldest first), so alerts that are merely waiting never hold
    back due ones. Each alert moves at most one step; the stored state is re-read right before writing and
    the write only lands if that state is unchanged, so a repeated scan never transitions an alert twice.
    """

    name = "alert-lifecycle"

    def __init__(
        self,
        store: Store,
        notifier: Notifier,
        *,
        escalation_timeout: timedelta,
        auto_resolution_timeout: timedelta,
        batch_size: int = 100,
        escalation_enabled: bool = True,
        auto_resolution_enabled: bool = True,
        notify_on_auto_resolve: bool = False,
        interval_sec: float = 30,
        clock: Clock = utc_now,
    ):
        super().__init__(interval_sec, clock)
        self._store = store
        self._notifier = notifier
        self.escalation_timeout = escalation_timeout
        self.auto_resolution_timeout = auto_resolution_timeout
        self.batch_size = max(1, int(batch_size))
        self.escalation_enabled = escalation_enabled
        self.auto_resolution_enabled = auto_resolution_enabled
        self.notify_on_auto_resolve = notify_on_auto_resolve
        # Created on first use so the manager can be built outside a running event loop.
        self._transition_lock: Optional[asyncio.Lock] = None

    def _lock(self) -> asyncio.Lock:
        if self._transition_lock is None:
            self._transition_lock = asyncio.Lock()
        return self._transition_lock

    async def _notify(self, alert: Alert, kind: NotificationKind) -> None:
        try:
            await self._notifier.notify(alert, kind)
        except Exception:
            logger.exception("Notification %s failed for alertId=%s", kind.value, alert.id)

    # PUBLIC_INTERFACE
    async def raise_alert(self, indicator: Indicator, evaluation: EvaluationResult, now: datetime) -> Alert:
        """Create an open alert for a breaching run and send the trigger notification."""
        alert = Alert(
            id=uuid.uuid4().hex,
            indicator_id=indicator.id,
            trigger_time=now,
            current_value=evaluation.value,
            historical_value=evaluation.historical_value,
            deviation_percent=evaluation.deviation_percent,
            message=_alert_message(indicator, evaluation),
            state=AlertState.open,
            escalation_deadline=now + self.escalation_timeout,
            auto_resolution_deadline=now + self.auto_resolution_timeout,
        )
        await self._store.insert_alert(alert)
        logger.info("Alert raised alertId=%s indicatorId=%s value=%s", alert.id, indicator.id, evaluation.value)
        await self._notify(alert, NotificationKind.triggered)
        return alert

    def _next_state(self, alert: Alert, now: datetime) -> Optional[AlertState]:
        return alert.due_transition(
            now, escalation_enabled=self.escalation_enabled, auto_resolution_enabled=self.auto_resolution_enabled
        )

    async def _advance(self, alert_id: str, now: datetime) -> Optional[Alert]:
        async with self._lock():
            current = await self._store.load_alert(alert_id)
            if current is None or current.state.is_terminal:
                return None
            target = self._next_state(current, now)
            if target is None:
                return None

            if target == AlertState.escalated:
                updated = current.model_copy(update={"state": target, "escalated_at": now})
            else:
                updated = current.model_copy(
                    update={"state": target, "resolved_time": now, "resolved_by": SYSTEM_ACTOR}
                )
            if not await self._store.save_alert_state(updated, expected_state=current.state):
                logger.info("Alert alertId=%s changed concurrently; skipping %s", alert_id, target.value)
                return None

        logger.info(
            "Alert alertId=%s indicatorId=%s %s -> %s", alert_id, updated.indicator_id, current.state.value, target.value
        )
        if target == AlertState.escalated:
            await self._notify(updated, NotificationKind.escalated)
        elif self.notify_on_auto_resolve:
            await self._notify(updated, NotificationKind.auto_resolved)
        return updated

    # PUBLIC_INTERFACE
    async def process(self, now: Optional[datetime] = None) -> List[Alert]:
        """Process one batch of alerts due for a transition; returns the alerts that changed state."""
        now = now or self._clock()
        batch = await self._store.load_due_alerts(
            now,
            self.batch_size,
            escalation_enabled=self.escalation_enabled,
            auto_resolution_enabled=self.auto_resolution_enabled,
        )
        changed: List[Alert] = []
        for alert in batch:
            try:
                updated = await self._advance(alert.id, now)
            except Exception:
                # StoreUnavailable included: one alert must not block the rest of the batch.
                logger.exception("Alert processing failed for alertId=%s", alert.id)
                continue
            if updated is not None:
                changed.append(updated)
        if changed:
            logger.info("Alert lifecycle processed batch=%s changed=%s", len(batch), len(changed))
        return changed

    async def tick(self) -> None:
        await self.process()

    # PUBLIC_INTERFACE
    async def resolve(self, alert_id: str, resolved_by: str, notes: Optional[str] = None) -> Alert:
        """Operator resolve. Terminal; pre-empts escalation and auto-resolution."""
        now = self._clock()
        async with self._lock():
            current = await self._store.load_alert(alert_id)
            if current is None:
                raise AlertNotFound(alert_id)
            if current.state.is_terminal:
                raise AlertAlreadyTerminal(f"alert {alert_id} is already {current.state.value}")
            updated = current.model_copy(
                update={
                    "state": AlertState.resolved,
                    "resolved_time": now,
                    "resolved_by": resolved_by,
                    "resolution_notes": notes,
                }
            )
            if not await self._store.save_alert_state(updated, expected_state=current.state):
                raise AlertAlreadyTerminal(f"alert {alert_id} changed state while resolving")
        logger.info("Alert alertId=%s resolved by %s", alert_id, resolved_by)
        return updated
