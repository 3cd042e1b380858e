from __future__ import annotations

import logging
from datetime import datetime
from threading import RLock
from typing import Dict, List, Optional

from src.worker.schemas.alerts import UNRESOLVED_STATES, Alert, AlertState
from src.worker.schemas.indicators import ExecutionRecord, Indicator

logger = logging.getLogger(__name__)


class InMemoryStore:
    """
    Process-local store used for tests and single-process runs without MongoDB.

    Models are copied on the way in and out so callers never share mutable instances.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._indicators: Dict[str, Indicator] = {}
        self._records: List[ExecutionRecord] = []
        self._alerts: Dict[str, Alert] = {}
        self._samples: Dict[str, List[dict]] = {}

    # ---- seeding / inspection helpers (not part of the Store protocol) ----

    def put_indicator(self, indicator: Indicator) -> None:
        with self._lock:
            self._indicators[indicator.id] = indicator.model_copy(deep=True)

    def indicator(self, indicator_id: str) -> Optional[Indicator]:
        with self._lock:
            ind = self._indicators.get(indicator_id)
            return ind.model_copy(deep=True) if ind else None

    def execution_records(self, indicator_id: Optional[str] = None) -> List[ExecutionRecord]:
        with self._lock:
            return [r for r in self._records if indicator_id is None or r.indicator_id == indicator_id]

    def alerts(self, indicator_id: Optional[str] = None) -> List[Alert]:
        with self._lock:
            return [
                a.model_copy(deep=True)
                for a in self._alerts.values()
                if indicator_id is None or a.indicator_id == indicator_id
            ]

    def add_sample(self, collector_item: str, ts: datetime, value: float) -> None:
        with self._lock:
            sample = {"collectorItem": collector_item, "ts": ts, "value": value}
            self._samples.setdefault(collector_item, []).append(sample)

    # ---- Store protocol ----

    async def load_active_indicators(self) -> List[Indicator]:
        with self._lock:
            return [i.model_copy(deep=True) for i in self._indicators.values() if i.is_active]

    async def load_indicator(self, indicator_id: str) -> Optional[Indicator]:
        return self.indicator(indicator_id)

    async def save_execution_record(self, record: ExecutionRecord) -> None:
        with self._lock:
            self._records.append(record)

    async def update_indicator_run_state(
        self,
        indicator_id: str,
        running: bool,
        start_time: Optional[datetime],
        context: Optional[str],
    ) -> None:
        with self._lock:
            ind = self._indicators.get(indicator_id)
            if ind is None:
                logger.warning("Run-state update for unknown indicatorId=%s", indicator_id)
                return
            self._indicators[indicator_id] = ind.model_copy(
                update={
                    "is_currently_running": running,
                    "execution_start_time": start_time if running else None,
                    "execution_context": context if running else None,
                }
            )

    async def update_indicator_last_run(self, indicator_id: str, last_run: datetime, result: str) -> None:
        with self._lock:
            ind = self._indicators.get(indicator_id)
            if ind is None:
                logger.warning("Last-run update for unknown indicatorId=%s", indicator_id)
                return
            self._indicators[indicator_id] = ind.model_copy(update={"last_run": last_run, "last_run_result": result})

    async def insert_alert(self, alert: Alert) -> None:
        with self._lock:
            self._alerts[alert.id] = alert.model_copy(deep=True)

    async def load_alert(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            return alert.model_copy(deep=True) if alert else None

    async def load_latest_alert(self, indicator_id: str) -> Optional[Alert]:
        with self._lock:
            mine = [a for a in self._alerts.values() if a.indicator_id == indicator_id]
            if not mine:
                return None
            return max(mine, key=lambda a: a.trigger_time).model_copy(deep=True)

    async def load_open_alerts(self, batch_size: int) -> List[Alert]:
        with self._lock:
            pending = sorted(
                (a for a in self._alerts.values() if a.state in UNRESOLVED_STATES),
                key=lambda a: (a.trigger_time, a.id),
            )
            return [a.model_copy(deep=True) for a in pending[: max(0, int(batch_size))]]

    async def load_due_alerts(
        self,
        now: datetime,
        batch_size: int,
        *,
        escalation_enabled: bool = True,
        auto_resolution_enabled: bool = True,
    ) -> List[Alert]:
        with self._lock:
            due = sorted(
                (
                    a
                    for a in self._alerts.values()
                    if a.due_transition(
                        now, escalation_enabled=escalation_enabled, auto_resolution_enabled=auto_resolution_enabled
                    )
                    is not None
                ),
                key=lambda a: (a.trigger_time, a.id),
            )
            return [a.model_copy(deep=True) for a in due[: max(0, int(batch_size))]]

    async def save_alert_state(self, alert: Alert, expected_state: Optional[AlertState] = None) -> bool:
        with self._lock:
            current = self._alerts.get(alert.id)
            if current is None:
                return False
            if expected_state is not None and current.state != expected_state:
                return False
            self._alerts[alert.id] = alert.model_copy(deep=True)
            return True

    # ---- SampleCollector ----

    async def fetch_samples(self, collector_item: str, window_start: datetime, window_end: datetime) -> List[dict]:
        with self._lock:
            rows = [dict(s) for s in self._samples.get(collector_item, []) if window_start <= s["ts"] <= window_end]
        rows.sort(key=lambda s: s["ts"])
        return rows
