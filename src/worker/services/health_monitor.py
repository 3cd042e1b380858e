from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Optional

from src.worker.schemas.common import Clock, utc_now
from src.worker.schemas.health import HealthReport, LoopHealth, LoopState, LoopStatus
from src.worker.services.periodic import PeriodicWorker

logger = logging.getLogger(__name__)


class HealthMonitor(PeriodicWorker):
    """
    Reports whether each watched loop is still making progress.

    A loop is stale when its last heartbeat is older than its tick interval times the multiplier.
    This only reports; restarting a loop is left to whoever operates the process.
    """

    name = "health"

    def __init__(self, *, stale_multiplier: float = 3.0, interval_sec: float = 60, clock: Clock = utc_now):
        super().__init__(interval_sec, clock)
        self.stale_multiplier = max(1.0, float(stale_multiplier))
        self._watched: Dict[str, PeriodicWorker] = {}
        self._started_at: Dict[str, datetime] = {}
        self._last_status: Dict[str, LoopStatus] = {}

    def watch(self, worker: PeriodicWorker, name: Optional[str] = None) -> None:
        key = name or worker.name
        self._watched[key] = worker
        self._started_at[key] = self._clock()

    def _loop_health(self, key: str, worker: PeriodicWorker, now: datetime) -> LoopHealth:
        threshold = worker.interval_sec * self.stale_multiplier
        beat = worker.last_heartbeat
        age = (now - beat).total_seconds() if beat is not None else None

        if worker.state == LoopState.stopped:
            status = LoopStatus.stopped
        elif beat is None:
            # No successful tick yet: give a fresh loop one threshold window before calling it stale.
            since_start = (now - self._started_at[key]).total_seconds()
            status = LoopStatus.starting if since_start <= threshold else LoopStatus.stale
        elif age is not None and age > threshold:
            status = LoopStatus.stale
        else:
            status = LoopStatus.healthy

        return LoopHealth(
            name=key,
            status=status,
            state=worker.state,
            last_heartbeat=beat,
            heartbeat_age_seconds=age,
            threshold_seconds=threshold,
        )

    # PUBLIC_INTERFACE
    def is_healthy(self, now: Optional[datetime] = None) -> HealthReport:
        """Per-loop health; overall healthy only when every watched loop is healthy."""
        now = now or self._clock()
        loops = {key: self._loop_health(key, worker, now) for key, worker in self._watched.items()}
        healthy = bool(loops) and all(h.status == LoopStatus.healthy for h in loops.values())
        return HealthReport(healthy=healthy, checked_at=now, loops=loops)

    async def tick(self) -> None:
        report = self.is_healthy()
        for key, health in report.loops.items():
            previous = self._last_status.get(key)
            if health.status == LoopStatus.stale and previous != LoopStatus.stale:
                logger.warning(
                    "Loop %s is stale: last heartbeat %s (%.0fs > %.0fs)",
                    key,
                    health.last_heartbeat,
                    health.heartbeat_age_seconds or -1,
                    health.threshold_seconds,
                )
            elif health.status == LoopStatus.healthy and previous == LoopStatus.stale:
                logger.info("Loop %s recovered", key)
            self._last_status[key] = health.status
