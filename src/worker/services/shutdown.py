from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from src.worker.db.store import Store
from src.worker.schemas.common import Clock, utc_now
from src.worker.schemas.health import ShutdownReport
from src.worker.services.execution_lock import ExecutionLockTable
from src.worker.services.monitoring_loop import MonitoringLoop
from src.worker.services.periodic import PeriodicWorker

logger = logging.getLogger(__name__)


@dataclass
class RunningLoop:
    """A started loop with its stop signal and task."""

    worker: PeriodicWorker
    stop_event: asyncio.Event
    task: Optional[asyncio.Task] = None


class ShutdownCoordinator:
    """
    Stops every loop, lets in-flight executions finish within a grace period, then force-releases
    whatever locks remain and clears their run-state so the next start does not inherit them.
    """

    def __init__(
        self,
        loops: List[RunningLoop],
        monitoring: MonitoringLoop,
        locks: ExecutionLockTable,
        store: Store,
        *,
        grace_period_sec: float = 30,
        loop_stop_timeout_sec: float = 5.0,
        clock: Clock = utc_now,
    ):
        self._loops = loops
        self._monitoring = monitoring
        self._locks = locks
        self._store = store
        self.grace_period_sec = max(0.0, float(grace_period_sec))
        self.loop_stop_timeout_sec = loop_stop_timeout_sec
        self._clock = clock
        self._report: Optional[ShutdownReport] = None
        self._lock = asyncio.Lock()

    async def _stop_loops(self) -> None:
        for loop in self._loops:
            loop.worker.mark_stopping()
            loop.stop_event.set()
        for loop in self._loops:
            if loop.task is None:
                continue
            try:
                await asyncio.wait_for(asyncio.shield(loop.task), timeout=self.loop_stop_timeout_sec)
            except asyncio.TimeoutError:
                logger.warning("Loop %s did not stop within %ss", loop.worker.name, self.loop_stop_timeout_sec)
            except Exception:
                logger.exception("Error stopping loop %s", loop.worker.name)

    async def _force_release(self) -> List[str]:
        released: List[str] = []
        for token in self._locks.force_release_all():
            released.append(token.indicator_id)
            try:
                await self._store.update_indicator_run_state(token.indicator_id, False, None, None)
            except Exception:
                logger.exception("Failed clearing run-state for indicatorId=%s during shutdown", token.indicator_id)
        return released

    # PUBLIC_INTERFACE
    async def shutdown(self) -> ShutdownReport:
        """Run the shutdown sequence once; later calls return the first report."""
        async with self._lock:
            if self._report is not None:
                return self._report

            started_at = self._clock()
            logger.info("Shutdown requested; stopping loops")
            await self._stop_loops()

            before = self._monitoring.in_flight
            if before:
                logger.info("Waiting up to %ss for %s in-flight executions", self.grace_period_sec, before)
            after = await self._monitoring.drain(timeout=self.grace_period_sec)
            timed_out = after > 0
            if timed_out:
                logger.warning("Grace period elapsed with %s executions still running", after)

            released = await self._force_release()
            self._report = ShutdownReport(
                started_at=started_at,
                finished_at=self._clock(),
                outstanding_before_drain=before,
                outstanding_after_drain=after,
                timed_out=timed_out,
                force_released=released,
            )
            logger.info(
                "Shutdown complete (drained=%s, still_running=%s, force_released=%s)",
                before - after,
                after,
                len(released),
            )
            return self._report
