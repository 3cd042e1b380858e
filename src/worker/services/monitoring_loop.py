from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import List, Optional, Set

from src.worker.db.store import Store
from src.worker.errors import InvalidFrequency
from src.worker.schemas.common import Clock, as_utc, utc_now
from src.worker.schemas.health import LoopState
from src.worker.schemas.indicators import Indicator
from src.worker.services.execution_lock import ExecutionLockTable
from src.worker.services.indicator_executor import ExecutionOutcome, IndicatorExecutor
from src.worker.services.periodic import PeriodicWorker
from src.worker.services.scheduler import is_due

logger = logging.getLogger(__name__)


class MonitoringLoop(PeriodicWorker):
    """
    Polls the store for due indicators and dispatches each to the executor as its own task.

    Dispatch is fire-and-forget; outstanding tasks are tracked only so shutdown can drain them.
    Due indicators are dispatched in ascending id order, and never more than the free global slots
    in one tick; the rest are picked up by a later tick since they stay due.
    """

    name = "monitoring"

    def __init__(
        self,
        store: Store,
        executor: IndicatorExecutor,
        locks: ExecutionLockTable,
        *,
        interval_sec: float = 30,
        clock: Clock = utc_now,
    ):
        super().__init__(interval_sec, clock)
        self._store = store
        self._executor = executor
        self._locks = locks
        self._in_flight: Set[asyncio.Task] = set()
        self._in_flight_ids: Set[str] = set()
        self.dispatched = 0

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def _run_state_is_stale(self, indicator: Indicator, now: datetime) -> bool:
        started = indicator.execution_start_time
        if started is None:
            return True
        # A run that is still inside its own evaluator timeout is never treated as abandoned.
        limit = self._locks.stale_after(self._executor.budget_for(indicator))
        return (now - as_utc(started)) >= limit

    def _select_due(self, indicators: List[Indicator], now: datetime) -> List[Indicator]:
        due: List[Indicator] = []
        for ind in indicators:
            try:
                if not is_due(ind, now):
                    continue
            except InvalidFrequency:
                logger.error(
                    "Indicator indicatorId=%s has invalid frequency=%r; not scheduled", ind.id, ind.frequency_minutes
                )
                continue

            if self._locks.is_held(ind.id):
                continue
            if ind.id in self._in_flight_ids and not self._locks.is_held(ind.id, include_stale=True):
                # Dispatched earlier but not started yet.
                continue
            if ind.is_currently_running:
                if not self._run_state_is_stale(ind, now):
                    continue
                logger.warning(
                    "Indicator indicatorId=%s has stale run-state (context=%s started=%s); scheduling anyway",
                    ind.id,
                    ind.execution_context,
                    ind.execution_start_time,
                )
            due.append(ind)
        due.sort(key=lambda i: i.id)
        return due

    async def _run_one(self, indicator: Indicator) -> Optional[ExecutionOutcome]:
        try:
            outcome = await self._executor.execute(indicator)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Execution task failed for indicatorId=%s", indicator.id)
            return None
        if outcome.status == "failed":
            logger.info("Indicator indicatorId=%s run failed: %s", indicator.id, outcome.record.error_message)
        return outcome

    def _dispatch(self, indicator: Indicator) -> asyncio.Task:
        task = asyncio.create_task(self._run_one(indicator), name=f"indicator-{indicator.id}")
        self._in_flight.add(task)
        self._in_flight_ids.add(indicator.id)
        task.add_done_callback(self._in_flight.discard)
        task.add_done_callback(lambda _t: self._in_flight_ids.discard(indicator.id))
        self.dispatched += 1
        return task

    # PUBLIC_INTERFACE
    async def dispatch_due(self, now: Optional[datetime] = None) -> List[asyncio.Task]:
        """Load active indicators and start tasks for the due ones; returns the started tasks."""
        now = now or self._clock()
        indicators = await self._store.load_active_indicators()
        if self.state == LoopState.stopping:
            logger.info("Shutdown in progress; not dispatching")
            return []
        due = self._select_due(indicators, now)
        if not due:
            logger.debug("No indicators due at %s", now)
            return []

        free = self._locks.available_slots
        selected = due[:free]
        if len(due) > len(selected):
            logger.info(
                "Deferring %s due indicators: %s/%s execution slots busy",
                len(due) - len(selected),
                self._locks.active_count,
                self._locks.max_parallel,
            )

        tasks: List[asyncio.Task] = []
        for ind in selected:
            tasks.append(self._dispatch(ind))
        logger.info("Dispatched %s indicators: %s", len(tasks), ", ".join(i.id for i in selected))
        return tasks

    async def tick(self) -> None:
        await self.dispatch_due()

    # PUBLIC_INTERFACE
    async def drain(self, timeout: Optional[float] = None) -> int:
        """Wait (bounded) for outstanding executions; returns how many are still running."""
        pending = set(self._in_flight)
        if pending:
            await asyncio.wait(pending, timeout=timeout)
        return sum(1 for t in self._in_flight if not t.done())

