from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from src.worker.config import WorkerConfig
from src.worker.db.store import Store
from src.worker.errors import InvalidFrequency
from src.worker.schemas.common import Clock, utc_now
from src.worker.schemas.health import HealthReport, ShutdownReport
from src.worker.services.alert_lifecycle import AlertLifecycleManager
from src.worker.services.evaluator import Evaluator
from src.worker.services.execution_lock import ExecutionLockTable
from src.worker.services.health_monitor import HealthMonitor
from src.worker.services.indicator_executor import IndicatorExecutor
from src.worker.services.monitoring_loop import MonitoringLoop
from src.worker.services.notifier import Notifier
from src.worker.services.scheduler import validate_frequency
from src.worker.services.shutdown import RunningLoop, ShutdownCoordinator

logger = logging.getLogger(__name__)


class SchedulingEngine:
    """
    Wires the lock table, executor and the three background loops from a WorkerConfig.

    The store, evaluator, notifier and clock are injected so tests can run the whole engine in memory.
    """

    def __init__(
        self,
        config: WorkerConfig,
        store: Store,
        evaluator: Evaluator,
        notifier: Notifier,
        clock: Clock = utc_now,
    ):
        self.config = config
        self.store = store
        self._clock = clock

        self.locks = ExecutionLockTable(
            config.max_parallel_executions,
            config.stale_lock_timeout,
            clock=clock,
        )
        self.alerts = AlertLifecycleManager(
            store,
            notifier,
            escalation_timeout=config.escalation_timeout,
            auto_resolution_timeout=config.auto_resolution_timeout,
            batch_size=config.alert_batch_size,
            escalation_enabled=config.escalation_enabled,
            auto_resolution_enabled=config.auto_resolution_enabled,
            notify_on_auto_resolve=config.notify_on_auto_resolve,
            interval_sec=config.alert_processing_interval_sec,
            clock=clock,
        )
        self.executor = IndicatorExecutor(
            store,
            evaluator,
            self.locks,
            self.alerts,
            execution_timeout=config.execution_timeout,
            clock=clock,
        )
        self.monitoring = MonitoringLoop(
            store,
            self.executor,
            self.locks,
            interval_sec=config.monitoring_interval_sec,
            clock=clock,
        )
        self.health = HealthMonitor(
            stale_multiplier=config.heartbeat_stale_multiplier,
            interval_sec=config.health_check_interval_sec,
            clock=clock,
        )

        self._loops: List[RunningLoop] = []
        self._coordinator: Optional[ShutdownCoordinator] = None

    @property
    def started(self) -> bool:
        return bool(self._loops)

    # PUBLIC_INTERFACE
    async def validate_indicators(self) -> int:
        """Check every active indicator's frequency; raises InvalidFrequency on the first bad one."""
        indicators = await self.store.load_active_indicators()
        for ind in indicators:
            try:
                validate_frequency(ind.frequency_minutes, ind.id)
            except InvalidFrequency:
                logger.error("Refusing to start: indicatorId=%s frequency=%r", ind.id, ind.frequency_minutes)
                raise
        logger.info("Validated %s active indicators", len(indicators))
        return len(indicators)

    # PUBLIC_INTERFACE
    def start(self) -> None:
        """Spawn the monitoring, alert-lifecycle and health loops on the running event loop."""
        if self._loops:
            logger.warning("Engine already started")
            return
        for worker in (self.monitoring, self.alerts, self.health):
            stop_event = asyncio.Event()
            loop = RunningLoop(worker=worker, stop_event=stop_event)
            loop.task = asyncio.create_task(worker.run(stop_event), name=f"loop-{worker.name}")
            self._loops.append(loop)
        self.health.watch(self.monitoring)
        self.health.watch(self.alerts)

        self._coordinator = ShutdownCoordinator(
            self._loops,
            self.monitoring,
            self.locks,
            self.store,
            grace_period_sec=self.config.shutdown_grace_sec,
            clock=self._clock,
        )
        logger.info(
            "Engine started (maxParallel=%s, executionTimeout=%ss, staleLockTimeout=%ss)",
            self.config.max_parallel_executions,
            self.config.execution_timeout_sec,
            self.config.stale_lock_timeout_sec,
        )

    # PUBLIC_INTERFACE
    def health_report(self) -> HealthReport:
        return self.health.is_healthy()

    # PUBLIC_INTERFACE
    async def shutdown(self) -> Optional[ShutdownReport]:
        """Stop loops, drain executions, force-release leftovers. Returns None if never started."""
        if self._coordinator is None:
            return None
        return await self._coordinator.shutdown()
