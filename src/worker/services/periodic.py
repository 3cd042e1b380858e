from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from src.worker.errors import StoreUnavailable
from src.worker.schemas.common import Clock, utc_now
from src.worker.schemas.health import LoopState

logger = logging.getLogger(__name__)


class PeriodicWorker:
    """
    Base for the worker's background loops.

    Subclasses implement tick(). run() calls it every interval_sec until the stop event is set; a failed
    tick is logged and retried on the next one, and only a successful tick refreshes the heartbeat.
    """

    name = "periodic"

    def __init__(self, interval_sec: float, clock: Clock = utc_now):
        self.interval_sec = max(0.01, float(interval_sec))
        self._clock = clock
        self.state = LoopState.stopped
        self.last_heartbeat: Optional[datetime] = None
        self.ticks = 0

    async def tick(self) -> None:
        raise NotImplementedError

    def beat(self) -> None:
        self.last_heartbeat = self._clock()

    def mark_stopping(self) -> None:
        if self.state == LoopState.running:
            self.state = LoopState.stopping

    async def _guarded_tick(self) -> None:
        try:
            await self.tick()
        except StoreUnavailable as exc:
            logger.warning("%s tick skipped, store unavailable: %s", self.name, exc)
            return
        except Exception:
            logger.exception("%s tick failed", self.name)
            return
        self.ticks += 1
        self.beat()

    # PUBLIC_INTERFACE
    async def run(self, stop_event: asyncio.Event) -> None:
        """Tick until stop_event is set. Never raises on a failed tick."""
        self.state = LoopState.running
        logger.info("%s started (interval=%ss)", self.name, self.interval_sec)
        try:
            while not stop_event.is_set():
                tick_started = datetime.now(timezone.utc)
                await self._guarded_tick()

                # Sleep the remaining interval, waking early on shutdown.
                elapsed = (datetime.now(timezone.utc) - tick_started).total_seconds()
                sleep_for = max(0.01, self.interval_sec - elapsed)
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=sleep_for)
                except asyncio.TimeoutError:
                    pass
            self.state = LoopState.stopping
            await self.on_stopping()
        finally:
            self.state = LoopState.stopped
            logger.info("%s stopped", self.name)

    async def on_stopping(self) -> None:
        """Hook run once after the loop leaves its tick cycle."""
