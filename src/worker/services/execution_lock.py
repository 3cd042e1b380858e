"""Per-indicator execution locks plus a global bound on concurrent executions.

Locks live in an in-process table keyed by indicator id, separate from the Indicator
documents. The executor mirrors lock state into the store run-state fields so other
processes and dashboards can see it, but the table is the source of truth here.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from src.worker.schemas.common import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockToken:
    """Proof of ownership of one indicator's execution lock."""

    indicator_id: str
    context: str
    acquired_at: datetime
    # Longest the holder may legitimately run; the lock is not stale before this has passed.
    budget: timedelta = timedelta(0)


class ExecutionLockTable:
    """
    Lock table with atomic check-and-set per indicator and a counting semaphore across all of them.

    Nothing here blocks: a busy indicator or a full semaphore makes try_acquire return None and the
    caller skips that indicator for this tick.
    """

    def __init__(
        self,
        max_parallel_executions: int,
        stale_lock_timeout: timedelta,
        clock: Clock = utc_now,
    ):
        if max_parallel_executions < 1:
            raise ValueError("max_parallel_executions must be >= 1")
        self._max_parallel = int(max_parallel_executions)
        self._stale_after = stale_lock_timeout
        self._clock = clock
        self._mutex = threading.Lock()
        self._slots = threading.BoundedSemaphore(self._max_parallel)
        self._held: Dict[str, LockToken] = {}
        # Contexts currently holding a semaphore slot.
        self._slot_holders: Set[str] = set()

    @property
    def max_parallel(self) -> int:
        return self._max_parallel

    @property
    def stale_lock_timeout(self) -> timedelta:
        return self._stale_after

    @property
    def active_count(self) -> int:
        with self._mutex:
            return len(self._slot_holders)

    @property
    def available_slots(self) -> int:
        with self._mutex:
            return self._max_parallel - len(self._slot_holders)

    def is_held(self, indicator_id: str, include_stale: bool = False) -> bool:
        """Whether a live lock exists for the indicator (stale holders count only with include_stale)."""
        with self._mutex:
            token = self._held.get(indicator_id)
        if token is None:
            return False
        return include_stale or not self.is_stale(token)

    def holders(self) -> List[LockToken]:
        """Snapshot of the currently held locks."""
        with self._mutex:
            return list(self._held.values())

    def stale_after(self, budget: Optional[timedelta] = None) -> timedelta:
        """Age at which a lock (or mirrored run-state) with the given run budget counts as abandoned."""
        if budget is None:
            return self._stale_after
        return max(self._stale_after, budget)

    def is_stale(self, token: LockToken, now: Optional[datetime] = None) -> bool:
        return ((now or self._clock()) - token.acquired_at) >= self.stale_after(token.budget)

    def _give_back_slot(self, context: str) -> None:
        # Caller holds self._mutex.
        if context in self._slot_holders:
            self._slot_holders.discard(context)
            self._slots.release()

    # PUBLIC_INTERFACE
    def try_acquire(self, indicator_id: str, budget: Optional[timedelta] = None) -> Optional[LockToken]:
        """
        Take the indicator's lock and one global slot, or return None without waiting.

        budget is how long the run may take; a lock is never reclaimed before it has elapsed.
        """
        now = self._clock()
        with self._mutex:
            existing = self._held.get(indicator_id)
            if existing is not None:
                if not self.is_stale(existing, now):
                    logger.debug(
                        "Lock contention for indicatorId=%s (held since %s)", indicator_id, existing.acquired_at
                    )
                    return None
                age = (now - existing.acquired_at).total_seconds()
                logger.warning(
                    "Recovered stale lock for indicatorId=%s context=%s age=%.0fs (timeout=%.0fs)",
                    indicator_id,
                    existing.context,
                    age,
                    self.stale_after(existing.budget).total_seconds(),
                )
                del self._held[indicator_id]
                self._give_back_slot(existing.context)

            if not self._slots.acquire(blocking=False):
                logger.debug("No free execution slot for indicatorId=%s (max=%s)", indicator_id, self._max_parallel)
                return None

            token = LockToken(
                indicator_id=indicator_id,
                context=uuid.uuid4().hex,
                acquired_at=now,
                budget=budget or timedelta(0),
            )
            self._held[indicator_id] = token
            self._slot_holders.add(token.context)
            return token

    # PUBLIC_INTERFACE
    def release(self, token: LockToken) -> bool:
        """
        Release a lock. Returns False when the token no longer owns the lock (it was reclaimed as stale).

        Safe to call more than once; the global slot is returned exactly once.
        """
        with self._mutex:
            self._give_back_slot(token.context)
            current = self._held.get(token.indicator_id)
            if current is None or current.context != token.context:
                return False
            del self._held[token.indicator_id]
            return True

    # PUBLIC_INTERFACE
    def force_release_all(self) -> List[LockToken]:
        """Drop every held lock (treated as abandoned) and return what was dropped."""
        with self._mutex:
            dropped = list(self._held.values())
            for token in dropped:
                self._give_back_slot(token.context)
            self._held.clear()
        for token in dropped:
            logger.warning(
                "Force-released lock for indicatorId=%s context=%s acquired_at=%s",
                token.indicator_id,
                token.context,
                token.acquired_at,
            )
        return dropped
