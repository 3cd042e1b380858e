"""Error taxonomy for the scheduling worker.

Lock contention is deliberately absent: a busy indicator is an expected outcome
(``ExecutionLockTable.try_acquire`` returns None) and is only logged at debug level.
"""

from __future__ import annotations

from typing import Optional


class WorkerError(Exception):
    """Base class for worker errors."""


class InvalidFrequency(WorkerError, ValueError):
    """Scheduling input with a frequency that is not a positive number of minutes."""

    def __init__(self, frequency_minutes: object, indicator_id: Optional[str] = None):
        self.frequency_minutes = frequency_minutes
        self.indicator_id = indicator_id
        where = f" for indicatorId={indicator_id}" if indicator_id else ""
        super().__init__(f"Invalid frequency {frequency_minutes!r}{where}; must be a positive number of minutes")


class StoreUnavailable(WorkerError):
    """The backing store could not serve a request; callers retry on their next tick."""


class EvaluatorTimeout(WorkerError):
    """The evaluator did not answer within the execution timeout."""

    def __init__(self, indicator_id: str, timeout_sec: float):
        self.indicator_id = indicator_id
        self.timeout_sec = timeout_sec
        super().__init__(f"Evaluation of indicatorId={indicator_id} timed out after {timeout_sec:g}s")


class EvaluatorFailure(WorkerError):
    """The evaluator raised; recorded as a failed execution, never as a breach."""


class AlertNotFound(WorkerError, LookupError):
    """No alert exists with the requested id."""


class AlertAlreadyTerminal(WorkerError):
    """The alert is already resolved or auto-resolved and accepts no further transitions."""
