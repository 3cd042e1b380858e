from __future__ import annotations

import logging
import operator
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol

from src.worker.schemas.common import Clock, utc_now
from src.worker.schemas.indicators import Comparator, Indicator, ThresholdRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvaluationResult:
    """What an evaluator reports for one indicator run."""

    value: Optional[float]
    breached: bool
    historical_value: Optional[float] = None
    deviation_percent: Optional[float] = None


class Evaluator(Protocol):
    """Decides whether an indicator's current data breaches its threshold. Any exception is an execution failure."""

    async def evaluate(self, indicator: Indicator) -> EvaluationResult: ...


class SampleCollector(Protocol):
    async def fetch_samples(self, collector_item: str, window_start: datetime, window_end: datetime) -> List[dict]: ...


_COMPARATORS: Dict[str, Callable[[float, float], bool]] = {
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
    "eq": operator.eq,
    "ne": operator.ne,
}


def _safe_float(v: Any) -> Optional[float]:
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def compare(comparator: Comparator, left: float, right: float) -> bool:
    """Apply a threshold comparator."""
    return _COMPARATORS[comparator](left, right)


def deviation_percent(current: Optional[float], historical: Optional[float]) -> Optional[float]:
    if current is None or historical is None or historical == 0:
        return None
    return abs(current - historical) / abs(historical) * 100.0


def apply_rule(
    rule: ThresholdRule,
    current: Optional[float],
    historical: Optional[float],
) -> EvaluationResult:
    """Evaluate a threshold rule; missing inputs never count as a breach."""
    deviation = deviation_percent(current, historical)
    observed = {"current_value": current, "historical_value": historical, "deviation_percent": deviation}[rule.field]
    breached = observed is not None and compare(rule.comparator, observed, float(rule.value))
    return EvaluationResult(value=current, breached=breached, historical_value=historical, deviation_percent=deviation)


class NoDataError(RuntimeError):
    """The collector returned no usable samples for the indicator's data window."""


class ThresholdRuleEvaluator:
    """
    Default evaluator: reads an indicator's samples over its data window and applies its threshold rule.

    The current value is the newest sample; the historical value is the mean of the older samples.
    """

    def __init__(self, collector: SampleCollector, clock: Clock = utc_now):
        self._collector = collector
        self._clock = clock

    async def evaluate(self, indicator: Indicator) -> EvaluationResult:
        item = indicator.collector_item or indicator.id
        window_end = self._clock()
        window_start = window_end - timedelta(minutes=max(1, indicator.data_window_minutes))
        samples = await self._collector.fetch_samples(item, window_start, window_end)

        values = [v for v in (_safe_float(s.get("value")) for s in samples) if v is not None]
        if not values:
            raise NoDataError(f"no samples for collectorItem={item} in the last {indicator.data_window_minutes}m")

        current = values[-1]
        older = values[:-1]
        historical = (sum(older) / len(older)) if older else None
        result = apply_rule(indicator.threshold, current, historical)
        logger.debug(
            "Evaluated indicatorId=%s value=%s historical=%s breached=%s samples=%s",
            indicator.id,
            current,
            historical,
            result.breached,
            len(values),
        )
        return result
