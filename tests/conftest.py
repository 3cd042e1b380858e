from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple, Union

import pytest

from src.worker.config import WorkerConfig
from src.worker.db.memory import InMemoryStore
from src.worker.schemas.alerts import Alert, NotificationKind
from src.worker.schemas.indicators import Indicator, ThresholdRule
from src.worker.services.engine import SchedulingEngine
from src.worker.services.evaluator import EvaluationResult

T0 = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, ts: datetime) -> None:
        self.now = ts


class ScriptedEvaluator:
    """
    Evaluator returning per-indicator scripted results.

    A result may be an EvaluationResult or an exception to raise. While `gate` is set to an unset
    asyncio.Event, evaluations block on it, which lets tests hold executions open.
    """

    def __init__(self, default: Optional[EvaluationResult] = None):
        self.default = default or EvaluationResult(value=1.0, breached=False)
        self.results: Dict[str, Union[EvaluationResult, BaseException]] = {}
        self.gate: Optional[asyncio.Event] = None
        self.delay = 0.0
        self.calls: List[str] = []
        self.active = 0
        self.max_active = 0

    async def evaluate(self, indicator: Indicator) -> EvaluationResult:
        self.calls.append(indicator.id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            result = self.results.get(indicator.id, self.default)
            if isinstance(result, BaseException):
                raise result
            return result
        finally:
            self.active -= 1


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[Tuple[Alert, NotificationKind]] = []
        self.fail = False

    async def notify(self, alert: Alert, kind: NotificationKind) -> None:
        if self.fail:
            raise RuntimeError("delivery failed")
        self.sent.append((alert, kind))

    def kinds(self) -> List[NotificationKind]:
        return [k for _, k in self.sent]


BREACH = EvaluationResult(value=95.0, breached=True, historical_value=50.0, deviation_percent=90.0)


@pytest.fixture
def breach() -> EvaluationResult:
    """An evaluation that always breaches."""
    return BREACH


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def evaluator() -> ScriptedEvaluator:
    return ScriptedEvaluator()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def make_config() -> Callable[..., WorkerConfig]:
    """Factory for WorkerConfig with fast, test-friendly defaults."""

    def _make(**overrides) -> WorkerConfig:
        values = dict(
            store_backend="memory",
            mongo_uri=None,
            monitoring_interval_sec=1,
            alert_processing_interval_sec=1,
            health_check_interval_sec=1,
            max_parallel_executions=5,
            execution_timeout_sec=300,
            stale_lock_timeout_sec=300,
            alert_batch_size=100,
            escalation_enabled=True,
            escalation_timeout_min=60,
            auto_resolution_enabled=True,
            auto_resolution_timeout_min=120,
            notify_on_auto_resolve=False,
            heartbeat_stale_multiplier=3,
            shutdown_grace_sec=5,
        )
        values.update(overrides)
        return WorkerConfig(**values)

    return _make


@pytest.fixture
def make_indicator() -> Callable[..., Indicator]:
    def _make(indicator_id: str = "ind-1", **overrides) -> Indicator:
        values = dict(
            id=indicator_id,
            name=f"Indicator {indicator_id}",
            frequency_minutes=5,
            threshold=ThresholdRule(field="current_value", comparator="gt", value=90.0),
        )
        values.update(overrides)
        return Indicator(**values)

    return _make


@pytest.fixture
def make_engine(make_config, store, evaluator, notifier, clock) -> Callable[..., SchedulingEngine]:
    """Factory for a fully wired engine over the in-memory store and scripted collaborators."""

    def _make(**config_overrides) -> SchedulingEngine:
        return SchedulingEngine(make_config(**config_overrides), store, evaluator, notifier, clock=clock)

    return _make
