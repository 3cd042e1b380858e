from __future__ import annotations

import asyncio
import logging

import pytest

from src.worker.errors import InvalidFrequency
from src.worker.schemas.health import LoopState, LoopStatus
from src.worker.services.health_monitor import HealthMonitor
from src.worker.services.periodic import PeriodicWorker


class IdleWorker(PeriodicWorker):
    name = "idle"

    async def tick(self) -> None:
        return None


def test_loop_health_follows_heartbeat_age(clock):
    worker = IdleWorker(interval_sec=10, clock=clock)
    monitor = HealthMonitor(stale_multiplier=3, clock=clock)
    monitor.watch(worker)

    report = monitor.is_healthy()
    assert report.loops["idle"].status == LoopStatus.stopped
    assert report.healthy is False

    worker.state = LoopState.running
    assert monitor.is_healthy().loops["idle"].status == LoopStatus.starting

    worker.beat()
    report = monitor.is_healthy()
    assert report.healthy is True
    assert report.loops["idle"].threshold_seconds == 30

    clock.advance(seconds=30)
    assert monitor.is_healthy().loops["idle"].status == LoopStatus.healthy
    clock.advance(seconds=1)
    report = monitor.is_healthy()
    assert report.loops["idle"].status == LoopStatus.stale
    assert report.loops["idle"].heartbeat_age_seconds == 31
    assert report.healthy is False


def test_loop_that_never_ticks_turns_stale(clock):
    worker = IdleWorker(interval_sec=10, clock=clock)
    worker.state = LoopState.running
    monitor = HealthMonitor(stale_multiplier=3, clock=clock)
    monitor.watch(worker)

    clock.advance(seconds=31)
    assert monitor.is_healthy().loops["idle"].status == LoopStatus.stale


def test_one_stale_loop_marks_the_whole_report_unhealthy(clock):
    fast = IdleWorker(interval_sec=1, clock=clock)
    slow = IdleWorker(interval_sec=100, clock=clock)
    monitor = HealthMonitor(stale_multiplier=3, clock=clock)
    monitor.watch(fast, "fast")
    monitor.watch(slow, "slow")
    for w in (fast, slow):
        w.state = LoopState.running
        w.beat()

    clock.advance(seconds=10)
    report = monitor.is_healthy()
    assert report.loops["slow"].status == LoopStatus.healthy
    assert report.loops["fast"].status == LoopStatus.stale
    assert report.healthy is False


def test_no_watched_loops_is_not_healthy(clock):
    assert HealthMonitor(clock=clock).is_healthy().healthy is False


@pytest.mark.anyio
async def test_tick_logs_stale_and_recovery_once(clock, caplog):
    caplog.set_level(logging.INFO, logger="src.worker.services.health_monitor")
    worker = IdleWorker(interval_sec=1, clock=clock)
    worker.state = LoopState.running
    worker.beat()
    monitor = HealthMonitor(stale_multiplier=3, clock=clock)
    monitor.watch(worker)

    clock.advance(seconds=5)
    await monitor.tick()
    await monitor.tick()
    stale_logs = [r for r in caplog.records if "is stale" in r.getMessage()]
    assert len(stale_logs) == 1
    assert stale_logs[0].levelno == logging.WARNING

    worker.beat()
    await monitor.tick()
    assert any("recovered" in r.getMessage() for r in caplog.records)


@pytest.mark.anyio
async def test_validate_indicators_rejects_bad_frequency(make_engine, make_indicator, store):
    engine = make_engine()
    store.put_indicator(make_indicator("ok"))
    assert await engine.validate_indicators() == 1

    store.put_indicator(make_indicator("bad", frequency_minutes=-1))
    with pytest.raises(InvalidFrequency):
        await engine.validate_indicators()


@pytest.mark.anyio
async def test_shutdown_drains_in_flight_executions(make_engine, make_indicator, store, evaluator):
    engine = make_engine(shutdown_grace_sec=5)
    store.put_indicator(make_indicator("a"))
    store.put_indicator(make_indicator("b"))
    evaluator.gate = asyncio.Event()

    engine.start()
    await asyncio.sleep(0.05)
    assert engine.monitoring.in_flight == 2
    assert engine.health_report().loops["monitoring"].status == LoopStatus.healthy

    asyncio.get_running_loop().call_later(0.05, evaluator.gate.set)
    report = await engine.shutdown()

    assert report.outstanding_before_drain == 2
    assert report.outstanding_after_drain == 0
    assert report.timed_out is False
    assert report.force_released == []
    assert len(store.execution_records()) == 2
    assert engine.locks.active_count == 0
    assert engine.monitoring.state == LoopState.stopped
    assert engine.alerts.state == LoopState.stopped
    assert engine.health.state == LoopState.stopped

    # Idempotent: a second call returns the first report.
    assert await engine.shutdown() is report


@pytest.mark.anyio
async def test_shutdown_force_releases_after_grace_period(make_engine, make_indicator, store, evaluator, caplog):
    caplog.set_level(logging.WARNING, logger="src.worker.services.execution_lock")
    engine = make_engine(shutdown_grace_sec=0)
    store.put_indicator(make_indicator("a"))
    store.put_indicator(make_indicator("b"))
    evaluator.gate = asyncio.Event()

    engine.start()
    await asyncio.sleep(0.05)
    assert store.indicator("a").is_currently_running is True

    report = await engine.shutdown()

    assert report.timed_out is True
    assert report.outstanding_after_drain == 2
    assert sorted(report.force_released) == ["a", "b"]
    assert engine.locks.active_count == 0
    assert store.indicator("a").is_currently_running is False
    assert store.indicator("b").is_currently_running is False
    assert len([r for r in caplog.records if "Force-released" in r.getMessage()]) == 2

    evaluator.gate.set()
    assert await engine.monitoring.drain(timeout=5) == 0


@pytest.mark.anyio
async def test_shutdown_before_start_is_a_no_op(make_engine):
    assert await make_engine().shutdown() is None
