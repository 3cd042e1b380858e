from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from src.worker.errors import AlertAlreadyTerminal, AlertNotFound
from src.worker.schemas.alerts import AlertState, NotificationKind


@pytest.fixture
def raise_alert(make_indicator, breach, clock):
    async def _raise(engine, indicator_id: str = "cpu"):
        return await engine.alerts.raise_alert(make_indicator(indicator_id), breach, clock())

    return _raise


@pytest.mark.anyio
async def test_raised_alert_carries_both_deadlines(make_engine, raise_alert, notifier, clock):
    engine = make_engine(escalation_timeout_min=60, auto_resolution_timeout_min=120)
    alert = await raise_alert(engine)

    assert alert.state == AlertState.open
    assert alert.escalation_deadline == clock() + timedelta(minutes=60)
    assert alert.auto_resolution_deadline == clock() + timedelta(minutes=120)
    assert "cpu" in alert.message
    assert notifier.kinds() == [NotificationKind.triggered]


@pytest.mark.anyio
async def test_open_escalates_then_auto_resolves(make_engine, raise_alert, store, notifier, clock):
    engine = make_engine()
    alert = await raise_alert(engine)
    t0 = clock()

    assert await engine.alerts.process(t0 + timedelta(minutes=30)) == []

    changed = await engine.alerts.process(t0 + timedelta(minutes=60))
    assert [a.state for a in changed] == [AlertState.escalated]
    assert (await store.load_alert(alert.id)).escalated_at == t0 + timedelta(minutes=60)
    assert notifier.kinds()[-1] == NotificationKind.escalated

    # Rescanning the same instant changes nothing.
    assert await engine.alerts.process(t0 + timedelta(minutes=60)) == []
    assert await engine.alerts.process(t0 + timedelta(minutes=119)) == []

    changed = await engine.alerts.process(t0 + timedelta(minutes=120))
    assert [a.state for a in changed] == [AlertState.auto_resolved]
    stored = await store.load_alert(alert.id)
    assert stored.resolved_by == "System"
    assert stored.resolved_time == t0 + timedelta(minutes=120)
    assert await store.load_open_alerts(10) == []
    # Auto-resolution is silent by default.
    assert notifier.kinds().count(NotificationKind.auto_resolved) == 0

    assert await engine.alerts.process(t0 + timedelta(days=1)) == []


@pytest.mark.anyio
async def test_one_transition_per_alert_per_pass(make_engine, raise_alert, clock):
    engine = make_engine()
    await raise_alert(engine)
    late = clock() + timedelta(minutes=500)

    first = await engine.alerts.process(late)
    assert [a.state for a in first] == [AlertState.escalated]
    second = await engine.alerts.process(late)
    assert [a.state for a in second] == [AlertState.auto_resolved]


@pytest.mark.anyio
async def test_escalation_disabled_goes_straight_to_auto_resolution(make_engine, raise_alert, clock):
    engine = make_engine(escalation_enabled=False)
    await raise_alert(engine)
    t0 = clock()

    assert await engine.alerts.process(t0 + timedelta(minutes=90)) == []
    changed = await engine.alerts.process(t0 + timedelta(minutes=120))
    assert [a.state for a in changed] == [AlertState.auto_resolved]


@pytest.mark.anyio
async def test_auto_resolution_disabled_leaves_escalated_alerts(make_engine, raise_alert, store, clock):
    engine = make_engine(auto_resolution_enabled=False)
    alert = await raise_alert(engine)
    t0 = clock()

    await engine.alerts.process(t0 + timedelta(minutes=60))
    assert await engine.alerts.process(t0 + timedelta(days=3)) == []
    assert (await store.load_alert(alert.id)).state == AlertState.escalated


@pytest.mark.anyio
async def test_auto_resolve_notification_is_opt_in(make_engine, raise_alert, notifier, clock):
    engine = make_engine(notify_on_auto_resolve=True)
    await raise_alert(engine)
    t0 = clock()

    await engine.alerts.process(t0 + timedelta(minutes=60))
    await engine.alerts.process(t0 + timedelta(minutes=120))
    assert notifier.kinds() == [
        NotificationKind.triggered,
        NotificationKind.escalated,
        NotificationKind.auto_resolved,
    ]


@pytest.mark.anyio
async def test_manual_resolve_is_terminal(make_engine, raise_alert, store, clock):
    engine = make_engine()
    alert = await raise_alert(engine)
    await engine.alerts.process(clock() + timedelta(minutes=60))

    resolved = await engine.alerts.resolve(alert.id, "alice", "disk cleaned up")
    assert resolved.state == AlertState.resolved
    assert resolved.resolved_by == "alice"
    assert resolved.resolution_notes == "disk cleaned up"

    # Neither the lifecycle pass nor a second resolve can move it again.
    assert await engine.alerts.process(clock() + timedelta(days=1)) == []
    with pytest.raises(AlertAlreadyTerminal):
        await engine.alerts.resolve(alert.id, "bob")
    assert (await store.load_alert(alert.id)).resolved_by == "alice"


@pytest.mark.anyio
async def test_resolve_unknown_alert(make_engine):
    engine = make_engine()
    with pytest.raises(AlertNotFound):
        await engine.alerts.resolve("missing", "alice")


@pytest.mark.anyio
async def test_batch_size_limits_each_pass_to_oldest_alerts(make_engine, raise_alert, clock):
    engine = make_engine(alert_batch_size=2)
    ids = []
    for i in range(3):
        ids.append((await raise_alert(engine, f"ind-{i}")).id)
        clock.advance(minutes=1)

    late = clock() + timedelta(minutes=60)
    changed = await engine.alerts.process(late)
    assert [a.id for a in changed] == ids[:2]

    # The escalated two are not due again until auto-resolution, so the third is picked up next.
    changed = await engine.alerts.process(late)
    assert [a.id for a in changed] == ids[2:]
    assert await engine.alerts.process(late) == []


@pytest.mark.anyio
async def test_waiting_alerts_do_not_starve_due_ones(make_engine, raise_alert, store, clock):
    engine = make_engine(alert_batch_size=1, escalation_timeout_min=60, auto_resolution_timeout_min=120)
    t0 = clock()
    older = await raise_alert(engine, "a")
    clock.advance(minutes=1)
    newer = await raise_alert(engine, "b")

    late = t0 + timedelta(minutes=90)
    assert [a.id for a in await engine.alerts.process(late)] == [older.id]
    # The older alert is escalated and waits for auto-resolution; it must not fill the batch again.
    assert [a.id for a in await engine.alerts.process(late)] == [newer.id]
    assert (await store.load_alert(older.id)).state == AlertState.escalated
    assert (await store.load_alert(newer.id)).state == AlertState.escalated


@pytest.mark.anyio
async def test_store_returns_only_due_alerts_oldest_first(make_engine, raise_alert, store, clock):
    engine = make_engine(escalation_timeout_min=60, auto_resolution_timeout_min=120)
    t0 = clock()
    first = await raise_alert(engine, "a")
    clock.advance(minutes=30)
    second = await raise_alert(engine, "b")

    assert await store.load_due_alerts(t0 + timedelta(minutes=59), 10) == []
    due = await store.load_due_alerts(t0 + timedelta(minutes=90), 10)
    assert [a.id for a in due] == [first.id, second.id]
    assert [a.id for a in await store.load_due_alerts(t0 + timedelta(minutes=90), 1)] == [first.id]

    # With escalation off, open alerts are due only at their auto-resolution deadline.
    off = await store.load_due_alerts(t0 + timedelta(minutes=130), 10, escalation_enabled=False)
    assert [a.id for a in off] == [first.id]
    disabled = await store.load_due_alerts(
        t0 + timedelta(days=1), 10, escalation_enabled=False, auto_resolution_enabled=False
    )
    assert disabled == []


@pytest.mark.anyio
async def test_failed_notification_does_not_block_transition(make_engine, raise_alert, store, notifier, clock):
    engine = make_engine()
    alert = await raise_alert(engine)
    notifier.fail = True

    changed = await engine.alerts.process(clock() + timedelta(minutes=60))
    assert [a.id for a in changed] == [alert.id]
    assert (await store.load_alert(alert.id)).state == AlertState.escalated


def test_manager_built_outside_event_loop_works_inside_one(make_engine, raise_alert, store, clock):
    engine = make_engine()

    alert = asyncio.run(raise_alert(engine))
    asyncio.run(engine.alerts.resolve(alert.id, "alice"))

    assert asyncio.run(store.load_alert(alert.id)).state == AlertState.resolved
