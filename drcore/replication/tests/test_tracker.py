"""Tests for health classification and ReplicationTracker."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from drcore.provider.errors import InvalidArgument, NotFound, Throttled, Unavailable
from drcore.provider.memory import InMemoryProvider
from drcore.provider.models import DatabaseRef, DatabaseSpec, LinkState, ReplicationStatus, ServerSpec
from drcore.replication.models import HealthClass, ReplicationSample, ReplicationThresholds, worst
from drcore.replication.tracker import ReplicationTracker, classify

P = DatabaseRef("sql-weu", "orders")
S = DatabaseRef("sql-neu", "orders")
T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)
THRESHOLDS = ReplicationThresholds(warning_lag_s=300, critical_lag_s=900)


class FakeClock:
    def __init__(self, start: datetime = T0, step_s: float = 30.0) -> None:
        self.now = start
        self.step = timedelta(seconds=step_s)

    def __call__(self) -> datetime:
        current = self.now
        self.now += self.step
        return current


def _sample(lag, state=LinkState.STABLE) -> ReplicationSample:
    return ReplicationSample(timestamp=T0, lag_seconds=lag, link_state=state)


@pytest.mark.parametrize("lag", [0, 10, 299.9, 300])
def test_lag_at_or_below_warning_is_healthy(lag):
    assert classify(_sample(lag), THRESHOLDS) is HealthClass.HEALTHY


@pytest.mark.parametrize("lag", [300.1, 600, 900])
def test_lag_above_warning_is_degraded(lag):
    assert classify(_sample(lag), THRESHOLDS) is HealthClass.DEGRADED


def test_lag_above_critical_is_unhealthy():
    assert classify(_sample(901), THRESHOLDS) is HealthClass.UNHEALTHY


def test_seeding_is_initializing_regardless_of_lag():
    assert classify(_sample(100000, LinkState.SEEDING), THRESHOLDS) is HealthClass.INITIALIZING


def test_suspended_is_unhealthy_even_without_lag():
    assert classify(_sample(0, LinkState.SUSPENDED), THRESHOLDS) is HealthClass.UNHEALTHY


def test_unknown_state_or_missing_lag_is_unknown():
    assert classify(_sample(5, LinkState.UNKNOWN), THRESHOLDS) is HealthClass.UNKNOWN
    assert classify(_sample(None), THRESHOLDS) is HealthClass.UNKNOWN


def test_worst_orders_classes():
    assert worst([HealthClass.HEALTHY, HealthClass.DEGRADED, HealthClass.INITIALIZING]) is HealthClass.DEGRADED
    assert worst([HealthClass.HEALTHY, HealthClass.UNHEALTHY]) is HealthClass.UNHEALTHY
    assert worst([]) is HealthClass.UNKNOWN


@pytest_asyncio.fixture
async def provider():
    p = InMemoryProvider()
    await p.ensure_server(ServerSpec("sql-weu", "westeurope"))
    await p.ensure_server(ServerSpec("sql-neu", "northeurope"))
    await p.ensure_database(DatabaseSpec("sql-weu", "orders", "westeurope"))
    await p.ensure_replication_link(P, S)
    return p


def _tracker(provider, **kwargs) -> ReplicationTracker:
    return ReplicationTracker(provider, P, S, thresholds=THRESHOLDS, clock=FakeClock(), **kwargs)


@pytest.mark.asyncio
async def test_recovery_reclassifies_immediately(provider):
    tracker = _tracker(provider)
    provider.script_status(P, S, [ReplicationStatus(LinkState.STABLE, 1000.0),
                                  ReplicationStatus(LinkState.STABLE, 5.0)])
    assert (await tracker.observe()).health is HealthClass.UNHEALTHY
    assert (await tracker.observe()).health is HealthClass.HEALTHY
    assert tracker.streak.count == 0


@pytest.mark.asyncio
async def test_scenario_healthy_then_unhealthy(provider):
    tracker = _tracker(provider)
    provider.script_status(P, S, [ReplicationStatus(LinkState.STABLE, 10.0)] * 5
                           + [ReplicationStatus(LinkState.SUSPENDED, 1000.0)] * 3)
    healths = [(await tracker.observe()).health for _ in range(8)]
    assert healths == [HealthClass.HEALTHY] * 5 + [HealthClass.UNHEALTHY] * 3
    assert tracker.streak.count == 3
    assert tracker.streak.since == T0 + timedelta(seconds=30 * 5)


@pytest.mark.asyncio
async def test_transient_error_returns_previous_health_stale(provider):
    tracker = _tracker(provider)
    provider.script_status(P, S, [ReplicationStatus(LinkState.STABLE, 1000.0)])
    await tracker.observe()
    provider.fail("get_replication_status", Throttled(), Unavailable())
    first = await tracker.observe()
    second = await tracker.observe()
    assert first.stale and first.health is HealthClass.UNHEALTHY
    assert second.consecutive_failures == 2
    # stale observations neither advance nor reset the streak
    assert tracker.streak.count == 1
    third = await tracker.observe()
    assert not third.stale and third.consecutive_failures == 0
    assert tracker.streak.count == 2


@pytest.mark.asyncio
async def test_missing_link_reports_gone(provider):
    tracker = _tracker(provider)
    provider.fail("get_replication_status", NotFound("link"))
    obs = await tracker.observe()
    assert obs.gone and obs.health is HealthClass.UNKNOWN


@pytest.mark.asyncio
async def test_fatal_error_propagates(provider):
    tracker = _tracker(provider)
    provider.fail("get_replication_status", InvalidArgument("bad pair"))
    with pytest.raises(InvalidArgument):
        await tracker.observe()


@pytest.mark.asyncio
async def test_history_bounded_by_count_and_window(provider):
    thresholds = ReplicationThresholds(history_size=5, history_window_s=90)
    tracker = ReplicationTracker(provider, P, S, thresholds=thresholds, clock=FakeClock(step_s=30))
    for _ in range(10):
        await tracker.observe()
    history = tracker.history()
    assert isinstance(history, tuple)
    assert len(history) == 4  # 90s window at 30s spacing keeps the newest four
    assert [s.timestamp for s in history] == sorted(s.timestamp for s in history)
    assert tracker.latest == history[-1]


@pytest.mark.asyncio
async def test_history_count_bound(provider):
    thresholds = ReplicationThresholds(history_size=3, history_window_s=3600)
    tracker = ReplicationTracker(provider, P, S, thresholds=thresholds, clock=FakeClock())
    for _ in range(6):
        await tracker.observe()
    assert len(tracker.history()) == 3
