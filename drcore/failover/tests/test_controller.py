"""Tests for the FailoverController state machine against the in-memory provider."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest

from drcore.failover.controller import ControllerSettings, FailoverController
from drcore.failover.errors import GroupBusy, InvalidRequest, PolicyViolation
from drcore.failover.models import (
    FailoverGroupSpec,
    FailoverPolicy,
    FailoverRequest,
    FailoverType,
    Phase,
    PrimarySite,
    RequestOutcome,
    SecondarySite,
)
from drcore.provider.errors import Throttled, Unauthorized
from drcore.provider.memory import InMemoryProvider
from drcore.provider.models import DatabaseRef, LinkState, ReplicationStatus, ServerSpec
from drcore.provider.retry import RetryPolicy
from drcore.replication.models import HealthClass, ReplicationThresholds

P = DatabaseRef("sql-weu", "orders")
S = DatabaseRef("sql-neu", "orders")
HEALTHY = ReplicationStatus(LinkState.STABLE, 10.0)
SUSPENDED = ReplicationStatus(LinkState.SUSPENDED, 1000.0)


class ManualClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _spec(databases=("orders",), policy=FailoverPolicy.MANUAL, grace=0.0, **kwargs) -> FailoverGroupSpec:
    return FailoverGroupSpec(
        id="orders",
        primary=PrimarySite("westeurope", "sql-weu", tuple(databases)),
        secondary=SecondarySite("northeurope", "sql-neu"),
        failover_policy=policy,
        grace_period_s=grace,
        **kwargs,
    )


def _settings(**overrides) -> ControllerSettings:
    fields = dict(
        retry=RetryPolicy(max_attempts=3, base_delay_s=0.0, jitter=0.0, call_timeout_s=5.0),
        thresholds=ReplicationThresholds(warning_lag_s=300, critical_lag_s=900),
        validation_attempts=2,
        validation_timeout_s=300.0,
    )
    fields.update(overrides)
    return ControllerSettings(**fields)


@pytest.fixture
def provider():
    return InMemoryProvider()


@pytest.fixture
def clock():
    return ManualClock()


def _controller(provider, clock, spec=None, events=None, **settings) -> FailoverController:
    listeners = [events.append] if events is not None else []
    return FailoverController(spec or _spec(), provider, provider, settings=_settings(**settings),
                              clock=clock, listeners=listeners)


async def _replicating(provider, clock, **kwargs) -> FailoverController:
    controller = _controller(provider, clock, **kwargs)
    await controller.step()
    assert controller.state.phase is Phase.REPLICATING
    return controller


def _request(forced=False, allow_data_loss=False) -> FailoverRequest:
    return FailoverRequest(group_id="orders", type=FailoverType.FORCED if forced else FailoverType.PLANNED,
                           allow_data_loss=allow_data_loss)


async def _until(predicate, rounds: int = 100) -> None:
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


# --- provisioning ---

@pytest.mark.asyncio
async def test_provisioning_creates_everything_then_replicates(provider, clock):
    events = []
    controller = _controller(provider, clock, spec=_spec(databases=("orders", "billing")), events=events)
    event = await controller.step()
    assert event.old is Phase.PROVISIONING and event.new is Phase.REPLICATING
    assert set(provider.servers) == {"sql-weu", "sql-neu"}
    assert len(provider.links) == 2
    assert provider.groups["orders"].primary_server == "sql-weu"
    assert events == [event]
    assert controller.state.health is HealthClass.HEALTHY


@pytest.mark.asyncio
async def test_provisioning_waits_while_link_state_unknown(provider, clock):
    provider.initial_link_state = LinkState.UNKNOWN
    controller = _controller(provider, clock)
    assert await controller.step() is None
    assert controller.state.phase is Phase.PROVISIONING
    provider.set_status(P, S, HEALTHY)
    assert (await controller.step()).new is Phase.REPLICATING


@pytest.mark.asyncio
async def test_provisioning_twice_is_idempotent(provider, clock):
    controller = await _replicating(provider, clock)
    await controller.remove_replication_links()
    await controller.step()
    assert controller.state.phase is Phase.REPLICATING
    assert provider.mutations["ensure_server"] == 2
    assert provider.mutations["ensure_failover_group"] == 1


@pytest.mark.asyncio
async def test_identity_conflict_in_provisioning_fails(provider, clock):
    await provider.ensure_server(ServerSpec("sql-weu", "eastus"))
    controller = _controller(provider, clock)
    event = await controller.step()
    assert event.new is Phase.FAILED
    assert "Conflict" in controller.state.last_error


@pytest.mark.asyncio
async def test_unauthorized_goes_straight_to_failed(provider, clock):
    provider.fail("ensure_server", Unauthorized("expired token"))
    controller = _controller(provider, clock)
    assert (await controller.step()).new is Phase.FAILED
    assert provider.calls["ensure_server"] == 1


@pytest.mark.asyncio
async def test_throttled_four_times_recovers_with_five_attempts(provider, clock):
    provider.fail("ensure_server", *[Throttled() for _ in range(4)])
    controller = _controller(provider, clock, retry=RetryPolicy(max_attempts=5, base_delay_s=0.0, jitter=0.0))
    assert (await controller.step()).new is Phase.REPLICATING


@pytest.mark.asyncio
async def test_throttled_four_times_fails_with_three_attempts(provider, clock):
    provider.fail("ensure_server", *[Throttled() for _ in range(4)])
    controller = _controller(provider, clock)
    assert (await controller.step()).new is Phase.FAILED
    assert provider.calls["ensure_server"] == 3
    assert "RetryExhausted" in controller.state.last_error


@pytest.mark.asyncio
async def test_retrigger_restarts_failed_group(provider, clock):
    provider.fail("ensure_server", Unauthorized())
    controller = _controller(provider, clock)
    await controller.step()
    assert controller.retrigger().new is Phase.PROVISIONING
    assert (await controller.step()).new is Phase.REPLICATING


@pytest.mark.asyncio
async def test_retrigger_outside_failed_is_rejected(provider, clock):
    controller = await _replicating(provider, clock)
    with pytest.raises(InvalidRequest):
        controller.retrigger()


# --- automatic failover ---

@pytest.mark.asyncio
async def test_scenario_automatic_failover_after_second_unhealthy_sample(provider, clock):
    controller = await _replicating(
        provider, clock, spec=_spec(policy=FailoverPolicy.AUTOMATIC, grace=0.0), min_unhealthy_observations=2)
    provider.script_status(P, S, [HEALTHY] * 5 + [SUSPENDED] * 3)
    healths = []
    for _ in range(5):
        assert await controller.step() is None
        healths.append(controller.state.health)
        clock.advance(30)
    assert await controller.step() is None
    healths.append(controller.state.health)
    clock.advance(30)
    event = await controller.step()
    healths.append(controller.state.health)
    assert healths == [HealthClass.HEALTHY] * 5 + [HealthClass.UNHEALTHY] * 2
    assert event.new is Phase.FAILOVER_REQUESTED
    request = controller.state.request
    assert request.type is FailoverType.FORCED
    assert request.allow_data_loss is True
    assert request.requester == "reconciler"


@pytest.mark.asyncio
async def test_automatic_failover_waits_for_grace_period(provider, clock):
    controller = await _replicating(provider, clock, spec=_spec(policy=FailoverPolicy.AUTOMATIC, grace=600.0))
    provider.set_status(P, S, SUSPENDED)
    assert await controller.step() is None
    clock.advance(599)
    assert await controller.step() is None
    assert controller.state.phase is Phase.REPLICATING
    clock.advance(1)
    assert (await controller.step()).new is Phase.FAILOVER_REQUESTED


@pytest.mark.asyncio
async def test_one_healthy_sample_resets_the_grace_period(provider, clock):
    controller = await _replicating(provider, clock, spec=_spec(policy=FailoverPolicy.AUTOMATIC, grace=600.0))
    provider.set_status(P, S, SUSPENDED)
    await controller.step()
    clock.advance(500)
    provider.set_status(P, S, HEALTHY)
    await controller.step()
    provider.set_status(P, S, SUSPENDED)
    clock.advance(100)
    assert await controller.step() is None
    clock.advance(599)
    assert await controller.step() is None
    clock.advance(1)
    assert (await controller.step()).new is Phase.FAILOVER_REQUESTED


@pytest.mark.asyncio
async def test_manual_policy_never_fails_over_on_its_own(provider, clock):
    controller = await _replicating(provider, clock, spec=_spec(policy=FailoverPolicy.MANUAL, grace=0.0))
    provider.set_status(P, S, SUSPENDED)
    for _ in range(5):
        clock.advance(3600)
        assert await controller.step() is None
    assert controller.state.health is HealthClass.UNHEALTHY
    assert provider.calls["execute_failover"] == 0


# --- operator failover ---

@pytest.mark.asyncio
async def test_forced_without_consent_while_unhealthy_is_rejected_locally(provider, clock):
    controller = await _replicating(provider, clock)
    provider.set_status(P, S, SUSPENDED)
    await controller.step()
    with pytest.raises(PolicyViolation):
        controller.submit(_request(forced=True, allow_data_loss=False))
    assert controller.state.request is None
    assert provider.calls["execute_failover"] == 0


@pytest.mark.asyncio
async def test_forced_with_consent_while_unhealthy_is_accepted(provider, clock):
    controller = await _replicating(provider, clock)
    provider.set_status(P, S, SUSPENDED)
    await controller.step()
    request = controller.submit(_request(forced=True, allow_data_loss=True))
    assert controller.state.request is request


@pytest.mark.asyncio
async def test_policy_rechecked_at_execution_time(provider, clock):
    controller = await _replicating(provider, clock)
    request = controller.submit(_request(forced=True, allow_data_loss=False))
    provider.set_status(P, S, SUSPENDED)
    assert (await controller.step()).new is Phase.FAILOVER_REQUESTED
    assert (await controller.step()).new is Phase.REPLICATING
    assert request.outcome is RequestOutcome.FAILED
    assert provider.calls["execute_failover"] == 0


@pytest.mark.asyncio
async def test_planned_failover_full_lifecycle(provider, clock):
    events = []
    controller = await _replicating(provider, clock, events=events)
    request = controller.submit(_request())
    for expected in (Phase.FAILOVER_REQUESTED, Phase.FAILING_OVER, Phase.VALIDATING, Phase.ACTIVE, Phase.REPLICATING):
        assert (await controller.step()).new is expected
    assert request.outcome is RequestOutcome.SUCCEEDED
    assert controller.state.last_request is request
    assert (controller.state.primary_server, controller.state.secondary_server) == ("sql-neu", "sql-weu")
    assert set(controller.trackers()) == {"orders"}
    assert controller.trackers()["orders"].primary == S
    assert [e.new for e in events][-5:] == [Phase.FAILOVER_REQUESTED, Phase.FAILING_OVER, Phase.VALIDATING,
                                           Phase.ACTIVE, Phase.REPLICATING]
    # replication continues in the new direction
    assert await controller.step() is None
    assert controller.state.health is HealthClass.HEALTHY


@pytest.mark.asyncio
async def test_failed_probe_rolls_back_with_one_failback(provider, clock):
    controller = await _replicating(provider, clock)
    provider.script_probe(False, False)
    request = controller.submit(_request())
    for expected in (Phase.FAILOVER_REQUESTED, Phase.FAILING_OVER, Phase.VALIDATING):
        assert (await controller.step()).new is expected
    assert await controller.step() is None
    assert (await controller.step()).new is Phase.ROLLED_BACK
    assert (await controller.step()).new is Phase.REPLICATING
    assert provider.mutations["execute_failover"] == 2
    assert provider.groups["orders"].primary_server == "sql-weu"
    assert controller.state.primary_server == "sql-weu"
    assert request.outcome is RequestOutcome.FAILED


@pytest.mark.asyncio
async def test_failback_failure_goes_to_failed(provider, clock):
    controller = await _replicating(provider, clock, validation_attempts=1)
    provider.script_probe(False)
    controller.submit(_request())
    for _ in range(4):
        await controller.step()
    assert controller.state.phase is Phase.ROLLED_BACK
    provider.fail("execute_failover", Unauthorized())
    assert (await controller.step()).new is Phase.FAILED
    assert "failback" in controller.state.last_error


@pytest.mark.asyncio
async def test_validation_timeout_without_role_change_rolls_back(provider, clock):
    provider.failover_takes_effect = False
    controller = await _replicating(provider, clock)
    controller.submit(_request())
    for _ in range(3):
        await controller.step()
    assert controller.state.phase is Phase.VALIDATING
    assert await controller.step() is None
    clock.advance(301)
    assert (await controller.step()).new is Phase.ROLLED_BACK
    assert (await controller.step()).new is Phase.REPLICATING
    assert provider.mutations["execute_failover"] == 1
    assert provider.calls["probe"] == 0


# --- cancellation and busy lock ---

@pytest.mark.asyncio
async def test_cancel_pending_request(provider, clock):
    controller = await _replicating(provider, clock)
    request = controller.submit(_request())
    await controller.step()
    assert controller.state.phase is Phase.FAILOVER_REQUESTED
    controller.cancel(request.id)
    assert controller.state.phase is Phase.REPLICATING
    assert request.outcome is RequestOutcome.CANCELLED
    assert controller.state.request is None
    assert provider.calls["execute_failover"] == 0


@pytest.mark.asyncio
async def test_cancel_unknown_request_is_rejected(provider, clock):
    controller = await _replicating(provider, clock)
    with pytest.raises(InvalidRequest):
        controller.cancel("nope")


@pytest.mark.asyncio
async def test_second_request_while_pending_is_rejected(provider, clock):
    controller = await _replicating(provider, clock)
    controller.submit(_request())
    with pytest.raises(InvalidRequest):
        controller.submit(_request())


@pytest.mark.asyncio
async def test_submit_before_replicating_is_rejected(provider, clock):
    controller = _controller(provider, clock)
    with pytest.raises(InvalidRequest):
        controller.submit(_request())


@pytest.mark.asyncio
async def test_operations_during_failing_over_are_rejected(provider, clock):
    controller = await _replicating(provider, clock)
    request = controller.submit(_request())
    await controller.step()
    provider.failover_gate = asyncio.Event()
    task = asyncio.create_task(controller.step())
    await _until(lambda: provider.calls["execute_failover"] == 1)
    assert controller.state.phase is Phase.FAILING_OVER
    assert controller.busy
    with pytest.raises(GroupBusy):
        await controller.remove_replication_links()
    with pytest.raises(GroupBusy):
        controller.cancel(request.id)
    assert provider.mutations["remove_replication_link"] == 0
    provider.failover_gate.set()
    await task
    with pytest.raises(GroupBusy):
        await controller.remove_replication_links()
    assert len(provider.links) == 1


@pytest.mark.asyncio
async def test_remove_replication_links_resets_to_provisioning(provider, clock):
    controller = await _replicating(provider, clock, spec=_spec(databases=("orders", "billing")))
    assert await controller.remove_replication_links() == 2
    assert provider.links == {}
    assert controller.state.phase is Phase.PROVISIONING


# --- drift and spec updates ---

@pytest.mark.asyncio
async def test_missing_link_resyncs_to_provisioning(provider, clock):
    controller = await _replicating(provider, clock)
    await provider.remove_replication_link(P, S)
    assert (await controller.step()).new is Phase.PROVISIONING
    assert (await controller.step()).new is Phase.REPLICATING
    assert (P, S) in provider.links


@pytest.mark.asyncio
async def test_missing_group_resyncs_to_provisioning(provider, clock):
    controller = await _replicating(provider, clock)
    del provider.groups["orders"]
    assert (await controller.step()).new is Phase.PROVISIONING
    assert (await controller.step()).new is Phase.REPLICATING


@pytest.mark.asyncio
async def test_external_failover_is_adopted(provider, clock):
    controller = await _replicating(provider, clock)
    await provider.execute_failover("orders", forced=False, allow_data_loss=False)
    assert await controller.step() is None
    assert controller.state.primary_server == "sql-neu"
    assert controller.trackers()["orders"].primary == S


@pytest.mark.asyncio
async def test_update_spec_reprovisions(provider, clock):
    controller = await _replicating(provider, clock)
    assert controller.update_spec(_spec(grace=120.0)).new is Phase.PROVISIONING
    await controller.step()
    assert provider.groups["orders"].grace_period_s == 120.0
    assert provider.mutations["ensure_failover_group"] == 2


def test_invalid_spec_is_rejected(provider, clock):
    bad = FailoverGroupSpec(
        id="orders",
        primary=PrimarySite("westeurope", "sql-weu", ()),
        secondary=SecondarySite("northeurope", "sql-weu"),
    )
    with pytest.raises(InvalidRequest) as excinfo:
        FailoverController(bad, provider, provider, clock=clock)
    assert "must differ" in str(excinfo.value)
    assert "must not be empty" in str(excinfo.value)


@pytest.mark.asyncio
async def test_transitions_are_logged_with_structured_fields(provider, clock, caplog):
    with caplog.at_level(logging.INFO, logger="drcore.transitions"):
        await _replicating(provider, clock)
    record = next(r for r in caplog.records if r.name == "drcore.transitions")
    assert record.old_phase == "Provisioning"
    assert record.new_phase == "Replicating"
    assert record.group_id == "orders"


# --- automatic failover is not repeated after a failure ---

async def _rolled_back_automatic(provider, clock) -> FailoverController:
    controller = await _replicating(provider, clock, spec=_spec(policy=FailoverPolicy.AUTOMATIC, grace=0.0),
                                    validation_attempts=1)
    provider.probe_default = False
    provider.set_status(P, S, SUSPENDED)
    for expected in (Phase.FAILOVER_REQUESTED, Phase.FAILING_OVER, Phase.VALIDATING, Phase.ROLLED_BACK,
                     Phase.REPLICATING):
        assert (await controller.step()).new is expected
    return controller


@pytest.mark.asyncio
async def test_rolled_back_automatic_failover_is_not_repeated(provider, clock):
    controller = await _rolled_back_automatic(provider, clock)
    for _ in range(30):
        clock.advance(30)
        assert await controller.step() is None
    assert provider.mutations["execute_failover"] == 2
    assert controller.state.phase is Phase.REPLICATING
    assert controller.state.health is HealthClass.UNHEALTHY
    assert controller.snapshot()["auto_failover_armed"] is False
    request = controller.state.last_request
    assert request.requester == "reconciler"
    assert request.outcome is RequestOutcome.FAILED


@pytest.mark.asyncio
async def test_recovered_replication_rearms_automatic_failover(provider, clock):
    controller = await _rolled_back_automatic(provider, clock)
    provider.set_status(P, S, HEALTHY)
    assert await controller.step() is None
    assert controller.state.auto_failover_armed is True
    provider.set_status(P, S, SUSPENDED)
    assert (await controller.step()).new is Phase.FAILOVER_REQUESTED


@pytest.mark.asyncio
async def test_operator_rearms_automatic_failover(provider, clock):
    controller = await _rolled_back_automatic(provider, clock)
    assert await controller.step() is None
    controller.rearm()
    assert controller.state.auto_failover_armed is True
    assert (await controller.step()).new is Phase.FAILOVER_REQUESTED


@pytest.mark.asyncio
async def test_cancelled_automatic_request_disarms(provider, clock):
    controller = await _replicating(provider, clock, spec=_spec(policy=FailoverPolicy.AUTOMATIC, grace=0.0))
    provider.set_status(P, S, SUSPENDED)
    assert (await controller.step()).new is Phase.FAILOVER_REQUESTED
    controller.cancel(controller.state.request.id)
    for _ in range(3):
        assert await controller.step() is None
    assert controller.state.request is None
    assert provider.calls["execute_failover"] == 0


@pytest.mark.asyncio
async def test_unaccepted_failback_goes_to_failed(provider, clock):
    controller = await _replicating(provider, clock, validation_attempts=1)
    provider.script_probe(False)
    request = controller.submit(_request())
    for _ in range(4):
        await controller.step()
    assert controller.state.phase is Phase.ROLLED_BACK
    provider.failover_accepted = False
    assert (await controller.step()).new is Phase.FAILED
    assert "not accepted" in controller.state.last_error
    assert request.outcome is RequestOutcome.FAILED
    assert provider.mutations["execute_failover"] == 1
