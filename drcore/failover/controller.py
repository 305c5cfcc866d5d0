"""FailoverController: drives one failover group through its lifecycle.

Provisioning -> Replicating -> FailoverRequested -> FailingOver -> Validating
-> Active | RolledBack -> Replicating, with Failed reachable from anywhere on
unrecoverable provider errors. Each ``step()`` holds the group lock and makes
at most one transition; the Reconciler calls it once per cycle.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from drcore.provider.base import HealthProbe, ProviderAdapter
from drcore.provider.errors import Conflict, NotFound, ProviderError, RetryExhausted
from drcore.provider.models import DatabaseSpec, LinkState, ServerSpec
from drcore.provider.retry import RetryPolicy, call_with_retry, with_deadline
from drcore.replication.models import HealthClass, Observation, ReplicationThresholds, worst
from drcore.replication.tracker import ReplicationTracker

from .errors import GroupBusy, InvalidRequest, PolicyViolation
from .models import (
    IN_FLIGHT,
    FailoverGroupSpec,
    FailoverGroupState,
    FailoverPolicy,
    FailoverRequest,
    FailoverType,
    Phase,
    RequestOutcome,
    TransitionEvent,
)

logger = logging.getLogger("drcore.failover.controller")
transitions_logger = logging.getLogger("drcore.transitions")

T = TypeVar("T")
TransitionListener = Callable[[TransitionEvent], None]

AUTOMATIC_REQUESTER = "reconciler"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ControllerSettings:
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    thresholds: ReplicationThresholds = field(default_factory=ReplicationThresholds)
    min_unhealthy_observations: int = 1
    validation_attempts: int = 3
    validation_timeout_s: float = 300.0
    probe_timeout_s: float = 10.0


class FailoverController:

    def __init__(
        self,
        spec: FailoverGroupSpec,
        provider: ProviderAdapter,
        probe: HealthProbe,
        settings: ControllerSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
        listeners: Iterable[TransitionListener] = (),
    ) -> None:
        errors = spec.validation_errors()
        if errors:
            raise InvalidRequest("; ".join(errors))
        self.spec = spec
        self.settings = settings or ControllerSettings()
        self.state = FailoverGroupState(
            group_id=spec.id,
            primary_server=spec.primary.server,
            secondary_server=spec.secondary.server,
            last_transition_at=clock(),
        )
        self._provider = provider
        self._probe = probe
        self._clock = clock
        self._listeners: list[TransitionListener] = list(listeners)
        self._lock = asyncio.Lock()
        self._trackers: dict[str, ReplicationTracker] = {}
        self._observations: dict[str, Observation] = {}
        # topology captured when a failover starts
        self._failover_from: str = ""
        self._failover_to: str = ""
        self._validation_started: datetime | None = None
        self._handlers: dict[Phase, Callable[[], Awaitable[TransitionEvent | None]]] = {
            Phase.PROVISIONING: self._provision,
            Phase.REPLICATING: self._replicate,
            Phase.FAILOVER_REQUESTED: self._start_failover,
            Phase.FAILING_OVER: self._await_acknowledgement,
            Phase.VALIDATING: self._validate,
            Phase.ACTIVE: self._activate,
            Phase.ROLLED_BACK: self._roll_back,
            Phase.FAILED: self._idle,
        }

    # -- introspection ---------------------------------------------------------

    @property
    def group_id(self) -> str:
        return self.spec.id

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def wait_idle(self) -> None:
        """Return once no step or operator mutation holds the group lock."""
        async with self._lock:
            pass

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def trackers(self) -> dict[str, ReplicationTracker]:
        return dict(self._trackers)

    def observations(self) -> dict[str, Observation]:
        """Last observation per database, as seen by the most recent cycle."""
        return dict(self._observations)

    def snapshot(self) -> dict[str, Any]:
        data = self.state.to_dict()
        data["policy"] = self.spec.failover_policy.value
        data["busy"] = self.busy
        return data

    # -- plumbing --------------------------------------------------------------

    async def _call(self, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        return await call_with_retry(fn, *args, policy=self.settings.retry, operation=fn.__name__)

    def _transition(self, new: Phase, reason: str) -> TransitionEvent | None:
        old = self.state.phase
        if old is new:
            return None
        now = self._clock()
        self.state.phase = new
        self.state.last_transition_at = now
        event = TransitionEvent(group_id=self.group_id, old=old, new=new, timestamp=now, reason=reason)
        transitions_logger.info(
            "Group %s: %s -> %s | %s", self.group_id, old.value, new.value, reason,
            extra={"group_id": self.group_id, "old_phase": old.value, "new_phase": new.value, "reason": reason},
        )
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Transition listener failed for %s", self.group_id)
        return event

    def _finish_request(self, outcome: RequestOutcome, reason: str = "") -> None:
        req = self.state.request
        if req is None:
            return
        req.finish(outcome, reason, self._clock())
        self.state.last_request = req
        self.state.request = None
        logger.info("Failover request %s for %s finished: %s %s", req.id, self.group_id, outcome.value, reason)
        if req.requester == AUTOMATIC_REQUESTER and outcome is not RequestOutcome.SUCCEEDED:
            self.state.auto_failover_armed = False
            logger.warning("Automatic failover of %s disarmed until replication recovers or an operator re-arms it",
                           self.group_id)

    def _maybe_rearm(self, observations: list[Observation]) -> None:
        if self.state.auto_failover_armed or not observations:
            return
        if all(not o.stale and o.health is not HealthClass.UNHEALTHY for o in observations):
            self.state.auto_failover_armed = True
            logger.info("Automatic failover of %s re-armed: replication no longer unhealthy", self.group_id)

    def _fail(self, exc: BaseException) -> TransitionEvent | None:
        self.state.last_error = str(exc)
        self._finish_request(RequestOutcome.FAILED, str(exc))
        logger.error("Group %s failed: %s", self.group_id, exc)
        return self._transition(Phase.FAILED, str(exc))

    def _rebuild_trackers(self) -> None:
        self._trackers = {
            primary.name: ReplicationTracker(
                self._provider, primary, secondary,
                thresholds=self.settings.thresholds,
                call_timeout_s=self.settings.retry.call_timeout_s,
                clock=self._clock,
            )
            for primary, secondary in self.spec.pairs(self.state.primary_server, self.state.secondary_server)
        }
        self._observations = {}
        self.state.lag_seconds = {}

    def _swap_roles(self) -> None:
        self.state.primary_server, self.state.secondary_server = (
            self.state.secondary_server, self.state.primary_server,
        )

    def _check_policy(self, request: FailoverRequest) -> None:
        if request.forced and not request.allow_data_loss and self.state.health is not HealthClass.HEALTHY:
            raise PolicyViolation(
                f"forced failover of {self.group_id} without data-loss consent refused: "
                f"replication is {self.state.health.value}"
            )

    # -- step ------------------------------------------------------------------

    async def step(self) -> TransitionEvent | None:
        """Run one reconcile action for the current phase."""
        async with self._lock:
            handler = self._handlers[self.state.phase]
            try:
                return await handler()
            except RetryExhausted as exc:
                return self._fail(exc)
            except NotFound as exc:
                logger.warning("Group %s resync after NotFound: %s", self.group_id, exc)
                self.state.last_error = str(exc)
                self._finish_request(RequestOutcome.FAILED, str(exc))
                self._trackers = {}
                return self._transition(Phase.PROVISIONING, f"resync: {exc}")
            except Conflict as exc:
                logger.warning("Group %s conflict, re-reading next cycle: %s", self.group_id, exc)
                self.state.last_error = str(exc)
                return None
            except ProviderError as exc:
                if exc.fatal:
                    return self._fail(exc)
                self.state.last_error = str(exc)
                raise

    # -- phase handlers --------------------------------------------------------

    async def _provision(self) -> TransitionEvent | None:
        spec, state = self.spec, self.state
        primary, secondary = state.primary_server, state.secondary_server
        try:
            for server in (primary, secondary):
                await self._call(self._provider.ensure_server, ServerSpec(server, spec.region_of(server)))
            for name in sorted(spec.primary.databases):
                await self._call(self._provider.ensure_database,
                                 DatabaseSpec(primary, name, spec.region_of(primary)))
            for p, s in spec.pairs(primary, secondary):
                await self._call(self._provider.ensure_replication_link, p, s)
            await self._call(self._provider.ensure_failover_group, spec.definition(primary, secondary))
        except NotFound as exc:
            state.last_error = str(exc)
            logger.warning("Provisioning %s incomplete, retrying next cycle: %s", self.group_id, exc)
            return None
        except Conflict as exc:
            # an existing resource with a different identity needs a human
            return self._fail(exc)

        if not self._trackers:
            self._rebuild_trackers()
        observations = await self._observe_all()
        pending = [o.pair_id for o in observations
                   if o.stale or o.gone or o.sample is None or o.sample.link_state is LinkState.UNKNOWN]
        if pending:
            logger.info("Group %s provisioned, waiting for link status on %s", self.group_id, ", ".join(pending))
            return None
        state.last_error = None
        return self._transition(Phase.REPLICATING, "servers, databases, links and group in place")

    async def _observe_all(self) -> list[Observation]:
        observations = []
        for name, tracker in self._trackers.items():
            obs = await tracker.observe()
            self._observations[name] = obs
            self.state.lag_seconds[name] = obs.lag_seconds
            observations.append(obs)
        self.state.health = worst([o.health for o in observations])
        self.state.stale = any(o.stale for o in observations)
        self.state.consecutive_poll_failures = max((o.consecutive_failures for o in observations), default=0)
        return observations

    def _sustained_unhealthy(self, now: datetime) -> ReplicationTracker | None:
        for tracker in self._trackers.values():
            streak = tracker.streak
            if (streak.count >= self.settings.min_unhealthy_observations
                    and streak.duration_s(now) >= self.spec.grace_period_s):
                return tracker
        return None

    async def _replicate(self) -> TransitionEvent | None:
        state = self.state
        info = await self._call(self._provider.get_failover_group, self.group_id)
        if info.primary_server != state.primary_server and info.primary_server == state.secondary_server:
            logger.warning("Group %s: provider reports %s as primary, adopting external failover",
                           self.group_id, info.primary_server)
            self._swap_roles()
            self._rebuild_trackers()
        if not self._trackers:
            self._rebuild_trackers()

        observations = await self._observe_all()
        gone = [o.pair_id for o in observations if o.gone]
        if gone:
            self._trackers = {}
            return self._transition(Phase.PROVISIONING, f"replication link missing: {', '.join(gone)}")
        self._maybe_rearm(observations)

        if state.request is not None:
            req = state.request
            return self._transition(Phase.FAILOVER_REQUESTED,
                                    f"{req.type.value} failover requested by {req.requester}")

        if self.spec.failover_policy is FailoverPolicy.AUTOMATIC and state.auto_failover_armed:
            now = self._clock()
            tracker = self._sustained_unhealthy(now)
            if tracker is not None:
                state.request = FailoverRequest(
                    group_id=self.group_id,
                    type=FailoverType.FORCED,
                    allow_data_loss=True,
                    requester=AUTOMATIC_REQUESTER,
                    created_at=now,
                )
                return self._transition(
                    Phase.FAILOVER_REQUESTED,
                    f"automatic: {tracker.pair_id} unhealthy for {tracker.streak.count} observations "
                    f"over {tracker.streak.duration_s(now):.0f}s",
                )
        return None

    async def _start_failover(self) -> TransitionEvent | None:
        state = self.state
        req = state.request
        if req is None:
            return self._transition(Phase.REPLICATING, "no pending request")
        try:
            self._check_policy(req)
        except PolicyViolation as exc:
            state.last_error = str(exc)
            self._finish_request(RequestOutcome.FAILED, str(exc))
            return self._transition(Phase.REPLICATING, "request refused by policy")

        self._failover_from, self._failover_to = state.primary_server, state.secondary_server
        state.failover_acknowledged = False
        state.validation_attempts = 0
        event = self._transition(
            Phase.FAILING_OVER,
            f"{req.type.value.lower()} failover {self._failover_from} -> {self._failover_to}",
        )
        try:
            outcome = await self._call(self._provider.execute_failover,
                                       self.group_id, req.forced, req.allow_data_loss)
        except Conflict as exc:
            # the provider disagrees with our view; observed roles decide in Validating
            logger.warning("Failover of %s reported conflict, verifying roles: %s", self.group_id, exc)
            state.last_error = str(exc)
            state.failover_acknowledged = True
            return event
        except NotFound as exc:
            state.last_error = str(exc)
            self._finish_request(RequestOutcome.FAILED, str(exc))
            return event
        state.failover_acknowledged = outcome.accepted
        if not outcome.accepted:
            state.last_error = "provider did not accept the failover"
            self._finish_request(RequestOutcome.FAILED, state.last_error)
        return event

    async def _await_acknowledgement(self) -> TransitionEvent | None:
        if self.state.failover_acknowledged:
            self._validation_started = self._clock()
            return self._transition(Phase.VALIDATING, "provider acknowledged failover")
        return self._transition(Phase.REPLICATING, f"failover not started: {self.state.last_error}")

    async def _probe_new_primary(self, server: str) -> bool:
        for name in sorted(self.spec.primary.databases):
            try:
                ok = await with_deadline(self._probe.probe(server, name), self.settings.probe_timeout_s, "probe")
            except ProviderError as exc:
                logger.warning("Probe of %s/%s errored: %s", server, name, exc)
                ok = False
            if not ok:
                return False
        return True

    async def _validate(self) -> TransitionEvent | None:
        state = self.state
        now = self._clock()
        started = self._validation_started or state.last_transition_at
        if (now - started).total_seconds() > self.settings.validation_timeout_s:
            return self._transition(
                Phase.ROLLED_BACK, f"validation timed out after {self.settings.validation_timeout_s:.0f}s")

        try:
            info = await self._call(self._provider.get_failover_group, self.group_id)
        except RetryExhausted as exc:
            logger.warning("Validation of %s could not read roles: %s", self.group_id, exc)
            return None
        if info.primary_server != self._failover_to:
            logger.info("Validation of %s: %s not primary yet", self.group_id, self._failover_to)
            return None

        state.validation_attempts += 1
        if await self._probe_new_primary(self._failover_to):
            self._swap_roles()
            state.last_error = None
            return self._transition(Phase.ACTIVE, f"{self._failover_to} is primary and passed health probe")
        if state.validation_attempts >= self.settings.validation_attempts:
            state.last_error = f"health probe failed {state.validation_attempts} times on {self._failover_to}"
            return self._transition(Phase.ROLLED_BACK, state.last_error)
        logger.warning("Validation of %s: probe attempt %d/%d failed", self.group_id,
                       state.validation_attempts, self.settings.validation_attempts)
        return None

    async def _activate(self) -> TransitionEvent | None:
        self._finish_request(RequestOutcome.SUCCEEDED, f"{self.state.primary_server} is primary")
        self._rebuild_trackers()
        self.state.validation_attempts = 0
        return self._transition(Phase.REPLICATING, "roles swapped, replicating from new primary")

    async def _roll_back(self) -> TransitionEvent | None:
        original = self._failover_from or self.state.primary_server
        try:
            info = await self._call(self._provider.get_failover_group, self.group_id)
            if info.primary_server == original:
                self._finish_request(RequestOutcome.FAILED, "validation failed, original primary retained")
                self._rebuild_trackers()
                return self._transition(Phase.REPLICATING, f"{original} still holds the primary role")
            # one planned failback, never more
            outcome = await self._call(self._provider.execute_failover, self.group_id, False, False)
        except ProviderError as exc:
            return self._failback_failed(f"failback to {original} failed: {exc}")
        if not outcome.accepted:
            return self._failback_failed(f"failback to {original} was not accepted by the provider")
        self._finish_request(RequestOutcome.FAILED, f"validation failed, failed back to {original}")
        self._rebuild_trackers()
        return self._transition(Phase.REPLICATING, f"failed back to {original}")

    def _failback_failed(self, reason: str) -> TransitionEvent | None:
        self.state.last_error = reason
        self._finish_request(RequestOutcome.FAILED, reason)
        return self._transition(Phase.FAILED, f"{reason}; manual intervention required")

    async def _idle(self) -> TransitionEvent | None:
        return None

    # -- operator operations ---------------------------------------------------

    def submit(self, request: FailoverRequest) -> FailoverRequest:
        """Queue a failover request. Raises PolicyViolation, GroupBusy or InvalidRequest."""
        if request.group_id != self.group_id:
            raise InvalidRequest(f"request is for {request.group_id}, not {self.group_id}")
        if self.busy:
            raise GroupBusy(f"{self.group_id} is mid-operation")
        if self.state.phase is not Phase.REPLICATING:
            raise InvalidRequest(f"cannot fail over {self.group_id} while {self.state.phase.value}")
        if self.state.request is not None:
            raise InvalidRequest(f"request {self.state.request.id} already pending for {self.group_id}")
        self._check_policy(request)
        self.state.request = request
        logger.info("Failover request %s queued for %s (%s, data loss allowed: %s, by %s)",
                    request.id, self.group_id, request.type.value, request.allow_data_loss, request.requester)
        return request

    def cancel(self, request_id: str) -> FailoverRequest:
        """Cancel a request that has not reached the provider yet."""
        req = self.state.request
        if req is None or req.id != request_id:
            raise InvalidRequest(f"no pending request {request_id} for {self.group_id}")
        if self.busy or self.state.phase not in (Phase.REPLICATING, Phase.FAILOVER_REQUESTED):
            raise GroupBusy(f"failover of {self.group_id} already executing, cannot cancel")
        self._finish_request(RequestOutcome.CANCELLED, "cancelled by operator")
        self._transition(Phase.REPLICATING, f"request {request_id} cancelled")
        return req

    def retrigger(self) -> TransitionEvent | None:
        """Manual restart of a Failed group from Provisioning."""
        if self.state.phase is not Phase.FAILED:
            raise InvalidRequest(f"{self.group_id} is {self.state.phase.value}, not Failed")
        if self.busy:
            raise GroupBusy(f"{self.group_id} is mid-operation")
        self.state.last_error = None
        self.state.auto_failover_armed = True
        self._trackers = {}
        return self._transition(Phase.PROVISIONING, "manual retrigger")

    def rearm(self) -> None:
        """Let the Automatic policy trigger again after a failed automatic failover."""
        if self.busy:
            raise GroupBusy(f"{self.group_id} is mid-operation")
        if not self.state.auto_failover_armed:
            logger.info("Automatic failover of %s re-armed by operator", self.group_id)
        self.state.auto_failover_armed = True

    def update_spec(self, spec: FailoverGroupSpec) -> TransitionEvent | None:
        """Apply an explicitly updated spec; the group re-provisions idempotently."""
        if spec.id != self.group_id:
            raise InvalidRequest(f"spec is for {spec.id}, not {self.group_id}")
        errors = spec.validation_errors()
        if errors:
            raise InvalidRequest("; ".join(errors))
        if self.busy or self.state.phase in IN_FLIGHT or self.state.phase is Phase.FAILOVER_REQUESTED:
            raise GroupBusy(f"{self.group_id} is failing over, update refused")
        old = self.spec
        self.spec = spec
        if {old.primary.server, old.secondary.server} != {spec.primary.server, spec.secondary.server}:
            self.state.primary_server = spec.primary.server
            self.state.secondary_server = spec.secondary.server
        self.state.auto_failover_armed = True
        self._trackers = {}
        if self.state.phase is Phase.PROVISIONING:
            return None
        return self._transition(Phase.PROVISIONING, "spec updated")

    async def remove_replication_links(self) -> int:
        """Tear down every link of the group. Rejected while anything else holds the lock."""
        if self.busy or self.state.phase in IN_FLIGHT or self.state.phase is Phase.FAILOVER_REQUESTED:
            raise GroupBusy(f"{self.group_id} is mid-operation ({self.state.phase.value})")
        async with self._lock:
            removed = 0
            for p, s in self.spec.pairs(self.state.primary_server, self.state.secondary_server):
                try:
                    await self._call(self._provider.remove_replication_link, p, s)
                    removed += 1
                except NotFound:
                    logger.info("Link %s -> %s already gone", p, s)
            self._trackers = {}
            self._observations = {}
            self._transition(Phase.PROVISIONING, f"{removed} replication links removed")
            return removed
