"""Reconciler: one asyncio task per failover group, isolated from each other.

Each cycle steps the group's controller, turns the observed state into alert
observations, folds them into the group's alert book and dispatches edge
events to the group's notification targets.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Sequence

from drcore.alerts.evaluator import (
    DEFAULT_RULES,
    METRIC_HEALTH,
    METRIC_LAG,
    METRIC_PHASE,
    METRIC_POLL_FAILURES,
    evaluate,
)
from drcore.alerts.models import AlertEvent, AlertObservation, AlertRule
from drcore.alerts.notifier import NotificationRouter
from drcore.failover.controller import ControllerSettings, FailoverController
from drcore.failover.errors import GroupBusy
from drcore.failover.models import FailoverGroupSpec, FailoverRequest, FailoverType, TransitionEvent
from drcore.provider.base import HealthProbe, ProviderAdapter

from .registry import GroupEntry, GroupRegistry

logger = logging.getLogger("drcore.reconciler")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ReconcilerSettings:
    poll_interval_s: float = 30.0
    transition_history: int = 500
    shutdown_grace_s: float = 60.0
    controller: ControllerSettings = field(default_factory=ControllerSettings)


def alert_observations(controller: FailoverController) -> list[AlertObservation]:
    """Metric values the alert rules see for one group after a cycle."""
    state = controller.state
    group = controller.group_id
    observations = []
    for database, obs in sorted(controller.observations().items()):
        subject = f"{group}/{database}"
        observations.append(AlertObservation(subject, METRIC_LAG, obs.lag_seconds, stale=obs.stale, group_id=group))
        observations.append(AlertObservation(subject, METRIC_HEALTH, obs.health.value, stale=obs.stale, group_id=group))
    observations.append(AlertObservation(group, METRIC_POLL_FAILURES, float(state.consecutive_poll_failures),
                                         group_id=group))
    observations.append(AlertObservation(group, METRIC_PHASE, state.phase.value, group_id=group))
    return observations


class Reconciler:
    def __init__(
        self,
        provider: ProviderAdapter,
        probe: HealthProbe,
        settings: ReconcilerSettings | None = None,
        rules: Sequence[AlertRule] = DEFAULT_RULES,
        router: NotificationRouter | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings or ReconcilerSettings()
        self.registry = GroupRegistry()
        self._provider = provider
        self._probe = probe
        self._rules: tuple[AlertRule, ...] = tuple(rules)
        self._router = router or NotificationRouter()
        self._clock = clock
        self._transitions: deque[TransitionEvent] = deque(maxlen=self.settings.transition_history)
        self._running = False
        self._stopped = asyncio.Event()

    # -- registry --------------------------------------------------------------

    def register(self, spec: FailoverGroupSpec) -> FailoverController:
        controller = FailoverController(
            spec, self._provider, self._probe,
            settings=self.settings.controller,
            clock=self._clock,
            listeners=[self._transitions.append],
        )
        entry = self.registry.add(GroupEntry(controller))
        logger.info("Registered failover group %s (%s -> %s, %s)", spec.id, spec.primary.server,
                    spec.secondary.server, spec.failover_policy.value)
        if self._running:
            self._start_worker(entry)
        return controller

    async def unregister(self, group_id: str, teardown: bool = True) -> None:
        """Stop reconciling a group, removing its replication links first when *teardown*."""
        entry = self.registry.get(group_id)
        if entry.controller.busy:
            raise GroupBusy(f"{group_id} is mid-operation")
        await self._stop_worker(entry)
        if teardown:
            try:
                await entry.controller.remove_replication_links()
            except Exception:
                if self._running:
                    self._start_worker(entry)
                raise
        self.registry.remove(group_id)
        logger.info("Unregistered failover group %s", group_id)

    async def apply(self, specs: Iterable[FailoverGroupSpec]) -> dict[str, list[str]]:
        """Converge the registry on *specs*: add new, update changed, remove missing."""
        desired = {spec.id: spec for spec in specs}
        summary: dict[str, list[str]] = {"added": [], "updated": [], "removed": [], "deferred": []}
        for group_id in self.registry.ids():
            if group_id in desired:
                continue
            try:
                await self.unregister(group_id)
                summary["removed"].append(group_id)
            except Exception as exc:
                logger.error("Could not remove group %s, retrying on next reload: %s", group_id, exc)
                summary["deferred"].append(group_id)
        for group_id, spec in desired.items():
            if group_id not in self.registry:
                self.register(spec)
                summary["added"].append(group_id)
                continue
            controller = self.registry.get(group_id).controller
            if controller.spec == spec:
                continue
            try:
                controller.update_spec(spec)
                summary["updated"].append(group_id)
            except GroupBusy as exc:
                logger.warning("Update of %s deferred: %s", group_id, exc)
                summary["deferred"].append(group_id)
        logger.info("Applied %d group specs: %s", len(desired),
                    ", ".join(f"{k}={len(v)}" for k, v in summary.items()))
        return summary

    def set_rules(self, rules: Sequence[AlertRule]) -> None:
        self._rules = tuple(rules)

    @property
    def rules(self) -> tuple[AlertRule, ...]:
        return self._rules

    # -- cycle -----------------------------------------------------------------

    async def reconcile_group(self, group_id: str) -> TransitionEvent | None:
        entry = self.registry.get(group_id)
        controller = entry.controller
        if controller.state.suspended:
            logger.debug("Group %s suspended, skipping", group_id)
            return None
        entry.cycles += 1
        event = None
        try:
            event = await controller.step()
        except Exception as exc:
            logger.exception("Reconcile of %s failed", group_id)
            controller.state.last_error = str(exc)
        await self._evaluate_alerts(entry)
        return event

    async def _evaluate_alerts(self, entry: GroupEntry) -> None:
        controller = entry.controller
        evaluation = evaluate(self._rules, alert_observations(controller), entry.book, self._clock())
        entry.book = evaluation.book
        for edge in evaluation.edges:
            await self._router.dispatch(edge, controller.spec.notification_targets)

    async def _worker(self, entry: GroupEntry) -> None:
        logger.info("Reconciling %s every %.0fs", entry.group_id, self.settings.poll_interval_s)
        while self._running:
            try:
                await self.reconcile_group(entry.group_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Worker for %s hit an unexpected error", entry.group_id)
            await asyncio.sleep(self.settings.poll_interval_s)

    def _start_worker(self, entry: GroupEntry) -> None:
        if entry.task is None or entry.task.done():
            entry.task = asyncio.create_task(self._worker(entry), name=f"reconcile-{entry.group_id}")

    async def _stop_worker(self, entry: GroupEntry) -> None:
        task, entry.task = entry.task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def start(self) -> None:
        self._running = True
        self._stopped.clear()
        for entry in self.registry:
            self._start_worker(entry)
        logger.info("Reconciler started with %d groups", len(self.registry))

    async def run(self) -> None:
        """Start every group worker and wait until ``stop()``."""
        self.start()
        await self._stopped.wait()

    async def stop(self) -> None:
        """Stop every worker, first letting in-flight provider calls finish within ``shutdown_grace_s``."""
        self._running = False
        busy = [entry.controller for entry in self.registry if entry.controller.busy]
        if busy:
            logger.info("Waiting up to %.0fs for %s to finish", self.settings.shutdown_grace_s,
                        ", ".join(c.group_id for c in busy))
            try:
                await asyncio.wait_for(asyncio.gather(*(c.wait_idle() for c in busy)),
                                       self.settings.shutdown_grace_s)
            except asyncio.TimeoutError:
                logger.error("Shutdown grace expired with %s still mid-operation",
                             ", ".join(c.group_id for c in busy if c.busy))
        for entry in self.registry:
            await self._stop_worker(entry)
        self._stopped.set()
        logger.info("Reconciler stopped")

    # -- operator surface ------------------------------------------------------

    def submit_failover(
        self,
        group_id: str,
        type: FailoverType = FailoverType.PLANNED,
        allow_data_loss: bool = False,
        requester: str = "operator",
    ) -> FailoverRequest:
        controller = self.registry.get(group_id).controller
        request = FailoverRequest(
            group_id=group_id,
            type=type,
            allow_data_loss=allow_data_loss,
            requester=requester,
            created_at=self._clock(),
        )
        return controller.submit(request)

    def cancel_failover(self, group_id: str, request_id: str) -> FailoverRequest:
        return self.registry.get(group_id).controller.cancel(request_id)

    def pause(self, group_id: str) -> None:
        self.registry.get(group_id).controller.state.suspended = True
        logger.info("Reconciliation of %s paused", group_id)

    def resume(self, group_id: str) -> None:
        self.registry.get(group_id).controller.state.suspended = False
        logger.info("Reconciliation of %s resumed", group_id)

    def retrigger(self, group_id: str) -> TransitionEvent | None:
        return self.registry.get(group_id).controller.retrigger()

    def rearm(self, group_id: str) -> None:
        self.registry.get(group_id).controller.rearm()

    async def remove_replication_links(self, group_id: str) -> int:
        return await self.registry.get(group_id).controller.remove_replication_links()

    def snapshot(self, group_id: str) -> dict[str, Any]:
        return self.registry.get(group_id).controller.snapshot()

    def snapshots(self) -> list[dict[str, Any]]:
        return [entry.controller.snapshot() for entry in self.registry]

    def alerts(self, firing_only: bool = True) -> list[AlertEvent]:
        events: list[AlertEvent] = []
        for entry in self.registry:
            if firing_only:
                events.extend(entry.book.firing())
            else:
                events.extend(entry.book.alerts.values())
        return sorted(events, key=lambda e: (e.first_seen, e.rule_id, e.subject))

    def transitions(self, group_id: str | None = None) -> list[TransitionEvent]:
        return [e for e in self._transitions if group_id is None or e.group_id == group_id]
