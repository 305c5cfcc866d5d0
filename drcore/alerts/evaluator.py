"""AlertEvaluator: pure rule evaluation over one cycle's observations.

``evaluate`` never mutates its inputs and never raises. An observation that
is missing, stale, malformed or reports Unknown health leaves its alert
exactly where it was: no new alert, no resolution.
"""
from __future__ import annotations

import logging
import math
from dataclasses import replace
from datetime import datetime
from fnmatch import fnmatchcase
from typing import Iterable, Sequence

from drcore.replication.models import HealthClass

from .models import (
    ORDERED,
    AlertBook,
    AlertEvent,
    AlertObservation,
    AlertRule,
    AlertState,
    Evaluation,
    Severity,
)

logger = logging.getLogger("drcore.alerts.evaluator")

METRIC_LAG = "replication_lag_seconds"
METRIC_HEALTH = "replication_health"
METRIC_POLL_FAILURES = "consecutive_poll_failures"
METRIC_PHASE = "group_phase"

DEFAULT_RULES: tuple[AlertRule, ...] = (
    AlertRule(
        id="replication-lag-warning",
        metric=METRIC_LAG,
        operator=">",
        threshold=300.0,
        severity=Severity.MEDIUM,
        description="Replication lag above the RPO warning threshold",
    ),
    AlertRule(
        id="replication-lag-critical",
        metric=METRIC_LAG,
        operator=">",
        threshold=900.0,
        severity=Severity.HIGH,
        description="Replication lag above the RPO critical threshold",
    ),
    AlertRule(
        id="replication-unhealthy",
        metric=METRIC_HEALTH,
        operator="==",
        threshold=HealthClass.UNHEALTHY.value,
        severity=Severity.HIGH,
        for_observations=2,
        description="Replication link suspended or far behind",
    ),
    AlertRule(
        id="provider-unreachable",
        metric=METRIC_POLL_FAILURES,
        operator=">=",
        threshold=3.0,
        severity=Severity.MEDIUM,
        resolve_operator="==",
        resolve_threshold=0.0,
        description="Replication status polls failing in a row",
    ),
    AlertRule(
        id="group-failed",
        metric=METRIC_PHASE,
        operator="==",
        threshold="Failed",
        severity=Severity.CRITICAL,
        description="Failover group needs manual intervention",
    ),
)


def _usable(rule: AlertRule, obs: AlertObservation | None) -> bool:
    if obs is None or obs.stale or obs.value is None:
        return False
    if obs.value == HealthClass.UNKNOWN.value:
        return False
    if rule.operator in ORDERED or not isinstance(rule.threshold, str):
        if isinstance(obs.value, bool):
            return False
        try:
            number = float(obs.value)
        except (TypeError, ValueError):
            return False
        return not math.isnan(number)
    return True


def _matches(rule: AlertRule, obs: AlertObservation) -> bool:
    return rule.metric == obs.metric and fnmatchcase(obs.subject, rule.subject)


def evaluate(
    rules: Sequence[AlertRule],
    observations: Iterable[AlertObservation],
    prior: AlertBook | None,
    now: datetime,
) -> Evaluation:
    """Fold *observations* into *prior* and return the new book plus edge events."""
    prior = prior or AlertBook()
    alerts = dict(prior.alerts)
    breaches = dict(prior.breaches)
    edges: list[AlertEvent] = []
    observations = list(observations)

    for rule in rules:
        for obs in observations:
            try:
                if not _matches(rule, obs) or not _usable(rule, obs):
                    continue
                edge = _apply(rule, obs, alerts, breaches, now)
            except Exception:
                logger.warning("Alert rule %s could not evaluate %s=%r on %s",
                               rule.id, obs.metric, obs.value, obs.subject, exc_info=True)
                continue
            if edge is not None:
                edges.append(edge)
    return Evaluation(book=AlertBook(alerts=alerts, breaches=breaches), edges=edges)


def _apply(
    rule: AlertRule,
    obs: AlertObservation,
    alerts: dict,
    breaches: dict,
    now: datetime,
) -> AlertEvent | None:
    key = (rule.id, obs.subject)
    current = alerts.get(key)

    if current is not None and current.firing:
        if rule.resolved(obs.value):
            resolved = replace(current, value=obs.value, last_seen=now, state=AlertState.RESOLVED)
            alerts[key] = resolved
            breaches.pop(key, None)
            return resolved
        alerts[key] = replace(current, value=obs.value, last_seen=now)
        return None

    if not rule.triggered(obs.value):
        breaches.pop(key, None)
        return None
    count = breaches.get(key, 0) + 1
    if count < rule.for_observations:
        breaches[key] = count
        return None
    breaches.pop(key, None)
    event = AlertEvent(
        rule_id=rule.id,
        severity=rule.severity,
        subject=obs.subject,
        value=obs.value,
        threshold=rule.threshold,
        first_seen=now,
        last_seen=now,
        state=AlertState.FIRING,
        group_id=obs.group_id,
        description=rule.description,
    )
    alerts[key] = event
    return event
