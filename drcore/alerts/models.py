"""Alert data: rules, observations fed to the evaluator, edge events and the alert book."""
from __future__ import annotations

import enum
import operator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Union

Value = Union[float, str, None]
AlertKey = tuple[str, str]  # (rule id, subject)


class Severity(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertState(enum.Enum):
    FIRING = "FIRING"
    RESOLVED = "RESOLVED"


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}
ORDERED = frozenset({">", ">=", "<", "<="})


def _compare(op: str, value: Value, threshold: float | str) -> bool:
    if op in ORDERED:
        return OPERATORS[op](float(value), float(threshold))  # type: ignore[arg-type]
    if isinstance(threshold, str) or isinstance(value, str):
        return OPERATORS[op](str(value), str(threshold))
    return OPERATORS[op](float(value), float(threshold))  # type: ignore[arg-type]


@dataclass(frozen=True)
class AlertRule:
    """A threshold rule over one metric, applied to every subject matching a glob."""

    id: str
    metric: str
    operator: str
    threshold: float | str
    severity: Severity = Severity.MEDIUM
    subject: str = "*"
    for_observations: int = 1
    resolve_operator: str | None = None
    resolve_threshold: float | str | None = None
    description: str = ""

    def validation_errors(self) -> list[str]:
        errors = []
        if not self.id:
            errors.append("alert rule id must not be empty")
        if not self.metric:
            errors.append(f"{self.id}: metric must not be empty")
        for op in (self.operator, self.resolve_operator):
            if op is not None and op not in OPERATORS:
                errors.append(f"{self.id}: unknown operator {op!r}")
        if self.operator in ORDERED and isinstance(self.threshold, str):
            errors.append(f"{self.id}: operator {self.operator} needs a numeric threshold")
        if (self.resolve_operator is None) != (self.resolve_threshold is None):
            errors.append(f"{self.id}: resolve operator and threshold go together")
        if self.for_observations < 1:
            errors.append(f"{self.id}: for_observations must be >= 1")
        return errors

    def triggered(self, value: Value) -> bool:
        return _compare(self.operator, value, self.threshold)

    def resolved(self, value: Value) -> bool:
        if self.resolve_operator is None or self.resolve_threshold is None:
            return not self.triggered(value)
        return _compare(self.resolve_operator, value, self.resolve_threshold)


@dataclass(frozen=True)
class AlertObservation:
    """One metric value for one subject, as produced by a reconcile cycle.

    ``stale`` marks values carried over from a failed poll; they hold alert state.
    """

    subject: str
    metric: str
    value: Value
    stale: bool = False
    group_id: str = ""


@dataclass(frozen=True)
class AlertEvent:
    rule_id: str
    severity: Severity
    subject: str
    value: Value
    threshold: float | str
    first_seen: datetime
    last_seen: datetime
    state: AlertState
    group_id: str = ""
    description: str = ""

    @property
    def key(self) -> AlertKey:
        return (self.rule_id, self.subject)

    @property
    def firing(self) -> bool:
        return self.state is AlertState.FIRING

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "severity": self.severity.value,
            "subject": self.subject,
            "group_id": self.group_id,
            "value": self.value,
            "threshold": self.threshold,
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
            "state": self.state.value,
            "description": self.description,
        }


@dataclass(frozen=True)
class AlertBook:
    """Latest event per (rule, subject) plus consecutive breach counts of not-yet-firing keys."""

    alerts: dict[AlertKey, AlertEvent] = field(default_factory=dict)
    breaches: dict[AlertKey, int] = field(default_factory=dict)

    def firing(self) -> list[AlertEvent]:
        return [e for e in self.alerts.values() if e.firing]


@dataclass(frozen=True)
class Evaluation:
    book: AlertBook
    edges: list[AlertEvent]
