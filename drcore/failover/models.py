"""Failover group data models: desired spec, observed state, requests, transitions."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from drcore.provider.models import DatabaseRef, GroupDefinition
from drcore.replication.models import HealthClass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Phase(str, Enum):
    PROVISIONING = "Provisioning"
    REPLICATING = "Replicating"
    FAILOVER_REQUESTED = "FailoverRequested"
    FAILING_OVER = "FailingOver"
    VALIDATING = "Validating"
    ACTIVE = "Active"
    ROLLED_BACK = "RolledBack"
    FAILED = "Failed"


# phases during which a failover is in flight and the topology must not be touched
IN_FLIGHT = frozenset({Phase.FAILING_OVER, Phase.VALIDATING, Phase.ACTIVE, Phase.ROLLED_BACK})


class FailoverPolicy(str, Enum):
    AUTOMATIC = "Automatic"
    MANUAL = "Manual"


class FailoverType(str, Enum):
    PLANNED = "Planned"
    FORCED = "Forced"


class RequestOutcome(str, Enum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class PrimarySite:
    region: str
    server: str
    databases: tuple[str, ...]


@dataclass(frozen=True)
class SecondarySite:
    region: str
    server: str


@dataclass(frozen=True)
class FailoverGroupSpec:
    """Desired state for one failover group. Replaced only by an explicit update."""

    id: str
    primary: PrimarySite
    secondary: SecondarySite
    failover_policy: FailoverPolicy = FailoverPolicy.MANUAL
    grace_period_s: float = 3600.0
    allow_read_only_failover: bool = False
    notification_targets: tuple[str, ...] = ()

    def validation_errors(self) -> list[str]:
        errors = []
        if not self.id:
            errors.append("id must not be empty")
        if self.primary.server == self.secondary.server:
            errors.append(f"{self.id}: primary and secondary server must differ ({self.primary.server})")
        if not self.primary.databases:
            errors.append(f"{self.id}: database set must not be empty")
        if self.grace_period_s < 0:
            errors.append(f"{self.id}: grace_period must be >= 0")
        return errors

    def definition(self, primary_server: str | None = None, secondary_server: str | None = None) -> GroupDefinition:
        """Provider-side definition; pass the current roles after a failover swapped them."""
        return GroupDefinition(
            group_id=self.id,
            primary_server=primary_server or self.primary.server,
            secondary_server=secondary_server or self.secondary.server,
            databases=tuple(sorted(self.primary.databases)),
            policy=self.failover_policy.value,
            grace_period_s=self.grace_period_s,
            allow_read_only_failover=self.allow_read_only_failover,
        )

    def region_of(self, server: str) -> str:
        return self.primary.region if server == self.primary.server else self.secondary.region

    def pairs(self, primary_server: str, secondary_server: str) -> list[tuple[DatabaseRef, DatabaseRef]]:
        return [(DatabaseRef(primary_server, db), DatabaseRef(secondary_server, db))
                for db in sorted(self.primary.databases)]


@dataclass
class FailoverRequest:
    group_id: str
    type: FailoverType = FailoverType.PLANNED
    allow_data_loss: bool = False
    requester: str = "operator"
    created_at: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    outcome: RequestOutcome | None = None
    outcome_reason: str = ""
    finished_at: datetime | None = None

    @property
    def forced(self) -> bool:
        return self.type is FailoverType.FORCED

    def finish(self, outcome: RequestOutcome, reason: str = "", at: datetime | None = None) -> None:
        self.outcome = outcome
        self.outcome_reason = reason
        self.finished_at = at or _utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "type": self.type.value,
            "allow_data_loss": self.allow_data_loss,
            "requester": self.requester,
            "created_at": self.created_at.isoformat(),
            "outcome": self.outcome.value if self.outcome else None,
            "outcome_reason": self.outcome_reason,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass(frozen=True)
class TransitionEvent:
    group_id: str
    old: Phase
    new: Phase
    timestamp: datetime
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "old": self.old.value,
            "new": self.new.value,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
        }


@dataclass
class FailoverGroupState:
    """Observed state of one group, refreshed every reconcile cycle."""

    group_id: str
    primary_server: str
    secondary_server: str
    phase: Phase = Phase.PROVISIONING
    health: HealthClass = HealthClass.UNKNOWN
    stale: bool = False
    lag_seconds: dict[str, float | None] = field(default_factory=dict)
    last_transition_at: datetime = field(default_factory=_utcnow)
    consecutive_poll_failures: int = 0
    last_error: str | None = None
    suspended: bool = False
    request: FailoverRequest | None = None
    last_request: FailoverRequest | None = None
    validation_attempts: int = 0
    failover_acknowledged: bool = False
    # cleared when an automatic request fails or is cancelled
    auto_failover_armed: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "phase": self.phase.value,
            "primary_server": self.primary_server,
            "secondary_server": self.secondary_server,
            "health": self.health.value,
            "stale": self.stale,
            "lag_seconds": dict(self.lag_seconds),
            "last_transition_at": self.last_transition_at.isoformat(),
            "consecutive_poll_failures": self.consecutive_poll_failures,
            "last_error": self.last_error,
            "suspended": self.suspended,
            "request": self.request.to_dict() if self.request else None,
            "last_request": self.last_request.to_dict() if self.last_request else None,
            "validation_attempts": self.validation_attempts,
            "auto_failover_armed": self.auto_failover_armed,
        }
