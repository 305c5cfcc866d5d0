"""Replication health data models."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from drcore.provider.models import LinkState


class HealthClass(str, Enum):
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    UNHEALTHY = "Unhealthy"
    INITIALIZING = "Initializing"  # initial seed, never alerts
    UNKNOWN = "Unknown"


_RANK = {
    HealthClass.HEALTHY: 0,
    HealthClass.INITIALIZING: 1,
    HealthClass.UNKNOWN: 2,
    HealthClass.DEGRADED: 3,
    HealthClass.UNHEALTHY: 4,
}


def worst(classes: list[HealthClass]) -> HealthClass:
    if not classes:
        return HealthClass.UNKNOWN
    return max(classes, key=_RANK.__getitem__)


@dataclass(frozen=True)
class ReplicationThresholds:
    warning_lag_s: float = 300.0
    critical_lag_s: float = 900.0
    history_size: int = 120
    history_window_s: float = 3600.0


@dataclass(frozen=True)
class ReplicationSample:
    timestamp: datetime
    lag_seconds: float | None
    link_state: LinkState


@dataclass(frozen=True)
class Observation:
    pair_id: str
    health: HealthClass
    sample: ReplicationSample | None = None
    stale: bool = False  # provider unreachable; health is the previous classification
    gone: bool = False   # provider says the link no longer exists
    consecutive_failures: int = 0
    error: str | None = None

    @property
    def lag_seconds(self) -> float | None:
        return self.sample.lag_seconds if self.sample else None


@dataclass
class UnhealthyStreak:
    """Consecutive Unhealthy observations and when the run started."""

    count: int = 0
    since: datetime | None = None

    def record(self, health: HealthClass, ts: datetime) -> None:
        if health is HealthClass.UNHEALTHY:
            if self.count == 0:
                self.since = ts
            self.count += 1
        else:
            self.reset()

    def reset(self) -> None:
        self.count = 0
        self.since = None

    def duration_s(self, now: datetime) -> float:
        if self.since is None:
            return 0.0
        return (now - self.since).total_seconds()
