"""ReplicationTracker: per-pair lag history and health classification."""
from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Callable

from drcore.provider.base import ProviderAdapter
from drcore.provider.errors import NotFound, ProviderError
from drcore.provider.models import DatabaseRef, LinkState
from drcore.provider.retry import with_deadline

from .models import (
    HealthClass,
    Observation,
    ReplicationSample,
    ReplicationThresholds,
    UnhealthyStreak,
)

logger = logging.getLogger("drcore.replication.tracker")


def classify(sample: ReplicationSample, thresholds: ReplicationThresholds) -> HealthClass:
    """Map one sample to a HealthClass. No hysteresis: each sample stands alone."""
    if sample.link_state is LinkState.SEEDING:
        return HealthClass.INITIALIZING
    if sample.link_state is LinkState.SUSPENDED:
        return HealthClass.UNHEALTHY
    if sample.link_state is LinkState.UNKNOWN or sample.lag_seconds is None:
        return HealthClass.UNKNOWN
    if sample.lag_seconds > thresholds.critical_lag_s:
        return HealthClass.UNHEALTHY
    if sample.lag_seconds > thresholds.warning_lag_s:
        return HealthClass.DEGRADED
    return HealthClass.HEALTHY


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReplicationTracker:
    """Owns the sample ring buffer for one primary -> secondary database pair."""

    def __init__(
        self,
        provider: ProviderAdapter,
        primary: DatabaseRef,
        secondary: DatabaseRef,
        thresholds: ReplicationThresholds | None = None,
        call_timeout_s: float | None = 30.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.thresholds = thresholds or ReplicationThresholds()
        self.streak = UnhealthyStreak()
        self.consecutive_failures = 0
        self._provider = provider
        self._timeout = call_timeout_s
        self._clock = clock
        self._history: deque[ReplicationSample] = deque(maxlen=self.thresholds.history_size)
        self._health = HealthClass.UNKNOWN

    @property
    def pair_id(self) -> str:
        return f"{self.primary}->{self.secondary}"

    @property
    def health(self) -> HealthClass:
        return self._health

    @property
    def latest(self) -> ReplicationSample | None:
        return self._history[-1] if self._history else None

    def history(self) -> tuple[ReplicationSample, ...]:
        """Read-only snapshot, oldest first."""
        return tuple(self._history)

    def _append(self, sample: ReplicationSample) -> None:
        self._history.append(sample)
        cutoff = sample.timestamp - timedelta(seconds=self.thresholds.history_window_s)
        while self._history and self._history[0].timestamp < cutoff:
            self._history.popleft()

    async def observe(self) -> Observation:
        """Poll the provider once and classify.

        Throttled/Unavailable: previous health, flagged stale. NotFound: the
        pair is gone. Anything else propagates to the controller.
        """
        now = self._clock()
        try:
            status = await with_deadline(
                self._provider.get_replication_status(self.primary, self.secondary),
                self._timeout, "get_replication_status",
            )
        except NotFound as exc:
            self._health = HealthClass.UNKNOWN
            self.streak.reset()
            logger.warning("Replication link %s no longer exists", self.pair_id)
            return Observation(self.pair_id, HealthClass.UNKNOWN, sample=self.latest, gone=True,
                               consecutive_failures=self.consecutive_failures, error=str(exc))
        except ProviderError as exc:
            if not exc.transient:
                raise
            self.consecutive_failures += 1
            logger.warning("Replication poll %s failed (%d in a row): %s",
                           self.pair_id, self.consecutive_failures, exc)
            return Observation(self.pair_id, self._health, sample=self.latest, stale=True,
                               consecutive_failures=self.consecutive_failures, error=str(exc))

        sample = ReplicationSample(timestamp=now, lag_seconds=status.lag_seconds, link_state=status.state)
        self._append(sample)
        self.consecutive_failures = 0
        self._health = classify(sample, self.thresholds)
        self.streak.record(self._health, now)
        logger.debug("Replication %s: state=%s lag=%s health=%s",
                     self.pair_id, status.state.value, status.lag_seconds, self._health.value)
        return Observation(self.pair_id, self._health, sample=sample)
