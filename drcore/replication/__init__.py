"""Replication-link health tracking."""
from .models import HealthClass, Observation, ReplicationSample, ReplicationThresholds, worst
from .tracker import ReplicationTracker, classify

__all__ = [
    "HealthClass",
    "Observation",
    "ReplicationSample",
    "ReplicationThresholds",
    "ReplicationTracker",
    "classify",
    "worst",
]
