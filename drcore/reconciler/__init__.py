"""Reconciliation loop over all registered failover groups."""
from .reconciler import Reconciler, ReconcilerSettings, alert_observations
from .registry import GroupEntry, GroupRegistry

__all__ = ["GroupEntry", "GroupRegistry", "Reconciler", "ReconcilerSettings", "alert_observations"]
