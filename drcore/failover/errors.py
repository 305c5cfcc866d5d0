"""Errors raised locally by the orchestration core (never by a provider)."""
from __future__ import annotations


class OrchestrationError(Exception):
    """Base for operator-facing rejections."""


class PolicyViolation(OrchestrationError):
    """Request refused before any provider call (e.g. forced failover without data-loss consent)."""


class GroupBusy(OrchestrationError):
    """Another state-mutating operation holds the group's lock."""


class UnknownGroup(OrchestrationError):
    pass


class InvalidRequest(OrchestrationError):
    """Request does not make sense in the group's current phase."""
