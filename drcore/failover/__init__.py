"""Failover group state machine."""
from .controller import ControllerSettings, FailoverController
from .errors import GroupBusy, InvalidRequest, OrchestrationError, PolicyViolation, UnknownGroup
from .models import (
    FailoverGroupSpec,
    FailoverGroupState,
    FailoverPolicy,
    FailoverRequest,
    FailoverType,
    Phase,
    PrimarySite,
    RequestOutcome,
    SecondarySite,
    TransitionEvent,
)

__all__ = [
    "ControllerSettings",
    "FailoverController",
    "FailoverGroupSpec",
    "FailoverGroupState",
    "FailoverPolicy",
    "FailoverRequest",
    "FailoverType",
    "GroupBusy",
    "InvalidRequest",
    "OrchestrationError",
    "Phase",
    "PolicyViolation",
    "PrimarySite",
    "RequestOutcome",
    "SecondarySite",
    "TransitionEvent",
    "UnknownGroup",
]
