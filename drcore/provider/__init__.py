"""Provider boundary: adapter contract, error taxonomy, retry and implementations."""
from .base import HealthProbe, ProviderAdapter
from .errors import (
    Conflict,
    InvalidArgument,
    NotFound,
    ProviderError,
    RetryExhausted,
    Throttled,
    Unauthorized,
    Unavailable,
)
from .memory import InMemoryProvider
from .models import (
    DatabaseRef,
    DatabaseSpec,
    FailoverGroupInfo,
    GroupDefinition,
    LinkState,
    ReplicationStatus,
    ServerSpec,
)
from .retry import RetryPolicy, call_with_retry

__all__ = [
    "ProviderAdapter",
    "HealthProbe",
    "InMemoryProvider",
    "ProviderError",
    "NotFound",
    "Conflict",
    "Throttled",
    "Unavailable",
    "Unauthorized",
    "InvalidArgument",
    "RetryExhausted",
    "RetryPolicy",
    "call_with_retry",
    "DatabaseRef",
    "DatabaseSpec",
    "ServerSpec",
    "GroupDefinition",
    "FailoverGroupInfo",
    "LinkState",
    "ReplicationStatus",
]
