"""Value types exchanged across the provider boundary."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class LinkState(str, Enum):
    SEEDING = "SEEDING"
    CATCHING_UP = "CATCHING_UP"
    STABLE = "STABLE"
    SUSPENDED = "SUSPENDED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: object) -> LinkState:
        try:
            return cls(str(raw).upper())
        except ValueError:
            return cls.UNKNOWN


class ReplicaRole(str, Enum):
    PRIMARY = "Primary"
    SECONDARY = "Secondary"


@dataclass(frozen=True)
class ServerSpec:
    name: str
    region: str


@dataclass(frozen=True)
class ServerInfo:
    name: str
    region: str
    state: str = "Ready"


@dataclass(frozen=True)
class DatabaseRef:
    server: str
    name: str

    def __str__(self) -> str:
        return f"{self.server}/{self.name}"


@dataclass(frozen=True)
class DatabaseSpec:
    server: str
    name: str
    region: str

    @property
    def ref(self) -> DatabaseRef:
        return DatabaseRef(self.server, self.name)


@dataclass(frozen=True)
class DatabaseInfo:
    server: str
    name: str
    region: str
    role: ReplicaRole = ReplicaRole.PRIMARY


@dataclass(frozen=True)
class LinkInfo:
    primary: DatabaseRef
    secondary: DatabaseRef
    state: LinkState


@dataclass(frozen=True)
class ReplicationStatus:
    state: LinkState
    lag_seconds: float | None = None


@dataclass(frozen=True)
class GroupDefinition:
    """Provider-side shape of a failover group."""

    group_id: str
    primary_server: str
    secondary_server: str
    databases: tuple[str, ...]
    policy: str
    grace_period_s: float
    allow_read_only_failover: bool = False


@dataclass(frozen=True)
class FailoverGroupInfo:
    group_id: str
    primary_server: str
    secondary_server: str
    databases: tuple[str, ...] = ()
    policy: str = "Manual"
    grace_period_s: float = 0.0
    allow_read_only_failover: bool = False

    def matches(self, definition: GroupDefinition) -> bool:
        return (
            {self.primary_server, self.secondary_server}
            == {definition.primary_server, definition.secondary_server}
            and set(self.databases) == set(definition.databases)
            and self.policy == definition.policy
            and self.grace_period_s == definition.grace_period_s
            and self.allow_read_only_failover == definition.allow_read_only_failover
        )


@dataclass(frozen=True)
class FailoverOutcome:
    group_id: str
    accepted: bool
    operation_id: str = ""
    details: dict[str, str] = field(default_factory=dict)
