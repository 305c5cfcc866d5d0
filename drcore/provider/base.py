"""ProviderAdapter contract: the only road to the managed database service.

Every method may raise one of the taxonomy errors from ``errors.py`` and
nothing else. All operations must be safe to retry: ``ensure_*`` calls are
create-or-get, and conflicting state is reported as ``Conflict`` rather than
silently overwritten.
"""
from __future__ import annotations

import abc

from .models import (
    DatabaseInfo,
    DatabaseRef,
    DatabaseSpec,
    FailoverGroupInfo,
    FailoverOutcome,
    GroupDefinition,
    LinkInfo,
    ReplicationStatus,
    ServerInfo,
    ServerSpec,
)


class ProviderAdapter(abc.ABC):

    @abc.abstractmethod
    async def ensure_server(self, spec: ServerSpec) -> ServerInfo:
        ...

    @abc.abstractmethod
    async def ensure_database(self, spec: DatabaseSpec) -> DatabaseInfo:
        """Create-or-get. An existing database in another region raises Conflict."""

    @abc.abstractmethod
    async def ensure_replication_link(self, primary: DatabaseRef, secondary: DatabaseRef) -> LinkInfo:
        """Create-or-get a geo-replication link. A compatible existing link is a no-op."""

    @abc.abstractmethod
    async def get_replication_status(self, primary: DatabaseRef, secondary: DatabaseRef) -> ReplicationStatus:
        ...

    @abc.abstractmethod
    async def ensure_failover_group(self, definition: GroupDefinition) -> FailoverGroupInfo:
        """Create-or-update. Re-applying an identical definition changes nothing."""

    @abc.abstractmethod
    async def get_failover_group(self, group_id: str) -> FailoverGroupInfo:
        ...

    @abc.abstractmethod
    async def execute_failover(self, group_id: str, forced: bool, allow_data_loss: bool) -> FailoverOutcome:
        """Start a failover. Returns once the provider acknowledged the operation."""

    @abc.abstractmethod
    async def remove_replication_link(self, primary: DatabaseRef, secondary: DatabaseRef) -> None:
        ...

    async def close(self) -> None:
        """Release network resources. Default: nothing to release."""


class HealthProbe(abc.ABC):
    """Lightweight connectivity check against a database that just became primary."""

    @abc.abstractmethod
    async def probe(self, server: str, database: str) -> bool:
        ...
