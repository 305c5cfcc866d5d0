"""In-memory provider: test double and dry-run simulator.

Keeps servers, databases, links and failover groups in dicts, counts calls
and provider-visible mutations per operation, and lets tests script
failures, replication status sequences, probe results and slow failovers.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter, defaultdict, deque
from dataclasses import replace
from typing import Iterable

from .base import HealthProbe, ProviderAdapter
from .errors import Conflict, NotFound, ProviderError
from .models import (
    DatabaseInfo,
    DatabaseRef,
    DatabaseSpec,
    FailoverGroupInfo,
    FailoverOutcome,
    GroupDefinition,
    LinkInfo,
    LinkState,
    ReplicaRole,
    ReplicationStatus,
    ServerInfo,
    ServerSpec,
)

logger = logging.getLogger("drcore.provider.memory")

LinkKey = tuple[DatabaseRef, DatabaseRef]


class InMemoryProvider(ProviderAdapter, HealthProbe):

    def __init__(self, initial_link_state: LinkState = LinkState.STABLE) -> None:
        self.servers: dict[str, ServerInfo] = {}
        self.databases: dict[DatabaseRef, DatabaseInfo] = {}
        self.links: dict[LinkKey, LinkInfo] = {}
        self.groups: dict[str, FailoverGroupInfo] = {}
        self.calls: Counter[str] = Counter()
        self.mutations: Counter[str] = Counter()
        self.initial_link_state = initial_link_state
        self.failover_takes_effect = True
        self.failover_gate: asyncio.Event | None = None
        self.failover_gates: dict[str, asyncio.Event] = {}
        self.failover_accepted = True
        self.probe_default = True
        self._statuses: dict[LinkKey, ReplicationStatus] = {}
        self._scripted: dict[LinkKey, deque[ReplicationStatus]] = defaultdict(deque)
        self._failures: dict[str, deque[ProviderError]] = defaultdict(deque)
        self._probe_results: deque[bool] = deque()

    # -- scripting -------------------------------------------------------------

    def fail(self, operation: str, *errors: ProviderError) -> None:
        """Raise *errors*, in order, on the next calls to *operation*."""
        self._failures[operation].extend(errors)

    def script_status(self, primary: DatabaseRef, secondary: DatabaseRef,
                      statuses: Iterable[ReplicationStatus]) -> None:
        self._scripted[(primary, secondary)].extend(statuses)

    def set_status(self, primary: DatabaseRef, secondary: DatabaseRef, status: ReplicationStatus) -> None:
        self._statuses[(primary, secondary)] = status

    def script_probe(self, *results: bool) -> None:
        self._probe_results.extend(results)

    def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        pending = self._failures.get(operation)
        if pending:
            raise pending.popleft()

    # -- ProviderAdapter -------------------------------------------------------

    async def ensure_server(self, spec: ServerSpec) -> ServerInfo:
        self._enter("ensure_server")
        existing = self.servers.get(spec.name)
        if existing is not None:
            if existing.region != spec.region:
                raise Conflict(f"server {spec.name} exists in {existing.region}", operation="ensure_server")
            return existing
        info = ServerInfo(name=spec.name, region=spec.region)
        self.servers[spec.name] = info
        self.mutations["ensure_server"] += 1
        return info

    async def ensure_database(self, spec: DatabaseSpec) -> DatabaseInfo:
        self._enter("ensure_database")
        if spec.server not in self.servers:
            raise NotFound(f"server {spec.server}", operation="ensure_database")
        existing = self.databases.get(spec.ref)
        if existing is not None:
            if existing.region != spec.region:
                raise Conflict(f"database {spec.ref} exists in {existing.region}", operation="ensure_database")
            return existing
        info = DatabaseInfo(server=spec.server, name=spec.name, region=spec.region)
        self.databases[spec.ref] = info
        self.mutations["ensure_database"] += 1
        return info

    async def ensure_replication_link(self, primary: DatabaseRef, secondary: DatabaseRef) -> LinkInfo:
        self._enter("ensure_replication_link")
        if primary not in self.databases:
            raise NotFound(f"database {primary}", operation="ensure_replication_link")
        if secondary.server not in self.servers:
            raise NotFound(f"server {secondary.server}", operation="ensure_replication_link")
        existing = self.links.get((primary, secondary))
        if existing is not None:
            return existing
        for (p, s) in self.links:
            if s == secondary and p != primary:
                raise Conflict(f"{secondary} already replicates from {p}", operation="ensure_replication_link")
        link = LinkInfo(primary=primary, secondary=secondary, state=self.initial_link_state)
        self.links[(primary, secondary)] = link
        self.databases[secondary] = DatabaseInfo(
            server=secondary.server, name=secondary.name,
            region=self.servers[secondary.server].region, role=ReplicaRole.SECONDARY,
        )
        self._statuses.setdefault((primary, secondary), ReplicationStatus(self.initial_link_state, 0.0))
        self.mutations["ensure_replication_link"] += 1
        return link

    async def get_replication_status(self, primary: DatabaseRef, secondary: DatabaseRef) -> ReplicationStatus:
        self._enter("get_replication_status")
        key = (primary, secondary)
        if key not in self.links:
            raise NotFound(f"link {primary} -> {secondary}", operation="get_replication_status")
        scripted = self._scripted.get(key)
        if scripted:
            status = scripted.popleft()
            self._statuses[key] = status
            return status
        return self._statuses.get(key, ReplicationStatus(LinkState.UNKNOWN))

    async def ensure_failover_group(self, definition: GroupDefinition) -> FailoverGroupInfo:
        self._enter("ensure_failover_group")
        for server in (definition.primary_server, definition.secondary_server):
            if server not in self.servers:
                raise NotFound(f"server {server}", operation="ensure_failover_group")
        existing = self.groups.get(definition.group_id)
        if existing is not None and existing.matches(definition):
            return existing
        if existing is not None:
            # keep whichever server currently holds the primary role
            info = replace(
                existing,
                databases=tuple(definition.databases),
                policy=definition.policy,
                grace_period_s=definition.grace_period_s,
                allow_read_only_failover=definition.allow_read_only_failover,
            )
        else:
            info = FailoverGroupInfo(
                group_id=definition.group_id,
                primary_server=definition.primary_server,
                secondary_server=definition.secondary_server,
                databases=tuple(definition.databases),
                policy=definition.policy,
                grace_period_s=definition.grace_period_s,
                allow_read_only_failover=definition.allow_read_only_failover,
            )
        self.groups[definition.group_id] = info
        self.mutations["ensure_failover_group"] += 1
        return info

    async def get_failover_group(self, group_id: str) -> FailoverGroupInfo:
        self._enter("get_failover_group")
        info = self.groups.get(group_id)
        if info is None:
            raise NotFound(f"failover group {group_id}", operation="get_failover_group")
        return info

    async def execute_failover(self, group_id: str, forced: bool, allow_data_loss: bool) -> FailoverOutcome:
        self._enter("execute_failover")
        info = self.groups.get(group_id)
        if info is None:
            raise NotFound(f"failover group {group_id}", operation="execute_failover")
        gate = self.failover_gates.get(group_id, self.failover_gate)
        if gate is not None:
            await gate.wait()
        if not self.failover_accepted:
            return FailoverOutcome(group_id=group_id, accepted=False)
        self.mutations["execute_failover"] += 1
        if self.failover_takes_effect:
            self._swap_roles(info)
        logger.info("Simulated %s failover of %s (data loss allowed: %s)",
                    "forced" if forced else "planned", group_id, allow_data_loss)
        return FailoverOutcome(group_id=group_id, accepted=True, operation_id=str(uuid.uuid4()))

    async def remove_replication_link(self, primary: DatabaseRef, secondary: DatabaseRef) -> None:
        self._enter("remove_replication_link")
        if self.links.pop((primary, secondary), None) is None:
            raise NotFound(f"link {primary} -> {secondary}", operation="remove_replication_link")
        self._statuses.pop((primary, secondary), None)
        self.mutations["remove_replication_link"] += 1

    # -- HealthProbe -----------------------------------------------------------

    async def probe(self, server: str, database: str) -> bool:
        self.calls["probe"] += 1
        if self._probe_results:
            return self._probe_results.popleft()
        return self.probe_default

    # -- internals -------------------------------------------------------------

    def _swap_roles(self, info: FailoverGroupInfo) -> None:
        new_primary, new_secondary = info.secondary_server, info.primary_server
        self.groups[info.group_id] = replace(info, primary_server=new_primary, secondary_server=new_secondary)
        for name in info.databases:
            old = (DatabaseRef(new_secondary, name), DatabaseRef(new_primary, name))
            link = self.links.pop(old, None)
            if link is None:
                continue
            flipped = (old[1], old[0])
            self.links[flipped] = LinkInfo(primary=flipped[0], secondary=flipped[1], state=link.state)
            self._statuses[flipped] = self._statuses.pop(old, ReplicationStatus(link.state, 0.0))
            for ref, role in ((flipped[0], ReplicaRole.PRIMARY), (flipped[1], ReplicaRole.SECONDARY)):
                if ref in self.databases:
                    self.databases[ref] = replace(self.databases[ref], role=role)
