"""HTTP control-plane adapter.

Speaks a small JSON REST contract that a thin gateway in front of the managed
database service exposes:

    GET/PUT  /servers/{server}                                {"region"}
    GET/PUT  /servers/{server}/databases/{db}                 {"region", "role"}
    GET/PUT  /servers/{server}/databases/{db}/links/{partner} {"partner_database", "state", "lag_seconds"}
    DELETE   /servers/{server}/databases/{db}/links/{partner}
    GET/PUT  /failover-groups/{group}                         {"primary_server", "secondary_server", ...}
    POST     /failover-groups/{group}/failover                {"forced", "allow_data_loss"} -> {"operation_id"}

Status codes are normalized into the provider taxonomy here and nowhere
else.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from typing import Any
from urllib.parse import quote

import aiohttp

from .base import ProviderAdapter
from .errors import (
    Conflict,
    InvalidArgument,
    NotFound,
    ProviderError,
    Throttled,
    Unauthorized,
    Unavailable,
)
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

logger = logging.getLogger("drcore.provider.http")


def _seg(value: str) -> str:
    return quote(value, safe="")


def _retry_after(raw: str | None) -> float | None:
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def map_status(status: int, body: str, operation: str, retry_after: str | None = None) -> ProviderError:
    """Translate an HTTP error status into a taxonomy error."""
    message = body[:200] or f"HTTP {status}"
    if status == 404:
        return NotFound(message, operation=operation)
    if status == 409:
        return Conflict(message, operation=operation)
    if status == 429:
        return Throttled(message, operation=operation, retry_after=_retry_after(retry_after))
    if status in (401, 403):
        return Unauthorized(message, operation=operation)
    if status in (400, 422):
        return InvalidArgument(message, operation=operation)
    return Unavailable(message, operation=operation)


def _group_info(group_id: str, data: dict[str, Any]) -> FailoverGroupInfo:
    try:
        return FailoverGroupInfo(
            group_id=data.get("group_id", group_id),
            primary_server=data["primary_server"],
            secondary_server=data["secondary_server"],
            databases=tuple(data.get("databases", ())),
            policy=data.get("policy", "Manual"),
            grace_period_s=float(data.get("grace_period_s", 0.0)),
            allow_read_only_failover=bool(data.get("allow_read_only_failover", False)),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise Unavailable(f"malformed failover group payload: {exc}", operation="get_failover_group") from exc


class HttpProviderAdapter(ProviderAdapter):

    def __init__(self, base_url: str, token: str, request_timeout_s: float = 30.0) -> None:
        if not base_url:
            raise RuntimeError("DRCORE_PROVIDER_URL is required for the http provider")
        self._base = base_url.rstrip("/")
        self._token = token
        self._timeout = aiohttp.ClientTimeout(total=request_timeout_s)
        self._session: aiohttp.ClientSession | None = None

    # -- transport -------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _request(self, method: str, path: str, operation: str,
                       payload: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self._base}{path}"
        try:
            async with self._get_session().request(method, url, json=payload, headers=self._headers()) as resp:
                text = await resp.text()
                if resp.status >= 400:
                    raise map_status(resp.status, text, operation, resp.headers.get("Retry-After"))
                if not text:
                    return {}
                return json.loads(text)
        except aiohttp.ClientError as exc:
            raise Unavailable(str(exc) or type(exc).__name__, operation=operation) from exc
        except asyncio.TimeoutError:
            raise Unavailable("request timed out", operation=operation) from None
        except json.JSONDecodeError as exc:
            raise Unavailable(f"invalid JSON from provider: {exc}", operation=operation) from exc

    async def _get_or_none(self, path: str, operation: str) -> dict[str, Any] | None:
        try:
            return await self._request("GET", path, operation)
        except NotFound:
            return None

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    # -- ProviderAdapter -------------------------------------------------------

    async def ensure_server(self, spec: ServerSpec) -> ServerInfo:
        path = f"/servers/{_seg(spec.name)}"
        data = await self._get_or_none(path, "ensure_server")
        if data is None:
            logger.info("Creating server %s in %s", spec.name, spec.region)
            data = await self._request("PUT", path, "ensure_server", {"region": spec.region})
        region = data.get("region", spec.region)
        if region != spec.region:
            raise Conflict(f"server {spec.name} exists in {region}", operation="ensure_server")
        return ServerInfo(name=spec.name, region=region, state=data.get("state", "Ready"))

    async def ensure_database(self, spec: DatabaseSpec) -> DatabaseInfo:
        path = f"/servers/{_seg(spec.server)}/databases/{_seg(spec.name)}"
        data = await self._get_or_none(path, "ensure_database")
        if data is None:
            logger.info("Creating database %s on %s", spec.name, spec.server)
            data = await self._request("PUT", path, "ensure_database", {"region": spec.region})
        region = data.get("region", spec.region)
        if region != spec.region:
            raise Conflict(f"database {spec.ref} exists in {region}", operation="ensure_database")
        role = ReplicaRole.SECONDARY if data.get("role") == ReplicaRole.SECONDARY.value else ReplicaRole.PRIMARY
        return DatabaseInfo(server=spec.server, name=spec.name, region=region, role=role)

    def _link_path(self, primary: DatabaseRef, secondary: DatabaseRef) -> str:
        return f"/servers/{_seg(primary.server)}/databases/{_seg(primary.name)}/links/{_seg(secondary.server)}"

    async def ensure_replication_link(self, primary: DatabaseRef, secondary: DatabaseRef) -> LinkInfo:
        path = self._link_path(primary, secondary)
        data = await self._get_or_none(path, "ensure_replication_link")
        if data is None:
            logger.info("Creating replication link %s -> %s", primary, secondary)
            data = await self._request("PUT", path, "ensure_replication_link",
                                       {"partner_database": secondary.name})
        partner = data.get("partner_database", secondary.name)
        if partner != secondary.name:
            raise Conflict(f"{primary} already replicates to {secondary.server}/{partner}",
                           operation="ensure_replication_link")
        return LinkInfo(primary=primary, secondary=secondary, state=LinkState.parse(data.get("state")))

    async def get_replication_status(self, primary: DatabaseRef, secondary: DatabaseRef) -> ReplicationStatus:
        data = await self._request("GET", self._link_path(primary, secondary), "get_replication_status")
        lag = data.get("lag_seconds")
        try:
            lag = float(lag) if lag is not None else None
        except (TypeError, ValueError):
            lag = None
        return ReplicationStatus(state=LinkState.parse(data.get("state")), lag_seconds=lag)

    async def remove_replication_link(self, primary: DatabaseRef, secondary: DatabaseRef) -> None:
        logger.info("Removing replication link %s -> %s", primary, secondary)
        await self._request("DELETE", self._link_path(primary, secondary), "remove_replication_link")

    async def ensure_failover_group(self, definition: GroupDefinition) -> FailoverGroupInfo:
        path = f"/failover-groups/{_seg(definition.group_id)}"
        data = await self._get_or_none(path, "ensure_failover_group")
        if data is not None:
            existing = _group_info(definition.group_id, data)
            if existing.matches(definition):
                return existing
        payload = asdict(definition)
        payload["databases"] = list(definition.databases)
        logger.info("Applying failover group %s", definition.group_id)
        data = await self._request("PUT", path, "ensure_failover_group", payload)
        return _group_info(definition.group_id, data or payload)

    async def get_failover_group(self, group_id: str) -> FailoverGroupInfo:
        data = await self._request("GET", f"/failover-groups/{_seg(group_id)}", "get_failover_group")
        return _group_info(group_id, data)

    async def execute_failover(self, group_id: str, forced: bool, allow_data_loss: bool) -> FailoverOutcome:
        data = await self._request(
            "POST", f"/failover-groups/{_seg(group_id)}/failover", "execute_failover",
            {"forced": forced, "allow_data_loss": allow_data_loss},
        )
        return FailoverOutcome(group_id=group_id, accepted=True, operation_id=str(data.get("operation_id", "")))
