"""Operational control API (aiohttp), bearer-token protected.

Routes:
    GET    /groups
    GET    /groups/{id}
    POST   /groups/{id}/failover                 {"type": "Planned"|"Forced", "allow_data_loss": bool, "requester": str}
    DELETE /groups/{id}/failover/{request_id}
    POST   /groups/{id}/pause
    POST   /groups/{id}/resume
    POST   /groups/{id}/retrigger
    POST   /groups/{id}/rearm                    re-enable automatic failover after a failed one
    GET    /alerts                               ?all=1 includes resolved alerts
"""
from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable

from aiohttp import web

from drcore.config import OrchestratorConfig
from drcore.failover.errors import GroupBusy, InvalidRequest, PolicyViolation, UnknownGroup
from drcore.failover.models import FailoverType
from drcore.reconciler.reconciler import Reconciler

logger = logging.getLogger("drcore.control.api")

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

_STATUS = {
    UnknownGroup: 404,
    GroupBusy: 409,
    InvalidRequest: 409,
    PolicyViolation: 422,
}


def _check_auth(request: web.Request, config: OrchestratorConfig) -> bool:
    auth = request.headers.get("Authorization", "")
    return auth == f"Bearer {config.control_token}"


@web.middleware
async def auth_and_errors(request: web.Request, handler: Handler) -> web.StreamResponse:
    if not _check_auth(request, request.app["config"]):
        return web.json_response({"error": "unauthorized"}, status=401)
    try:
        return await handler(request)
    except tuple(_STATUS) as exc:
        status = next(code for cls, code in _STATUS.items() if isinstance(exc, cls))
        logger.info("%s %s rejected (%d): %s", request.method, request.path, status, exc)
        return web.json_response({"error": type(exc).__name__, "detail": str(exc)}, status=status)


def _bad_request(detail: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(text=json.dumps({"error": "BadRequest", "detail": detail}),
                              content_type="application/json")


def _reconciler(request: web.Request) -> Reconciler:
    return request.app["reconciler"]


async def _body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise _bad_request("request body is not valid JSON") from None
    if not isinstance(body, dict):
        raise _bad_request("request body must be a JSON object")
    return body


async def handle_groups(request: web.Request) -> web.Response:
    return web.json_response(_reconciler(request).snapshots())


async def handle_group(request: web.Request) -> web.Response:
    group_id = request.match_info["group_id"]
    reconciler = _reconciler(request)
    data = reconciler.snapshot(group_id)
    data["transitions"] = [e.to_dict() for e in reconciler.transitions(group_id)[-20:]]
    return web.json_response(data)


async def handle_failover(request: web.Request) -> web.Response:
    group_id = request.match_info["group_id"]
    body = await _body(request)
    try:
        failover_type = FailoverType(body.get("type", FailoverType.PLANNED.value))
    except ValueError:
        raise _bad_request("type must be Planned or Forced") from None
    allow_data_loss = body.get("allow_data_loss", False)
    if not isinstance(allow_data_loss, bool):
        raise _bad_request("allow_data_loss must be a boolean")
    request_obj = _reconciler(request).submit_failover(
        group_id,
        type=failover_type,
        allow_data_loss=allow_data_loss,
        requester=str(body.get("requester", "control-api")),
    )
    return web.json_response(request_obj.to_dict(), status=202)


async def handle_cancel(request: web.Request) -> web.Response:
    cancelled = _reconciler(request).cancel_failover(
        request.match_info["group_id"], request.match_info["request_id"])
    return web.json_response(cancelled.to_dict())


async def handle_pause(request: web.Request) -> web.Response:
    group_id = request.match_info["group_id"]
    _reconciler(request).pause(group_id)
    return web.json_response({"ok": True, "group_id": group_id, "suspended": True})


async def handle_resume(request: web.Request) -> web.Response:
    group_id = request.match_info["group_id"]
    _reconciler(request).resume(group_id)
    return web.json_response({"ok": True, "group_id": group_id, "suspended": False})


async def handle_retrigger(request: web.Request) -> web.Response:
    group_id = request.match_info["group_id"]
    event = _reconciler(request).retrigger(group_id)
    return web.json_response({"ok": True, "transition": event.to_dict() if event else None})


async def handle_rearm(request: web.Request) -> web.Response:
    group_id = request.match_info["group_id"]
    reconciler = _reconciler(request)
    reconciler.rearm(group_id)
    return web.json_response({"ok": True, "group_id": group_id,
                              "auto_failover_armed": reconciler.snapshot(group_id)["auto_failover_armed"]})


async def handle_alerts(request: web.Request) -> web.Response:
    firing_only = request.query.get("all", "") not in ("1", "true", "yes")
    return web.json_response([e.to_dict() for e in _reconciler(request).alerts(firing_only=firing_only)])


def create_app(config: OrchestratorConfig, reconciler: Reconciler) -> web.Application:
    if not config.control_token:
        raise RuntimeError("DRCORE_CONTROL_TOKEN is required for the control API")
    app = web.Application(middlewares=[auth_and_errors])
    app["config"] = config
    app["reconciler"] = reconciler
    app.router.add_get("/groups", handle_groups)
    app.router.add_get("/groups/{group_id}", handle_group)
    app.router.add_post("/groups/{group_id}/failover", handle_failover)
    app.router.add_delete("/groups/{group_id}/failover/{request_id}", handle_cancel)
    app.router.add_post("/groups/{group_id}/pause", handle_pause)
    app.router.add_post("/groups/{group_id}/resume", handle_resume)
    app.router.add_post("/groups/{group_id}/retrigger", handle_retrigger)
    app.router.add_post("/groups/{group_id}/rearm", handle_rearm)
    app.router.add_get("/alerts", handle_alerts)
    return app


async def start_control_api(app: web.Application, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Control API listening on %s:%d", host, port)
    return runner
