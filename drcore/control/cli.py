"""drcore-ctl: operator CLI for the control API.

Usage:
    drcore-ctl groups
    drcore-ctl status orders
    drcore-ctl failover orders --forced --allow-data-loss
    drcore-ctl cancel orders 6f0c...
    drcore-ctl pause orders | resume orders | retrigger orders | rearm orders
    drcore-ctl alerts [--all]

The URL and token come from --url/--token or DRCORE_CONTROL_URL/DRCORE_CONTROL_TOKEN.
Forced failovers ask for confirmation unless --yes is given.
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any

import requests
from dotenv import load_dotenv

DEFAULT_URL = "http://127.0.0.1:8087"


class ControlClient:
    def __init__(self, base_url: str, token: str, timeout_s: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout_s
        self._session = requests.Session()
        self._session.headers.update({"Authorization": f"Bearer {token}", "Content-Type": "application/json"})

    def _call(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        resp = self._session.request(method, f"{self.base_url}{path}", json=payload, timeout=self._timeout)
        try:
            body = resp.json()
        except ValueError:
            body = {"error": resp.text}
        if resp.status_code >= 400:
            detail = body.get("detail") or body.get("error") if isinstance(body, dict) else body
            raise RuntimeError(f"HTTP {resp.status_code}: {detail}")
        return body

    def groups(self) -> list[dict[str, Any]]:
        return self._call("GET", "/groups")

    def status(self, group_id: str) -> dict[str, Any]:
        return self._call("GET", f"/groups/{group_id}")

    def failover(self, group_id: str, forced: bool = False, allow_data_loss: bool = False,
                 requester: str = "drcore-ctl") -> dict[str, Any]:
        return self._call("POST", f"/groups/{group_id}/failover", {
            "type": "Forced" if forced else "Planned",
            "allow_data_loss": allow_data_loss,
            "requester": requester,
        })

    def cancel(self, group_id: str, request_id: str) -> dict[str, Any]:
        return self._call("DELETE", f"/groups/{group_id}/failover/{request_id}")

    def pause(self, group_id: str) -> dict[str, Any]:
        return self._call("POST", f"/groups/{group_id}/pause")

    def resume(self, group_id: str) -> dict[str, Any]:
        return self._call("POST", f"/groups/{group_id}/resume")

    def retrigger(self, group_id: str) -> dict[str, Any]:
        return self._call("POST", f"/groups/{group_id}/retrigger")

    def rearm(self, group_id: str) -> dict[str, Any]:
        return self._call("POST", f"/groups/{group_id}/rearm")

    def alerts(self, include_resolved: bool = False) -> list[dict[str, Any]]:
        return self._call("GET", "/alerts?all=1" if include_resolved else "/alerts")


def _print_groups(groups: list[dict[str, Any]]) -> None:
    print(f"{'GROUP':<24} {'PHASE':<18} {'HEALTH':<13} {'PRIMARY':<24} SUSPENDED")
    for g in groups:
        print(f"{g['group_id']:<24} {g['phase']:<18} {g['health']:<13} {g['primary_server']:<24} {g['suspended']}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="drcore-ctl", description="Operate drcore failover groups")
    parser.add_argument("--url", default=None, help="control API base URL")
    parser.add_argument("--token", default=None, help="control API bearer token")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("groups", help="list groups")
    for name in ("status", "pause", "resume", "retrigger", "rearm"):
        sub.add_parser(name).add_argument("group_id")

    fo = sub.add_parser("failover", help="request a failover")
    fo.add_argument("group_id")
    fo.add_argument("--forced", action="store_true", help="forced failover (may lose data)")
    fo.add_argument("--allow-data-loss", action="store_true")
    fo.add_argument("--yes", action="store_true", help="skip confirmation")

    cancel = sub.add_parser("cancel", help="cancel a pending failover request")
    cancel.add_argument("group_id")
    cancel.add_argument("request_id")

    alerts = sub.add_parser("alerts", help="list alerts")
    alerts.add_argument("--all", action="store_true", help="include resolved alerts")
    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    url = args.url or os.environ.get("DRCORE_CONTROL_URL", DEFAULT_URL)
    token = args.token or os.environ.get("DRCORE_CONTROL_TOKEN", "")
    if not token:
        print("DRCORE_CONTROL_TOKEN env var or --token is required", file=sys.stderr)
        return 2
    client = ControlClient(url, token)

    try:
        if args.command == "groups":
            _print_groups(client.groups())
            return 0
        if args.command == "failover":
            if args.forced and not args.yes:
                answer = input(f"Forced failover of {args.group_id} "
                               f"(data loss allowed: {args.allow_data_loss}). Type the group id to confirm: ")
                if answer.strip() != args.group_id:
                    print("Aborted.")
                    return 1
            result = client.failover(args.group_id, forced=args.forced, allow_data_loss=args.allow_data_loss)
        elif args.command == "cancel":
            result = client.cancel(args.group_id, args.request_id)
        elif args.command == "alerts":
            result = client.alerts(include_resolved=args.all)
        else:
            result = getattr(client, args.command)(args.group_id)
    except (requests.RequestException, RuntimeError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
