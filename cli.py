from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from threading import Event

import requests

from hbs.app import build_client, build_mirror, build_syncer
from hbs.errors import ConfigError, HBSError
from hbs.logs import setup_logging
from hbs.mapping import map_to_backends
from hbs.mirror import KubernetesMirror
from hbs.settings import Settings, load_settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _synced_mirror(settings: Settings, stop: Event) -> KubernetesMirror:
    mirror = build_mirror(settings)
    mirror.start(stop)
    if not mirror.wait_for_sync(settings.cache_sync_timeout_s):
        raise HBSError("timed out waiting for the Kubernetes API")
    return mirror


def cmd_plan(settings: Settings) -> int:
    stop = Event()
    try:
        mirror = _synced_mirror(settings, stop)
        backends = map_to_backends(
            mirror.list_endpoint_slices(),
            mirror.list_endpoints(),
            mirror.host_addresses(),
            settings.haproxy_backend_port,
            settings.haproxy_send_proxy_v2,
        )
    finally:
        stop.set()
    _print({"backend": settings.haproxy_backend_name, "servers": [asdict(b) for b in backends]})
    return 0


def cmd_sync(settings: Settings) -> int:
    stop = Event()
    try:
        mirror = _synced_mirror(settings, stop)
        with build_client(settings) as client:
            backends = build_syncer(settings, client).sync(
                mirror.list_endpoint_slices(), mirror.list_endpoints(), mirror.host_addresses()
            )
    finally:
        stop.set()
    _print({"backend": settings.haproxy_backend_name, "applied": len(backends)})
    return 0


def cmd_status(url: str) -> int:
    try:
        r = requests.get(f"{url.rstrip('/')}/readyz", timeout=10)
    except requests.RequestException as e:
        _print({"ready": False, "error": str(e)})
        return 1
    _print({"ready": r.ok, "status_code": r.status_code})
    return 0 if r.ok else 1


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="HAProxy Backend Sync CLI (configured through the same env vars as the controller)")
    p.add_argument("--log-level", default="WARNING")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("plan", help="Print the backend servers the controller would apply")
    sub.add_parser("sync", help="Run a single reconciliation pass and exit")
    s_status = sub.add_parser("status", help="Check a running controller's readiness probe")
    s_status.add_argument("--url", default="http://localhost:8080", help="Health server base URL")

    args = p.parse_args(argv)
    setup_logging(args.log_level)

    if args.cmd == "status":
        return cmd_status(args.url)

    try:
        settings = load_settings()
        if args.cmd == "plan":
            return cmd_plan(settings)
        if args.cmd == "sync":
            return cmd_sync(settings)
    except ConfigError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return 2
    except HBSError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
