from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any, Dict, Optional
from urllib import error, request

from routerfleet.vault import generate_key


def _api_request(
    *,
    base_url: str,
    path: str,
    method: str = "GET",
    json_body: Optional[Dict[str, Any]] = None,
    actor: Optional[str] = None,
) -> Any:
    url = base_url.rstrip("/") + path
    headers: Dict[str, str] = {"Accept": "application/json"}
    data: Optional[bytes] = None

    if json_body is not None:
        data = json.dumps(json_body).encode("utf-8")
        headers["Content-Type"] = "application/json"

    if actor:
        headers["X-Actor"] = actor

    req = request.Request(url=url, method=method.upper(), data=data, headers=headers)
    try:
        with request.urlopen(req, timeout=30) as response:
            body = response.read().decode("utf-8")
            return json.loads(body) if body else {}
    except error.HTTPError as exc:
        payload = exc.read().decode("utf-8")
        detail = payload
        try:
            parsed = json.loads(payload)
            if isinstance(parsed, dict) and "detail" in parsed:
                detail = str(parsed["detail"])
        except json.JSONDecodeError:
            pass
        raise RuntimeError(f"HTTP {exc.code}: {detail}") from exc


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _format_table(rows: list[list[str]], headers: list[str]) -> str:
    widths = [len(item) for item in headers]
    for row in rows:
        for index, value in enumerate(row):
            widths[index] = max(widths[index], len(value))
    lines = [" | ".join(header.ljust(widths[index]) for index, header in enumerate(headers))]
    lines.append("-+-".join("-" * width for width in widths))
    for row in rows:
        lines.append(" | ".join(value.ljust(widths[index]) for index, value in enumerate(row)))
    return "\n".join(lines)


def cmd_generate_key(args: argparse.Namespace) -> int:
    key = generate_key()
    if args.export:
        print(f"CREDENTIAL_KEY={key}")
    else:
        print(key)
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from routerfleet.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "routerfleet.main:create_app",
        factory=True,
        host=args.host or settings.server_host,
        port=args.port or settings.server_port,
        log_config=None,
    )
    return 0


def cmd_nodes_list(args: argparse.Namespace) -> int:
    result = _api_request(base_url=args.api_url, path="/nodes")
    if not isinstance(result, list):
        raise RuntimeError("Unexpected response for /nodes")
    if args.json:
        _print_json(result)
        return 0
    rows = [
        [
            str(item.get("id", "")),
            str(item.get("name", "")),
            f"{item.get('host', '')}:{item.get('port', '')}",
            str(item.get("status", "")),
            str(item.get("last_seen_at") or "-"),
        ]
        for item in result
    ]
    print(_format_table(rows, ["id", "name", "address", "status", "last_seen_at"]))
    return 0


def cmd_nodes_add(args: argparse.Namespace) -> int:
    password = args.password or os.environ.get("ROUTERFLEET_NODE_PASSWORD", "")
    if not password:
        raise RuntimeError("Node password is required (--password or ROUTERFLEET_NODE_PASSWORD).")
    payload: Dict[str, Any] = {
        "name": args.name,
        "host": args.host,
        "port": args.port,
        "use_tls": not args.no_tls,
        "verify_tls": args.verify_tls,
        "username": args.username,
        "password": password,
    }
    if args.id:
        payload["id"] = args.id
    result = _api_request(
        base_url=args.api_url,
        path="/nodes",
        method="POST",
        json_body=payload,
        actor=args.actor,
    )
    _print_json(result)
    return 0


def cmd_nodes_remove(args: argparse.Namespace) -> int:
    _api_request(
        base_url=args.api_url,
        path=f"/nodes/{args.node_id}",
        method="DELETE",
        actor=args.actor,
    )
    _print_json({"node_id": args.node_id, "deleted": True})
    return 0


def cmd_health(args: argparse.Namespace) -> int:
    if args.check:
        result = _api_request(base_url=args.api_url, path="/cluster/health/check", method="POST")
    else:
        result = _api_request(base_url=args.api_url, path="/cluster/health")
    _print_json(result)
    if isinstance(result, dict) and int(result.get("unhealthy") or 0) > 0:
        return 2
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="routerfleet", description="RouterOS cluster manager CLI")
    parser.add_argument("--api-url", default="http://127.0.0.1:8000")
    parser.add_argument("--actor", default=os.environ.get("ROUTERFLEET_ACTOR", "cli"))

    sub = parser.add_subparsers(dest="command", required=True)

    gen_key = sub.add_parser("generate-key", help="Print a new base64 credential encryption key")
    gen_key.add_argument("--export", action="store_true", help="Print as CREDENTIAL_KEY=... line")
    gen_key.set_defaults(func=cmd_generate_key)

    serve = sub.add_parser("serve", help="Run the API server")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.set_defaults(func=cmd_serve)

    nodes = sub.add_parser("nodes", help="Manage registered nodes")
    nodes_sub = nodes.add_subparsers(dest="nodes_command", required=True)

    nodes_list = nodes_sub.add_parser("list", help="List nodes")
    nodes_list.add_argument("--json", action="store_true")
    nodes_list.set_defaults(func=cmd_nodes_list)

    nodes_add = nodes_sub.add_parser("add", help="Register a node")
    nodes_add.add_argument("--id")
    nodes_add.add_argument("--name", required=True)
    nodes_add.add_argument("--host", required=True)
    nodes_add.add_argument("--port", type=int, default=443)
    nodes_add.add_argument("--username", required=True)
    nodes_add.add_argument("--password")
    nodes_add.add_argument("--no-tls", action="store_true")
    nodes_add.add_argument("--verify-tls", action="store_true")
    nodes_add.set_defaults(func=cmd_nodes_add)

    nodes_remove = nodes_sub.add_parser("remove", help="Remove a node")
    nodes_remove.add_argument("node_id")
    nodes_remove.set_defaults(func=cmd_nodes_remove)

    health = sub.add_parser("health", help="Show cluster health")
    health.add_argument("--check", action="store_true", help="Run a health cycle now")
    health.set_defaults(func=cmd_health)

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    try:
        exit_code = args.func(args)
    except Exception as exc:  # noqa: BLE001
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
