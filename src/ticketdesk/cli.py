"""Command line utilities for ticketdesk."""

from __future__ import annotations

import argparse
import asyncio
from typing import Sequence

import msgspec

from .application import TicketdeskApp, create_app
from .config import AppConfig
from .exceptions import TenantResolutionError
from .serialization import json_encode

PROJECT_NAME = "ticketdesk"


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=PROJECT_NAME, description="ticketdesk management commands")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the application under Granian")
    serve.add_argument("--host", default=None, help="Interface to bind")
    serve.add_argument("--port", type=int, default=None, help="Port to bind")
    serve.add_argument("--workers", type=int, default=None, help="Number of worker processes")
    serve.add_argument("--profile", default=None, help="Deployment profile; development profiles skip TLS")
    serve.set_defaults(func=_cmd_serve)

    resolve = sub.add_parser("resolve", help="Show where a request for HOST and PATH would be routed")
    resolve.add_argument("host", help="Host header value, e.g. acme.example.com")
    resolve.add_argument("path", nargs="?", default="/", help="Request path")
    resolve.set_defaults(func=_cmd_resolve)

    check = sub.add_parser("check-subdomain", help="Check whether a subdomain can be claimed")
    check.add_argument("subdomain", help="Requested subdomain")
    check.set_defaults(func=_cmd_check_subdomain)

    return parser


def _build_app() -> TicketdeskApp:
    return create_app(AppConfig.from_env())


def _cmd_serve(args: argparse.Namespace) -> int:
    from .server import ServerConfig, run

    config = ServerConfig.from_env()
    overrides = {
        name: value
        for name, value in (
            ("host", args.host),
            ("port", args.port),
            ("workers", args.workers),
            ("profile", args.profile),
        )
        if value is not None
    }
    if overrides:
        config = msgspec.structs.replace(config, **overrides)
    run(_build_app(), config)
    return 0


def _cmd_resolve(args: argparse.Namespace) -> int:
    app = _build_app()

    async def _route():
        try:
            return await app.edge.route(args.host, args.path)
        finally:
            await app.shutdown()

    try:
        decision = asyncio.run(_route())
    except TenantResolutionError as exc:
        print(f"invalid host {args.host!r}: {exc}")
        return 2
    print(
        json_encode(
            {
                "state": decision.state,
                "path": decision.path,
                "label": decision.label,
                "organization": decision.organization,
                "headers": dict(decision.headers()),
            }
        ).decode()
    )
    return 0


def _cmd_check_subdomain(args: argparse.Namespace) -> int:
    app = _build_app()

    async def _check():
        try:
            return await app.onboarding.check_availability(args.subdomain)
        finally:
            await app.shutdown()

    availability = asyncio.run(_check())
    print(json_encode(availability).decode())
    return 0 if availability.available else 1


__all__ = ["main"]
