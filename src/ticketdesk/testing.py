"""Testing helpers."""

from __future__ import annotations

from typing import Any, Mapping
from urllib.parse import urlencode

from .application import TicketdeskApp
from .authentication import SESSION_COOKIE
from .responses import Response
from .serialization import json_encode


class TestClient:
    """Async test client that executes requests in-process.

    ``subdomain`` picks the organization host (``acme`` gives
    ``acme.<root domain>``); without one requests go to the bare root domain.
    ``token`` is sent as the session cookie.  Entering the client as an async
    context manager runs the application's startup and shutdown hooks.
    """

    __test__ = False

    def __init__(self, app: TicketdeskApp, *, token: str | None = None) -> None:
        self.app = app
        self.token = token

    async def __aenter__(self) -> "TestClient":
        await self.app.startup()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.app.shutdown()

    def host_for(self, subdomain: str | None) -> str:
        if subdomain is None:
            return self.app.config.root_domain
        return self.app.config.organization_host(subdomain)

    async def request(
        self,
        method: str,
        path: str,
        *,
        subdomain: str | None = None,
        host: str | None = None,
        json: Any | None = None,
        query: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        token: str | None = None,
    ) -> Response:
        outgoing = dict(headers or {})
        body = b""
        if json is not None:
            body = json_encode(json)
            outgoing.setdefault("content-type", "application/json")
            outgoing.setdefault("content-length", str(len(body)))
        session = token or self.token
        if session:
            outgoing.setdefault("cookie", f"{SESSION_COOKIE}={session}")
        return await self.app.dispatch(
            method,
            path,
            host=host or self.host_for(subdomain),
            query_string=urlencode(query or {}, doseq=True),
            headers=outgoing,
            body=body,
        )

    async def get(self, path: str, **options: Any) -> Response:
        return await self.request("GET", path, **options)

    async def post(self, path: str, **options: Any) -> Response:
        return await self.request("POST", path, **options)

    async def delete(self, path: str, **options: Any) -> Response:
        return await self.request("DELETE", path, **options)


__all__ = ["TestClient"]
