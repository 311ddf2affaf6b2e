from __future__ import annotations

import json
import logging

import pytest

from tests.support import quiet_config
from ticketdesk.exceptions import HTTPError
from ticketdesk.middleware import apply_middleware, body_limit_middleware
from ticketdesk.observability import Observability
from ticketdesk.requests import Request
from ticketdesk.responses import PlainTextResponse, Response, security_headers_middleware


async def _endpoint(request: Request) -> Response:
    return PlainTextResponse(request.path)


@pytest.mark.asyncio
async def test_first_middleware_is_outermost() -> None:
    order: list[str] = []

    def tracer(label: str):
        async def middleware(request: Request, handler) -> Response:
            order.append(f"{label}:in")
            response = await handler(request)
            order.append(f"{label}:out")
            return response

        return middleware

    handler = apply_middleware([tracer("outer"), tracer("inner")], _endpoint)
    await handler(Request(method="GET", path="/"))

    assert order == ["outer:in", "inner:in", "inner:out", "outer:out"]


@pytest.mark.asyncio
async def test_no_middleware_returns_endpoint() -> None:
    assert apply_middleware([], _endpoint) is _endpoint


@pytest.mark.asyncio
async def test_middleware_can_rewrite_before_endpoint() -> None:
    async def rewrite(request: Request, handler) -> Response:
        request.rewrite("/org/org_1" + request.path)
        return await handler(request)

    response = await apply_middleware([rewrite], _endpoint)(Request(method="GET", path="/tickets"))
    assert response.body == b"/org/org_1/tickets"


@pytest.mark.asyncio
async def test_security_headers_are_added() -> None:
    response = await apply_middleware([security_headers_middleware], _endpoint)(Request(method="GET", path="/"))
    assert response.header("x-frame-options") == "DENY"
    assert response.header("strict-transport-security").startswith("max-age=")


@pytest.mark.asyncio
@pytest.mark.parametrize(("declared", "status"), [("10", 413), ("abc", 400)])
async def test_body_limit_rejects_declared_lengths(declared: str, status: int) -> None:
    handler = apply_middleware([body_limit_middleware(8)], _endpoint)
    with pytest.raises(HTTPError) as excinfo:
        await handler(Request(method="POST", path="/", headers={"content-length": declared}))
    assert excinfo.value.status == status


@pytest.mark.asyncio
async def test_body_limit_allows_small_bodies() -> None:
    handler = apply_middleware([body_limit_middleware(8)], _endpoint)
    response = await handler(Request(method="POST", path="/ok", headers={"content-length": "8"}))
    assert response.body == b"/ok"


@pytest.mark.asyncio
async def test_observed_chain_logs_each_middleware(caplog: pytest.LogCaptureFixture) -> None:
    observability = Observability(quiet_config().observability)

    async def failing(request: Request, handler) -> Response:
        raise RuntimeError("broken")

    with caplog.at_level(logging.INFO, logger="ticketdesk.observability"):
        ok = apply_middleware([security_headers_middleware], _endpoint, observability=observability)
        await ok(Request(method="GET", path="/"))
        broken = apply_middleware([failing], _endpoint, observability=observability)
        with pytest.raises(RuntimeError):
            await broken(Request(method="GET", path="/"))

    events = [json.loads(r.getMessage())["event"] for r in caplog.records if r.name == "ticketdesk.observability"]
    assert events == ["middleware.start", "middleware.success", "middleware.start", "middleware.error"]
