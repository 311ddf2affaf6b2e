from __future__ import annotations

import json
import logging

import pytest
import pytest_asyncio

from tests.support import FlakyStore, build_app, quiet_config, seed_organization
from ticketdesk.authentication import hash_token
from ticketdesk.edge import (
    ORGANIZATION_ID_HEADER,
    ORGANIZATION_NAME_HEADER,
    ORGANIZATION_SUBDOMAIN_HEADER,
    EdgeRouter,
    RoutingState,
)
from ticketdesk.exceptions import TenantResolutionError
from ticketdesk.observability import Observability
from ticketdesk.requests import Request
from ticketdesk.responses import PlainTextResponse, Response
from ticketdesk.tenancy import TenantResolver
from ticketdesk.testing import TestClient


@pytest_asyncio.fixture
async def store() -> FlakyStore:
    store = FlakyStore()
    await seed_organization(store, name="Acme Support", subdomain="acme", organization_id="org_1")
    return store


def _router(store: FlakyStore, **overrides) -> EdgeRouter:
    config = quiet_config(**overrides)
    return EdgeRouter(TenantResolver(store, config), config)


@pytest.mark.asyncio
async def test_organization_host_is_rewritten_onto_organization_routes(store: FlakyStore) -> None:
    decision = await _router(store).route("acme.example.com", "/tickets")

    assert decision.state is RoutingState.RESOLVED
    assert decision.path == "/org/org_1/tickets"
    assert decision.original_path == "/tickets"
    assert decision.rewritten
    assert decision.label == "acme"
    assert decision.organization is not None and decision.organization.name == "Acme Support"
    assert dict(decision.headers()) == {
        ORGANIZATION_ID_HEADER: "org_1",
        ORGANIZATION_NAME_HEADER: "Acme Support",
        ORGANIZATION_SUBDOMAIN_HEADER: "acme",
    }
    assert decision.trail == (
        RoutingState.START,
        RoutingState.PARSED_HOST,
        RoutingState.CANDIDATE,
        RoutingState.RESOLVED,
    )


@pytest.mark.asyncio
async def test_root_path_rewrites_to_organization_root(store: FlakyStore) -> None:
    decision = await _router(store).route("acme.example.com", "/")
    assert decision.path == "/org/org_1/"


@pytest.mark.asyncio
async def test_unknown_subdomain_goes_to_not_found_route(store: FlakyStore) -> None:
    decision = await _router(store).route("ghost.example.com", "/tickets")
    assert decision.state is RoutingState.NOT_FOUND
    assert decision.path == "/org/not-found"
    assert decision.headers() == ()


@pytest.mark.asyncio
@pytest.mark.parametrize("host", ["example.com", "www.example.com", "api.example.com", "example.example.com", "localhost:3000"])
async def test_main_site_hosts_pass_through(store: FlakyStore, host: str) -> None:
    decision = await _router(store).route(host, "/dashboard")
    assert decision.state is RoutingState.PASS_THROUGH
    assert decision.path == "/dashboard"
    assert not decision.rewritten
    assert decision.organization is None
    assert RoutingState.CANDIDATE not in decision.trail


@pytest.mark.asyncio
async def test_reserved_labels_never_reach_the_store(store: FlakyStore) -> None:
    await _router(store).route("admin.example.com", "/")
    assert store.reads == []


@pytest.mark.asyncio
async def test_store_failure_goes_to_error_route(store: FlakyStore) -> None:
    store.failing = True
    decision = await _router(store).route("acme.example.com", "/tickets")
    assert decision.state is RoutingState.ERROR
    assert decision.path == "/org/error"
    assert decision.label == "acme"
    assert decision.headers() == ()


@pytest.mark.asyncio
async def test_development_hosts_route_like_production(store: FlakyStore) -> None:
    decision = await _router(store).route("acme.localhost:3000", "/settings")
    assert decision.state is RoutingState.RESOLVED
    assert decision.path == "/org/org_1/settings"


@pytest.mark.asyncio
async def test_routing_is_repeatable(store: FlakyStore) -> None:
    router = _router(store)
    first = await router.route("ACME.example.com", "/tickets")
    second = await router.route("acme.example.com", "/tickets")
    assert first.path == second.path == "/org/org_1/tickets"
    assert first.organization == second.organization


@pytest.mark.asyncio
async def test_custom_prefix_and_routes(store: FlakyStore) -> None:
    router = _router(store, organization_prefix="/tenants", not_found_route="/missing")
    assert (await router.route("acme.example.com", "/a")).path == "/tenants/org_1/a"
    assert (await router.route("ghost.example.com", "/a")).path == "/missing"


@pytest.mark.asyncio
async def test_malformed_host_raises(store: FlakyStore) -> None:
    with pytest.raises(TenantResolutionError):
        await _router(store).route("acme example.com", "/")


@pytest.mark.asyncio
async def test_middleware_rewrites_request_and_tags_response(store: FlakyStore) -> None:
    seen: list[Request] = []

    async def handler(request: Request) -> Response:
        seen.append(request)
        return PlainTextResponse("ok")

    request = Request(method="GET", path="/tickets", headers={"host": "acme.example.com"})
    response = await _router(store).middleware(request, handler)

    assert seen[0].path == "/org/org_1/tickets"
    assert seen[0].original_path == "/tickets"
    assert seen[0].organization is not None and seen[0].organization.id == "org_1"
    assert response.header(ORGANIZATION_ID_HEADER) == "org_1"
    assert response.header(ORGANIZATION_SUBDOMAIN_HEADER) == "acme"


@pytest.mark.asyncio
async def test_middleware_leaves_main_site_requests_alone(store: FlakyStore) -> None:
    async def handler(request: Request) -> Response:
        return PlainTextResponse(request.path)

    request = Request(method="GET", path="/dashboard", headers={"host": "www.example.com"})
    response = await _router(store).middleware(request, handler)
    assert response.body == b"/dashboard"
    assert request.organization is None
    assert response.header(ORGANIZATION_ID_HEADER) is None


@pytest.mark.asyncio
async def test_routing_decisions_are_logged(store: FlakyStore, caplog: pytest.LogCaptureFixture) -> None:
    config = quiet_config()
    router = EdgeRouter(TenantResolver(store, config), config, observability=Observability(config.observability))

    with caplog.at_level(logging.INFO, logger="ticketdesk.observability"):
        await router.route("acme.example.com", "/tickets")

    events = [json.loads(record.getMessage()) for record in caplog.records if record.name == "ticketdesk.observability"]
    routed = [event for event in events if event["event"] == "tenant.route"]
    assert routed == [
        {
            "event": "tenant.route",
            "host": "acme.example.com",
            "state": "resolved",
            "label": "acme",
            "path": "/tickets",
            "rewritten_path": "/org/org_1/tickets",
            "organization_id": "org_1",
        }
    ]


@pytest.mark.asyncio
async def test_application_serves_portal_on_organization_host(store: FlakyStore) -> None:
    async with TestClient(build_app(store)) as client:
        response = await client.get("/", subdomain="acme")

    assert response.status == 200
    assert response.header(ORGANIZATION_ID_HEADER) == "org_1"
    assert json.loads(response.body)["name"] == "Acme Support"


@pytest.mark.asyncio
async def test_application_reports_unknown_organization(store: FlakyStore) -> None:
    async with TestClient(build_app(store)) as client:
        response = await client.get("/tickets", subdomain="ghost")

    assert response.status == 404
    assert json.loads(response.body)["error"]["detail"]["detail"] == "organization_not_found"


@pytest.mark.asyncio
async def test_application_reports_lookup_failures(store: FlakyStore) -> None:
    store.failing = True
    async with TestClient(build_app(store)) as client:
        response = await client.get("/tickets", subdomain="acme")

    assert response.status == 503
    assert response.header("retry-after") == "5"
    assert json.loads(response.body)["error"]["detail"]["detail"] == "organization_lookup_failed"


@pytest.mark.asyncio
@pytest.mark.parametrize("subdomain", ["acme", None])
async def test_session_lookup_failures_answer_service_unavailable(store: FlakyStore, subdomain: str | None) -> None:
    store.failing = True
    async with TestClient(build_app(store), token="sometoken") as client:
        response = await client.get("/", subdomain=subdomain)

    assert response.status == 503
    assert response.header("retry-after") is not None
    assert ("sessions", {"token_hash": hash_token("sometoken")}) in store.reads


@pytest.mark.asyncio
async def test_fully_qualified_and_ipv6_hosts_are_routed(store: FlakyStore) -> None:
    router = _router(store)

    qualified = await router.route("acme.example.com.", "/tickets")
    assert qualified.state is RoutingState.RESOLVED
    assert qualified.path == "/org/org_1/tickets"

    literal = await router.route("[::1]:8000", "/tickets")
    assert literal.state is RoutingState.PASS_THROUGH
    assert literal.path == "/tickets"
