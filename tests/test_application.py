from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import pytest
import pytest_asyncio

from tests.support import build_app, seed_member, seed_organization, seed_user
from ticketdesk.application import TicketdeskApp
from ticketdesk.edge import ORGANIZATION_ID_HEADER
from ticketdesk.exceptions import HTTPError, TransientError
from ticketdesk.http import Status
from ticketdesk.models import Role
from ticketdesk.responses import Response
from ticketdesk.store import MemoryStore
from ticketdesk.testing import TestClient


@dataclass
class Site:
    app: TicketdeskApp
    store: MemoryStore
    tokens: dict[str, str]


def _json(response: Response) -> Any:
    return json.loads(response.body)


@pytest_asyncio.fixture
async def site() -> Site:
    store = MemoryStore()
    app = build_app(store)
    organization = await seed_organization(store, name="Acme", subdomain="acme", organization_id="org_1")
    tokens: dict[str, str] = {}
    for role in Role:
        user = await seed_user(store, f"{role.value}@acme.test")
        await seed_member(store, organization, user, role)
        tokens[role.value] = (await app.authenticator.issue(user)).token
    outsider = await seed_user(store, "outsider@globex.test")
    tokens["outsider"] = (await app.authenticator.issue(outsider)).token
    return Site(app=app, store=store, tokens=tokens)


@pytest.mark.asyncio
async def test_home_page_on_root_domain(site: Site) -> None:
    async with TestClient(site.app) as client:
        response = await client.get("/")

    assert response.status == 200
    assert _json(response)["root_domain"] == "example.com"
    assert response.header("x-content-type-options") == "nosniff"
    assert response.header(ORGANIZATION_ID_HEADER) is None


@pytest.mark.asyncio
async def test_anonymous_dashboard_redirects_to_signin(site: Site) -> None:
    async with TestClient(site.app) as client:
        response = await client.get("/dashboard")

    assert response.status == 303
    assert response.header("location") == "/auth/signin?redirect=%2Fdashboard"


@pytest.mark.asyncio
async def test_dashboard_lists_memberships(site: Site) -> None:
    async with TestClient(site.app, token=site.tokens["agent"]) as client:
        member_view = await client.get("/dashboard")
        outsider_view = await client.get("/dashboard", token=site.tokens["outsider"])

    payload = _json(member_view)
    assert payload["user"]["email"] == "agent@acme.test"
    assert payload["organizations"] == [
        {"organization": {"id": "org_1", "name": "Acme", "subdomain": "acme"}, "role": "agent"}
    ]
    assert payload["onboarding"] is None
    assert _json(outsider_view)["onboarding"] == "/onboarding"


@pytest.mark.asyncio
async def test_anonymous_tenant_page_redirects_with_original_path(site: Site) -> None:
    async with TestClient(site.app) as client:
        response = await client.get("/tickets", subdomain="acme")

    assert response.status == 303
    assert response.header("location") == "/auth/signin?redirect=%2Ftickets"
    assert response.header(ORGANIZATION_ID_HEADER) == "org_1"


@pytest.mark.asyncio
async def test_non_members_are_sent_to_the_forbidden_page(site: Site) -> None:
    async with TestClient(site.app, token=site.tokens["outsider"]) as client:
        response = await client.get("/tickets", subdomain="acme")

    assert response.status == 303
    assert response.header("location") == "/dashboard"


@pytest.mark.asyncio
async def test_insufficient_role_is_forbidden(site: Site) -> None:
    async with TestClient(site.app, token=site.tokens["agent"]) as client:
        response = await client.post("/settings", subdomain="acme", json={"name": "Hijacked"})

    assert response.status == 303
    assert response.header("location") == "/dashboard"


@pytest.mark.asyncio
async def test_ticket_lifecycle_through_organization_host(site: Site) -> None:
    async with TestClient(site.app) as client:
        created = await client.post(
            "/tickets",
            subdomain="acme",
            json={"subject": "VPN down", "priority": "high"},
            token=site.tokens["member"],
        )
        assert created.status == 201
        ticket = _json(created)
        assert ticket["reference_id"] == "ACME-000001"
        assert ticket["organization_id"] == "org_1"

        assigned = await client.post(
            f"/tickets/{ticket['id']}/assign",
            subdomain="acme",
            json={"assignee_id": _json(await client.get("/assignees", subdomain="acme", token=site.tokens["admin"]))[0]["id"]},
            token=site.tokens["admin"],
        )
        assert assigned.status == 200

        replied = await client.post(
            f"/tickets/{ticket['id']}/respond",
            subdomain="acme",
            json={"text": "Looking into it"},
            token=site.tokens["agent"],
        )
        assert replied.status == 201

        status = await client.post(
            f"/tickets/{ticket['id']}/status",
            subdomain="acme",
            json={"status": "resolved", "resolution_notes": "Restarted gateway"},
            token=site.tokens["agent"],
        )
        assert _json(status)["status"] == "resolved"

        listing = await client.get("/tickets", subdomain="acme", query={"status": "resolved"}, token=site.tokens["member"])
        timeline = await client.get(f"/tickets/{ticket['id']}/timeline", subdomain="acme", token=site.tokens["member"])

    assert [item["id"] for item in _json(listing)] == [ticket["id"]]
    kinds = [entry["kind"] for entry in _json(timeline)]
    assert kinds.count("response") == 1
    assert "activity" in kinds


@pytest.mark.asyncio
async def test_direct_organization_paths_work_on_root_domain(site: Site) -> None:
    async with TestClient(site.app, token=site.tokens["member"]) as client:
        response = await client.get("/org/org_1/tickets")
        created = await client.post("/org/org_1/tickets", json={"subject": "Direct"})

    assert response.status == 200
    assert _json(response) == []
    assert _json(created)["reference_id"] == "ACME-000001"


@pytest.mark.asyncio
async def test_invalid_payloads_are_rejected(site: Site) -> None:
    async with TestClient(site.app, token=site.tokens["member"]) as client:
        missing = await client.post("/tickets", subdomain="acme", json={"priority": "high"})
        bad_status = await client.get("/tickets", subdomain="acme", query={"status": "bogus"})
        bad_range = await client.get("/analytics", subdomain="acme", query={"range": "1y"})

    assert missing.status == 400
    assert _json(missing)["error"]["detail"]["field"] == "subject"
    assert bad_status.status == 400
    assert bad_range.status == 400


@pytest.mark.asyncio
async def test_onboarding_flow_creates_reachable_organization(site: Site) -> None:
    token = site.tokens["outsider"]
    async with TestClient(site.app, token=token) as client:
        availability = await client.get("/onboarding/subdomain-availability", query={"subdomain": "Globex"})
        assert _json(availability) == {"subdomain": "globex", "available": True}
        taken = await client.get("/onboarding/subdomain-availability", query={"subdomain": "acme"})
        assert _json(taken)["reason"] == "taken"

        await client.post("/onboarding/step1", json={"name": "Globex", "description": "Widgets"})
        await client.post("/onboarding/step2", json={"subdomain": "globex"})
        await client.post("/onboarding/step3", json={"domains": ["globex.com"]})
        draft = await client.post("/onboarding/step4", json={"custom_message": "Hi"})
        assert _json(draft)["current_step"] == 5

        completed = await client.post("/onboarding/complete")
        assert completed.status == 201
        body = _json(completed)
        assert body["url"] == "https://globex.example.com/"
        assert body["step"] == 5

        portal = await client.get("/", subdomain="globex")
        settings = await client.get("/settings", subdomain="globex")

    assert _json(portal)["welcome_message"] == "Hi"
    assert portal.header(ORGANIZATION_ID_HEADER) == body["organization"]["id"]
    assert settings.status == 200


@pytest.mark.asyncio
async def test_onboarding_reserved_subdomain_is_rejected(site: Site) -> None:
    async with TestClient(site.app, token=site.tokens["outsider"]) as client:
        response = await client.post("/onboarding/step2", json={"subdomain": "admin"})
        reset = await client.post("/onboarding/reset")

    assert response.status == 400
    assert _json(response)["error"]["detail"]["field"] == "subdomain"
    assert reset.status == 204


@pytest.mark.asyncio
async def test_team_and_categories_endpoints(site: Site) -> None:
    await seed_user(site.store, "newhire@acme.test")
    async with TestClient(site.app, token=site.tokens["admin"]) as client:
        added = await client.post("/team", subdomain="acme", json={"email": "newhire@acme.test"})
        team = await client.get("/team", subdomain="acme")
        category = await client.post("/categories", subdomain="acme", json={"name": "Billing"})
        category_id = _json(category)["id"]
        toggled = await client.post(f"/categories/{category_id}/toggle", subdomain="acme")
        active_only = await client.get("/categories", subdomain="acme", query={"active": "1"})
        deleted = await client.delete(f"/categories/{category_id}", subdomain="acme")

    assert added.status == 201
    assert _json(added)["role"] == "agent"
    assert "newhire@acme.test" in [member["email"] for member in _json(team)]
    assert category.status == 201
    assert _json(toggled)["is_active"] is False
    assert _json(active_only) == []
    assert deleted.status == 204


@pytest.mark.asyncio
async def test_analytics_endpoint(site: Site) -> None:
    async with TestClient(site.app, token=site.tokens["member"]) as client:
        await client.post("/tickets", subdomain="acme", json={"subject": "One"})
        response = await client.get("/analytics", subdomain="acme", query={"range": "7d"})

    payload = _json(response)
    assert payload["range"] == "7d"
    assert payload["total"] == 1
    assert payload["by_status"]["new"] == 1


@pytest.mark.asyncio
async def test_unknown_route_and_wrong_method(site: Site) -> None:
    async with TestClient(site.app) as client:
        missing = await client.get("/nowhere")
        wrong = await client.request("PUT", "/")

    assert missing.status == 404
    assert _json(missing)["error"]["detail"] == {"detail": "route_not_found"}
    assert wrong.status == 405
    assert wrong.header("allow") == "GET"


@pytest.mark.asyncio
async def test_malformed_host_is_a_bad_request(site: Site) -> None:
    async with TestClient(site.app) as client:
        response = await client.get("/", host="acme..example.com")

    assert response.status == 400
    assert _json(response)["error"]["detail"] == {"detail": "invalid_host_header"}


@pytest.mark.asyncio
async def test_declared_body_over_limit_is_rejected(site: Site) -> None:
    app = build_app(site.store, max_request_body_bytes=16)
    async with TestClient(app, token=site.tokens["member"]) as client:
        response = await client.post("/tickets", subdomain="acme", json={"subject": "x" * 64})

    assert response.status == 413


@pytest.mark.asyncio
async def test_store_outage_during_handler_is_temporary(site: Site, monkeypatch: pytest.MonkeyPatch) -> None:
    async def unavailable(*args: Any, **kwargs: Any) -> None:
        raise TransientError("database unreachable")

    monkeypatch.setattr(site.app.tickets, "list_tickets", unavailable)
    async with TestClient(site.app, token=site.tokens["member"]) as client:
        response = await client.get("/tickets", subdomain="acme")

    assert response.status == 503
    assert response.header("retry-after") == "1"


@pytest.mark.asyncio
async def test_custom_routes_and_url_building() -> None:
    app = build_app()

    @app.get("/healthz", name="health")
    async def health() -> str:
        return "ok"

    @app.post("/boom")
    async def boom() -> None:
        raise HTTPError(Status.UNPROCESSABLE_ENTITY, {"detail": "boom"})

    async with TestClient(app) as client:
        healthy = await client.get("/healthz")
        failed = await client.post("/boom")

    assert healthy.body == b"ok"
    assert healthy.header("content-type") == "text/plain; charset=utf-8"
    assert failed.status == 422
    assert app.url_path_for("ticket", organization_id="org_1", ticket_id="t1") == "/org/org_1/tickets/t1"


@pytest.mark.asyncio
async def test_unexpected_errors_propagate() -> None:
    app = build_app()

    @app.get("/explode")
    async def explode() -> None:
        raise RuntimeError("kaboom")

    with pytest.raises(RuntimeError, match="kaboom"):
        await app.dispatch("GET", "/explode", host="example.com")


@pytest.mark.asyncio
async def test_lifecycle_hooks_run(site: Site) -> None:
    calls: list[str] = []
    site.app.on_startup(lambda: calls.append("start"))

    @site.app.on_shutdown
    async def stop() -> None:
        calls.append("stop")

    async with TestClient(site.app):
        assert calls == ["start"]
    assert calls == ["start", "stop"]


@pytest.mark.asyncio
async def test_asgi_http_round_trip(site: Site) -> None:
    messages: list[dict[str, Any]] = []
    body = json.dumps({"subject": "Via ASGI"}).encode()
    incoming = [
        {"type": "http.request", "body": body[:5], "more_body": True},
        {"type": "http.request", "body": body[5:], "more_body": False},
    ]

    async def receive() -> dict[str, Any]:
        return incoming.pop(0)

    async def send(message: dict[str, Any]) -> None:
        messages.append(message)

    scope = {
        "type": "http",
        "method": "POST",
        "path": "/tickets",
        "query_string": b"",
        "headers": [
            (b"host", b"acme.example.com"),
            (b"authorization", f"Bearer {site.tokens['member']}".encode()),
            (b"content-type", b"application/json"),
        ],
    }
    await site.app(scope, receive, send)

    assert messages[0]["type"] == "http.response.start"
    assert messages[0]["status"] == 201
    assert (b"x-organization-id", b"org_1") in messages[0]["headers"]
    assert json.loads(messages[1]["body"])["subject"] == "Via ASGI"


@pytest.mark.asyncio
async def test_asgi_streamed_body_over_limit(site: Site) -> None:
    app = build_app(site.store, max_request_body_bytes=8)
    messages: list[dict[str, Any]] = []
    incoming = [{"type": "http.request", "body": b'{"subject": "far too long"}', "more_body": False}]

    async def receive() -> dict[str, Any]:
        return incoming.pop(0)

    async def send(message: dict[str, Any]) -> None:
        messages.append(message)

    scope = {
        "type": "http",
        "method": "POST",
        "path": "/tickets",
        "headers": [(b"host", b"acme.example.com"), (b"authorization", f"Bearer {site.tokens['member']}".encode())],
    }
    await app(scope, receive, send)

    assert messages[0]["status"] == 413


@pytest.mark.asyncio
async def test_asgi_requires_host_header(site: Site) -> None:
    messages: list[dict[str, Any]] = []

    async def receive() -> dict[str, Any]:
        return {"type": "http.request", "body": b"", "more_body": False}

    async def send(message: dict[str, Any]) -> None:
        messages.append(message)

    await site.app({"type": "http", "method": "GET", "path": "/", "headers": []}, receive, send)

    assert messages[0]["status"] == 400
    assert json.loads(messages[1]["body"])["error"]["detail"] == {"detail": "missing_host_header"}


@pytest.mark.asyncio
async def test_asgi_lifespan(site: Site) -> None:
    calls: list[str] = []
    site.app.on_startup(lambda: calls.append("start"))
    site.app.on_shutdown(lambda: calls.append("stop"))
    incoming = [{"type": "lifespan.startup"}, {"type": "lifespan.shutdown"}]
    sent: list[dict[str, Any]] = []

    async def receive() -> dict[str, Any]:
        return incoming.pop(0)

    async def send(message: dict[str, Any]) -> None:
        sent.append(message)

    await site.app({"type": "lifespan"}, receive, send)

    assert [message["type"] for message in sent] == ["lifespan.startup.complete", "lifespan.shutdown.complete"]
    assert calls == ["start", "stop"]


@pytest.mark.asyncio
async def test_asgi_rejects_websockets(site: Site) -> None:
    async def receive() -> dict[str, Any]:
        return {}

    async def send(message: dict[str, Any]) -> None:
        return None

    with pytest.raises(RuntimeError):
        await site.app({"type": "websocket"}, receive, send)


@pytest.mark.asyncio
async def test_allowed_domain_endpoints(site: Site) -> None:
    async with TestClient(site.app, token=site.tokens["admin"]) as client:
        added = await client.post("/domains", subdomain="acme", json={"domain": "acme.test"})
        duplicate = await client.post("/domains", subdomain="acme", json={"domain": "ACME.test"})
        listed = await client.get("/domains", subdomain="acme")
        removed = await client.delete(f"/domains/{_json(added)['id']}", subdomain="acme")
        after = await client.get("/domains", subdomain="acme")
    async with TestClient(site.app, token=site.tokens["agent"]) as client:
        denied = await client.post("/domains", subdomain="acme", json={"domain": "globex.test"})

    assert added.status == 201
    assert _json(added)["domain"] == "acme.test"
    assert duplicate.status == 400
    assert [row["domain"] for row in _json(listed)] == ["acme.test"]
    assert removed.status == 204
    assert _json(after) == []
    assert denied.status == 303
    assert denied.header("location") == "/dashboard"
