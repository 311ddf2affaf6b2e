from __future__ import annotations

import asyncio
import json

import pytest

import ticketdesk.cli as cli
import ticketdesk.server as server
from tests.support import build_app, seed_organization
from ticketdesk.server import ServerConfig
from ticketdesk.store import MemoryStore


@pytest.fixture
def store(monkeypatch: pytest.MonkeyPatch) -> MemoryStore:
    store = MemoryStore()
    asyncio.run(seed_organization(store, name="Acme Support", subdomain="acme", organization_id="org_1"))
    monkeypatch.setattr(cli, "_build_app", lambda: build_app(store))
    return store


def test_resolve_prints_routing_decision(store: MemoryStore, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["resolve", "acme.example.com:443", "/tickets"]) == 0

    output = json.loads(capsys.readouterr().out)
    assert output["state"] == "resolved"
    assert output["path"] == "/org/org_1/tickets"
    assert output["label"] == "acme"
    assert output["organization"] == {"id": "org_1", "name": "Acme Support", "subdomain": "acme"}
    assert output["headers"]["x-organization-id"] == "org_1"


def test_resolve_unknown_and_platform_hosts(store: MemoryStore, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["resolve", "nobody.example.com"]) == 0
    missing = json.loads(capsys.readouterr().out)
    assert missing["state"] == "not_found"
    assert missing["path"] == "/org/not-found"
    assert missing["headers"] == {}

    assert cli.main(["resolve", "www.example.com", "/pricing"]) == 0
    passthrough = json.loads(capsys.readouterr().out)
    assert passthrough["state"] == "pass_through"
    assert passthrough["path"] == "/pricing"


def test_resolve_rejects_malformed_hosts(store: MemoryStore, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["resolve", "bad host!"]) == 2
    assert "invalid host" in capsys.readouterr().out


def test_check_subdomain_exit_codes(store: MemoryStore, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["check-subdomain", "Globex"]) == 0
    assert json.loads(capsys.readouterr().out) == {"subdomain": "globex", "available": True}

    assert cli.main(["check-subdomain", "acme"]) == 1
    assert json.loads(capsys.readouterr().out)["reason"] == "taken"

    assert cli.main(["check-subdomain", "www"]) == 1
    assert json.loads(capsys.readouterr().out)["reason"] == "reserved"


def test_serve_applies_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}
    app = build_app()
    monkeypatch.setattr(cli, "_build_app", lambda: app)

    def fake_run(target, config: ServerConfig) -> None:
        captured["app"] = target
        captured["config"] = config

    monkeypatch.setattr(server, "run", fake_run)
    monkeypatch.setenv("TICKETDESK_PORT", "9000")

    assert cli.main(["serve", "--host", "127.0.0.1", "--profile", "development"]) == 0
    config = captured["config"]
    assert captured["app"] is app
    assert isinstance(config, ServerConfig)
    assert config.host == "127.0.0.1"
    assert config.port == 9000
    assert config.profile == "development"
    assert config.workers == 1


def test_subcommand_is_required() -> None:
    with pytest.raises(SystemExit):
        cli.main([])
