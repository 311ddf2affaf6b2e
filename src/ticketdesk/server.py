"""Serve a :class:`~ticketdesk.application.TicketdeskApp` with Granian.

Granian imports its target by name in each worker, so the application is
parked in a module global and handed out by :func:`_current_app_loader`.
Outside the development profiles the server refuses to start without a TLS
certificate and key.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

import msgspec
from granian import Granian

from .application import TicketdeskApp

DEVELOPMENT_PROFILES = frozenset({"development", "dev", "local", "test"})
LOADER_TARGET = "ticketdesk.server:_current_app_loader"

_CURRENT_APP: TicketdeskApp | None = None


def _register_current_app(app: TicketdeskApp) -> None:
    global _CURRENT_APP
    _CURRENT_APP = app


def _clear_current_app() -> None:
    global _CURRENT_APP
    _CURRENT_APP = None


def _current_app_loader() -> TicketdeskApp:
    if _CURRENT_APP is None:
        raise RuntimeError("no ticketdesk application registered for Granian")
    return _CURRENT_APP


class ServerConfig(msgspec.Struct, frozen=True):
    host: str = "0.0.0.0"
    port: int = 8443
    interface: str = "asgi"
    workers: int = 1
    certificate_path: str | Path | None = Path("config/tls/server.crt")
    private_key_path: str | Path | None = Path("config/tls/server.key")
    profile: str = "production"

    @property
    def is_development(self) -> bool:
        return self.profile.lower() in DEVELOPMENT_PROFILES

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ServerConfig":
        """Read ``TICKETDESK_HOST``, ``TICKETDESK_PORT``, ``TICKETDESK_WORKERS`` and ``TICKETDESK_PROFILE``."""

        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name, convert in (("host", str), ("port", int), ("workers", int), ("profile", str)):
            raw = env.get(f"TICKETDESK_{name.upper()}")
            if raw:
                values[name] = convert(raw)
        return cls(**values)


def _tls_assets(cfg: ServerConfig) -> tuple[Path, Path] | None:
    """Return the certificate and key when both exist.

    Raises :class:`RuntimeError` naming what is missing, unless the profile is
    a development one, in which case the server simply runs without TLS.
    """

    assets = {"certificate_path": cfg.certificate_path, "private_key_path": cfg.private_key_path}
    problems: list[str] = []
    for label, raw in assets.items():
        if raw is None:
            problems.append(label)
        elif not Path(raw).exists():
            problems.append(f"{label} ({raw})")
    if not problems:
        return Path(cfg.certificate_path), Path(cfg.private_key_path)  # type: ignore[arg-type]
    if cfg.is_development:
        return None
    raise RuntimeError(f"TLS assets required for {cfg.profile!r} profile: missing {', '.join(sorted(problems))}")


def _granian_kwargs(cfg: ServerConfig) -> Mapping[str, Any]:
    kwargs: dict[str, Any] = {
        "address": cfg.host,
        "port": cfg.port,
        "interface": cfg.interface,
        "workers": cfg.workers,
    }
    tls = _tls_assets(cfg)
    if tls is not None:
        kwargs["ssl_cert"], kwargs["ssl_key"] = tls
    return kwargs


def create_server(app: TicketdeskApp, config: ServerConfig | None = None) -> Granian:
    cfg = config or ServerConfig()
    kwargs = _granian_kwargs(cfg)
    _register_current_app(app)
    return Granian(LOADER_TARGET, **kwargs)


def run(app: TicketdeskApp, config: ServerConfig | None = None) -> None:
    server = create_server(app, config)
    try:
        server.serve(target_loader=_current_app_loader, wrap_loader=False)
    finally:
        _clear_current_app()


__all__ = ["ServerConfig", "create_server", "run"]
