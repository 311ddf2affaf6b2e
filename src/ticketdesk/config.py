"""Application configuration objects."""

from __future__ import annotations

import os
from typing import Mapping

from msgspec import Struct

from .observability import ObservabilityConfig
from .rest_store import RestStoreConfig

DEFAULT_RESERVED_SUBDOMAINS: tuple[str, ...] = (
    "www",
    "api",
    "admin",
    "app",
    "mail",
    "ftp",
    "blog",
    "support",
    "help",
    "docs",
    "status",
    "staging",
    "dev",
)

ENV_PREFIX = "TICKETDESK_"


class AppConfig(Struct, frozen=True):
    """Typed configuration for a :class:`~ticketdesk.application.TicketdeskApp` instance.

    ``root_domain`` and ``reserved_subdomains`` drive tenant resolution;
    ``base_alias`` names the platform itself (``example`` for ``example.com``)
    and is never treated as an organization.
    """

    root_domain: str = "example.com"
    base_alias: str | None = None
    reserved_subdomains: tuple[str, ...] = DEFAULT_RESERVED_SUBDOMAINS
    development_hosts: tuple[str, ...] = ("localhost",)
    organization_prefix: str = "/org"
    not_found_route: str = "/org/not-found"
    error_route: str = "/org/error"
    signin_route: str = "/auth/signin"
    forbidden_route: str = "/dashboard"
    tenant_cache_ttl: float = 30.0
    tenant_cache_size: int = 10_000
    lookup_timeout: float = 2.0
    max_request_body_bytes: int | None = 1_048_576
    observability: ObservabilityConfig = ObservabilityConfig()
    rest_store: RestStoreConfig | None = None

    @property
    def platform_alias(self) -> str:
        if self.base_alias:
            return self.base_alias.lower()
        return self.root_domain.split(".", 1)[0].lower()

    def organization_host(self, subdomain: str) -> str:
        """Return the public hostname for an organization subdomain."""

        return f"{subdomain}.{self.root_domain}"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AppConfig":
        """Build a configuration from ``TICKETDESK_*`` environment variables."""

        env = os.environ if environ is None else environ

        def read(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            if value is None or not value.strip():
                return None
            return value.strip()

        def read_list(name: str) -> tuple[str, ...] | None:
            value = read(name)
            if value is None:
                return None
            return tuple(item.strip().lower() for item in value.split(",") if item.strip())

        values: dict[str, object] = {}
        for name in (
            "root_domain",
            "base_alias",
            "organization_prefix",
            "not_found_route",
            "error_route",
            "signin_route",
            "forbidden_route",
        ):
            value = read(name.upper())
            if value is not None:
                values[name] = value.lower() if name in {"root_domain", "base_alias"} else value
        for name in ("reserved_subdomains", "development_hosts"):
            items = read_list(name.upper())
            if items is not None:
                values[name] = items
        for name in ("tenant_cache_ttl", "lookup_timeout"):
            value = read(name.upper())
            if value is not None:
                values[name] = float(value)
        for name in ("tenant_cache_size", "max_request_body_bytes"):
            value = read(name.upper())
            if value is not None:
                values[name] = int(value)
        rest_url = read("REST_URL")
        rest_key = read("REST_API_KEY")
        if rest_url and rest_key:
            values["rest_store"] = RestStoreConfig(url=rest_url, api_key=rest_key)
        if read("OBSERVABILITY_DISABLED") in {"1", "true", "yes"}:
            values["observability"] = ObservabilityConfig(enabled=False)
        return cls(**values)


__all__ = ["AppConfig", "DEFAULT_RESERVED_SUBDOMAINS", "ENV_PREFIX"]
