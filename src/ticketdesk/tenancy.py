"""Tenant resolution primitives.

A request host is mapped to an organization in three steps: the hostname is
parsed into a subdomain label, the label is filtered against the reserved set,
and the surviving candidate is looked up by exact subdomain.
"""

from __future__ import annotations

import asyncio
import ipaddress
import time
from enum import Enum
from typing import TYPE_CHECKING, Callable

import msgspec
import rure
from msgspec import Struct

from .exceptions import TenantResolutionError, TransientError
from .models import Organization
from .orm import Repository

if TYPE_CHECKING:
    from .config import AppConfig
    from .observability import Observability, Observation
    from .store import DataStore

_DNS_LABEL = "[a-z0-9-]{1,63}"
_PORT = "(?::(?P<port>[0-9]{1,5}))?"
_DNS_HOST = rure.compile(f"^(?P<hostname>{_DNS_LABEL}(?:\\.{_DNS_LABEL})*)\\.?{_PORT}$")
_IPV6_HOST = rure.compile(f"^\\[(?P<hostname>[0-9a-f:.]+)\\]{_PORT}$")
MAX_HOSTNAME_LENGTH = 253


class OrganizationContext(Struct, frozen=True):
    """The organization a request was routed to, as handlers see it."""

    id: str
    name: str
    subdomain: str

    @classmethod
    def from_organization(cls, organization: Organization) -> "OrganizationContext":
        return cls(id=organization.id, name=organization.name, subdomain=organization.subdomain)


class LookupOutcome(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"


class TenantLookup(Struct, frozen=True):
    outcome: LookupOutcome
    label: str
    organization: OrganizationContext | None = None

    @property
    def found(self) -> bool:
        return self.outcome is LookupOutcome.FOUND


def normalize_host(raw: str) -> str:
    """Validate a ``Host`` header and return it lowercased, port included.

    Accepted are dot-separated ASCII labels of letters, digits and hyphens,
    with an optional trailing dot that is dropped, and bracketed IPv6
    literals.  Either may carry a port between 1 and 65535.  Anything else
    raises :class:`~ticketdesk.exceptions.TenantResolutionError`.
    """

    lowered = raw.lower()
    parsed = (_DNS_HOST.match(lowered) or _IPV6_HOST.match(lowered)) if raw else None
    if parsed is None:
        raise TenantResolutionError(f"malformed Host header {raw!r}")
    hostname = parsed.group("hostname")
    if lowered.startswith("["):
        try:
            ipaddress.IPv6Address(hostname)
        except ValueError as exc:
            raise TenantResolutionError(f"Host header names an invalid IPv6 address {hostname!r}") from exc
        hostname = f"[{hostname}]"
    elif len(hostname) > MAX_HOSTNAME_LENGTH:
        raise TenantResolutionError("Host header names a hostname that is too long")
    port = parsed.group("port")
    if port is None:
        return hostname
    if not 0 < int(port) <= 65535:
        raise TenantResolutionError(f"Host header port {port} is out of range")
    return f"{hostname}:{port}"


def _strip(hostname: str) -> str:
    lowered = hostname.lower()
    if lowered.startswith("["):
        return lowered.partition("]")[0] + "]"
    bare = lowered.partition(":")[0].rstrip(".")
    if bare.startswith("www."):
        bare = bare[4:]
    return bare


def get_subdomain(hostname: str, config: "AppConfig") -> str | None:
    """Return the lowercase leftmost label of ``hostname`` or ``None``.

    ``acme.example.com`` gives ``acme`` for the root domain ``example.com``;
    ``acme.localhost:3000`` gives ``acme`` on a development host.  The bare root
    domain, ``www.<root>`` and foreign hosts give ``None``.
    """

    bare = _strip(hostname)
    if not bare:
        return None
    parts = bare.split(".")
    root_parts = config.root_domain.lower().split(".")
    if len(parts) >= max(3, len(root_parts) + 1) and parts[-len(root_parts) :] == root_parts:
        return parts[0] or None
    if len(parts) >= 2 and parts[-1] in config.development_hosts and parts[0] not in config.development_hosts:
        return parts[0] or None
    return None


def is_root_domain(hostname: str, config: "AppConfig") -> bool:
    bare = _strip(hostname)
    if bare == config.root_domain.lower():
        return True
    return bare.split(".")[-1] in config.development_hosts and get_subdomain(hostname, config) is None


def organization_from_subdomain(label: str | None, config: "AppConfig") -> str | None:
    """Drop reserved labels and the platform's own alias; otherwise return ``label``."""

    if not label:
        return None
    lowered = label.lower()
    if lowered in {name.lower() for name in config.reserved_subdomains}:
        return None
    if lowered == config.platform_alias:
        return None
    return label


class TenantResolver:
    """Look organizations up by exact subdomain, with a short-lived cache.

    ``Found`` and ``NotFound`` outcomes are cached per label for
    ``config.tenant_cache_ttl`` seconds.  Store failures and timeouts raise
    :class:`~ticketdesk.exceptions.TransientError` and are never cached.
    """

    def __init__(
        self,
        store: "DataStore",
        config: "AppConfig",
        *,
        observability: "Observability | None" = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.observability = observability
        self._organizations = Repository(store, Organization)
        self._clock = clock
        self._cache: dict[str, tuple[float, TenantLookup]] = {}

    def _cached(self, label: str) -> TenantLookup | None:
        entry = self._cache.get(label)
        if entry is None:
            return None
        expires_at, lookup = entry
        if expires_at <= self._clock():
            del self._cache[label]
            return None
        return lookup

    def _remember(self, lookup: TenantLookup) -> None:
        """Cache ``lookup``, keeping at most ``config.tenant_cache_size`` labels.

        Expired entries are swept first; if the cache is still full the
        oldest entries are evicted.
        """

        ttl, capacity = self.config.tenant_cache_ttl, self.config.tenant_cache_size
        if ttl <= 0 or capacity <= 0:
            return
        now = self._clock()
        self._cache.pop(lookup.label, None)
        if len(self._cache) >= capacity:
            for label in [label for label, (expires_at, _) in self._cache.items() if expires_at <= now]:
                del self._cache[label]
        while len(self._cache) >= capacity:
            del self._cache[next(iter(self._cache))]
        self._cache[lookup.label] = (now + ttl, lookup)

    def _failed(self, observation: "Observation | None", error: TransientError) -> None:
        if self.observability is not None:
            self.observability.on_tenant_resolve_error(observation, error)

    async def _fetch(self, label: str) -> Organization | None:
        try:
            return await asyncio.wait_for(self._organizations.get(subdomain=label), timeout=self.config.lookup_timeout)
        except asyncio.TimeoutError as exc:
            raise TransientError(f"organization lookup for {label!r} timed out") from exc
        except msgspec.ValidationError as exc:
            raise TransientError(f"organization row for {label!r} is malformed: {exc}") from exc

    async def resolve(self, label: str) -> TenantLookup:
        lookup = self._cached(label)
        if lookup is not None:
            return lookup
        observation = self.observability.on_tenant_resolve_start(label) if self.observability is not None else None
        try:
            organization = await self._fetch(label)
        except TransientError as exc:
            self._failed(observation, exc)
            raise
        if organization is None:
            lookup = TenantLookup(LookupOutcome.NOT_FOUND, label)
        else:
            lookup = TenantLookup(LookupOutcome.FOUND, label, OrganizationContext.from_organization(organization))
        if self.observability is not None:
            self.observability.on_tenant_resolve_success(observation, found=lookup.found)
        self._remember(lookup)
        return lookup

    def invalidate(self, label: str) -> None:
        self._cache.pop(label, None)

    def clear(self) -> None:
        self._cache.clear()


__all__ = [
    "LookupOutcome",
    "OrganizationContext",
    "TenantLookup",
    "TenantResolver",
    "get_subdomain",
    "is_root_domain",
    "normalize_host",
    "organization_from_subdomain",
]
