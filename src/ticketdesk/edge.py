"""Edge request routing.

Every request passes through :class:`EdgeRouter` before it reaches a handler.
The router walks a small state machine::

    START -> PARSED_HOST -> CANDIDATE -> RESOLVED | NOT_FOUND
                  |              |
                  +--------------+-> PASS_THROUGH
    (any lookup failure) -> ERROR

Tenant requests are rewritten to ``<organization_prefix>/<organization id>/<path>``
and carry the organization on ``request.organization`` and in
``x-organization-*`` response headers.  Requests for unknown organizations are
rewritten to the not-found route and lookup failures to the error route.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING

from msgspec import Struct

from .exceptions import TransientError
from .tenancy import OrganizationContext, TenantResolver, get_subdomain, normalize_host, organization_from_subdomain

if TYPE_CHECKING:
    from .config import AppConfig
    from .middleware import Handler
    from .observability import Observability
    from .requests import Request
    from .responses import Response

logger = logging.getLogger(__name__)

ORGANIZATION_ID_HEADER = "x-organization-id"
ORGANIZATION_NAME_HEADER = "x-organization-name"
ORGANIZATION_SUBDOMAIN_HEADER = "x-organization-subdomain"


class RoutingState(str, Enum):
    START = "start"
    PARSED_HOST = "parsed_host"
    CANDIDATE = "candidate"
    RESOLVED = "resolved"
    NOT_FOUND = "not_found"
    PASS_THROUGH = "pass_through"
    ERROR = "error"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


TERMINAL_STATES = frozenset({RoutingState.RESOLVED, RoutingState.NOT_FOUND, RoutingState.PASS_THROUGH, RoutingState.ERROR})


class RoutingDecision(Struct, frozen=True):
    state: RoutingState
    path: str
    original_path: str
    label: str | None = None
    organization: OrganizationContext | None = None
    trail: tuple[RoutingState, ...] = ()

    @property
    def rewritten(self) -> bool:
        return self.path != self.original_path

    def headers(self) -> tuple[tuple[str, str], ...]:
        organization = self.organization
        if self.state is not RoutingState.RESOLVED or organization is None:
            return ()
        return (
            (ORGANIZATION_ID_HEADER, organization.id),
            (ORGANIZATION_NAME_HEADER, _header_safe(organization.name)),
            (ORGANIZATION_SUBDOMAIN_HEADER, organization.subdomain),
        )


def _header_safe(value: str) -> str:
    # Header values go out as latin-1; anything else is replaced.
    return value.encode("latin-1", "replace").decode("latin-1").replace("\r", " ").replace("\n", " ")


def organization_path(config: "AppConfig", organization_id: str, path: str) -> str:
    return f"{config.organization_prefix}/{organization_id}/{path.lstrip('/')}"


class EdgeRouter:
    """Map (host, path) pairs to routing decisions."""

    def __init__(
        self,
        resolver: TenantResolver,
        config: "AppConfig",
        *,
        observability: "Observability | None" = None,
    ) -> None:
        self.resolver = resolver
        self.config = config
        self.observability = observability

    async def route(self, host: str, path: str) -> RoutingDecision:
        """Decide where a request for ``host`` and ``path`` goes.

        Raises :class:`~ticketdesk.exceptions.TenantResolutionError` only for
        host headers that cannot be parsed at all.
        """

        trail = [RoutingState.START]
        hostname = normalize_host(host)
        label = get_subdomain(hostname, self.config)
        trail.append(RoutingState.PARSED_HOST)
        if label is None:
            return self._finish(host, RoutingState.PASS_THROUGH, path, path, trail=trail)
        candidate = organization_from_subdomain(label, self.config)
        if candidate is None:
            return self._finish(host, RoutingState.PASS_THROUGH, path, path, label=label, trail=trail)
        trail.append(RoutingState.CANDIDATE)
        try:
            lookup = await self.resolver.resolve(candidate)
        except TransientError as exc:
            logger.warning("organization lookup for %r failed: %s", candidate, exc)
            return self._finish(host, RoutingState.ERROR, self.config.error_route, path, label=candidate, trail=trail)
        if lookup.organization is None:
            return self._finish(
                host, RoutingState.NOT_FOUND, self.config.not_found_route, path, label=candidate, trail=trail
            )
        return self._finish(
            host,
            RoutingState.RESOLVED,
            organization_path(self.config, lookup.organization.id, path),
            path,
            label=candidate,
            organization=lookup.organization,
            trail=trail,
        )

    def _finish(
        self,
        host: str,
        state: RoutingState,
        path: str,
        original_path: str,
        *,
        label: str | None = None,
        organization: OrganizationContext | None = None,
        trail: list[RoutingState],
    ) -> RoutingDecision:
        decision = RoutingDecision(
            state=state,
            path=path,
            original_path=original_path,
            label=label,
            organization=organization,
            trail=(*trail, state),
        )
        if self.observability is not None:
            self.observability.on_tenant_route(host, decision)
        return decision

    async def middleware(self, request: "Request", handler: "Handler") -> "Response":
        """Rewrite ``request`` according to its routing decision."""

        decision = await self.route(request.host or "", request.path)
        request.rewrite(decision.path, decision.organization)
        response = await handler(request)
        extra = decision.headers()
        if not extra:
            return response
        return response.with_headers(extra)


__all__ = [
    "EdgeRouter",
    "ORGANIZATION_ID_HEADER",
    "ORGANIZATION_NAME_HEADER",
    "ORGANIZATION_SUBDOMAIN_HEADER",
    "RoutingDecision",
    "RoutingState",
    "TERMINAL_STATES",
    "organization_path",
]
