"""Organization settings, public portal data and the caller's memberships."""

from __future__ import annotations

from typing import TYPE_CHECKING

import msgspec
import rure

from ..exceptions import ConflictError, NotFoundError, ValidationError
from ..models import Branding, Membership, Organization, OrganizationDomain, OrganizationProfile, Role
from ..orm import Repository
from ..rbac import Capability, MembershipAuthorizer
from ..tenancy import OrganizationContext
from .onboarding import normalize_domain

if TYPE_CHECKING:
    from ..authentication import Principal
    from ..store import DataStore
    from ..tenancy import TenantResolver

_COLOR_PATTERN = rure.compile(r"^#[0-9a-fA-F]{6}$")
MAX_NAME_LENGTH = 100


class OrganizationSettingsUpdate(msgspec.Struct, frozen=True, omit_defaults=True):
    """Partial update of an organization's settings.  The subdomain is not editable."""

    name: str | None = None
    description: str | None = None
    welcome_message: str | None = None
    primary_color: str | None = None
    secondary_color: str | None = None
    logo_url: str | None = None


class PortalView(msgspec.Struct, frozen=True):
    """What anyone visiting an organization's subdomain may see."""

    id: str
    name: str
    subdomain: str
    description: str
    welcome_message: str
    branding: Branding
    logo_url: str | None = None


class DomainAdd(msgspec.Struct, frozen=True):
    domain: str


class MembershipSummary(msgspec.Struct, frozen=True):
    organization: OrganizationContext
    role: Role


def validate_color(field: str, value: str) -> str:
    if not _COLOR_PATTERN.is_match(value):
        raise ValidationError(field, "Colors must be hex values like #0066cc")
    return value.lower()


class OrganizationService:
    def __init__(
        self,
        store: "DataStore",
        authorizer: MembershipAuthorizer,
        *,
        resolver: "TenantResolver | None" = None,
    ) -> None:
        self.authorizer = authorizer
        self.resolver = resolver
        self._organizations = Repository(store, Organization)
        self._memberships = Repository(store, Membership)
        self._domains = Repository(store, OrganizationDomain)

    async def get(self, organization_id: str) -> Organization:
        organization = await self._organizations.get(id=organization_id)
        if organization is None:
            raise NotFoundError("organization", organization_id)
        return organization

    async def context(self, organization_id: str) -> OrganizationContext:
        return OrganizationContext.from_organization(await self.get(organization_id))

    async def portal(self, organization_id: str) -> PortalView:
        organization = await self.get(organization_id)
        return PortalView(
            id=organization.id,
            name=organization.name,
            subdomain=organization.subdomain,
            description=organization.profile.description,
            welcome_message=organization.profile.welcome_message,
            branding=organization.profile.branding,
            logo_url=organization.logo_url,
        )

    async def settings(self, principal: "Principal | None", organization_id: str) -> Organization:
        await self.authorizer.require(principal, organization_id, Capability.VIEW_ORGANIZATION)
        return await self.get(organization_id)

    async def update_settings(
        self,
        principal: "Principal | None",
        organization_id: str,
        payload: OrganizationSettingsUpdate,
    ) -> Organization:
        await self.authorizer.require(principal, organization_id, Capability.MANAGE_SETTINGS)
        organization = await self.get(organization_id)
        values: dict[str, object] = {}
        if payload.name is not None:
            name = payload.name.strip()
            if not name:
                raise ValidationError("name", "Organization name is required")
            if len(name) > MAX_NAME_LENGTH:
                raise ValidationError("name", f"Organization name must be at most {MAX_NAME_LENGTH} characters")
            values["name"] = name
        profile = organization.profile
        branding = profile.branding
        if payload.primary_color is not None:
            branding = msgspec.structs.replace(
                branding, primary_color=validate_color("primary_color", payload.primary_color)
            )
        if payload.secondary_color is not None:
            branding = msgspec.structs.replace(
                branding, secondary_color=validate_color("secondary_color", payload.secondary_color)
            )
        updated_profile = OrganizationProfile(
            description=profile.description if payload.description is None else payload.description.strip(),
            welcome_message=(
                profile.welcome_message if payload.welcome_message is None else payload.welcome_message.strip()
            ),
            branding=branding,
        )
        if updated_profile != profile:
            values["profile"] = updated_profile
        if payload.logo_url is not None:
            values["logo_url"] = payload.logo_url.strip() or None
        if not values:
            return organization
        updated = await self._organizations.update(organization_id, **values)
        if updated is None:
            raise NotFoundError("organization", organization_id)
        if self.resolver is not None:
            self.resolver.invalidate(organization.subdomain)
        return updated

    async def list_domains(self, principal: "Principal | None", organization_id: str) -> list[OrganizationDomain]:
        await self.authorizer.require(principal, organization_id, Capability.VIEW_ORGANIZATION)
        return await self._domains.list(organization_id=organization_id, order_by=["domain"])

    async def add_domain(
        self,
        principal: "Principal | None",
        organization_id: str,
        payload: DomainAdd,
    ) -> OrganizationDomain:
        """Allow members with addresses at ``payload.domain`` to be added to the team."""

        await self.authorizer.require(principal, organization_id, Capability.MANAGE_SETTINGS)
        domain = normalize_domain(payload.domain)
        try:
            return await self._domains.insert(OrganizationDomain(organization_id=organization_id, domain=domain))
        except ConflictError as exc:
            raise ValidationError("domains", f"'{domain}' is already allowed") from exc

    async def remove_domain(self, principal: "Principal | None", organization_id: str, domain_id: str) -> None:
        await self.authorizer.require(principal, organization_id, Capability.MANAGE_SETTINGS)
        if not await self._domains.delete(id=domain_id, organization_id=organization_id):
            raise NotFoundError("domain", domain_id)

    async def memberships_for(self, principal: "Principal") -> list[MembershipSummary]:
        """Organizations the caller belongs to, most privileged first."""

        memberships = await self._memberships.list(user_id=principal.user_id)
        if not memberships:
            return []
        organizations = await self._organizations.list(
            id=tuple(membership.organization_id for membership in memberships)
        )
        by_id = {organization.id: organization for organization in organizations}
        summaries = [
            MembershipSummary(
                organization=OrganizationContext.from_organization(by_id[membership.organization_id]),
                role=membership.role,
            )
            for membership in memberships
            if membership.organization_id in by_id
        ]
        order = [Role.OWNER, Role.ADMIN, Role.AGENT, Role.MEMBER]
        summaries.sort(key=lambda summary: (order.index(summary.role), summary.organization.name.lower()))
        return summaries


__all__ = [
    "DomainAdd",
    "MembershipSummary",
    "OrganizationService",
    "OrganizationSettingsUpdate",
    "PortalView",
    "validate_color",
]
