"""The organization onboarding wizard.

A signed-in user walks through five steps: organization details, subdomain,
allowed email domains, welcome message and completion.  Progress is kept in one
:class:`~ticketdesk.models.OnboardingDraft` per user so the wizard survives
page reloads and devices.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

import msgspec
import rure

from ..exceptions import ConflictError, NotFoundError, ValidationError
from ..models import Membership, OnboardingDraft, Organization, OrganizationDomain, OrganizationProfile, Role
from ..orm import Repository
from ..tenancy import organization_from_subdomain

if TYPE_CHECKING:
    from ..authentication import Principal
    from ..config import AppConfig
    from ..store import DataStore

logger = logging.getLogger(__name__)

MIN_SUBDOMAIN_LENGTH = 3
MAX_SUBDOMAIN_LENGTH = 50
MAX_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500
MAX_MESSAGE_LENGTH = 1000
FINAL_STEP = 5

_SUBDOMAIN_PATTERN = rure.compile(r"^[a-z0-9](?:[a-z0-9-]*[a-z0-9])?$")
_DOMAIN_PATTERN = rure.compile(r"^[a-zA-Z0-9][a-zA-Z0-9-]{0,61}[a-zA-Z0-9]\.[a-zA-Z]{2,}$")
_DISALLOWED_SUBDOMAIN_CHARS = re.compile(r"[^a-z0-9-]")
_REPEATED_HYPHENS = re.compile(r"--+")


class OrganizationDetails(msgspec.Struct, frozen=True):
    name: str
    description: str = ""


class SubdomainChoice(msgspec.Struct, frozen=True):
    subdomain: str


class AllowedDomains(msgspec.Struct, frozen=True):
    domains: list[str] = msgspec.field(default_factory=list)


class WelcomeMessage(msgspec.Struct, frozen=True):
    custom_message: str = ""


class SubdomainAvailability(msgspec.Struct, frozen=True, omit_defaults=True):
    subdomain: str
    available: bool
    reason: str | None = None


def format_subdomain(value: str) -> str:
    """Lowercase ``value`` and strip it down to a plausible subdomain.

    ``"Acme Corp!"`` becomes ``"acmecorp"`` and ``"--my--team--"`` becomes
    ``"my-team"``.
    """

    formatted = _DISALLOWED_SUBDOMAIN_CHARS.sub("", value.strip().lower())
    formatted = _REPEATED_HYPHENS.sub("-", formatted)
    return formatted.strip("-")


def subdomain_problem(subdomain: str) -> str | None:
    if len(subdomain) < MIN_SUBDOMAIN_LENGTH:
        return "too_short"
    if len(subdomain) > MAX_SUBDOMAIN_LENGTH:
        return "too_long"
    if not _SUBDOMAIN_PATTERN.is_match(subdomain):
        return "invalid_format"
    return None


def validate_subdomain(subdomain: str) -> str:
    problem = subdomain_problem(subdomain)
    if problem == "too_short":
        raise ValidationError("subdomain", f"Subdomain must be at least {MIN_SUBDOMAIN_LENGTH} characters")
    if problem == "too_long":
        raise ValidationError("subdomain", f"Subdomain must be at most {MAX_SUBDOMAIN_LENGTH} characters")
    if problem is not None:
        raise ValidationError(
            "subdomain",
            "Subdomain may only contain lowercase letters, numbers and inner hyphens",
        )
    return subdomain


def normalize_domain(value: str) -> str:
    domain = value.strip().lower()
    if domain.startswith("@"):
        domain = domain[1:]
    if not _DOMAIN_PATTERN.is_match(domain):
        raise ValidationError("domains", f"'{value}' is not a valid email domain")
    return domain


class OnboardingService:
    def __init__(self, store: "DataStore", config: "AppConfig") -> None:
        self.config = config
        self._drafts = Repository(store, OnboardingDraft)
        self._organizations = Repository(store, Organization)
        self._memberships = Repository(store, Membership)
        self._domains = Repository(store, OrganizationDomain)

    async def draft(self, principal: "Principal") -> OnboardingDraft:
        existing = await self._drafts.get(user_id=principal.user_id)
        return existing or OnboardingDraft(user_id=principal.user_id)

    async def _save(self, principal: "Principal", step: int, **values: object) -> OnboardingDraft:
        current = await self._drafts.get(user_id=principal.user_id)
        if current is None:
            draft = OnboardingDraft(user_id=principal.user_id, current_step=step + 1)
            draft = msgspec.structs.replace(draft, **values)
            try:
                return await self._drafts.insert(draft)
            except ConflictError:
                # Another tab created the draft first.
                current = await self._drafts.get(user_id=principal.user_id)
                if current is None:
                    raise
        updated = await self._drafts.update(
            current.id,
            current_step=max(current.current_step, step + 1),
            **values,
        )
        if updated is None:
            raise NotFoundError("onboarding_draft", principal.user_id)
        return updated

    async def save_details(self, principal: "Principal", payload: OrganizationDetails) -> OnboardingDraft:
        name = payload.name.strip()
        if not name:
            raise ValidationError("name", "Organization name is required")
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError("name", f"Organization name must be at most {MAX_NAME_LENGTH} characters")
        description = payload.description.strip()
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(
                "description", f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters"
            )
        return await self._save(principal, 1, organization_name=name, organization_description=description)

    async def check_availability(self, raw: str) -> SubdomainAvailability:
        subdomain = format_subdomain(raw)
        problem = subdomain_problem(subdomain)
        if problem is not None:
            return SubdomainAvailability(subdomain=subdomain, available=False, reason=problem)
        if organization_from_subdomain(subdomain, self.config) is None:
            return SubdomainAvailability(subdomain=subdomain, available=False, reason="reserved")
        if await self._organizations.get(subdomain=subdomain) is not None:
            return SubdomainAvailability(subdomain=subdomain, available=False, reason="taken")
        return SubdomainAvailability(subdomain=subdomain, available=True)

    async def _require_available(self, raw: str) -> str:
        availability = await self.check_availability(raw)
        if availability.reason in {"too_short", "too_long", "invalid_format"}:
            validate_subdomain(availability.subdomain)
        if availability.reason == "reserved":
            raise ValidationError("subdomain", "This subdomain is reserved")
        if availability.reason == "taken":
            raise ValidationError("subdomain", "This subdomain is already taken")
        return availability.subdomain

    async def save_subdomain(self, principal: "Principal", payload: SubdomainChoice) -> OnboardingDraft:
        subdomain = await self._require_available(payload.subdomain)
        return await self._save(principal, 2, subdomain=subdomain)

    async def save_domains(self, principal: "Principal", payload: AllowedDomains) -> OnboardingDraft:
        domains = tuple(dict.fromkeys(normalize_domain(domain) for domain in payload.domains if domain.strip()))
        return await self._save(principal, 3, allowed_domains=domains)

    async def save_welcome_message(self, principal: "Principal", payload: WelcomeMessage) -> OnboardingDraft:
        message = payload.custom_message.strip()
        if len(message) > MAX_MESSAGE_LENGTH:
            raise ValidationError(
                "custom_message", f"Welcome message must be at most {MAX_MESSAGE_LENGTH} characters"
            )
        return await self._save(principal, 4, custom_message=message)

    async def complete(self, principal: "Principal") -> Organization:
        """Create the organization described by the caller's draft.

        The caller becomes its owner.  Two users racing for the same subdomain
        are separated by the store's unique constraint: the loser gets a
        validation error and keeps the draft.
        """

        draft = await self._drafts.get(user_id=principal.user_id)
        if draft is None or not draft.organization_name:
            raise ValidationError("name", "Organization name is required")
        if not draft.subdomain:
            raise ValidationError("subdomain", "Choose a subdomain first")
        subdomain = await self._require_available(draft.subdomain)
        try:
            organization = await self._organizations.insert(
                Organization(
                    name=draft.organization_name,
                    subdomain=subdomain,
                    profile=OrganizationProfile(
                        description=draft.organization_description,
                        welcome_message=draft.custom_message,
                    ),
                )
            )
        except ConflictError as exc:
            raise ValidationError("subdomain", "This subdomain is no longer available") from exc
        try:
            await self._memberships.insert(
                Membership(organization_id=organization.id, user_id=principal.user_id, role=Role.OWNER)
            )
            for domain in draft.allowed_domains:
                await self._domains.insert(OrganizationDomain(organization_id=organization.id, domain=domain))
        except Exception:
            logger.exception("rolling back organization %s after a failed onboarding", organization.id)
            await self._domains.delete(organization_id=organization.id)
            await self._memberships.delete(organization_id=organization.id)
            await self._organizations.delete(id=organization.id)
            raise
        await self._drafts.delete(user_id=principal.user_id)
        logger.info("organization %s created on subdomain %s", organization.id, subdomain)
        return organization

    async def reset(self, principal: "Principal") -> None:
        await self._drafts.delete(user_id=principal.user_id)


__all__ = [
    "AllowedDomains",
    "FINAL_STEP",
    "OnboardingService",
    "OrganizationDetails",
    "SubdomainAvailability",
    "SubdomainChoice",
    "WelcomeMessage",
    "format_subdomain",
    "normalize_domain",
    "subdomain_problem",
    "validate_subdomain",
]
