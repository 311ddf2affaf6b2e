"""Membership roles and the capabilities they grant inside an organization."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from .exceptions import AuthorizationError
from .models import Membership, Role
from .orm import Repository

if TYPE_CHECKING:
    from .authentication import Principal
    from .store import DataStore

_RANK: dict[Role, int] = {
    Role.MEMBER: 1,
    Role.AGENT: 2,
    Role.ADMIN: 3,
    Role.OWNER: 4,
}


class Capability(str, Enum):
    MANAGE_SETTINGS = "manage_settings"
    ASSIGN_TICKETS = "assign_tickets"
    MANAGE_TEAM = "manage_team"
    MANAGE_CATEGORIES = "manage_categories"
    EDIT_TICKETS = "edit_tickets"
    ADD_INTERNAL_NOTES = "add_internal_notes"
    VIEW_INTERNAL_NOTES = "view_internal_notes"
    RECEIVE_ASSIGNMENTS = "receive_assignments"
    RESPOND = "respond"
    VIEW_TICKETS = "view_tickets"
    VIEW_ANALYTICS = "view_analytics"
    VIEW_ORGANIZATION = "view_organization"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


CAPABILITY_THRESHOLDS: dict[Capability, Role] = {
    Capability.MANAGE_SETTINGS: Role.ADMIN,
    Capability.ASSIGN_TICKETS: Role.ADMIN,
    Capability.MANAGE_TEAM: Role.ADMIN,
    Capability.MANAGE_CATEGORIES: Role.ADMIN,
    Capability.EDIT_TICKETS: Role.AGENT,
    Capability.ADD_INTERNAL_NOTES: Role.AGENT,
    Capability.VIEW_INTERNAL_NOTES: Role.AGENT,
    Capability.RECEIVE_ASSIGNMENTS: Role.AGENT,
    Capability.RESPOND: Role.MEMBER,
    Capability.VIEW_TICKETS: Role.MEMBER,
    Capability.VIEW_ANALYTICS: Role.MEMBER,
    Capability.VIEW_ORGANIZATION: Role.MEMBER,
}


def has_at_least(role: Role | None, required: Role) -> bool:
    """Return whether ``role`` is ``required`` or more privileged.

    ``None`` stands for a caller who is not a member and never qualifies.
    """

    if role is None:
        return False
    return _RANK[Role(role)] >= _RANK[required]


def allows(role: Role | None, capability: Capability) -> bool:
    return has_at_least(role, CAPABILITY_THRESHOLDS[capability])


def can_manage_settings(role: Role | None) -> bool:
    return allows(role, Capability.MANAGE_SETTINGS)


def can_assign_tickets(role: Role | None) -> bool:
    return allows(role, Capability.ASSIGN_TICKETS)


def can_respond(role: Role | None) -> bool:
    return allows(role, Capability.RESPOND)


def can_edit_tickets(role: Role | None) -> bool:
    return allows(role, Capability.EDIT_TICKETS)


def can_add_internal_notes(role: Role | None) -> bool:
    return allows(role, Capability.ADD_INTERNAL_NOTES)


def can_manage_team(role: Role | None) -> bool:
    return allows(role, Capability.MANAGE_TEAM)


class MembershipAuthorizer:
    """Answer role questions for (user, organization) pairs."""

    def __init__(self, store: "DataStore") -> None:
        self._memberships = Repository(store, Membership)

    async def role_of(self, user_id: str | None, organization_id: str) -> Role | None:
        if not user_id:
            return None
        membership = await self._memberships.get(user_id=user_id, organization_id=organization_id)
        return membership.role if membership is not None else None

    async def allows(self, principal: "Principal | None", organization_id: str, capability: Capability) -> bool:
        role = await self.role_of(principal.user_id if principal else None, organization_id)
        return allows(role, capability)

    async def require(
        self,
        principal: "Principal | None",
        organization_id: str,
        capability: Capability,
    ) -> Role:
        """Return the caller's role or raise :class:`AuthorizationError`."""

        role = await self.role_of(principal.user_id if principal else None, organization_id)
        if role is None:
            raise AuthorizationError("not_a_member", capability=capability.value)
        if not allows(role, capability):
            raise AuthorizationError("insufficient_role", capability=capability.value)
        return role


__all__ = [
    "CAPABILITY_THRESHOLDS",
    "Capability",
    "MembershipAuthorizer",
    "allows",
    "can_add_internal_notes",
    "can_assign_tickets",
    "can_edit_tickets",
    "can_manage_settings",
    "can_manage_team",
    "can_respond",
    "has_at_least",
]
