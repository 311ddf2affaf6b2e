"""Organization team management."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import msgspec

from ..exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from ..models import Membership, OrganizationDomain, Role, User
from ..orm import Repository
from ..rbac import Capability, MembershipAuthorizer

if TYPE_CHECKING:
    from ..authentication import Principal
    from ..store import DataStore

logger = logging.getLogger(__name__)


class MemberAdd(msgspec.Struct, frozen=True):
    email: str
    role: Role = Role.AGENT


class RoleChange(msgspec.Struct, frozen=True):
    role: Role


class TeamMember(msgspec.Struct, frozen=True):
    membership_id: str
    user_id: str
    email: str
    role: Role
    full_name: str | None = None
    avatar_url: str | None = None


class TeamService:
    """List and change who belongs to an organization.

    Only owners may grant, change or revoke the ``owner`` role, and an
    organization always keeps at least one owner.
    """

    def __init__(self, store: "DataStore", authorizer: MembershipAuthorizer) -> None:
        self.authorizer = authorizer
        self._memberships = Repository(store, Membership)
        self._users = Repository(store, User)
        self._domains = Repository(store, OrganizationDomain)

    async def _member(self, organization_id: str, user_id: str) -> Membership:
        membership = await self._memberships.get(organization_id=organization_id, user_id=user_id)
        if membership is None:
            raise NotFoundError("member", user_id)
        return membership

    async def _ensure_other_owner(self, organization_id: str) -> None:
        owners = await self._memberships.count(organization_id=organization_id, role=Role.OWNER)
        if owners <= 1:
            raise ValidationError("role", "An organization must keep at least one owner")

    async def _has_owner(self, organization_id: str) -> bool:
        # Concurrent demotions can both pass the pre-check; callers re-check after writing.
        return await self._memberships.count(organization_id=organization_id, role=Role.OWNER) > 0

    async def list_members(self, principal: "Principal | None", organization_id: str) -> list[TeamMember]:
        await self.authorizer.require(principal, organization_id, Capability.VIEW_ORGANIZATION)
        memberships = await self._memberships.list(organization_id=organization_id, order_by=["created_at"])
        if not memberships:
            return []
        users = {user.id: user for user in await self._users.list(id=tuple(m.user_id for m in memberships))}
        members: list[TeamMember] = []
        for membership in memberships:
            user = users.get(membership.user_id)
            if user is None:
                continue
            members.append(
                TeamMember(
                    membership_id=membership.id,
                    user_id=user.id,
                    email=user.email,
                    role=membership.role,
                    full_name=user.full_name,
                    avatar_url=user.avatar_url,
                )
            )
        return members

    async def allowed_domains(self, organization_id: str) -> tuple[str, ...]:
        rows = await self._domains.list(organization_id=organization_id, order_by=["domain"])
        return tuple(row.domain for row in rows)

    async def add_member(self, principal: "Principal", organization_id: str, payload: MemberAdd) -> Membership:
        actor_role = await self.authorizer.require(principal, organization_id, Capability.MANAGE_TEAM)
        if payload.role is Role.OWNER and actor_role is not Role.OWNER:
            raise AuthorizationError("owner_role_requires_owner", capability=Capability.MANAGE_TEAM.value)
        email = payload.email.strip().lower()
        if "@" not in email:
            raise ValidationError("email", "A valid email address is required")
        domains = await self.allowed_domains(organization_id)
        if domains and email.rsplit("@", 1)[1] not in domains:
            raise ValidationError("email", "This email domain is not allowed for the organization")
        user = await self._users.get(email=email)
        if user is None:
            raise NotFoundError("user", email)
        try:
            membership = await self._memberships.insert(
                Membership(organization_id=organization_id, user_id=user.id, role=payload.role)
            )
        except ConflictError as exc:
            raise ValidationError("email", "This user is already a member") from exc
        logger.info("user %s joined organization %s as %s", user.id, organization_id, payload.role.value)
        return membership

    async def change_role(
        self,
        principal: "Principal",
        organization_id: str,
        user_id: str,
        payload: RoleChange,
    ) -> Membership:
        actor_role = await self.authorizer.require(principal, organization_id, Capability.MANAGE_TEAM)
        membership = await self._member(organization_id, user_id)
        if membership.role is payload.role:
            return membership
        if Role.OWNER in (membership.role, payload.role) and actor_role is not Role.OWNER:
            raise AuthorizationError("owner_role_requires_owner", capability=Capability.MANAGE_TEAM.value)
        if membership.role is Role.OWNER:
            await self._ensure_other_owner(organization_id)
        updated = await self._memberships.update(membership.id, role=payload.role)
        if updated is None:
            raise NotFoundError("member", membership.user_id)
        if membership.role is Role.OWNER and not await self._has_owner(organization_id):
            await self._memberships.update(membership.id, role=Role.OWNER)
            raise ValidationError("role", "An organization must keep at least one owner")
        return updated

    async def remove_member(self, principal: "Principal", organization_id: str, user_id: str) -> None:
        actor_role = await self.authorizer.require(principal, organization_id, Capability.MANAGE_TEAM)
        membership = await self._member(organization_id, user_id)
        if membership.role is Role.OWNER:
            if actor_role is not Role.OWNER:
                raise AuthorizationError("owner_role_requires_owner", capability=Capability.MANAGE_TEAM.value)
            await self._ensure_other_owner(organization_id)
        await self._memberships.delete(id=membership.id)
        if membership.role is Role.OWNER and not await self._has_owner(organization_id):
            await self._memberships.insert(membership)
            raise ValidationError("role", "An organization must keep at least one owner")


__all__ = ["MemberAdd", "RoleChange", "TeamMember", "TeamService"]
