"""Ticket categories of an organization."""

from __future__ import annotations

from typing import TYPE_CHECKING

import msgspec

from ..exceptions import NotFoundError, ValidationError
from ..models import DEFAULT_PRIMARY_COLOR, Ticket, TicketCategory
from ..orm import Repository
from ..rbac import Capability, MembershipAuthorizer
from .organizations import validate_color

if TYPE_CHECKING:
    from ..authentication import Principal
    from ..store import DataStore

MAX_CATEGORY_NAME_LENGTH = 50


class CategoryCreate(msgspec.Struct, frozen=True):
    name: str
    description: str | None = None
    color: str = DEFAULT_PRIMARY_COLOR


class CategoryUpdate(msgspec.Struct, frozen=True, omit_defaults=True):
    name: str | None = None
    description: str | None = None
    color: str | None = None
    sort_order: int | None = None


def _clean_name(name: str) -> str:
    cleaned = name.strip()
    if not cleaned:
        raise ValidationError("name", "Category name is required")
    if len(cleaned) > MAX_CATEGORY_NAME_LENGTH:
        raise ValidationError("name", f"Category name must be at most {MAX_CATEGORY_NAME_LENGTH} characters")
    return cleaned


class CategoryService:
    def __init__(self, store: "DataStore", authorizer: MembershipAuthorizer) -> None:
        self.authorizer = authorizer
        self._categories = Repository(store, TicketCategory)
        self._tickets = Repository(store, Ticket)

    async def _category(self, organization_id: str, category_id: str) -> TicketCategory:
        category = await self._categories.get(id=category_id, organization_id=organization_id)
        if category is None:
            raise NotFoundError("category", category_id)
        return category

    async def list_categories(
        self,
        principal: "Principal | None",
        organization_id: str,
        *,
        include_inactive: bool = True,
    ) -> list[TicketCategory]:
        await self.authorizer.require(principal, organization_id, Capability.VIEW_TICKETS)
        filters: dict[str, object] = {"organization_id": organization_id}
        if not include_inactive:
            filters["is_active"] = True
        return await self._categories.list(order_by=["sort_order", "name"], **filters)

    async def create_category(
        self,
        principal: "Principal",
        organization_id: str,
        payload: CategoryCreate,
    ) -> TicketCategory:
        await self.authorizer.require(principal, organization_id, Capability.MANAGE_CATEGORIES)
        sort_order = await self._categories.count(organization_id=organization_id)
        return await self._categories.insert(
            TicketCategory(
                organization_id=organization_id,
                name=_clean_name(payload.name),
                description=(payload.description or "").strip() or None,
                color=validate_color("color", payload.color),
                is_active=True,
                sort_order=sort_order,
            )
        )

    async def update_category(
        self,
        principal: "Principal",
        organization_id: str,
        category_id: str,
        payload: CategoryUpdate,
    ) -> TicketCategory:
        await self.authorizer.require(principal, organization_id, Capability.MANAGE_CATEGORIES)
        category = await self._category(organization_id, category_id)
        values: dict[str, object] = {}
        if payload.name is not None:
            values["name"] = _clean_name(payload.name)
        if payload.description is not None:
            values["description"] = payload.description.strip() or None
        if payload.color is not None:
            values["color"] = validate_color("color", payload.color)
        if payload.sort_order is not None:
            if payload.sort_order < 0:
                raise ValidationError("sort_order", "Sort order cannot be negative")
            values["sort_order"] = payload.sort_order
        if not values:
            return category
        updated = await self._categories.update(category.id, **values)
        if updated is None:
            raise NotFoundError("category", category.id)
        return updated

    async def toggle_active(
        self,
        principal: "Principal",
        organization_id: str,
        category_id: str,
    ) -> TicketCategory:
        await self.authorizer.require(principal, organization_id, Capability.MANAGE_CATEGORIES)
        category = await self._category(organization_id, category_id)
        updated = await self._categories.update(category.id, is_active=not category.is_active)
        if updated is None:
            raise NotFoundError("category", category.id)
        return updated

    async def delete_category(self, principal: "Principal", organization_id: str, category_id: str) -> None:
        """Delete a category; tickets filed under it become uncategorized."""

        await self.authorizer.require(principal, organization_id, Capability.MANAGE_CATEGORIES)
        category = await self._category(organization_id, category_id)
        await self._tickets.update_where({"category_id": None}, organization_id=organization_id, category_id=category.id)
        await self._categories.delete(id=category.id)


__all__ = ["CategoryCreate", "CategoryService", "CategoryUpdate"]
