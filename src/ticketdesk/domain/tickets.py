"""Tickets, their responses and the activity log."""

from __future__ import annotations

import datetime as dt
import logging
from typing import TYPE_CHECKING, Callable, Literal

import msgspec

from ..exceptions import ConflictError, NotFoundError, ValidationError
from ..models import (
    ActivityType,
    Membership,
    Ticket,
    TicketActivity,
    TicketCategory,
    TicketPriority,
    TicketResponse,
    TicketSource,
    TicketStatus,
    User,
)
from ..orm import Repository, utcnow
from ..rbac import Capability, MembershipAuthorizer, allows

if TYPE_CHECKING:
    from ..authentication import Principal
    from ..store import DataStore
    from ..tenancy import OrganizationContext

logger = logging.getLogger(__name__)

REFERENCE_PREFIX_LENGTH = 6
REFERENCE_DIGITS = 6
MAX_REFERENCE_ATTEMPTS = 5
MAX_SUBJECT_LENGTH = 200
DONE_STATUSES = frozenset({TicketStatus.RESOLVED, TicketStatus.CLOSED})


class TicketCreate(msgspec.Struct, frozen=True):
    subject: str
    description: str | None = None
    user_email: str | None = None
    priority: TicketPriority = TicketPriority.NORMAL
    source: TicketSource = TicketSource.PORTAL
    category_id: str | None = None
    tags: list[str] = msgspec.field(default_factory=list)


class AssignmentChange(msgspec.Struct, frozen=True):
    assignee_id: str | None = None


class StatusChange(msgspec.Struct, frozen=True):
    status: TicketStatus
    resolution_notes: str | None = None


class PriorityChange(msgspec.Struct, frozen=True):
    priority: TicketPriority


class CategoryChange(msgspec.Struct, frozen=True):
    category_id: str | None = None


class ResponseCreate(msgspec.Struct, frozen=True):
    text: str
    internal: bool = False


class TimelineEntry(msgspec.Struct, frozen=True, omit_defaults=True):
    kind: Literal["response", "activity"]
    at: dt.datetime
    response: TicketResponse | None = None
    activity: TicketActivity | None = None


def reference_prefix(subdomain: str) -> str:
    """``"acme-support"`` gives ``"ACMESU"``."""

    return subdomain.replace("-", "").upper()[:REFERENCE_PREFIX_LENGTH]


def format_reference(subdomain: str, sequence: int) -> str:
    return f"{reference_prefix(subdomain)}-{sequence:0{REFERENCE_DIGITS}d}"


def _actor_name(principal: "Principal") -> str:
    return principal.full_name or principal.email


class TicketService:
    def __init__(
        self,
        store: "DataStore",
        authorizer: MembershipAuthorizer,
        *,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self.authorizer = authorizer
        self._clock = clock
        self._tickets = Repository(store, Ticket)
        self._responses = Repository(store, TicketResponse)
        self._activities = Repository(store, TicketActivity)
        self._categories = Repository(store, TicketCategory)
        self._memberships = Repository(store, Membership)
        self._users = Repository(store, User)

    async def _ticket(self, organization_id: str, ticket_id: str) -> Ticket:
        ticket = await self._tickets.get(id=ticket_id, organization_id=organization_id)
        if ticket is None:
            raise NotFoundError("ticket", ticket_id)
        return ticket

    async def _record(
        self,
        ticket: Ticket,
        principal: "Principal",
        activity_type: ActivityType,
        description: str,
        *,
        old_value: str | None = None,
        new_value: str | None = None,
        metadata: dict[str, object] | None = None,
    ) -> TicketActivity:
        return await self._activities.insert(
            TicketActivity(
                ticket_id=ticket.id,
                activity_type=activity_type,
                description=description,
                old_value=old_value,
                new_value=new_value,
                metadata=dict(metadata or {}),
                user_id=principal.user_id,
                user_email=principal.email,
                created_at=self._clock(),
            )
        )

    async def create_ticket(
        self,
        principal: "Principal",
        organization: "OrganizationContext",
        payload: TicketCreate,
    ) -> Ticket:
        role = await self.authorizer.require(principal, organization.id, Capability.RESPOND)
        subject = payload.subject.strip()
        if not subject:
            raise ValidationError("subject", "Subject is required")
        if len(subject) > MAX_SUBJECT_LENGTH:
            raise ValidationError("subject", f"Subject must be at most {MAX_SUBJECT_LENGTH} characters")
        if payload.category_id is not None:
            await self._active_category(organization.id, payload.category_id)
        assigned_to = None
        if payload.source is TicketSource.DASHBOARD and allows(role, Capability.RECEIVE_ASSIGNMENTS):
            assigned_to = principal.user_id
        sequence = await self._tickets.count(organization_id=organization.id) + 1
        for _ in range(MAX_REFERENCE_ATTEMPTS):
            now = self._clock()
            candidate = Ticket(
                organization_id=organization.id,
                reference_id=format_reference(organization.subdomain, sequence),
                subject=subject,
                description=(payload.description or "").strip() or None,
                user_email=(payload.user_email or principal.email).strip().lower(),
                priority=payload.priority,
                source=payload.source,
                category_id=payload.category_id,
                assigned_to=assigned_to,
                tags=tuple(dict.fromkeys(tag.strip() for tag in payload.tags if tag.strip())),
                created_at=now,
                updated_at=now,
            )
            try:
                ticket = await self._tickets.insert(candidate)
            except ConflictError:
                sequence += 1
                continue
            break
        else:
            raise ConflictError("tickets", ("organization_id", "reference_id"))
        await self._record(ticket, principal, ActivityType.CREATED, f"Ticket created by {_actor_name(principal)}")
        logger.info("ticket %s created in organization %s", ticket.reference_id, organization.id)
        return ticket

    async def get_ticket(self, principal: "Principal | None", organization_id: str, ticket_id: str) -> Ticket:
        await self.authorizer.require(principal, organization_id, Capability.VIEW_TICKETS)
        return await self._ticket(organization_id, ticket_id)

    async def list_tickets(
        self,
        principal: "Principal | None",
        organization_id: str,
        *,
        status: TicketStatus | None = None,
        assigned_to: str | None = None,
    ) -> list[Ticket]:
        await self.authorizer.require(principal, organization_id, Capability.VIEW_TICKETS)
        filters: dict[str, object] = {"organization_id": organization_id}
        if status is not None:
            filters["status"] = status
        if assigned_to is not None:
            filters["assigned_to"] = assigned_to
        return await self._tickets.list(order_by=["-created_at"], **filters)

    async def assignable_members(self, principal: "Principal | None", organization_id: str) -> list[User]:
        await self.authorizer.require(principal, organization_id, Capability.ASSIGN_TICKETS)
        memberships = await self._memberships.list(organization_id=organization_id)
        user_ids = tuple(m.user_id for m in memberships if allows(m.role, Capability.RECEIVE_ASSIGNMENTS))
        if not user_ids:
            return []
        return await self._users.list(id=user_ids, order_by=["email"])

    async def assign(
        self,
        principal: "Principal",
        organization_id: str,
        ticket_id: str,
        payload: AssignmentChange,
    ) -> Ticket:
        await self.authorizer.require(principal, organization_id, Capability.ASSIGN_TICKETS)
        ticket = await self._ticket(organization_id, ticket_id)
        assignee_id = payload.assignee_id
        description = "Unassigned ticket"
        if assignee_id is not None:
            role = await self.authorizer.role_of(assignee_id, organization_id)
            if not allows(role, Capability.RECEIVE_ASSIGNMENTS):
                raise ValidationError("assignee_id", "Tickets can only be assigned to agents, admins or owners")
            assignee = await self._users.get(id=assignee_id)
            label = (assignee.full_name or assignee.email) if assignee is not None else assignee_id
            description = f"Assigned to {label}"
        if assignee_id == ticket.assigned_to:
            return ticket
        updated = await self._tickets.update(ticket.id, assigned_to=assignee_id, updated_at=self._clock())
        if updated is None:
            raise NotFoundError("ticket", ticket.id)
        await self._record(
            updated,
            principal,
            ActivityType.ASSIGNED if assignee_id else ActivityType.UNASSIGNED,
            description,
            old_value=ticket.assigned_to,
            new_value=assignee_id,
        )
        return updated

    async def update_status(
        self,
        principal: "Principal",
        organization_id: str,
        ticket_id: str,
        payload: StatusChange,
    ) -> Ticket:
        await self.authorizer.require(principal, organization_id, Capability.EDIT_TICKETS)
        ticket = await self._ticket(organization_id, ticket_id)
        old, new = ticket.status, payload.status
        if old is new:
            return ticket
        now = self._clock()
        values: dict[str, object] = {"status": new, "updated_at": now}
        if new is TicketStatus.RESOLVED:
            values["resolved_at"] = now
        elif new is TicketStatus.CLOSED:
            values["closed_at"] = now
            if ticket.resolved_at is None:
                values["resolved_at"] = now
        elif old in DONE_STATUSES:
            values["resolved_at"] = None
            values["closed_at"] = None
        if payload.resolution_notes is not None and new in DONE_STATUSES:
            values["resolution_notes"] = payload.resolution_notes.strip() or None
        updated = await self._tickets.update(ticket.id, **values)
        if updated is None:
            raise NotFoundError("ticket", ticket.id)
        await self._record(
            updated,
            principal,
            ActivityType.STATUS_CHANGED,
            f"Status changed from {old.value} to {new.value}",
            old_value=old.value,
            new_value=new.value,
        )
        if new is TicketStatus.RESOLVED:
            await self._record(updated, principal, ActivityType.RESOLVED, "Ticket resolved")
        elif new is TicketStatus.CLOSED:
            await self._record(updated, principal, ActivityType.CLOSED, "Ticket closed")
        elif old in DONE_STATUSES:
            await self._record(updated, principal, ActivityType.REOPENED, "Ticket reopened")
        return updated

    async def update_priority(
        self,
        principal: "Principal",
        organization_id: str,
        ticket_id: str,
        payload: PriorityChange,
    ) -> Ticket:
        await self.authorizer.require(principal, organization_id, Capability.EDIT_TICKETS)
        ticket = await self._ticket(organization_id, ticket_id)
        old, new = ticket.priority, payload.priority
        if old is new:
            return ticket
        updated = await self._tickets.update(ticket.id, priority=new, updated_at=self._clock())
        if updated is None:
            raise NotFoundError("ticket", ticket.id)
        await self._record(
            updated,
            principal,
            ActivityType.PRIORITY_CHANGED,
            f"Priority changed from {old.value} to {new.value}",
            old_value=old.value,
            new_value=new.value,
        )
        return updated

    async def _active_category(self, organization_id: str, category_id: str) -> TicketCategory:
        category = await self._categories.get(id=category_id, organization_id=organization_id)
        if category is None:
            raise NotFoundError("category", category_id)
        if not category.is_active:
            raise ValidationError("category_id", "This category is inactive")
        return category

    async def categorize(
        self,
        principal: "Principal",
        organization_id: str,
        ticket_id: str,
        payload: CategoryChange,
    ) -> Ticket:
        await self.authorizer.require(principal, organization_id, Capability.EDIT_TICKETS)
        ticket = await self._ticket(organization_id, ticket_id)
        if payload.category_id == ticket.category_id:
            return ticket
        description = "Category removed"
        if payload.category_id is not None:
            category = await self._active_category(organization_id, payload.category_id)
            description = f"Categorized as {category.name}"
        updated = await self._tickets.update(ticket.id, category_id=payload.category_id, updated_at=self._clock())
        if updated is None:
            raise NotFoundError("ticket", ticket.id)
        await self._record(
            updated,
            principal,
            ActivityType.CATEGORIZED,
            description,
            old_value=ticket.category_id,
            new_value=payload.category_id,
        )
        return updated

    async def respond(
        self,
        principal: "Principal",
        organization_id: str,
        ticket_id: str,
        payload: ResponseCreate,
    ) -> TicketResponse:
        capability = Capability.ADD_INTERNAL_NOTES if payload.internal else Capability.RESPOND
        await self.authorizer.require(principal, organization_id, capability)
        ticket = await self._ticket(organization_id, ticket_id)
        text = payload.text.strip()
        if not text:
            raise ValidationError("text", "Response text is required")
        now = self._clock()
        response = await self._responses.insert(
            TicketResponse(
                ticket_id=ticket.id,
                response_text=text,
                user_id=principal.user_id,
                user_email=principal.email,
                is_internal=payload.internal,
                response_type="internal_note" if payload.internal else "public_response",
                created_at=now,
                updated_at=now,
            )
        )
        values: dict[str, object] = {"updated_at": now}
        if not payload.internal and ticket.first_response_at is None:
            values["first_response_at"] = now
        await self._tickets.update(ticket.id, **values)
        await self._record(
            ticket,
            principal,
            ActivityType.NOTE_ADDED if payload.internal else ActivityType.COMMENTED,
            "Added internal note" if payload.internal else "Added public response",
            metadata={"response_id": response.id, "is_internal": payload.internal},
        )
        return response

    async def timeline(
        self,
        principal: "Principal | None",
        organization_id: str,
        ticket_id: str,
    ) -> list[TimelineEntry]:
        """Responses and activities of a ticket, oldest first.

        Internal notes, and the activities recording them, are left out for
        callers who may not see them.
        """

        role = await self.authorizer.require(principal, organization_id, Capability.VIEW_TICKETS)
        ticket = await self._ticket(organization_id, ticket_id)
        show_internal = allows(role, Capability.VIEW_INTERNAL_NOTES)
        entries: list[TimelineEntry] = []
        for response in await self._responses.list(ticket_id=ticket.id):
            if response.is_internal and not show_internal:
                continue
            entries.append(TimelineEntry(kind="response", at=response.created_at, response=response))
        for activity in await self._activities.list(ticket_id=ticket.id):
            if activity.activity_type is ActivityType.NOTE_ADDED and not show_internal:
                continue
            entries.append(TimelineEntry(kind="activity", at=activity.created_at, activity=activity))
        entries.sort(key=lambda entry: entry.at)
        return entries


__all__ = [
    "AssignmentChange",
    "CategoryChange",
    "PriorityChange",
    "ResponseCreate",
    "StatusChange",
    "TicketCreate",
    "TicketService",
    "TimelineEntry",
    "format_reference",
    "reference_prefix",
]
