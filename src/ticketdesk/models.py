"""Persisted ticketdesk models with ``id57`` identifiers."""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any

import msgspec

from .orm import DatabaseModel, Model, model


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    AGENT = "agent"
    MEMBER = "member"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


class TicketStatus(str, Enum):
    NEW = "new"
    OPEN = "open"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"
    ON_HOLD = "on_hold"


class TicketPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"
    CRITICAL = "critical"


class TicketSource(str, Enum):
    PORTAL = "portal"
    EMAIL = "email"
    CHAT = "chat"
    PHONE = "phone"
    API = "api"
    WIDGET = "widget"
    DASHBOARD = "dashboard"


class ActivityType(str, Enum):
    CREATED = "created"
    ASSIGNED = "assigned"
    UNASSIGNED = "unassigned"
    STATUS_CHANGED = "status_changed"
    PRIORITY_CHANGED = "priority_changed"
    COMMENTED = "commented"
    RESOLVED = "resolved"
    CLOSED = "closed"
    REOPENED = "reopened"
    TAGGED = "tagged"
    CATEGORIZED = "categorized"
    NOTE_ADDED = "note_added"
    ATTACHMENT_ADDED = "attachment_added"


DEFAULT_PRIMARY_COLOR = "#0066cc"
DEFAULT_SECONDARY_COLOR = "#4a90e2"


class Branding(Model, frozen=True, kw_only=True):
    primary_color: str = DEFAULT_PRIMARY_COLOR
    secondary_color: str = DEFAULT_SECONDARY_COLOR


class OrganizationProfile(Model, frozen=True, kw_only=True):
    description: str = ""
    welcome_message: str = ""
    branding: Branding = msgspec.field(default_factory=Branding)


@model(table="organizations", unique=(("subdomain",),))
class Organization(DatabaseModel):
    name: str
    subdomain: str
    profile: OrganizationProfile = msgspec.field(default_factory=OrganizationProfile)
    logo_url: str | None = None


@model(table="organization_domains", unique=(("organization_id", "domain"),))
class OrganizationDomain(DatabaseModel):
    organization_id: str
    domain: str


@model(table="memberships", unique=(("organization_id", "user_id"),))
class Membership(DatabaseModel):
    organization_id: str
    user_id: str
    role: Role = Role.MEMBER


@model(table="users", unique=(("email",),))
class User(DatabaseModel):
    email: str
    full_name: str | None = None
    avatar_url: str | None = None


@model(table="sessions", unique=(("token_hash",),), redacted_fields=("token_hash",))
class Session(DatabaseModel):
    token_hash: str
    user_id: str
    expires_at: dt.datetime


@model(table="tickets", unique=(("organization_id", "reference_id"),))
class Ticket(DatabaseModel):
    organization_id: str
    reference_id: str
    subject: str
    user_email: str
    description: str | None = None
    status: TicketStatus = TicketStatus.NEW
    priority: TicketPriority = TicketPriority.NORMAL
    source: TicketSource = TicketSource.PORTAL
    category_id: str | None = None
    assigned_to: str | None = None
    tags: tuple[str, ...] = ()
    due_date: dt.datetime | None = None
    first_response_at: dt.datetime | None = None
    resolved_at: dt.datetime | None = None
    closed_at: dt.datetime | None = None
    resolution_notes: str | None = None
    customer_satisfaction: int | None = None


@model(table="ticket_categories")
class TicketCategory(DatabaseModel):
    organization_id: str
    name: str
    description: str | None = None
    color: str = DEFAULT_PRIMARY_COLOR
    is_active: bool = True
    sort_order: int = 0


@model(table="ticket_responses")
class TicketResponse(DatabaseModel):
    ticket_id: str
    response_text: str
    user_id: str | None = None
    user_email: str | None = None
    is_internal: bool = False
    response_type: str = "response"


@model(table="ticket_activities")
class TicketActivity(DatabaseModel):
    ticket_id: str
    activity_type: ActivityType
    description: str
    old_value: str | None = None
    new_value: str | None = None
    metadata: dict[str, Any] = msgspec.field(default_factory=dict)
    user_id: str | None = None
    user_email: str | None = None


@model(table="onboarding_drafts", unique=(("user_id",),))
class OnboardingDraft(DatabaseModel):
    user_id: str
    organization_name: str = ""
    organization_description: str = ""
    subdomain: str = ""
    allowed_domains: tuple[str, ...] = ()
    custom_message: str = ""
    current_step: int = 1
    is_complete: bool = False


__all__ = [
    "ActivityType",
    "Branding",
    "DEFAULT_PRIMARY_COLOR",
    "DEFAULT_SECONDARY_COLOR",
    "Membership",
    "OnboardingDraft",
    "Organization",
    "OrganizationDomain",
    "OrganizationProfile",
    "Role",
    "Session",
    "Ticket",
    "TicketActivity",
    "TicketCategory",
    "TicketPriority",
    "TicketResponse",
    "TicketSource",
    "TicketStatus",
    "User",
]
