"""HTTP endpoints of the ticketdesk site.

Main-site pages (``/``, ``/dashboard``, ``/onboarding``) are served for the
bare root domain.  Organization pages live under
``/org/{organization_id}`` and are reached either directly or through the
edge router, which rewrites ``acme.example.com/tickets`` onto
``/org/<acme's id>/tickets``.
"""

from __future__ import annotations

import msgspec

from .authentication import Principal
from .config import AppConfig
from .domain.analytics import AnalyticsRange, AnalyticsService, AnalyticsSummary
from .domain.categories import CategoryCreate, CategoryService, CategoryUpdate
from .domain.onboarding import (
    FINAL_STEP,
    AllowedDomains,
    OnboardingService,
    OrganizationDetails,
    SubdomainAvailability,
    SubdomainChoice,
    WelcomeMessage,
)
from .domain.organizations import (
    DomainAdd,
    MembershipSummary,
    OrganizationService,
    OrganizationSettingsUpdate,
    PortalView,
)
from .domain.team import MemberAdd, RoleChange, TeamMember, TeamService
from .domain.tickets import (
    AssignmentChange,
    CategoryChange,
    PriorityChange,
    ResponseCreate,
    StatusChange,
    TicketCreate,
    TicketService,
    TimelineEntry,
)
from .exceptions import HTTPError, ValidationError
from .http import Status
from .models import (
    Membership,
    OnboardingDraft,
    Organization,
    OrganizationDomain,
    Ticket,
    TicketCategory,
    TicketStatus,
    User,
)
from .rbac import Capability
from .requests import Request
from .responses import JSONResponse, Response, exception_to_response
from .routing import get, post, route
from .tenancy import OrganizationContext


class HomePage(msgspec.Struct, frozen=True):
    product: str
    root_domain: str
    signin: str
    onboarding: str


class DashboardPage(msgspec.Struct, frozen=True):
    user: Principal
    organizations: list[MembershipSummary]
    onboarding: str | None = None


async def _organization(
    request: Request,
    organizations: OrganizationService,
    organization_id: str,
) -> OrganizationContext:
    """The organization a tenant route works on.

    Requests rewritten by the edge router already carry it; direct requests
    look it up by id.
    """

    current = request.organization
    if current is not None and current.id == organization_id:
        return current
    return await organizations.context(organization_id)


# ---------------------------------------------------------------------- main site


@get("/", name="home")
async def home(config: AppConfig) -> HomePage:
    return HomePage(
        product="ticketdesk",
        root_domain=config.root_domain,
        signin=config.signin_route,
        onboarding="/onboarding",
    )


@get("/dashboard", name="dashboard", authenticated=True)
async def dashboard(principal: Principal, organizations: OrganizationService) -> DashboardPage:
    memberships = await organizations.memberships_for(principal)
    return DashboardPage(
        user=principal,
        organizations=memberships,
        onboarding=None if memberships else "/onboarding",
    )


@get("/org/not-found", name="organization_not_found")
async def organization_not_found(request: Request) -> Response:
    raise HTTPError(Status.NOT_FOUND, {"detail": "organization_not_found", "host": request.host})


@get("/org/error", name="organization_error")
async def organization_error() -> Response:
    error = HTTPError(Status.SERVICE_UNAVAILABLE, {"detail": "organization_lookup_failed"})
    return exception_to_response(error).with_headers((("retry-after", "5"),))


# ---------------------------------------------------------------------- onboarding


@get("/onboarding", name="onboarding", authenticated=True)
async def onboarding(principal: Principal, wizard: OnboardingService) -> OnboardingDraft:
    return await wizard.draft(principal)


@post("/onboarding/step1", name="onboarding_details", authenticated=True)
async def onboarding_details(
    principal: Principal, wizard: OnboardingService, payload: OrganizationDetails
) -> OnboardingDraft:
    return await wizard.save_details(principal, payload)


@post("/onboarding/step2", name="onboarding_subdomain", authenticated=True)
async def onboarding_subdomain(
    principal: Principal, wizard: OnboardingService, payload: SubdomainChoice
) -> OnboardingDraft:
    return await wizard.save_subdomain(principal, payload)


@post("/onboarding/step3", name="onboarding_domains", authenticated=True)
async def onboarding_domains(
    principal: Principal, wizard: OnboardingService, payload: AllowedDomains
) -> OnboardingDraft:
    return await wizard.save_domains(principal, payload)


@post("/onboarding/step4", name="onboarding_welcome", authenticated=True)
async def onboarding_welcome(
    principal: Principal, wizard: OnboardingService, payload: WelcomeMessage
) -> OnboardingDraft:
    return await wizard.save_welcome_message(principal, payload)


@get("/onboarding/subdomain-availability", name="subdomain_availability", authenticated=True)
async def subdomain_availability(request: Request, wizard: OnboardingService) -> SubdomainAvailability:
    subdomain = request.query_param("subdomain")
    if not subdomain:
        raise ValidationError("subdomain", "Enter a subdomain to check")
    return await wizard.check_availability(subdomain)


@post("/onboarding/complete", name="onboarding_complete", authenticated=True)
async def onboarding_complete(principal: Principal, wizard: OnboardingService, config: AppConfig) -> Response:
    organization = await wizard.complete(principal)
    return JSONResponse(
        {
            "organization": organization,
            "url": f"https://{config.organization_host(organization.subdomain)}/",
            "step": FINAL_STEP,
        },
        status=int(Status.CREATED),
    )


@post("/onboarding/reset", name="onboarding_reset", authenticated=True)
async def onboarding_reset(principal: Principal, wizard: OnboardingService) -> None:
    await wizard.reset(principal)


# ---------------------------------------------------------------------- organization


@get("/org/{organization_id}/", name="portal")
async def portal(organization_id: str, organizations: OrganizationService) -> PortalView:
    return await organizations.portal(organization_id)


@get("/org/{organization_id}/settings", name="settings", authorize=Capability.VIEW_ORGANIZATION)
async def settings(organization_id: str, principal: Principal, organizations: OrganizationService) -> Organization:
    return await organizations.settings(principal, organization_id)


@post("/org/{organization_id}/settings", name="update_settings", authorize=Capability.MANAGE_SETTINGS)
async def update_settings(
    organization_id: str,
    principal: Principal,
    organizations: OrganizationService,
    payload: OrganizationSettingsUpdate,
) -> Organization:
    return await organizations.update_settings(principal, organization_id, payload)


@get("/org/{organization_id}/domains", name="domains", authorize=Capability.VIEW_ORGANIZATION)
async def list_domains(
    organization_id: str, principal: Principal, organizations: OrganizationService
) -> list[OrganizationDomain]:
    return await organizations.list_domains(principal, organization_id)


@post("/org/{organization_id}/domains", name="add_domain", authorize=Capability.MANAGE_SETTINGS)
async def add_domain(
    organization_id: str, principal: Principal, organizations: OrganizationService, payload: DomainAdd
) -> Response:
    domain = await organizations.add_domain(principal, organization_id, payload)
    return JSONResponse(domain, status=int(Status.CREATED))


@route(
    "/org/{organization_id}/domains/{domain_id}",
    methods=["DELETE"],
    name="remove_domain",
    authorize=Capability.MANAGE_SETTINGS,
)
async def remove_domain(
    organization_id: str, domain_id: str, principal: Principal, organizations: OrganizationService
) -> None:
    await organizations.remove_domain(principal, organization_id, domain_id)


@get("/org/{organization_id}/analytics", name="analytics", authorize=Capability.VIEW_ANALYTICS)
async def analytics(
    organization_id: str, request: Request, principal: Principal, service: AnalyticsService
) -> AnalyticsSummary:
    raw = request.query_param("range", AnalyticsRange.LAST_30_DAYS.value)
    try:
        window = AnalyticsRange(raw)
    except ValueError as exc:
        raise ValidationError("range", "Range must be one of 7d, 30d or 90d") from exc
    return await service.summary(principal, organization_id, window)


# ---------------------------------------------------------------------- tickets


@get("/org/{organization_id}/tickets", name="tickets", authorize=Capability.VIEW_TICKETS)
async def list_tickets(
    organization_id: str, request: Request, principal: Principal, tickets: TicketService
) -> list[Ticket]:
    raw_status = request.query_param("status")
    status: TicketStatus | None = None
    if raw_status:
        try:
            status = TicketStatus(raw_status)
        except ValueError as exc:
            raise ValidationError("status", f"Unknown ticket status {raw_status!r}") from exc
    return await tickets.list_tickets(
        principal,
        organization_id,
        status=status,
        assigned_to=request.query_param("assigned_to") or None,
    )


@post("/org/{organization_id}/tickets", name="create_ticket", authorize=Capability.RESPOND)
async def create_ticket(
    organization_id: str,
    request: Request,
    principal: Principal,
    organizations: OrganizationService,
    tickets: TicketService,
    payload: TicketCreate,
) -> Response:
    organization = await _organization(request, organizations, organization_id)
    ticket = await tickets.create_ticket(principal, organization, payload)
    return JSONResponse(ticket, status=int(Status.CREATED))


@get("/org/{organization_id}/assignees", name="assignees", authorize=Capability.ASSIGN_TICKETS)
async def assignees(organization_id: str, principal: Principal, tickets: TicketService) -> list[User]:
    return await tickets.assignable_members(principal, organization_id)


@get("/org/{organization_id}/tickets/{ticket_id}", name="ticket", authorize=Capability.VIEW_TICKETS)
async def ticket_detail(
    organization_id: str, ticket_id: str, principal: Principal, tickets: TicketService
) -> Ticket:
    return await tickets.get_ticket(principal, organization_id, ticket_id)


@get("/org/{organization_id}/tickets/{ticket_id}/timeline", name="ticket_timeline", authorize=Capability.VIEW_TICKETS)
async def ticket_timeline(
    organization_id: str, ticket_id: str, principal: Principal, tickets: TicketService
) -> list[TimelineEntry]:
    return await tickets.timeline(principal, organization_id, ticket_id)


@post("/org/{organization_id}/tickets/{ticket_id}/respond", name="respond", authorize=Capability.RESPOND)
async def respond(
    organization_id: str,
    ticket_id: str,
    principal: Principal,
    tickets: TicketService,
    payload: ResponseCreate,
) -> Response:
    response = await tickets.respond(principal, organization_id, ticket_id, payload)
    return JSONResponse(response, status=int(Status.CREATED))


@post("/org/{organization_id}/tickets/{ticket_id}/assign", name="assign", authorize=Capability.ASSIGN_TICKETS)
async def assign(
    organization_id: str,
    ticket_id: str,
    principal: Principal,
    tickets: TicketService,
    payload: AssignmentChange,
) -> Ticket:
    return await tickets.assign(principal, organization_id, ticket_id, payload)


@post("/org/{organization_id}/tickets/{ticket_id}/status", name="ticket_status", authorize=Capability.EDIT_TICKETS)
async def ticket_status(
    organization_id: str,
    ticket_id: str,
    principal: Principal,
    tickets: TicketService,
    payload: StatusChange,
) -> Ticket:
    return await tickets.update_status(principal, organization_id, ticket_id, payload)


@post(
    "/org/{organization_id}/tickets/{ticket_id}/priority",
    name="ticket_priority",
    authorize=Capability.EDIT_TICKETS,
)
async def ticket_priority(
    organization_id: str,
    ticket_id: str,
    principal: Principal,
    tickets: TicketService,
    payload: PriorityChange,
) -> Ticket:
    return await tickets.update_priority(principal, organization_id, ticket_id, payload)


@post(
    "/org/{organization_id}/tickets/{ticket_id}/category",
    name="ticket_category",
    authorize=Capability.EDIT_TICKETS,
)
async def ticket_category(
    organization_id: str,
    ticket_id: str,
    principal: Principal,
    tickets: TicketService,
    payload: CategoryChange,
) -> Ticket:
    return await tickets.categorize(principal, organization_id, ticket_id, payload)


# ---------------------------------------------------------------------- categories


@get("/org/{organization_id}/categories", name="categories", authorize=Capability.VIEW_TICKETS)
async def list_categories(
    organization_id: str, request: Request, principal: Principal, categories: CategoryService
) -> list[TicketCategory]:
    include_inactive = request.query_param("active") != "1"
    return await categories.list_categories(principal, organization_id, include_inactive=include_inactive)


@post("/org/{organization_id}/categories", name="create_category", authorize=Capability.MANAGE_CATEGORIES)
async def create_category(
    organization_id: str, principal: Principal, categories: CategoryService, payload: CategoryCreate
) -> Response:
    category = await categories.create_category(principal, organization_id, payload)
    return JSONResponse(category, status=int(Status.CREATED))


@post(
    "/org/{organization_id}/categories/{category_id}",
    name="update_category",
    authorize=Capability.MANAGE_CATEGORIES,
)
async def update_category(
    organization_id: str,
    category_id: str,
    principal: Principal,
    categories: CategoryService,
    payload: CategoryUpdate,
) -> TicketCategory:
    return await categories.update_category(principal, organization_id, category_id, payload)


@post(
    "/org/{organization_id}/categories/{category_id}/toggle",
    name="toggle_category",
    authorize=Capability.MANAGE_CATEGORIES,
)
async def toggle_category(
    organization_id: str, category_id: str, principal: Principal, categories: CategoryService
) -> TicketCategory:
    return await categories.toggle_active(principal, organization_id, category_id)


@route(
    "/org/{organization_id}/categories/{category_id}",
    methods=["DELETE"],
    name="delete_category",
    authorize=Capability.MANAGE_CATEGORIES,
)
async def delete_category(
    organization_id: str, category_id: str, principal: Principal, categories: CategoryService
) -> None:
    await categories.delete_category(principal, organization_id, category_id)


# ---------------------------------------------------------------------- team


@get("/org/{organization_id}/team", name="team", authorize=Capability.VIEW_ORGANIZATION)
async def list_team(organization_id: str, principal: Principal, team: TeamService) -> list[TeamMember]:
    return await team.list_members(principal, organization_id)


@post("/org/{organization_id}/team", name="add_member", authorize=Capability.MANAGE_TEAM)
async def add_member(organization_id: str, principal: Principal, team: TeamService, payload: MemberAdd) -> Response:
    membership = await team.add_member(principal, organization_id, payload)
    return JSONResponse(membership, status=int(Status.CREATED))


@post("/org/{organization_id}/team/{user_id}/role", name="change_role", authorize=Capability.MANAGE_TEAM)
async def change_role(
    organization_id: str, user_id: str, principal: Principal, team: TeamService, payload: RoleChange
) -> Membership:
    return await team.change_role(principal, organization_id, user_id, payload)


@route(
    "/org/{organization_id}/team/{user_id}",
    methods=["DELETE"],
    name="remove_member",
    authorize=Capability.MANAGE_TEAM,
)
async def remove_member(organization_id: str, user_id: str, principal: Principal, team: TeamService) -> None:
    await team.remove_member(principal, organization_id, user_id)


HANDLERS = (
    home,
    dashboard,
    organization_not_found,
    organization_error,
    onboarding,
    onboarding_details,
    onboarding_subdomain,
    onboarding_domains,
    onboarding_welcome,
    subdomain_availability,
    onboarding_complete,
    onboarding_reset,
    portal,
    settings,
    update_settings,
    list_domains,
    add_domain,
    remove_domain,
    analytics,
    list_tickets,
    create_ticket,
    assignees,
    ticket_detail,
    ticket_timeline,
    respond,
    assign,
    ticket_status,
    ticket_priority,
    ticket_category,
    list_categories,
    create_category,
    update_category,
    toggle_category,
    delete_category,
    list_team,
    add_member,
    change_role,
    remove_member,
)


__all__ = ["HANDLERS"]
