"""ticketdesk: multi-tenant customer support ticketing."""

from .application import TicketdeskApp, create_app
from .authentication import Authenticator, Principal
from .config import AppConfig
from .dependency import DependencyProvider
from .edge import EdgeRouter, RoutingDecision, RoutingState
from .exceptions import (
    AuthorizationError,
    ConflictError,
    HTTPError,
    NotFoundError,
    TenantResolutionError,
    TicketdeskError,
    TransientError,
    ValidationError,
)
from .models import (
    Membership,
    OnboardingDraft,
    Organization,
    OrganizationDomain,
    Role,
    Session,
    Ticket,
    TicketActivity,
    TicketCategory,
    TicketPriority,
    TicketResponse,
    TicketStatus,
    User,
)
from .orm import DatabaseModel, Model, ModelRegistry, Repository, default_registry, model
from .rbac import Capability, MembershipAuthorizer
from .requests import Request
from .responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from .rest_store import RestStore, RestStoreConfig
from .routing import get, post, route
from .store import DataStore, MemoryStore
from .tenancy import OrganizationContext, TenantResolver, get_subdomain, organization_from_subdomain
from .testing import TestClient

__all__ = [
    "AppConfig",
    "Authenticator",
    "AuthorizationError",
    "Capability",
    "ConflictError",
    "DataStore",
    "DatabaseModel",
    "DependencyProvider",
    "EdgeRouter",
    "HTTPError",
    "JSONResponse",
    "Membership",
    "MembershipAuthorizer",
    "MemoryStore",
    "Model",
    "ModelRegistry",
    "NotFoundError",
    "OnboardingDraft",
    "Organization",
    "OrganizationContext",
    "OrganizationDomain",
    "PlainTextResponse",
    "Principal",
    "RedirectResponse",
    "Repository",
    "Request",
    "Response",
    "RestStore",
    "RestStoreConfig",
    "Role",
    "RoutingDecision",
    "RoutingState",
    "Session",
    "TenantResolutionError",
    "TenantResolver",
    "TestClient",
    "Ticket",
    "TicketActivity",
    "TicketCategory",
    "TicketPriority",
    "TicketResponse",
    "TicketStatus",
    "TicketdeskApp",
    "TicketdeskError",
    "TransientError",
    "User",
    "ValidationError",
    "create_app",
    "default_registry",
    "get",
    "get_subdomain",
    "model",
    "organization_from_subdomain",
    "post",
    "route",
]
