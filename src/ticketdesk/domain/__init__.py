"""Domain services behind the ticketdesk pages."""

from .analytics import AnalyticsRange, AnalyticsService, AnalyticsSummary
from .categories import CategoryService
from .onboarding import OnboardingService, format_subdomain
from .organizations import OrganizationService
from .team import TeamService
from .tickets import TicketService

__all__ = [
    "AnalyticsRange",
    "AnalyticsService",
    "AnalyticsSummary",
    "CategoryService",
    "OnboardingService",
    "OrganizationService",
    "TeamService",
    "TicketService",
    "format_subdomain",
]
