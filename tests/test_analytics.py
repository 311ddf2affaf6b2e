from __future__ import annotations

import datetime as dt

import pytest

from tests.support import FixedClock, principal_for, seed_member, seed_organization, seed_user
from ticketdesk.domain.analytics import AnalyticsRange, AnalyticsService, summarize
from ticketdesk.exceptions import AuthorizationError
from ticketdesk.models import Role, Ticket, TicketPriority, TicketStatus
from ticketdesk.orm import Repository
from ticketdesk.rbac import MembershipAuthorizer
from ticketdesk.store import MemoryStore

NOW = dt.datetime(2024, 5, 1, 12, 0, tzinfo=dt.timezone.utc)


def _ticket(number: int, *, age_days: float, status: TicketStatus = TicketStatus.NEW, **values) -> Ticket:
    created = NOW - dt.timedelta(days=age_days)
    return Ticket(
        organization_id="org_1",
        reference_id=f"ACME-{number:06d}",
        subject=f"Ticket {number}",
        user_email="pat@customer.test",
        status=status,
        created_at=created,
        updated_at=created,
        **values,
    )


def test_range_days() -> None:
    assert [window.days for window in AnalyticsRange] == [7, 30, 90]
    assert AnalyticsRange("7d") is AnalyticsRange.LAST_7_DAYS


def test_summarize_counts_every_status_and_priority() -> None:
    tickets = [
        _ticket(1, age_days=1, status=TicketStatus.OPEN, priority=TicketPriority.HIGH),
        _ticket(2, age_days=1, status=TicketStatus.RESOLVED),
        _ticket(3, age_days=1, status=TicketStatus.CLOSED),
    ]
    summary = summarize(tickets, AnalyticsRange.LAST_7_DAYS, NOW - dt.timedelta(days=7))

    assert summary.total == 3
    assert summary.open == 1
    assert summary.resolved == 2
    assert summary.by_status["pending"] == 0
    assert set(summary.by_status) == {status.value for status in TicketStatus}
    assert summary.by_priority == {"low": 0, "normal": 2, "high": 1, "urgent": 0, "critical": 0}
    assert summary.average_first_response_hours is None


def test_summarize_averages_first_response_time() -> None:
    tickets = [
        _ticket(1, age_days=2, first_response_at=NOW - dt.timedelta(days=2) + dt.timedelta(hours=1)),
        _ticket(2, age_days=2, first_response_at=NOW - dt.timedelta(days=2) + dt.timedelta(hours=2)),
        _ticket(3, age_days=2),
    ]
    summary = summarize(tickets, AnalyticsRange.LAST_7_DAYS, NOW - dt.timedelta(days=7))
    assert summary.average_first_response_hours == 1.5


@pytest.mark.asyncio
async def test_summary_covers_only_the_requested_window() -> None:
    store = MemoryStore()
    organization = await seed_organization(store, organization_id="org_1")
    member = await seed_user(store, "member@acme.test")
    await seed_member(store, organization, member, Role.MEMBER)
    tickets = Repository(store, Ticket)
    for number, age in enumerate((1, 6, 20, 60, 120), start=1):
        await tickets.insert(_ticket(number, age_days=age))
    service = AnalyticsService(store, MembershipAuthorizer(store), clock=FixedClock(NOW))

    week = await service.summary(principal_for(member), "org_1", AnalyticsRange.LAST_7_DAYS)
    month = await service.summary(principal_for(member), "org_1")
    quarter = await service.summary(principal_for(member), "org_1", AnalyticsRange.LAST_90_DAYS)

    assert (week.total, month.total, quarter.total) == (2, 3, 4)
    assert month.range is AnalyticsRange.LAST_30_DAYS
    assert month.since == NOW - dt.timedelta(days=30)


@pytest.mark.asyncio
async def test_summary_requires_membership() -> None:
    store = MemoryStore()
    await seed_organization(store, organization_id="org_1")
    outsider = await seed_user(store, "outsider@globex.test")
    service = AnalyticsService(store, MembershipAuthorizer(store), clock=FixedClock(NOW))
    with pytest.raises(AuthorizationError):
        await service.summary(principal_for(outsider), "org_1")
