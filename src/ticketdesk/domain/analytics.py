"""Ticket analytics over a trailing window."""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import TYPE_CHECKING, Callable

import msgspec

from ..models import Ticket, TicketPriority, TicketStatus
from ..orm import Repository, utcnow
from ..rbac import Capability, MembershipAuthorizer

if TYPE_CHECKING:
    from ..authentication import Principal
    from ..store import DataStore


class AnalyticsRange(str, Enum):
    LAST_7_DAYS = "7d"
    LAST_30_DAYS = "30d"
    LAST_90_DAYS = "90d"

    @property
    def days(self) -> int:
        return int(self.value[:-1])


class AnalyticsSummary(msgspec.Struct, frozen=True):
    range: AnalyticsRange
    since: dt.datetime
    total: int
    open: int
    resolved: int
    by_status: dict[str, int]
    by_priority: dict[str, int]
    average_first_response_hours: float | None = None


def _aware(moment: dt.datetime) -> dt.datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=dt.timezone.utc)


def summarize(tickets: list[Ticket], window: AnalyticsRange, since: dt.datetime) -> AnalyticsSummary:
    by_status = {status.value: 0 for status in TicketStatus}
    by_priority = {priority.value: 0 for priority in TicketPriority}
    response_hours: list[float] = []
    for ticket in tickets:
        by_status[ticket.status.value] += 1
        by_priority[ticket.priority.value] += 1
        if ticket.first_response_at is not None:
            delta = _aware(ticket.first_response_at) - _aware(ticket.created_at)
            response_hours.append(delta.total_seconds() / 3600)
    average = round(sum(response_hours) / len(response_hours), 2) if response_hours else None
    return AnalyticsSummary(
        range=window,
        since=since,
        total=len(tickets),
        open=by_status[TicketStatus.OPEN.value],
        resolved=by_status[TicketStatus.RESOLVED.value] + by_status[TicketStatus.CLOSED.value],
        by_status=by_status,
        by_priority=by_priority,
        average_first_response_hours=average,
    )


class AnalyticsService:
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

    async def summary(
        self,
        principal: "Principal | None",
        organization_id: str,
        window: AnalyticsRange = AnalyticsRange.LAST_30_DAYS,
    ) -> AnalyticsSummary:
        await self.authorizer.require(principal, organization_id, Capability.VIEW_ANALYTICS)
        since = _aware(self._clock()) - dt.timedelta(days=window.days)
        tickets = [
            ticket
            for ticket in await self._tickets.list(organization_id=organization_id)
            if _aware(ticket.created_at) >= since
        ]
        return summarize(tickets, window, since)


__all__ = ["AnalyticsRange", "AnalyticsService", "AnalyticsSummary", "summarize"]
