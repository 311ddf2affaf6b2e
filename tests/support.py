from __future__ import annotations

import asyncio
import datetime as dt
from typing import Any

from ticketdesk import create_app
from ticketdesk.application import TicketdeskApp
from ticketdesk.authentication import Principal
from ticketdesk.config import AppConfig
from ticketdesk.exceptions import TransientError
from ticketdesk.models import Membership, Organization, Role, User
from ticketdesk.observability import ObservabilityConfig
from ticketdesk.orm import Repository
from ticketdesk.store import Filters, MemoryStore, Row


def quiet_config(**overrides: Any) -> AppConfig:
    """A configuration with tracing and error reporting switched off."""

    values: dict[str, Any] = {
        "observability": ObservabilityConfig(opentelemetry_enabled=False, sentry_enabled=False),
    }
    values.update(overrides)
    return AppConfig(**values)


def build_app(store: MemoryStore | None = None, **overrides: Any) -> TicketdeskApp:
    return create_app(quiet_config(**overrides), store=store or MemoryStore())


async def seed_user(store: MemoryStore, email: str, *, full_name: str | None = None) -> User:
    return await Repository(store, User).insert(User(email=email, full_name=full_name))


async def seed_organization(
    store: MemoryStore,
    *,
    name: str = "Acme",
    subdomain: str = "acme",
    organization_id: str | None = None,
) -> Organization:
    organization = Organization(name=name, subdomain=subdomain)
    if organization_id is not None:
        organization = Organization(id=organization_id, name=name, subdomain=subdomain)
    return await Repository(store, Organization).insert(organization)


async def seed_member(store: MemoryStore, organization: Organization, user: User, role: Role) -> Membership:
    return await Repository(store, Membership).insert(
        Membership(organization_id=organization.id, user_id=user.id, role=role)
    )


def principal_for(user: User) -> Principal:
    return Principal(user_id=user.id, email=user.email, full_name=user.full_name)


class FixedClock:
    """A settable clock for services that take ``clock=``."""

    def __init__(self, now: dt.datetime | None = None) -> None:
        self.now = now or dt.datetime(2024, 5, 1, 12, 0, tzinfo=dt.timezone.utc)

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **delta: float) -> dt.datetime:
        self.now = self.now + dt.timedelta(**delta)
        return self.now


class MonotonicClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FlakyStore(MemoryStore):
    """A memory store whose reads can be made to fail or stall."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.failing = False
        self.delay: float | None = None
        self.reads: list[tuple[str, dict[str, Any]]] = []

    async def get(self, table: str, filters: Filters) -> Row | None:
        self.reads.append((table, dict(filters)))
        if self.failing:
            raise TransientError(f"{table} unavailable")
        if self.delay is not None:
            await asyncio.sleep(self.delay)
        return await super().get(table, filters)


class VanishingStore(MemoryStore):
    """A memory store where rows of ``table`` disappear just before they are updated."""

    def __init__(self, table: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.vanishing_table = table

    async def update(self, table: str, values: Row, filters: Filters) -> list[Row]:
        if table == self.vanishing_table:
            await self.delete(table, filters)
        return await super().update(table, values, filters)
