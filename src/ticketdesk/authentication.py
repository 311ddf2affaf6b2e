"""Session authentication against tokens mirrored from the identity platform."""

from __future__ import annotations

import base64
import datetime as dt
import logging
import secrets
from hashlib import sha256
from typing import TYPE_CHECKING, Callable

from msgspec import Struct

from .models import Session, User
from .orm import Repository, utcnow
from .requests import Request
from .responses import Response

if TYPE_CHECKING:
    from .middleware import Handler
    from .store import DataStore

logger = logging.getLogger(__name__)

SESSION_COOKIE = "ticketdesk_session"
DEFAULT_SESSION_TTL = dt.timedelta(days=7)


class Principal(Struct, frozen=True):
    """The signed-in caller."""

    user_id: str
    email: str
    full_name: str | None = None


class IssuedSessionToken(Struct, frozen=True):
    """A freshly issued session: the client token and the stored record."""

    token: str
    record: Session

    @property
    def user_id(self) -> str:
        return self.record.user_id

    @property
    def expires_at(self) -> dt.datetime:
        return self.record.expires_at


def hash_token(token: str) -> str:
    return sha256(token.encode()).hexdigest()


def _generate_token() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).decode().rstrip("=")


def _ensure_utc(moment: dt.datetime) -> dt.datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=dt.timezone.utc)
    return moment.astimezone(dt.timezone.utc)


def token_from_request(request: Request) -> str | None:
    """Return the bearer token or session cookie carried by ``request``."""

    authorization = request.header("authorization")
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    cookie = request.cookie(SESSION_COOKIE)
    return cookie or None


class Authenticator:
    """Resolve session tokens into :class:`Principal` values."""

    def __init__(
        self,
        store: "DataStore",
        *,
        session_ttl: dt.timedelta = DEFAULT_SESSION_TTL,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._sessions = Repository(store, Session)
        self._users = Repository(store, User)
        self.session_ttl = session_ttl
        self._clock = clock

    async def issue(self, user: User) -> IssuedSessionToken:
        token = _generate_token()
        record = await self._sessions.insert(
            Session(
                token_hash=hash_token(token),
                user_id=user.id,
                expires_at=self._clock() + self.session_ttl,
            )
        )
        return IssuedSessionToken(token=token, record=record)

    async def authenticate(self, token: str | None) -> Principal | None:
        if not token:
            return None
        session = await self._sessions.get(token_hash=hash_token(token))
        if session is None:
            return None
        if _ensure_utc(session.expires_at) <= _ensure_utc(self._clock()):
            logger.debug("session for user %s expired", session.user_id)
            return None
        user = await self._users.get(id=session.user_id)
        if user is None:
            return None
        return Principal(user_id=user.id, email=user.email, full_name=user.full_name)

    async def revoke(self, token: str) -> bool:
        return await self._sessions.delete(token_hash=hash_token(token)) > 0

    async def middleware(self, request: Request, handler: "Handler") -> Response:
        """Attach the caller's principal, if any, before the request is handled."""

        if request.principal is None:
            request.with_principal(await self.authenticate(token_from_request(request)))
        return await handler(request)


__all__ = [
    "Authenticator",
    "DEFAULT_SESSION_TTL",
    "IssuedSessionToken",
    "Principal",
    "SESSION_COOKIE",
    "hash_token",
    "token_from_request",
]
