"""The request object handlers and middleware see."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, TypeVar
from urllib.parse import parse_qsl

import msgspec

from .exceptions import HTTPError, ValidationError
from .http import Status
from .serialization import json_decode

if TYPE_CHECKING:
    from .authentication import Principal
    from .tenancy import OrganizationContext

T = TypeVar("T")

BodyLoader = Callable[[], Awaitable[bytes | bytearray | memoryview | None]]

MAX_QUERY_PARAMETERS = 1024

_NOT_DECODED = object()


class Request:
    """View of an incoming request.

    ``path`` is the path handlers are routed on; after the edge router rewrites
    a tenant request it differs from ``original_path``.  ``organization`` is set
    only by the edge router and is the single source of tenant identity.
    """

    __slots__ = (
        "_body",
        "_loader",
        "_loading",
        "_decoded",
        "_query",
        "headers",
        "method",
        "organization",
        "original_path",
        "path",
        "path_params",
        "principal",
        "raw_query",
    )

    def __init__(
        self,
        *,
        method: str,
        path: str,
        headers: Mapping[str, str] | None = None,
        path_params: Mapping[str, str] | None = None,
        query_string: str | None = None,
        body: bytes | None = None,
        body_loader: BodyLoader | None = None,
        organization: "OrganizationContext | None" = None,
        principal: "Principal | None" = None,
    ) -> None:
        if body is not None and body_loader is not None:
            raise ValueError("pass either body or body_loader, not both")
        self.method = method.upper()
        self.path = self.original_path = path
        self.headers = {name.lower(): value for name, value in (headers or {}).items()}
        self.path_params = dict(path_params or {})
        self.raw_query = query_string or ""
        self.organization = organization
        self.principal = principal
        self._body = body
        self._loader = body_loader
        self._loading = asyncio.Lock()
        self._decoded: Any = _NOT_DECODED
        self._query: dict[str, list[str]] | None = None

    # ------------------------------------------------------------------ headers and query
    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)

    @property
    def host(self) -> str | None:
        return self.header("host")

    def cookie(self, name: str) -> str | None:
        for chunk in (self.header("cookie") or "").split(";"):
            key, sep, value = chunk.strip().partition("=")
            if sep and key == name:
                return value
        return None

    @property
    def query_params(self) -> dict[str, list[str]]:
        """Every query parameter with all of its values, in order."""

        if self._query is None:
            try:
                pairs = parse_qsl(self.raw_query, keep_blank_values=True, max_num_fields=MAX_QUERY_PARAMETERS)
            except ValueError as exc:
                raise HTTPError(Status.BAD_REQUEST, {"detail": "too_many_query_parameters"}) from exc
            query: dict[str, list[str]] = {}
            for key, value in pairs:
                query.setdefault(key, []).append(value)
            self._query = query
        return self._query

    def query_param(self, name: str, default: str | None = None) -> str | None:
        """Return the last value given for ``name``."""

        values = self.query_params.get(name)
        return values[-1] if values else default

    # ------------------------------------------------------------------ routing state
    def rewrite(self, path: str, organization: "OrganizationContext | None" = None) -> "Request":
        """Point the request at ``path``, keeping the path the client asked for."""

        self.path = path
        self.organization = organization
        return self

    def with_principal(self, principal: "Principal | None") -> "Request":
        self.principal = principal
        return self

    # ------------------------------------------------------------------ body
    async def body(self) -> bytes:
        """Read the body, calling the loader at most once."""

        if self._body is None:
            async with self._loading:
                if self._body is None:
                    raw = await self._loader() if self._loader is not None else None
                    self._body = bytes(raw) if raw else b""
                    self._loader = None
        return self._body

    async def text(self) -> str:
        return (await self.body()).decode()

    async def json(self, model: type[T] | None = None) -> T | Any:
        """Decode the JSON body, optionally converting it into ``model``.

        Bodies that do not decode into ``model`` are rejected as a
        :class:`~ticketdesk.exceptions.ValidationError` naming the offending field.
        An empty body converts as ``{}``.
        """

        if self._decoded is _NOT_DECODED:
            raw = await self.body()
            try:
                self._decoded = json_decode(raw) if raw else None
            except msgspec.DecodeError as exc:
                raise ValidationError("body", "invalid_json") from exc
        if model is None:
            return self._decoded
        try:
            return msgspec.convert({} if self._decoded is None else self._decoded, type=model)
        except msgspec.ValidationError as exc:
            raise ValidationError(_error_field(str(exc)), str(exc)) from exc


def _error_field(message: str) -> str:
    # msgspec: "Object missing required field `x`" or "... - at `$.x`"
    if "at `$." in message:
        return message.split("at `$.", 1)[1].split("`", 1)[0].split("[", 1)[0].split(".", 1)[0]
    if "missing required field `" in message:
        return message.split("missing required field `", 1)[1].split("`", 1)[0]
    return "body"


__all__ = ["BodyLoader", "Request"]
