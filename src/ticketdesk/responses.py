"""Response values and the constructors handlers use to build them.

Every constructor returns a response that already carries the hardened
security headers, so handlers never need to remember them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable
from urllib.parse import urlencode

import msgspec

from .exceptions import HTTPError
from .http import Status
from .serialization import json_encode

if TYPE_CHECKING:
    from .requests import Request


Handler = Callable[["Request"], Awaitable["Response"]]
Headers = tuple[tuple[str, str], ...]

DEFAULT_SECURITY_HEADERS: Headers = (
    ("strict-transport-security", "max-age=63072000; includeSubDomains; preload"),
    ("content-security-policy", "default-src 'self'"),
    ("x-content-type-options", "nosniff"),
    ("referrer-policy", "no-referrer"),
    ("x-frame-options", "DENY"),
    ("permissions-policy", "geolocation=(), microphone=(), camera=()"),
    ("cross-origin-opener-policy", "same-origin"),
)

JSON_CONTENT_TYPE = "application/json"
TEXT_CONTENT_TYPE = "text/plain; charset=utf-8"


class Response(msgspec.Struct, frozen=True):
    status: int = int(Status.OK)
    headers: Headers = ()
    body: bytes = b""

    def with_headers(self, headers: Iterable[tuple[str, str]]) -> "Response":
        return msgspec.structs.replace(self, headers=self.headers + tuple(headers))

    def header(self, name: str) -> str | None:
        """Return the first value of header ``name``, case-insensitively."""

        wanted = name.lower()
        return next((value for key, value in self.headers if key.lower() == wanted), None)


def apply_default_security_headers(
    response: Response,
    *,
    headers: Iterable[tuple[str, str]] | None = None,
) -> Response:
    """Add each security header ``response`` does not already set."""

    present = {name.lower() for name, _ in response.headers}
    missing = tuple(item for item in (headers or DEFAULT_SECURITY_HEADERS) if item[0].lower() not in present)
    return response.with_headers(missing) if missing else response


async def security_headers_middleware(request: "Request", handler: Handler) -> Response:
    return apply_default_security_headers(await handler(request))


def _hardened(status: int, body: bytes, content_type: str | None, extra: Iterable[tuple[str, str]] | None) -> Response:
    headers: Headers = (("content-type", content_type),) if content_type else ()
    return apply_default_security_headers(Response(status=status, headers=headers + tuple(extra or ()), body=body))


def PlainTextResponse(
    text: str,
    *,
    status: int = int(Status.OK),
    headers: Iterable[tuple[str, str]] | None = None,
) -> Response:
    return _hardened(status, text.encode("utf-8"), TEXT_CONTENT_TYPE, headers)


def JSONResponse(
    data: Any,
    *,
    status: int = int(Status.OK),
    headers: Iterable[tuple[str, str]] | None = None,
) -> Response:
    """Encode ``data`` with msgspec; redacted model fields are left out."""

    return _hardened(status, json_encode(data), JSON_CONTENT_TYPE, headers)


def RedirectResponse(
    location: str,
    *,
    status: int = int(Status.SEE_OTHER),
    params: dict[str, str] | None = None,
) -> Response:
    """Redirect to ``location``, appending ``params`` as a query string."""

    if params:
        location = f"{location}{'&' if '?' in location else '?'}{urlencode(params)}"
    return _hardened(status, b"", None, (("location", location),))


def exception_to_response(exc: HTTPError) -> Response:
    return _hardened(exc.status, exc.to_response_body(), JSON_CONTENT_TYPE, None)


__all__ = [
    "DEFAULT_SECURITY_HEADERS",
    "Handler",
    "JSONResponse",
    "PlainTextResponse",
    "RedirectResponse",
    "Response",
    "apply_default_security_headers",
    "exception_to_response",
    "security_headers_middleware",
]
