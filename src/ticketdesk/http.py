"""HTTP status codes."""

from __future__ import annotations

from enum import IntEnum
from http import HTTPStatus


class Status(IntEnum):
    """The status codes ticketdesk responds with."""

    OK = 200
    CREATED = 201
    NO_CONTENT = 204
    FOUND = 302
    SEE_OTHER = 303
    BAD_REQUEST = 400
    UNAUTHORIZED = 401
    FORBIDDEN = 403
    NOT_FOUND = 404
    METHOD_NOT_ALLOWED = 405
    CONFLICT = 409
    PAYLOAD_TOO_LARGE = 413
    UNPROCESSABLE_ENTITY = 422
    INTERNAL_SERVER_ERROR = 500
    SERVICE_UNAVAILABLE = 503


def ensure_status(status: int | Status) -> int:
    code = int(status)
    if not 100 <= code <= 599:
        raise ValueError(f"{status!r} is not an HTTP status code")
    return code


def reason_phrase(status: int | Status) -> str:
    try:
        return HTTPStatus(int(status)).phrase
    except ValueError:
        return "Unknown Status"


__all__ = ["Status", "ensure_status", "reason_phrase"]
