"""Exception taxonomy."""

from __future__ import annotations

from typing import Any

from .http import Status, ensure_status, reason_phrase
from .serialization import json_encode


class TicketdeskError(Exception):
    """Base error type."""


class HTTPError(TicketdeskError):
    """Structured HTTP error that is msgspec serializable."""

    def __init__(self, status: int | Status, detail: Any) -> None:
        status_code = ensure_status(status)
        super().__init__(status_code, detail)
        self.status = status_code
        self.detail = detail
        self.reason = reason_phrase(status_code)

    def to_response_body(self) -> bytes:
        return json_encode({"error": {"status": self.status, "reason": self.reason, "detail": self.detail}})


class ValidationError(HTTPError):
    """Input rejected by a domain rule."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(Status.BAD_REQUEST, {"field": field, "message": message})
        self.field = field
        self.message = message


class AuthorizationError(HTTPError):
    """The caller is not a member of the organization or lacks the required role."""

    def __init__(self, detail: str, *, capability: str | None = None) -> None:
        payload: dict[str, Any] = {"detail": detail}
        if capability is not None:
            payload["capability"] = capability
        super().__init__(Status.FORBIDDEN, payload)
        self.capability = capability


class NotFoundError(HTTPError):
    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(Status.NOT_FOUND, {"detail": f"{resource}_not_found", "id": identifier})
        self.resource = resource
        self.identifier = identifier


class TransientError(TicketdeskError):
    """The data store could not be reached or did not answer in time.

    Callers may retry; the condition is never fatal to the process.
    """


class ConflictError(TicketdeskError):
    """A write violated a unique constraint of the data store."""

    def __init__(self, table: str, columns: tuple[str, ...]) -> None:
        super().__init__(f"Unique constraint on {table}({', '.join(columns)}) violated")
        self.table = table
        self.columns = columns


class TenantResolutionError(ValueError):
    """Raised when a host header is malformed and cannot be parsed at all."""


__all__ = [
    "AuthorizationError",
    "ConflictError",
    "HTTPError",
    "NotFoundError",
    "TenantResolutionError",
    "TicketdeskError",
    "TransientError",
    "ValidationError",
]
