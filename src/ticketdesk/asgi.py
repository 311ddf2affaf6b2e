"""ASGI entry point for :class:`~ticketdesk.application.TicketdeskApp`.

Only ``http`` and ``lifespan`` scopes are served.  Request bodies are read
lazily, the first time a handler asks for them, and the configured size limit
is enforced while the chunks stream in.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Mapping

from .exceptions import HTTPError
from .http import Status
from .responses import Response, exception_to_response

if TYPE_CHECKING:
    from .application import TicketdeskApp

Scope = Mapping[str, Any]
Receive = Callable[[], Awaitable[Mapping[str, Any]]]
Send = Callable[[Mapping[str, Any]], Awaitable[None]]


class StreamedBody:
    """Body loader that drains ``http.request`` messages once."""

    __slots__ = ("_limit", "_receive", "_result")

    def __init__(self, receive: Receive, limit: int | None) -> None:
        self._receive = receive
        self._limit = limit
        self._result: bytes | None = None

    async def __call__(self) -> bytes:
        if self._result is not None:
            return self._result
        chunks: list[bytes] = []
        size = 0
        more = True
        while more:
            message = await self._receive()
            kind = message.get("type")
            if kind == "http.disconnect":
                break
            if kind != "http.request":
                continue
            chunk = bytes(message.get("body", b""))
            size += len(chunk)
            if self._limit is not None and size > self._limit:
                raise HTTPError(Status.PAYLOAD_TOO_LARGE, {"detail": "request_body_too_large"})
            chunks.append(chunk)
            more = bool(message.get("more_body", False))
        self._result = b"".join(chunks)
        return self._result


def _text(component: object) -> str | None:
    if isinstance(component, str):
        return component
    if isinstance(component, (bytes, bytearray, memoryview)):
        return bytes(component).decode("latin-1")
    return None


def decode_headers(raw_headers: Iterable[tuple[object, object]]) -> dict[str, str] | None:
    """Lowercase header names; ``None`` when any name or value is not text or bytes."""

    headers: dict[str, str] = {}
    for raw_name, raw_value in raw_headers:
        name, value = _text(raw_name), _text(raw_value)
        if name is None or value is None:
            return None
        if name:
            headers[name.lower()] = value
    return headers


async def send_response(send: Send, response: Response) -> None:
    await send(
        {
            "type": "http.response.start",
            "status": response.status,
            "headers": [(name.encode("latin-1"), value.encode("latin-1")) for name, value in response.headers],
        }
    )
    await send({"type": "http.response.body", "body": response.body})


async def serve_http(app: "TicketdeskApp", scope: Scope, receive: Receive, send: Send) -> None:
    headers = decode_headers(scope.get("headers", []))
    if headers is None:
        error = HTTPError(Status.BAD_REQUEST, {"detail": "invalid_header_encoding"})
        await send_response(send, exception_to_response(error))
        return
    host = headers.get("host")
    if not host:
        error = HTTPError(Status.BAD_REQUEST, {"detail": "missing_host_header"})
        await send_response(send, exception_to_response(error))
        return
    response = await app.dispatch(
        scope["method"],
        scope["path"],
        host=host,
        query_string=_text(scope.get("query_string")) or "",
        headers=headers,
        body_loader=StreamedBody(receive, app.config.max_request_body_bytes),
    )
    await send_response(send, response)


async def serve_lifespan(app: "TicketdeskApp", receive: Receive, send: Send) -> None:
    while True:
        message = await receive()
        kind = message.get("type")
        if kind == "lifespan.startup":
            try:
                await app.startup()
            except Exception as exc:
                await send({"type": "lifespan.startup.failed", "message": str(exc)})
                raise
            await send({"type": "lifespan.startup.complete"})
        elif kind == "lifespan.shutdown":
            await app.shutdown()
            await send({"type": "lifespan.shutdown.complete"})
            return


async def handle(app: "TicketdeskApp", scope: Scope, receive: Receive, send: Send) -> None:
    kind = scope.get("type")
    if kind == "http":
        await serve_http(app, scope, receive, send)
    elif kind == "lifespan":
        await serve_lifespan(app, receive, send)
    else:
        raise RuntimeError(f"ticketdesk does not serve {kind!r} connections")


__all__ = ["StreamedBody", "decode_headers", "handle", "send_response"]
