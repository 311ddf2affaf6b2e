"""Composable request middleware.

A middleware is an async callable taking the request and the handler for the
rest of the chain.  It may rewrite the request, short-circuit with its own
response or decorate the downstream response.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Awaitable, Callable, Iterable

from .exceptions import HTTPError
from .http import Status
from .requests import Request
from .responses import Response

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .observability import Observability, Observation

Handler = Callable[[Request], Awaitable[Response]]
MiddlewareCallable = Callable[[Request, Handler], Awaitable[Response]]


def apply_middleware(
    middlewares: Iterable[MiddlewareCallable],
    endpoint: Handler,
    *,
    observability: "Observability | None" = None,
    request_context: "Observation | None" = None,
) -> Handler:
    """Wrap ``endpoint`` so the first middleware runs outermost.

    With enabled observability each middleware call is recorded as a child of
    ``request_context``.
    """

    watcher = observability if observability is not None and observability.enabled else None
    handler = endpoint
    for middleware in reversed(tuple(middlewares)):
        handler = _link(middleware, handler, watcher, request_context)
    return handler


def _link(
    middleware: MiddlewareCallable,
    downstream: Handler,
    watcher: "Observability | None",
    parent: "Observation | None",
) -> Handler:
    if watcher is None:

        async def call(request: Request) -> Response:
            return await middleware(request, downstream)

        return call

    async def observed(request: Request) -> Response:
        observation = watcher.on_middleware_start(middleware, request, parent)
        try:
            response = await middleware(request, downstream)
        except Exception as exc:
            watcher.on_middleware_error(observation, exc)
            raise
        watcher.on_middleware_success(observation)
        return response

    return observed


def body_limit_middleware(limit: int) -> MiddlewareCallable:
    """Reject requests whose declared ``content-length`` exceeds ``limit`` bytes.

    Streamed bodies without a declared length are capped separately while
    they are read.
    """

    async def body_limit(request: Request, handler: Handler) -> Response:
        declared = request.header("content-length")
        if declared is None:
            return await handler(request)
        if not declared.isdigit():
            raise HTTPError(Status.BAD_REQUEST, {"detail": "invalid_content_length"})
        if int(declared) > limit:
            raise HTTPError(Status.PAYLOAD_TOO_LARGE, {"detail": "request_body_too_large"})
        return await handler(request)

    return body_limit


__all__ = ["Handler", "MiddlewareCallable", "apply_middleware", "body_limit_middleware"]
