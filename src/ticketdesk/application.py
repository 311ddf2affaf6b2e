"""Application core."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence

import msgspec

from . import asgi
from .authentication import Authenticator, Principal
from .config import AppConfig
from .dependency import DependencyProvider, DependencyScope
from .domain import (
    AnalyticsService,
    CategoryService,
    OnboardingService,
    OrganizationService,
    TeamService,
    TicketService,
)
from .edge import EdgeRouter
from .exceptions import AuthorizationError, ConflictError, HTTPError, TenantResolutionError, TransientError
from .http import Status
from .middleware import MiddlewareCallable, apply_middleware, body_limit_middleware
from .observability import Observability
from .rbac import Capability, MembershipAuthorizer
from .requests import BodyLoader, Request
from .responses import (
    JSONResponse,
    PlainTextResponse,
    RedirectResponse,
    Response,
    apply_default_security_headers,
    exception_to_response,
    security_headers_middleware,
)
from .rest_store import RestStore
from .routing import MethodNotAllowed, Route, RouteGuard, Router, normalize_guards
from .store import DataStore, MemoryStore
from .tenancy import OrganizationContext, TenantResolver

logger = logging.getLogger(__name__)

Endpoint = Callable[..., Awaitable[Any] | Any]
Hook = Callable[[], Awaitable[None] | None]
Authorize = Capability | RouteGuard | Sequence[RouteGuard] | None

_REQUEST_BUILTINS = (Request, OrganizationContext, Principal)


class TicketdeskApp:
    """Central application object.

    Wires the data store, the tenant resolver and edge router, the
    authenticator and the domain services, and exposes them to handlers
    through the dependency provider.  The middleware chain runs before route
    matching so the edge router can rewrite tenant requests onto
    ``/org/<organization id>/...``.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        store: DataStore | None = None,
        dependency_provider: DependencyProvider | None = None,
        observability: Observability | None = None,
        resolver: TenantResolver | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self.router = Router()
        self.dependencies = dependency_provider or DependencyProvider()
        self.observability = observability or Observability(self.config.observability)
        self._startup_hooks: list[Hook] = []
        self._shutdown_hooks: list[Hook] = []
        self.store = store if store is not None else self._default_store()

        self.resolver = resolver or TenantResolver(self.store, self.config, observability=self.observability)
        self.edge = EdgeRouter(self.resolver, self.config, observability=self.observability)
        self.authenticator = Authenticator(self.store)
        self.authorizer = MembershipAuthorizer(self.store)
        self.organizations = OrganizationService(self.store, self.authorizer, resolver=self.resolver)
        self.onboarding = OnboardingService(self.store, self.config)
        self.tickets = TicketService(self.store, self.authorizer)
        self.categories = CategoryService(self.store, self.authorizer)
        self.team = TeamService(self.store, self.authorizer)
        self.analytics = AnalyticsService(self.store, self.authorizer)

        services: dict[type[Any], Any] = {
            AppConfig: self.config,
            Observability: self.observability,
            TenantResolver: self.resolver,
            MembershipAuthorizer: self.authorizer,
            Authenticator: self.authenticator,
            OrganizationService: self.organizations,
            OnboardingService: self.onboarding,
            TicketService: self.tickets,
            CategoryService: self.categories,
            TeamService: self.team,
            AnalyticsService: self.analytics,
        }
        for service_type, service in services.items():
            self.dependencies.provide(service_type, _constant(service))

        # Outermost first: headers wrap everything, then the tenant rewrite.
        self._middlewares: list[MiddlewareCallable] = [
            security_headers_middleware,
            self.edge.middleware,
            self.authenticator.middleware,
        ]
        if self.config.max_request_body_bytes is not None:
            self._middlewares.append(body_limit_middleware(self.config.max_request_body_bytes))

    def _default_store(self) -> DataStore:
        if self.config.rest_store is None:
            return MemoryStore()
        rest_store = RestStore(self.config.rest_store)
        self.on_shutdown(rest_store.aclose)
        return rest_store

    # ------------------------------------------------------------------ routing
    def route(
        self,
        path: str,
        *,
        methods: Iterable[str],
        name: str | None = None,
        authorize: Authorize = None,
        authenticated: bool = False,
    ) -> Callable[[Endpoint], Endpoint]:
        guards = normalize_guards(authorize, authenticated=authenticated)

        def decorator(func: Endpoint) -> Endpoint:
            self.router.add_route(path, methods=tuple(methods), endpoint=func, name=name, guards=guards)
            return func

        return decorator

    def get(self, path: str, **options: Any) -> Callable[[Endpoint], Endpoint]:
        return self.route(path, methods=("GET",), **options)

    def post(self, path: str, **options: Any) -> Callable[[Endpoint], Endpoint]:
        return self.route(path, methods=("POST",), **options)

    def include(self, *handlers: Endpoint) -> None:
        self.router.include(handlers)

    def url_path_for(self, name: str, /, **params: Any) -> str:
        return self.router.url_path_for(name, **params)

    def add_middleware(self, middleware: MiddlewareCallable) -> None:
        """Append ``middleware`` innermost, after the built-in chain."""

        if middleware is security_headers_middleware and middleware in self._middlewares:
            return
        self._middlewares.append(middleware)

    # ------------------------------------------------------------------ lifecycle
    def on_startup(self, func: Hook) -> Hook:
        self._startup_hooks.append(func)
        return func

    def on_shutdown(self, func: Hook) -> Hook:
        self._shutdown_hooks.append(func)
        return func

    @staticmethod
    async def _run_hooks(hooks: Sequence[Hook]) -> None:
        for hook in hooks:
            outcome = hook()
            if inspect.isawaitable(outcome):
                await outcome

    async def startup(self) -> None:
        await self._run_hooks(self._startup_hooks)

    async def shutdown(self) -> None:
        await self._run_hooks(self._shutdown_hooks)

    # ------------------------------------------------------------------ request handling
    async def dispatch(
        self,
        method: str,
        path: str,
        *,
        host: str,
        query_string: str | None = None,
        headers: Mapping[str, str] | None = None,
        body: bytes | None = None,
        body_loader: BodyLoader | None = None,
    ) -> Response:
        """Run one request through the middleware chain and the router."""

        path, _, inline_query = path.partition("?")
        query = "&".join(part for part in (query_string, inline_query) if part)
        request_headers = {name.lower(): value for name, value in (headers or {}).items()}
        request_headers["host"] = host
        request = Request(
            method=method,
            path=path,
            headers=request_headers,
            query_string=query,
            body=body,
            body_loader=None if body is not None else body_loader,
        )
        observation = self.observability.on_request_start(request)
        chain = apply_middleware(
            self._middlewares,
            self._endpoint,
            observability=self.observability,
            request_context=observation,
        )
        try:
            response = await chain(request)
        except TenantResolutionError:
            response = exception_to_response(HTTPError(Status.BAD_REQUEST, {"detail": "invalid_host_header"}))
        except HTTPError as exc:
            response = exception_to_response(exc)
        except TransientError as exc:
            response = self._unavailable(request, exc)
        except Exception as exc:
            status = getattr(exc, "status", None)
            status_code = int(status) if isinstance(status, int) else int(Status.INTERNAL_SERVER_ERROR)
            self.observability.on_request_error(observation, exc, status_code=status_code)
            raise
        return self.observability.on_request_success(observation, response)

    async def _endpoint(self, request: Request) -> Response:
        try:
            match = self.router.find(request.method, request.path)
        except MethodNotAllowed:
            allowed = ", ".join(self.router.allowed_methods(request.path))
            error = exception_to_response(HTTPError(Status.METHOD_NOT_ALLOWED, {"detail": "method_not_allowed"}))
            return error.with_headers((("allow", allowed),))
        except LookupError:
            raise HTTPError(Status.NOT_FOUND, {"detail": "route_not_found"})
        request.path_params = dict(match.params)
        try:
            await self._authorize_route(match.route, request)
            arguments = await self._bind_arguments(match.route, request, self.dependencies.scope(request))
            result = match.route.spec.endpoint(**arguments)
            if inspect.isawaitable(result):
                result = await result
        except AuthorizationError as exc:
            return self._access_denied(request, exc)
        except TransientError as exc:
            return self._unavailable(request, exc)
        except ConflictError as exc:
            raise HTTPError(Status.CONFLICT, {"detail": "conflict", "columns": list(exc.columns)}) from exc
        return _coerce_response(result)

    async def _bind_arguments(self, route: Route, request: Request, scope: DependencyScope) -> dict[str, Any]:
        """Fill handler parameters from path params, dependencies or the JSON body.

        Untyped parameters named like a path parameter receive it as ``str``.
        Struct-typed parameters without a registered provider are decoded from
        the request body.
        """

        arguments: dict[str, Any] = {}
        for name, parameter in route.signature.parameters.items():
            annotation = route.type_hints.get(name, parameter.annotation)
            if annotation in _REQUEST_BUILTINS:
                arguments[name] = await scope.get(annotation)
            elif name in route.param_names:
                arguments[name] = request.path_params[name]
            elif annotation is inspect.Signature.empty:
                raise HTTPError(Status.INTERNAL_SERVER_ERROR, {"detail": "untyped_parameter", "parameter": name})
            else:
                try:
                    arguments[name] = await scope.get(annotation)
                except LookupError as exc:
                    if not _is_struct(annotation):
                        raise HTTPError(
                            Status.INTERNAL_SERVER_ERROR,
                            {"dependency": repr(annotation), "detail": str(exc)},
                        ) from exc
                    arguments[name] = await request.json(annotation)
        return arguments

    async def _authorize_route(self, route: Route, request: Request) -> None:
        if not route.guards:
            return
        principal = request.principal
        if principal is None:
            raise AuthorizationError("authentication_required")
        for guard in route.guards:
            if guard.capability is None:
                continue
            organization_id = guard.organization_id(request.path_params)
            if organization_id is None:
                raise HTTPError(
                    Status.INTERNAL_SERVER_ERROR,
                    {"detail": "guard_missing_organization", "param": guard.organization_param},
                )
            await self.authorizer.require(principal, organization_id, guard.capability)

    def _access_denied(self, request: Request, error: AuthorizationError) -> Response:
        """Send anonymous callers to sign in and everyone else to the forbidden page."""

        if request.principal is None:
            return RedirectResponse(self.config.signin_route, params={"redirect": request.original_path})
        logger.info(
            "user %s denied %s %s: %s",
            request.principal.user_id,
            request.method,
            request.original_path,
            error.detail,
        )
        return RedirectResponse(self.config.forbidden_route)

    def _unavailable(self, request: Request, error: TransientError) -> Response:
        logger.warning("data store unavailable while handling %s %s: %s", request.method, request.original_path, error)
        response = exception_to_response(HTTPError(Status.SERVICE_UNAVAILABLE, {"detail": "temporarily_unavailable"}))
        return response.with_headers((("retry-after", "1"),))

    async def __call__(self, scope: asgi.Scope, receive: asgi.Receive, send: asgi.Send) -> None:
        await asgi.handle(self, scope, receive, send)


def create_app(config: AppConfig | None = None, *, store: DataStore | None = None) -> TicketdeskApp:
    """Build an application with every ticketdesk page registered."""

    from . import views

    app = TicketdeskApp(config or AppConfig.from_env(), store=store)
    app.include(*views.HANDLERS)
    return app


def _constant(value: Any) -> Callable[[], Any]:
    return lambda: value


def _is_struct(annotation: Any) -> bool:
    return isinstance(annotation, type) and issubclass(annotation, msgspec.Struct)


def _coerce_response(result: Any) -> Response:
    if isinstance(result, Response):
        return result
    if result is None:
        return apply_default_security_headers(Response(status=int(Status.NO_CONTENT)))
    if isinstance(result, str):
        return PlainTextResponse(result)
    return JSONResponse(result)


__all__ = ["TicketdeskApp", "create_app"]
