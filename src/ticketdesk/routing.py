"""Path routing for handlers.

Paths use ``{name}`` placeholders, which match one segment, and
``{name:path}`` placeholders, which match the rest of the path including
slashes.
"""

from __future__ import annotations

import inspect
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence, get_type_hints

import rure
from rure.regex import RegexObject

from .rbac import Capability

Endpoint = Callable[..., Awaitable[Any] | Any]
ROUTE_ATTRIBUTE = "__ticketdesk_route__"

_PLACEHOLDER = re.compile(r"{(?P<name>[A-Za-z_]\w*)(?::(?P<kind>\w+))?}")
_SEGMENT_PATTERNS = {None: "[^/]+", "path": ".*"}
_LITERAL_ESCAPES = str.maketrans({char: "\\" + char for char in ".+*?()|[]{}^$\\"})


@dataclass(slots=True, frozen=True)
class RouteGuard:
    """Access requirement attached to a route.

    Every guarded route needs a signed-in caller.  With a ``capability`` the
    caller must also hold a role granting it in the organization named by the
    ``organization_param`` path parameter.
    """

    capability: Capability | None = None
    organization_param: str = "organization_id"

    def organization_id(self, params: Mapping[str, str]) -> str | None:
        return params.get(self.organization_param)


GuardSpec = Capability | RouteGuard | Sequence[RouteGuard] | None


@dataclass(slots=True)
class RouteSpec:
    path: str
    methods: tuple[str, ...]
    endpoint: Endpoint
    name: str | None = None
    guards: tuple[RouteGuard, ...] = ()


@dataclass(slots=True)
class Route:
    spec: RouteSpec
    pattern: RegexObject
    param_names: tuple[str, ...]
    signature: inspect.Signature = field(repr=False)
    type_hints: Mapping[str, Any] = field(repr=False)

    @classmethod
    def build(cls, spec: RouteSpec) -> "Route":
        pattern, names = _compile_path(spec.path)
        return cls(
            spec=spec,
            pattern=pattern,
            param_names=names,
            signature=inspect.signature(spec.endpoint),
            type_hints=get_type_hints(spec.endpoint),
        )

    @property
    def guards(self) -> tuple[RouteGuard, ...]:
        return self.spec.guards

    @property
    def is_static(self) -> bool:
        return not self.param_names

    def capture(self, path: str) -> dict[str, str] | None:
        found = self.pattern.match(path)
        if found is None:
            return None
        params = {name: found.group(name) for name in self.param_names}
        return {name: value for name, value in params.items() if value is not None}

    def expand(self, params: Mapping[str, Any]) -> str:
        missing = [key for key in self.param_names if key not in params]
        if missing:
            raise KeyError(f"route {self.spec.name!r} needs path parameter {missing[0]!r}")
        return _PLACEHOLDER.sub(lambda found: str(params[found.group("name")]), self.spec.path)


@dataclass(slots=True)
class RouteMatch:
    route: Route
    params: Mapping[str, str]


class MethodNotAllowed(LookupError):
    def __init__(self, method: str, path: str) -> None:
        super().__init__(f"{method} is not allowed on {path}")
        self.method = method
        self.path = path


class Router:
    """Ordered route table.

    An exact path registered for a method wins over any placeholder route, so
    ``/org/not-found`` is never captured by ``/org/{organization_id}``.
    """

    def __init__(self) -> None:
        self._routes: list[Route] = []
        self._exact: dict[tuple[str, str], Route] = {}

    @property
    def routes(self) -> tuple[Route, ...]:
        return tuple(self._routes)

    def add_route(
        self,
        path: str,
        *,
        methods: Sequence[str],
        endpoint: Endpoint,
        name: str | None = None,
        guards: Sequence[RouteGuard] | None = None,
    ) -> Route:
        verbs = tuple(dict.fromkeys(method.upper() for method in methods))
        route = Route.build(RouteSpec(path, verbs, endpoint, name, tuple(guards or ())))
        self._routes.append(route)
        if route.is_static:
            for verb in verbs:
                self._exact[(verb, path)] = route
        return route

    def include(self, handlers: Iterable[Endpoint]) -> None:
        """Add every handler decorated with :func:`route`, :func:`get` or :func:`post`."""

        for handler in handlers:
            spec: RouteSpec | None = getattr(handler, ROUTE_ATTRIBUTE, None)
            if spec is None:
                raise ValueError(f"{handler!r} was not decorated as a route")
            self.add_route(spec.path, methods=spec.methods, endpoint=handler, name=spec.name, guards=spec.guards)

    def find(self, method: str, path: str) -> RouteMatch:
        verb = method.upper()
        exact = self._exact.get((verb, path))
        if exact is not None:
            return RouteMatch(exact, {})
        for candidate in self._routes:
            if candidate.is_static or verb not in candidate.spec.methods:
                continue
            params = candidate.capture(path)
            if params is not None:
                return RouteMatch(candidate, params)
        if self.allowed_methods(path):
            raise MethodNotAllowed(verb, path)
        raise LookupError(f"nothing routes {verb} {path}")

    def allowed_methods(self, path: str) -> tuple[str, ...]:
        verbs = {verb for candidate in self._routes if candidate.capture(path) is not None for verb in candidate.spec.methods}
        return tuple(sorted(verbs))

    def url_path_for(self, name: str, /, **params: Any) -> str:
        for candidate in self._routes:
            if candidate.spec.name == name:
                return candidate.expand(params)
        raise LookupError(f"no route named {name!r}")


def normalize_guards(authorize: GuardSpec, *, authenticated: bool = False) -> tuple[RouteGuard, ...]:
    """Turn the ``authorize`` shorthand accepted by the decorators into guards."""

    if isinstance(authorize, Capability):
        return (RouteGuard(capability=authorize),)
    if isinstance(authorize, RouteGuard):
        return (authorize,)
    if authorize is not None:
        return tuple(authorize)
    return (RouteGuard(),) if authenticated else ()


def route(
    path: str,
    *,
    methods: Sequence[str],
    name: str | None = None,
    authorize: GuardSpec = None,
    authenticated: bool = False,
) -> Callable[[Endpoint], Endpoint]:
    """Mark a handler for :meth:`Router.include`."""

    guards = normalize_guards(authorize, authenticated=authenticated)

    def decorator(func: Endpoint) -> Endpoint:
        setattr(func, ROUTE_ATTRIBUTE, RouteSpec(path, tuple(methods), func, name, guards))
        return func

    return decorator


def get(path: str, **options: Any) -> Callable[[Endpoint], Endpoint]:
    return route(path, methods=["GET"], **options)


def post(path: str, **options: Any) -> Callable[[Endpoint], Endpoint]:
    return route(path, methods=["POST"], **options)


def _compile_path(path: str) -> tuple[RegexObject, tuple[str, ...]]:
    names: list[str] = []
    regex = "^"
    cursor = 0
    for found in _PLACEHOLDER.finditer(path):
        kind = found.group("kind")
        if kind not in _SEGMENT_PATTERNS:
            raise ValueError(f"unknown path converter {kind!r} in {path!r}")
        names.append(found.group("name"))
        regex += path[cursor : found.start()].translate(_LITERAL_ESCAPES) + f"(?P<{found.group('name')}>{_SEGMENT_PATTERNS[kind]})"
        cursor = found.end()
    regex += path[cursor:].translate(_LITERAL_ESCAPES) + "$"
    return rure.compile(regex), tuple(names)


__all__ = [
    "Endpoint",
    "MethodNotAllowed",
    "Route",
    "RouteGuard",
    "RouteMatch",
    "RouteSpec",
    "Router",
    "get",
    "normalize_guards",
    "post",
    "route",
]
