"""Request-scoped dependency injection.

Handlers and factories declare what they need through type hints.  A
:class:`DependencyScope` lives for one request: the request, its organization
and its principal are always injectable, and every registered factory runs at
most once per scope.
"""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, TypeVar, get_type_hints

from .authentication import Principal
from .requests import Request
from .tenancy import OrganizationContext

T = TypeVar("T")
F = TypeVar("F", bound=Callable[..., Any])
Factory = Callable[..., Awaitable[Any] | Any]

_BUILTINS: dict[type[Any], Callable[[Request], Any]] = {
    Request: lambda request: request,
    OrganizationContext: lambda request: request.organization,
    Principal: lambda request: request.principal,
}


class DependencyProvider:
    def __init__(self) -> None:
        self._factories: dict[type[Any], Factory] = {}

    def register(self, dependency_type: type[T]) -> Callable[[F], F]:
        """Register the decorated function as the factory for ``dependency_type``."""

        def decorator(factory: F) -> F:
            self.provide(dependency_type, factory)
            return factory

        return decorator

    def provide(self, dependency_type: type[T], factory: Factory) -> None:
        self._factories[dependency_type] = factory

    def scope(self, request: Request) -> "DependencyScope":
        return DependencyScope(self._factories, request)


class DependencyScope:
    def __init__(self, factories: dict[type[Any], Factory], request: Request) -> None:
        self._factories = factories
        self._request = request
        self._resolved: dict[type[Any], Any] = {}

    async def get(self, dependency_type: type[T]) -> T:
        builtin = _BUILTINS.get(dependency_type)
        if builtin is not None:
            return builtin(self._request)
        if dependency_type not in self._resolved:
            try:
                factory = self._factories[dependency_type]
            except KeyError:
                raise LookupError(f"nothing provides {dependency_type!r}") from None
            self._resolved[dependency_type] = await self.call(factory)
        return self._resolved[dependency_type]

    async def call(self, func: Factory) -> Any:
        """Call ``func`` with every parameter resolved from this scope."""

        hints = get_type_hints(func)
        arguments: dict[str, Any] = {}
        for name, parameter in inspect.signature(func).parameters.items():
            annotation = hints.get(name, parameter.annotation)
            if annotation is inspect.Signature.empty:
                raise TypeError(f"parameter {name!r} of {func!r} needs a type hint to be injected")
            arguments[name] = await self.get(annotation)
        result = func(**arguments)
        if inspect.isawaitable(result):
            result = await result
        return result


__all__ = ["DependencyProvider", "DependencyScope"]
