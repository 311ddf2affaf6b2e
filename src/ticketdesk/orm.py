"""Declarative models and typed repositories over a :class:`~ticketdesk.store.DataStore`."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Generic, Iterable, Mapping, Sequence, TypeVar

import msgspec

from .identifiers import generate_id57
from .serialization import to_row

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .store import DataStore

M = TypeVar("M", bound="Model")

Row = Mapping[str, Any]


class Model(msgspec.Struct, frozen=True, kw_only=True):
    """Frozen msgspec struct; the base of rows and of the values nested in them."""


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class DatabaseModel(Model, kw_only=True):
    """A table row with an id57 identifier and audit timestamps."""

    id: str = msgspec.field(default_factory=generate_id57)
    created_at: dt.datetime = msgspec.field(default_factory=utcnow)
    updated_at: dt.datetime = msgspec.field(default_factory=utcnow)


@dataclass(slots=True, frozen=True)
class ModelInfo(Generic[M]):
    model: type[M]
    table: str
    fields: tuple[str, ...]
    unique: tuple[tuple[str, ...], ...] = ()
    redacted_fields: frozenset[str] = field(default_factory=frozenset)

    def check(self) -> None:
        for columns in self.unique:
            stray = sorted(set(columns) - set(self.fields))
            if stray:
                raise ValueError(f"unique constraint on {self.table} names unknown fields: {stray}")


class ModelRegistry:
    """Which table each model lives in, looked up either way round."""

    def __init__(self) -> None:
        self._by_model: dict[type[Model], ModelInfo[Any]] = {}
        self._by_table: dict[str, ModelInfo[Any]] = {}

    def register(self, info: ModelInfo[Any]) -> None:
        if info.model in self._by_model or info.table in self._by_table:
            raise ValueError(f"{info.model.__name__} or table {info.table!r} is already registered")
        self._by_model[info.model] = self._by_table[info.table] = info

    def info_for(self, model: type[M]) -> ModelInfo[M]:
        info = self._by_model.get(model)
        if info is None:
            raise LookupError(f"{model.__name__} has no table")
        return info

    def table(self, name: str) -> ModelInfo[Any]:
        info = self._by_table.get(name)
        if info is None:
            raise LookupError(f"no model is stored in {name!r}")
        return info

    def models(self) -> Iterable[ModelInfo[Any]]:
        return self._by_model.values()

    def unique_constraints(self) -> dict[str, tuple[tuple[str, ...], ...]]:
        return {info.table: info.unique for info in self.models() if info.unique}


_default_registry = ModelRegistry()


def default_registry() -> ModelRegistry:
    return _default_registry


def model(
    *,
    table: str,
    unique: Sequence[Sequence[str]] = (),
    redacted_fields: Sequence[str] = (),
    registry: ModelRegistry | None = None,
) -> Callable[[type[M]], type[M]]:
    """Store the decorated model in ``table``.

    ``unique`` lists column groups the store must keep unique and
    ``redacted_fields`` are left out whenever the model is encoded as JSON.
    """

    def decorator(cls: type[M]) -> type[M]:
        info = ModelInfo(
            cls,
            table,
            tuple(cls.__struct_fields__),
            tuple(map(tuple, unique)),
            frozenset(redacted_fields),
        )
        info.check()
        (registry or _default_registry).register(info)
        cls.__model_info__ = info  # type: ignore[attr-defined]
        return cls

    return decorator


def _to_store(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        value = tuple(value)
    return msgspec.to_builtins(value, builtin_types=(dt.datetime, dt.date))


class Repository(Generic[M]):
    """Typed access to one model's table.

    Filters are keyword arguments compared for equality; a set, frozenset,
    list or tuple value matches any of its members.
    """

    def __init__(self, store: "DataStore", model: type[M], *, registry: ModelRegistry | None = None) -> None:
        self.store = store
        self.model = model
        self.info = (registry or _default_registry).info_for(model)

    @property
    def table(self) -> str:
        return self.info.table

    def _row_to_model(self, row: Row) -> M:
        return msgspec.convert(dict(row), type=self.model, strict=False)

    def _rows_to_models(self, rows: Iterable[Row]) -> list[M]:
        return [self._row_to_model(row) for row in rows]

    @staticmethod
    def _where(filters: Mapping[str, Any]) -> dict[str, Any]:
        return {column: _to_store(value) for column, value in filters.items()}

    async def get(self, **filters: Any) -> M | None:
        row = await self.store.get(self.table, self._where(filters))
        return None if row is None else self._row_to_model(row)

    async def list(self, *, order_by: Sequence[str] | None = None, limit: int | None = None, **filters: Any) -> list[M]:
        return self._rows_to_models(await self.store.list(self.table, self._where(filters), order_by=order_by, limit=limit))

    async def count(self, **filters: Any) -> int:
        return len(await self.store.list(self.table, self._where(filters)))

    async def insert(self, instance: M) -> M:
        return self._row_to_model(await self.store.insert(self.table, to_row(instance)))

    async def update(self, identifier: str, **values: Any) -> M | None:
        changed = await self.update_where(values, id=identifier)
        return changed[0] if changed else None

    async def update_where(self, values: Mapping[str, Any], **filters: Any) -> list[M]:
        """Apply ``values`` to every matching row; ``updated_at`` is refreshed unless given."""

        changes = {"updated_at": utcnow(), **{column: _to_store(value) for column, value in values.items()}}
        return self._rows_to_models(await self.store.update(self.table, changes, self._where(filters)))

    async def delete(self, **filters: Any) -> int:
        return await self.store.delete(self.table, self._where(filters))


__all__ = [
    "DatabaseModel",
    "Model",
    "ModelInfo",
    "ModelRegistry",
    "Repository",
    "default_registry",
    "model",
    "utcnow",
]
