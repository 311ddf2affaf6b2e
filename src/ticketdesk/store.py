"""Generic data access over the managed backend.

Everything ticketdesk persists goes through :class:`DataStore`, a five-verb
interface keyed by table name.  Filters are exact-equality mappings; a tuple or
list value matches any of its members.  ``order_by`` entries name a column and
may be prefixed with ``-`` for descending order.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Iterable, Mapping, Protocol, Sequence

from .exceptions import ConflictError
from .orm import ModelRegistry, default_registry

logger = logging.getLogger(__name__)

Row = dict[str, Any]
Filters = Mapping[str, Any]


class DataStore(Protocol):
    async def get(self, table: str, filters: Filters) -> Row | None:  # pragma: no cover - protocol
        ...

    async def list(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        order_by: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[Row]:  # pragma: no cover - protocol
        ...

    async def insert(self, table: str, row: Row) -> Row:  # pragma: no cover - protocol
        ...

    async def update(self, table: str, values: Row, filters: Filters) -> list[Row]:  # pragma: no cover - protocol
        ...

    async def delete(self, table: str, filters: Filters) -> int:  # pragma: no cover - protocol
        ...


def matches(row: Mapping[str, Any], filters: Filters | None) -> bool:
    if not filters:
        return True
    for column, expected in filters.items():
        actual = row.get(column)
        if isinstance(expected, (tuple, list)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def order_rows(rows: list[Row], order_by: Sequence[str] | None) -> list[Row]:
    # ``None`` sorts last in either direction, like ``nullslast`` in PostgREST.
    for spec in reversed(tuple(order_by or ())):
        descending = spec.startswith("-")
        column = spec[1:] if descending else spec
        present = [row for row in rows if row.get(column) is not None]
        missing = [row for row in rows if row.get(column) is None]
        present.sort(key=lambda row: row[column], reverse=descending)
        rows[:] = present + missing
    return rows


class MemoryStore:
    """In-process :class:`DataStore` used for development and tests.

    Unique constraints default to the ones declared on registered models.  All
    writes run under a single lock so the uniqueness check and the write cannot
    interleave with another writer.
    """

    def __init__(
        self,
        *,
        unique: Mapping[str, Iterable[Sequence[str]]] | None = None,
        registry: ModelRegistry | None = None,
    ) -> None:
        if unique is None:
            unique = (registry or default_registry()).unique_constraints()
        self._unique = {table: tuple(tuple(cols) for cols in constraints) for table, constraints in unique.items()}
        self._tables: dict[str, dict[str, Row]] = {}
        self._lock = asyncio.Lock()

    def _table(self, table: str) -> dict[str, Row]:
        return self._tables.setdefault(table, {})

    def _check_unique(self, table: str, candidate: Row, *, ignore: str | None = None) -> None:
        for columns in self._unique.get(table, ()):
            key = tuple(candidate.get(column) for column in columns)
            if any(part is None for part in key):
                continue
            for row_id, row in self._table(table).items():
                if row_id == ignore:
                    continue
                if tuple(row.get(column) for column in columns) == key:
                    raise ConflictError(table, columns)

    async def get(self, table: str, filters: Filters) -> Row | None:
        for row in self._table(table).values():
            if matches(row, filters):
                return copy.deepcopy(row)
        return None

    async def list(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        order_by: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        rows = [copy.deepcopy(row) for row in self._table(table).values() if matches(row, filters)]
        rows = order_rows(rows, order_by)
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def insert(self, table: str, row: Row) -> Row:
        if "id" not in row:
            raise ValueError(f"Rows inserted into {table} require an 'id'")
        async with self._lock:
            data = self._table(table)
            if row["id"] in data:
                raise ConflictError(table, ("id",))
            self._check_unique(table, row)
            data[row["id"]] = copy.deepcopy(row)
        logger.debug("inserted %s row %s", table, row["id"])
        return copy.deepcopy(row)

    async def update(self, table: str, values: Row, filters: Filters) -> list[Row]:
        async with self._lock:
            data = self._table(table)
            targets = [row_id for row_id, row in data.items() if matches(row, filters)]
            staged = {row_id: {**data[row_id], **copy.deepcopy(values)} for row_id in targets}
            for row_id, candidate in staged.items():
                self._check_unique(table, candidate, ignore=row_id)
            data.update(staged)
        return [copy.deepcopy(staged[row_id]) for row_id in targets]

    async def delete(self, table: str, filters: Filters) -> int:
        async with self._lock:
            data = self._table(table)
            targets = [row_id for row_id, row in data.items() if matches(row, filters)]
            for row_id in targets:
                del data[row_id]
        return len(targets)


__all__ = ["DataStore", "Filters", "MemoryStore", "Row", "matches", "order_rows"]
