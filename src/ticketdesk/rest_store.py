"""A :class:`~ticketdesk.store.DataStore` backed by a PostgREST endpoint.

The managed backend exposes every table under ``/rest/v1/<table>`` and accepts
filters as ``column=eq.value`` or ``column=in.(a,b)`` query parameters.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Mapping, Sequence

import httpx
import msgspec

from .exceptions import ConflictError, TransientError
from .serialization import json_decode, json_encode
from .store import Filters, Row

logger = logging.getLogger(__name__)

_UNIQUE_VIOLATION = "23505"


class RestStoreConfig(msgspec.Struct, frozen=True):
    """Connection settings for the managed backend's REST API."""

    url: str
    api_key: str
    schema: str = "public"
    timeout: float = 5.0


def _literal(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    return str(value)


def _quote(value: Any) -> str:
    text = _literal(value)
    if any(char in text for char in ',()"'):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


def filter_params(filters: Filters | None) -> list[tuple[str, str]]:
    params: list[tuple[str, str]] = []
    for column, value in (filters or {}).items():
        if isinstance(value, (tuple, list, set, frozenset)):
            params.append((column, f"in.({','.join(_quote(item) for item in value)})"))
        elif value is None:
            params.append((column, "is.null"))
        else:
            params.append((column, f"eq.{_literal(value)}"))
    return params


def order_param(order_by: Sequence[str] | None) -> str | None:
    if not order_by:
        return None
    parts = []
    for spec in order_by:
        if spec.startswith("-"):
            parts.append(f"{spec[1:]}.desc.nullslast")
        else:
            parts.append(f"{spec}.asc.nullslast")
    return ",".join(parts)


class RestStore:
    """Speak the PostgREST dialect over an ``httpx.AsyncClient``."""

    def __init__(self, config: RestStoreConfig, *, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=config.url.rstrip("/"), timeout=config.timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, *, write: bool = False) -> dict[str, str]:
        headers = {
            "apikey": self.config.api_key,
            "Authorization": f"Bearer {self.config.api_key}",
            "Accept-Profile": self.config.schema,
        }
        if write:
            headers["Content-Profile"] = self.config.schema
            headers["Content-Type"] = "application/json"
            headers["Prefer"] = "return=representation"
        return headers

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: Sequence[tuple[str, str]] = (),
        body: Any = None,
        write: bool = False,
    ) -> httpx.Response:
        content = json_encode(body) if body is not None else None
        try:
            response = await self._client.request(
                method,
                f"/rest/v1/{table}",
                params=list(params),
                content=content,
                headers=self._headers(write=write),
            )
        except httpx.TimeoutException as exc:
            raise TransientError(f"{method} {table} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"{method} {table} failed: {exc}") from exc
        if response.status_code < 400:
            return response
        if response.status_code == 409 or _error_code(response) == _UNIQUE_VIOLATION:
            raise ConflictError(table, _conflict_columns(response))
        if response.status_code < 500:
            logger.error("%s %s rejected with %s: %s", method, table, response.status_code, _error_payload(response).get("message"))
        raise TransientError(f"{method} {table} returned {response.status_code}")

    @staticmethod
    def _rows(response: httpx.Response) -> list[Row]:
        if not response.content:
            return []
        try:
            payload = json_decode(response.content)
        except msgspec.DecodeError as exc:
            raise TransientError(f"unreadable response from {response.request.url}") from exc
        if isinstance(payload, dict):
            return [payload]
        return list(payload)

    async def get(self, table: str, filters: Filters) -> Row | None:
        rows = await self.list(table, filters, limit=1)
        return rows[0] if rows else None

    async def list(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        order_by: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        params = [("select", "*"), *filter_params(filters)]
        order = order_param(order_by)
        if order:
            params.append(("order", order))
        if limit is not None:
            params.append(("limit", str(limit)))
        response = await self._request("GET", table, params=params)
        return self._rows(response)

    async def insert(self, table: str, row: Row) -> Row:
        response = await self._request("POST", table, body=row, write=True)
        rows = self._rows(response)
        logger.debug("inserted %s row %s", table, row.get("id"))
        return rows[0] if rows else dict(row)

    async def update(self, table: str, values: Row, filters: Filters) -> list[Row]:
        response = await self._request("PATCH", table, params=filter_params(filters), body=values, write=True)
        return self._rows(response)

    async def delete(self, table: str, filters: Filters) -> int:
        if not filters:
            raise ValueError("Refusing to delete every row of a table")
        response = await self._request("DELETE", table, params=filter_params(filters), write=True)
        return len(self._rows(response))


def _error_payload(response: httpx.Response) -> Mapping[str, Any]:
    if not response.content:
        return {}
    try:
        payload = json_decode(response.content)
    except msgspec.DecodeError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _error_code(response: httpx.Response) -> str | None:
    if response.status_code < 400:
        return None
    code = _error_payload(response).get("code")
    return str(code) if code is not None else None


def _conflict_columns(response: httpx.Response) -> tuple[str, ...]:
    # Postgres reports "Key (col_a, col_b)=(...) already exists."
    details = str(_error_payload(response).get("details") or "")
    if details.startswith("Key (") and ")=" in details:
        return tuple(column.strip() for column in details[5 : details.index(")=")].split(","))
    return ()


__all__ = ["RestStore", "RestStoreConfig", "filter_params", "order_param"]
