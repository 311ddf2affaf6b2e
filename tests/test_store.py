from __future__ import annotations

import asyncio
import datetime as dt

import pytest

from ticketdesk.exceptions import ConflictError
from ticketdesk.store import MemoryStore, matches, order_rows


def test_matches_handles_membership_filters() -> None:
    row = {"status": "open", "priority": "high"}
    assert matches(row, None)
    assert matches(row, {"status": "open"})
    assert matches(row, {"status": ("open", "pending")})
    assert not matches(row, {"status": ["closed"]})
    assert not matches(row, {"missing": "x"})


def test_order_rows_sorts_by_several_columns_with_nulls_last() -> None:
    rows = [
        {"id": "a", "group": 1, "at": None},
        {"id": "b", "group": 1, "at": 3},
        {"id": "c", "group": 0, "at": 5},
        {"id": "d", "group": 1, "at": 7},
    ]
    ordered = order_rows(rows, ["group", "-at"])
    assert [row["id"] for row in ordered] == ["c", "d", "b", "a"]


@pytest.mark.asyncio
async def test_insert_and_query_rows() -> None:
    store = MemoryStore(unique={})
    await store.insert("tickets", {"id": "t1", "status": "open", "n": 2})
    await store.insert("tickets", {"id": "t2", "status": "closed", "n": 1})
    await store.insert("tickets", {"id": "t3", "status": "open", "n": 3})

    assert (await store.get("tickets", {"id": "t2"})) == {"id": "t2", "status": "closed", "n": 1}
    assert await store.get("tickets", {"id": "nope"}) is None
    open_rows = await store.list("tickets", {"status": "open"}, order_by=["-n"])
    assert [row["id"] for row in open_rows] == ["t3", "t1"]
    assert len(await store.list("tickets", limit=2)) == 2
    assert await store.list("unknown") == []


@pytest.mark.asyncio
async def test_returned_rows_are_copies() -> None:
    store = MemoryStore(unique={})
    await store.insert("t", {"id": "1", "tags": ["a"]})
    row = await store.get("t", {"id": "1"})
    assert row is not None
    row["tags"].append("b")
    assert (await store.get("t", {"id": "1"})) == {"id": "1", "tags": ["a"]}


@pytest.mark.asyncio
async def test_unique_constraints_reject_duplicates() -> None:
    store = MemoryStore(unique={"organizations": [("subdomain",)]})
    await store.insert("organizations", {"id": "o1", "subdomain": "acme"})

    with pytest.raises(ConflictError) as excinfo:
        await store.insert("organizations", {"id": "o2", "subdomain": "acme"})
    assert excinfo.value.table == "organizations"
    assert excinfo.value.columns == ("subdomain",)

    with pytest.raises(ConflictError):
        await store.insert("organizations", {"id": "o1", "subdomain": "other"})


@pytest.mark.asyncio
async def test_null_values_do_not_collide() -> None:
    store = MemoryStore(unique={"t": [("code",)]})
    await store.insert("t", {"id": "1", "code": None})
    await store.insert("t", {"id": "2", "code": None})
    assert len(await store.list("t")) == 2


@pytest.mark.asyncio
async def test_update_checks_constraints_and_returns_rows() -> None:
    store = MemoryStore(unique={"organizations": [("subdomain",)]})
    await store.insert("organizations", {"id": "o1", "subdomain": "acme"})
    await store.insert("organizations", {"id": "o2", "subdomain": "globex"})

    updated = await store.update("organizations", {"name": "Acme"}, {"id": "o1"})
    assert updated == [{"id": "o1", "subdomain": "acme", "name": "Acme"}]

    with pytest.raises(ConflictError):
        await store.update("organizations", {"subdomain": "acme"}, {"id": "o2"})
    assert (await store.get("organizations", {"id": "o2"}))["subdomain"] == "globex"


@pytest.mark.asyncio
async def test_delete_returns_count() -> None:
    store = MemoryStore(unique={})
    for index in range(3):
        await store.insert("t", {"id": str(index), "kind": "x" if index else "y"})
    assert await store.delete("t", {"kind": "x"}) == 2
    assert [row["id"] for row in await store.list("t")] == ["0"]


@pytest.mark.asyncio
async def test_insert_requires_an_id() -> None:
    with pytest.raises(ValueError):
        await MemoryStore(unique={}).insert("t", {"name": "x"})


@pytest.mark.asyncio
async def test_concurrent_claims_for_one_subdomain_have_a_single_winner() -> None:
    store = MemoryStore(unique={"organizations": [("subdomain",)]})

    async def claim(identifier: str) -> str:
        await store.insert("organizations", {"id": identifier, "subdomain": "acme"})
        return identifier

    results = await asyncio.gather(*(claim(f"o{i}") for i in range(5)), return_exceptions=True)
    winners = [result for result in results if isinstance(result, str)]
    assert len(winners) == 1
    assert all(isinstance(result, ConflictError) for result in results if not isinstance(result, str))


@pytest.mark.asyncio
async def test_datetimes_are_kept_native_for_ordering() -> None:
    store = MemoryStore(unique={})
    early = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)
    late = dt.datetime(2024, 6, 1, tzinfo=dt.timezone.utc)
    await store.insert("t", {"id": "late", "created_at": late})
    await store.insert("t", {"id": "early", "created_at": early})
    rows = await store.list("t", order_by=["created_at"])
    assert [row["id"] for row in rows] == ["early", "late"]
