"""Tests for :mod:`coffee_ledger.adapters.memory`."""

import asyncio

import pytest

from coffee_ledger.adapters.memory import MemoryDocumentStore
from coffee_ledger.core.query import Filter, OrderBy
from coffee_ledger.errors import NotFound, VersionConflict


def test_versions_change_on_every_write() -> None:
    async def scenario():
        store = MemoryDocumentStore()
        first = await store.create("farmers", "f1", {"fullName": "Amina"})
        second = await store.update("farmers", "f1", {"phone": "0700"})
        assert first.version != second.version
        assert second.data == {"fullName": "Amina", "phone": "0700"}

        with pytest.raises(VersionConflict):
            await store.update("farmers", "f1", {"phone": "0711"}, expected_version=first.version)
        with pytest.raises(VersionConflict):
            await store.create("farmers", "f1", {})
        with pytest.raises(NotFound):
            await store.update("farmers", "missing", {"phone": "1"})

    asyncio.run(scenario())


def test_query_filters_nested_fields_and_orders() -> None:
    async def scenario():
        store = MemoryDocumentStore()
        await store.put("farmers", "a", {"organization": {"id": "c1"}, "createdAt": "2024-02-01"})
        await store.put("farmers", "b", {"organization": {"id": "c2"}, "createdAt": "2024-01-01"})
        await store.put("farmers", "c", {"organization": {"id": "c1"}, "createdAt": "2024-03-01"})
        await store.put("farmers", "d", {"createdAt": "2024-04-01"})

        members = await store.query(
            "farmers", [Filter("organization.id", "==", "c1")], OrderBy("createdAt", descending=True)
        )
        assert [s.id for s in members] == ["c", "a"]
        # a document without the field never matches
        others = await store.query("farmers", [Filter("organization.id", "!=", "c1")])
        assert [s.id for s in others] == ["b"]

    asyncio.run(scenario())


def test_increment_is_atomic_and_floors() -> None:
    async def scenario():
        store = MemoryDocumentStore()
        await store.put("cooperatives", "c1", {"farmerCount": 0})
        await asyncio.gather(
            *(store.increment("cooperatives", "c1", "farmerCount", 1) for _ in range(10))
        )
        snapshot = await store.get("cooperatives", "c1")
        assert snapshot.data["farmerCount"] == 10

        floored = await store.increment("cooperatives", "c1", "farmerCount", -50, minimum=0)
        assert floored.data["farmerCount"] == 0

        with pytest.raises(NotFound):
            await store.increment("cooperatives", "gone", "farmerCount", 1)

    asyncio.run(scenario())


def test_persists_to_json_file(tmp_path) -> None:
    path = str(tmp_path / "data.json")

    async def scenario():
        store = MemoryDocumentStore(path=path)
        written = await store.create("loans", "l1", {"amount": 1000.0})
        await store.delete("loans", "missing")
        reloaded = MemoryDocumentStore(path=path)
        snapshot = await reloaded.get("loans", "l1")
        assert snapshot.data == {"amount": 1000.0}
        assert snapshot.version == written.version

        # the clock survives a reload so versions keep moving forward
        updated = await reloaded.update("loans", "l1", {"amount": 900.0})
        assert int(updated.version) > int(written.version)

    asyncio.run(scenario())


def test_subscribe_yields_initial_state_then_changes() -> None:
    async def scenario():
        store = MemoryDocumentStore()
        await store.put("loans", "l1", {"status": "active"})
        stream = store.subscribe("loans", [Filter("status", "==", "active")])

        initial = await stream.__anext__()
        assert [s.id for s in initial] == ["l1"]

        await store.put("loans", "l2", {"status": "active"})
        changed = await stream.__anext__()
        assert [s.id for s in changed] == ["l1", "l2"]

        await stream.aclose()
        assert store._subscribers["loans"] == []

    asyncio.run(scenario())
