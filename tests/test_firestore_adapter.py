"""Tests for the :mod:`coffee_ledger.adapters.firestore` module."""

import asyncio
import json
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest

from coffee_ledger.adapters.firestore import (
    FirestoreDocumentStore,
    decode_fields,
    encode_value,
)
from coffee_ledger.core.query import Filter, OrderBy
from coffee_ledger.errors import StoreUnavailable, VersionConflict

ROOT = "projects/coffee/databases/(default)/documents"


def run(coro: Any) -> Any:
    """Run an async coroutine synchronously for tests."""
    return asyncio.run(coro)


def make_store(handler) -> FirestoreDocumentStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FirestoreDocumentStore("coffee", token="TOKEN", client=client)


def document(collection: str, doc_id: str, fields: dict, update_time: str) -> dict:
    return {
        "name": f"{ROOT}/{collection}/{doc_id}",
        "fields": fields,
        "updateTime": update_time,
    }


def test_encode_value_types() -> None:
    assert encode_value(3) == {"integerValue": "3"}
    assert encode_value(True) == {"booleanValue": True}
    assert encode_value(2.5) == {"doubleValue": 2.5}
    assert encode_value([]) == {"arrayValue": {}}
    stamp = datetime(2024, 5, 1, 8, 30, tzinfo=UTC)
    assert encode_value(stamp) == {"timestampValue": "2024-05-01T08:30:00Z"}
    assert encode_value({"id": "c1"}) == {
        "mapValue": {"fields": {"id": {"stringValue": "c1"}}}
    }


def test_decode_nested_document() -> None:
    fields = {
        "farmerCount": {"integerValue": "12"},
        "organization": {
            "mapValue": {"fields": {"type": {"stringValue": "sacco"}}}
        },
        "payments": {
            "arrayValue": {"values": [{"mapValue": {"fields": {"amount": {"doubleValue": 50}}}}]}
        },
        "repaidAt": {"nullValue": None},
    }
    assert decode_fields(fields) == {
        "farmerCount": 12,
        "organization": {"type": "sacco"},
        "payments": [{"amount": 50.0}],
        "repaidAt": None,
    }


def test_get_sends_token_and_decodes() -> None:
    captured: dict[str, httpx.Request] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["request"] = request
        return httpx.Response(
            200,
            json=document("loans", "l1", {"amount": {"doubleValue": 100}}, "2024-01-01T00:00:00.1Z"),
        )

    store = make_store(handler)
    snapshot = run(store.get("loans", "l1"))

    request = captured["request"]
    assert request.headers["Authorization"] == "Bearer TOKEN"
    assert request.url.path.endswith("/documents/loans/l1")
    assert snapshot.id == "l1"
    assert snapshot.data == {"amount": 100.0}
    assert snapshot.version == "2024-01-01T00:00:00.1Z"


def test_get_missing_returns_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": {"status": "NOT_FOUND"}})

    assert run(make_store(handler).get("loans", "nope")) is None


def test_update_is_version_checked() -> None:
    captured: dict[str, httpx.Request] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["request"] = request
        return httpx.Response(400, json={"error": {"status": "FAILED_PRECONDITION"}})

    store = make_store(handler)
    with pytest.raises(VersionConflict):
        run(store.update("loans", "l1", {"status": "repaid"}, expected_version="v1"))

    request = captured["request"]
    assert request.method == "PATCH"
    assert request.url.params.get_list("updateMask.fieldPaths") == ["status"]
    assert request.url.params["currentDocument.updateTime"] == "v1"


def test_transport_failure_is_store_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("network down", request=request)

    with pytest.raises(StoreUnavailable):
        run(make_store(handler).query("farmers"))


def test_server_error_is_store_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": {"status": "UNAVAILABLE"}})

    with pytest.raises(StoreUnavailable):
        run(make_store(handler).put("farmers", "f1", {}))


def test_query_builds_structured_query() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        captured["path"] = request.url.path
        return httpx.Response(
            200,
            json=[
                {"document": document("farmers", "f1", {}, "t1")},
                {"readTime": "t2"},
            ],
        )

    store = make_store(handler)
    found = run(
        store.query(
            "farmers",
            [Filter("organization.id", "==", "c1"), Filter("organization.type", "in", ("cooperative",))],
            OrderBy("createdAt", descending=True),
        )
    )

    assert [s.id for s in found] == ["f1"]
    assert captured["path"].endswith("/documents:runQuery")
    query = captured["body"]["structuredQuery"]
    assert query["from"] == [{"collectionId": "farmers"}]
    filters = query["where"]["compositeFilter"]["filters"]
    assert filters[0]["fieldFilter"]["op"] == "EQUAL"
    assert filters[1]["fieldFilter"]["op"] == "IN"
    assert query["orderBy"][0]["direction"] == "DESCENDING"


def test_increment_uses_field_transform() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"writeResults": [{}]})
        return httpx.Response(
            200, json=document("cooperatives", "c1", {"farmerCount": {"integerValue": "4"}}, "t2")
        )

    snapshot = run(make_store(handler).increment("cooperatives", "c1", "farmerCount", 1))

    write = bodies[0]["writes"][0]
    assert write["transform"]["document"] == f"{ROOT}/cooperatives/c1"
    assert write["transform"]["fieldTransforms"][0]["increment"] == {"integerValue": "1"}
    assert snapshot.data["farmerCount"] == 4


def test_increment_with_minimum_floors_value() -> None:
    sent: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "PATCH":
            body = json.loads(request.content)
            sent.append(body)
            return httpx.Response(200, json=document("saccos", "s1", body["fields"], "t2"))
        return httpx.Response(
            200, json=document("saccos", "s1", {"farmerCount": {"integerValue": "0"}}, "t1")
        )

    snapshot = run(make_store(handler).increment("saccos", "s1", "farmerCount", -1, minimum=0))

    assert sent[0]["fields"] == {"farmerCount": {"integerValue": "0"}}
    assert snapshot.data["farmerCount"] == 0


def test_close_closes_client() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    store = FirestoreDocumentStore("coffee", client=client)
    run(store.close())
    assert client.is_closed
