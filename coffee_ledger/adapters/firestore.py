"""Firestore adapter implementing :class:`~coffee_ledger.adapters.base.DocumentStore`.

It talks to the Firestore REST API with :mod:`httpx`, which keeps the
implementation fully asynchronous without pulling in the Google client
libraries.  The REST API has no streaming listener, so :meth:`subscribe`
polls ``runQuery`` and yields whenever the result set changes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from datetime import UTC, datetime
from typing import Any

import httpx

from ..core.query import Filter, OrderBy
from ..errors import NotFound, StoreUnavailable, VersionConflict
from .base import DocumentStore, Snapshot

logger = logging.getLogger(__name__)

_OPERATORS = {
    "==": "EQUAL",
    "!=": "NOT_EQUAL",
    "<": "LESS_THAN",
    "<=": "LESS_THAN_OR_EQUAL",
    ">": "GREATER_THAN",
    ">=": "GREATER_THAN_OR_EQUAL",
    "in": "IN",
}


# ----------------------------------------------------------------------
# Value codec
# ----------------------------------------------------------------------
def encode_value(value: Any) -> dict[str, Any]:
    """Encode a Python value as a Firestore typed ``Value``."""
    if value is None:
        return {"nullValue": None}
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, datetime):
        stamp = value.astimezone(UTC).isoformat().replace("+00:00", "Z")
        return {"timestampValue": stamp}
    if isinstance(value, (list, tuple)):
        if not value:
            return {"arrayValue": {}}
        return {"arrayValue": {"values": [encode_value(v) for v in value]}}
    if isinstance(value, dict):
        return {"mapValue": {"fields": encode_fields(value)}}
    raise TypeError(f"Cannot encode {type(value).__name__} for Firestore")


def decode_value(value: dict[str, Any]) -> Any:
    """Decode a Firestore typed ``Value`` into plain Python data.

    Timestamps are returned as ISO strings, the same form the models write.
    """
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "stringValue" in value:
        return value["stringValue"]
    if "timestampValue" in value:
        return value["timestampValue"]
    if "arrayValue" in value:
        return [decode_value(v) for v in value["arrayValue"].get("values", [])]
    if "mapValue" in value:
        return decode_fields(value["mapValue"].get("fields", {}))
    if "referenceValue" in value:
        return value["referenceValue"]
    raise ValueError(f"Unsupported Firestore value: {sorted(value)}")


def encode_fields(data: dict[str, Any]) -> dict[str, Any]:
    return {key: encode_value(v) for key, v in data.items()}


def decode_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {key: decode_value(v) for key, v in fields.items()}


# ----------------------------------------------------------------------
# Adapter
# ----------------------------------------------------------------------
class FirestoreDocumentStore(DocumentStore):
    """Document store backed by the Firestore REST API."""

    api_base = "https://firestore.googleapis.com/v1"

    def __init__(
        self,
        project: str,
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
        database: str = "(default)",
        poll_interval: float = 2.0,
        max_retries: int = 5,
    ) -> None:
        """Store the ``project`` coordinates and optional HTTP ``client``."""
        self.project = project
        self.token = token
        self.client = client or httpx.AsyncClient(timeout=10.0)
        self.database = database
        self.poll_interval = poll_interval
        self.max_retries = max_retries

    # ------------------------------------------------------------------
    @property
    def root(self) -> str:
        return f"projects/{self.project}/databases/{self.database}/documents"

    @property
    def base_url(self) -> str:
        return f"{self.api_base}/{self.root}"

    def _name(self, collection: str, doc_id: str) -> str:
        return f"{self.root}/{collection}/{doc_id}"

    def _headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    @staticmethod
    def _snapshot(document: dict[str, Any]) -> Snapshot:
        return Snapshot(
            id=document["name"].rsplit("/", 1)[-1],
            data=decode_fields(document.get("fields", {})),
            version=document.get("updateTime"),
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.client.request(
                method, url, headers=self._headers(), **kwargs
            )
        except httpx.HTTPError as exc:
            raise StoreUnavailable(f"{method} {url} failed: {exc}") from exc

        if response.status_code < 400:
            return response

        status = ""
        try:
            status = response.json().get("error", {}).get("status", "")
        except ValueError:
            pass
        if response.status_code == 404:
            raise NotFound(f"{url} not found.")
        if response.status_code == 409 or status in ("FAILED_PRECONDITION", "ABORTED"):
            raise VersionConflict(f"{method} {url} rejected: {status or 'conflict'}")
        raise StoreUnavailable(
            f"{method} {url} returned {response.status_code} {status}".rstrip()
        )

    # ------------------------------------------------------------------
    async def get(self, collection: str, doc_id: str) -> Snapshot | None:
        try:
            response = await self._request(
                "GET", f"{self.base_url}/{collection}/{doc_id}"
            )
        except NotFound:
            return None
        return self._snapshot(response.json())

    async def create(
        self, collection: str, doc_id: str, fields: dict[str, Any]
    ) -> Snapshot:
        response = await self._request(
            "POST",
            f"{self.base_url}/{collection}",
            params={"documentId": doc_id},
            json={"fields": encode_fields(fields)},
        )
        return self._snapshot(response.json())

    async def put(
        self, collection: str, doc_id: str, fields: dict[str, Any]
    ) -> Snapshot:
        response = await self._request(
            "PATCH",
            f"{self.base_url}/{collection}/{doc_id}",
            json={"fields": encode_fields(fields)},
        )
        return self._snapshot(response.json())

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        expected_version: str | None = None,
    ) -> Snapshot:
        params: list[tuple[str, str]] = [
            ("updateMask.fieldPaths", key) for key in fields
        ]
        if expected_version is not None:
            params.append(("currentDocument.updateTime", expected_version))
        else:
            params.append(("currentDocument.exists", "true"))
        response = await self._request(
            "PATCH",
            f"{self.base_url}/{collection}/{doc_id}",
            params=params,
            json={"fields": encode_fields(fields)},
        )
        return self._snapshot(response.json())

    async def delete(self, collection: str, doc_id: str) -> None:
        try:
            await self._request("DELETE", f"{self.base_url}/{collection}/{doc_id}")
        except NotFound:
            return

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: OrderBy | None = None,
    ) -> list[Snapshot]:
        structured: dict[str, Any] = {"from": [{"collectionId": collection}]}
        where = self._where(filters)
        if where:
            structured["where"] = where
        if order_by is not None:
            structured["orderBy"] = [
                {
                    "field": {"fieldPath": order_by.field},
                    "direction": "DESCENDING" if order_by.descending else "ASCENDING",
                }
            ]
        response = await self._request(
            "POST",
            f"{self.base_url}:runQuery",
            json={"structuredQuery": structured},
        )
        return [
            self._snapshot(item["document"])
            for item in response.json()
            if "document" in item
        ]

    @staticmethod
    def _where(filters: Sequence[Filter]) -> dict[str, Any] | None:
        clauses = [
            {
                "fieldFilter": {
                    "field": {"fieldPath": f.field},
                    "op": _OPERATORS[f.op],
                    "value": encode_value(list(f.value) if f.op == "in" else f.value),
                }
            }
            for f in filters
        ]
        if not clauses:
            return None
        if len(clauses) == 1:
            return clauses[0]
        return {"compositeFilter": {"op": "AND", "filters": clauses}}

    async def increment(
        self,
        collection: str,
        doc_id: str,
        field_name: str,
        delta: int,
        minimum: int | None = None,
    ) -> Snapshot:
        if minimum is None:
            await self._request(
                "POST",
                f"{self.base_url}:commit",
                json={
                    "writes": [
                        {
                            "transform": {
                                "document": self._name(collection, doc_id),
                                "fieldTransforms": [
                                    {
                                        "fieldPath": field_name,
                                        "increment": encode_value(delta),
                                    }
                                ],
                            },
                            "currentDocument": {"exists": True},
                        }
                    ]
                },
            )
            snapshot = await self.get(collection, doc_id)
            if snapshot is None:
                raise NotFound(f"{collection}/{doc_id} not found.")
            return snapshot

        # Firestore transforms cannot clamp, so floor with a version-checked write.
        for _attempt in range(self.max_retries):
            snapshot = await self.get(collection, doc_id)
            if snapshot is None:
                raise NotFound(f"{collection}/{doc_id} not found.")
            value = max(minimum, (snapshot.data.get(field_name) or 0) + delta)
            try:
                return await self.update(
                    collection,
                    doc_id,
                    {field_name: value},
                    expected_version=snapshot.version,
                )
            except VersionConflict:
                logger.debug("Retrying increment of %s/%s", collection, doc_id)
        raise VersionConflict(
            f"Could not update {collection}/{doc_id}.{field_name} "
            f"after {self.max_retries} attempts."
        )

    async def subscribe(
        self, collection: str, filters: Sequence[Filter] = ()
    ) -> AsyncIterator[list[Snapshot]]:
        last: set[tuple[str, str | None]] | None = None
        while True:
            snapshots = await self.query(collection, filters)
            marker = {(s.id, s.version) for s in snapshots}
            if marker != last:
                last = marker
                yield snapshots
            await asyncio.sleep(self.poll_interval)

    async def close(self) -> None:
        """Close the underlying :class:`httpx.AsyncClient`."""
        await self.client.aclose()
