"""In-process document store with optional JSON file persistence."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
from collections.abc import AsyncIterator, Sequence
from typing import Any

from ..core.query import Filter, OrderBy, matches_all, sort_documents
from ..errors import NotFound, VersionConflict
from .base import DocumentStore, Snapshot

logger = logging.getLogger(__name__)


class MemoryDocumentStore(DocumentStore):
    """Simple dict based store.

    Every operation yields to the event loop once before touching data, so
    concurrent callers interleave the way they would against a remote store.
    When ``path`` is given the whole store is written to that JSON file after
    each mutation and reloaded on construction.
    """

    def __init__(self, path: str | None = None) -> None:
        self.path = path
        self._docs: dict[str, dict[str, dict[str, Any]]] = {}
        self._versions: dict[tuple[str, str], int] = {}
        self._clock = 0
        self._subscribers: dict[str, list[tuple[tuple[Filter, ...], asyncio.Queue]]] = {}
        self._load()

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    def _load(self) -> None:
        """Load store contents from ``self.path`` if it exists."""
        if not self.path or not os.path.exists(self.path):
            return

        with open(self.path, encoding="utf-8") as f:
            data = json.load(f)

        self._clock = int(data.get("clock", 0))
        for collection, docs in data.get("collections", {}).items():
            for doc_id, entry in docs.items():
                self._docs.setdefault(collection, {})[doc_id] = entry["data"]
                self._versions[(collection, doc_id)] = int(entry["version"])
        logger.debug("Loaded %d collections from %s", len(self._docs), self.path)

    def _to_dict(self) -> dict:
        return {
            "clock": self._clock,
            "collections": {
                collection: {
                    doc_id: {
                        "data": data,
                        "version": self._versions[(collection, doc_id)],
                    }
                    for doc_id, data in docs.items()
                }
                for collection, docs in self._docs.items()
            },
        }

    def save(self) -> None:
        """Persist the current state atomically."""
        if not self.path:
            return
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self._to_dict(), f, indent=2, ensure_ascii=False)
        os.replace(tmp, self.path)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _snapshot(self, collection: str, doc_id: str) -> Snapshot:
        return Snapshot(
            id=doc_id,
            data=copy.deepcopy(self._docs[collection][doc_id]),
            version=str(self._versions[(collection, doc_id)]),
        )

    def _write(self, collection: str, doc_id: str, data: dict[str, Any]) -> Snapshot:
        self._clock += 1
        self._docs.setdefault(collection, {})[doc_id] = copy.deepcopy(data)
        self._versions[(collection, doc_id)] = self._clock
        self.save()
        self._notify(collection)
        return self._snapshot(collection, doc_id)

    def _exists(self, collection: str, doc_id: str) -> bool:
        return doc_id in self._docs.get(collection, {})

    def _matching(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: OrderBy | None = None,
    ) -> list[Snapshot]:
        docs = self._docs.get(collection, {})
        found = [
            self._snapshot(collection, doc_id)
            for doc_id, data in docs.items()
            if matches_all(data, filters)
        ]
        return sort_documents(found, order_by)

    def _notify(self, collection: str) -> None:
        for filters, queue in self._subscribers.get(collection, []):
            queue.put_nowait(self._matching(collection, filters))

    # ------------------------------------------------------------------
    # DocumentStore interface
    # ------------------------------------------------------------------
    async def get(self, collection: str, doc_id: str) -> Snapshot | None:
        await asyncio.sleep(0)
        if not self._exists(collection, doc_id):
            return None
        return self._snapshot(collection, doc_id)

    async def create(
        self, collection: str, doc_id: str, fields: dict[str, Any]
    ) -> Snapshot:
        await asyncio.sleep(0)
        if self._exists(collection, doc_id):
            raise VersionConflict(f"{collection}/{doc_id} already exists.")
        return self._write(collection, doc_id, fields)

    async def put(
        self, collection: str, doc_id: str, fields: dict[str, Any]
    ) -> Snapshot:
        await asyncio.sleep(0)
        return self._write(collection, doc_id, fields)

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        expected_version: str | None = None,
    ) -> Snapshot:
        await asyncio.sleep(0)
        if not self._exists(collection, doc_id):
            raise NotFound(f"{collection}/{doc_id} not found.")
        current = str(self._versions[(collection, doc_id)])
        if expected_version is not None and expected_version != current:
            raise VersionConflict(
                f"{collection}/{doc_id} is at version {current}, "
                f"expected {expected_version}."
            )
        merged = {**self._docs[collection][doc_id], **copy.deepcopy(fields)}
        return self._write(collection, doc_id, merged)

    async def delete(self, collection: str, doc_id: str) -> None:
        await asyncio.sleep(0)
        if not self._exists(collection, doc_id):
            return
        del self._docs[collection][doc_id]
        del self._versions[(collection, doc_id)]
        self.save()
        self._notify(collection)

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: OrderBy | None = None,
    ) -> list[Snapshot]:
        await asyncio.sleep(0)
        return self._matching(collection, filters, order_by)

    async def increment(
        self,
        collection: str,
        doc_id: str,
        field_name: str,
        delta: int,
        minimum: int | None = None,
    ) -> Snapshot:
        await asyncio.sleep(0)
        if not self._exists(collection, doc_id):
            raise NotFound(f"{collection}/{doc_id} not found.")
        data = self._docs[collection][doc_id]
        value = (data.get(field_name) or 0) + delta
        if minimum is not None:
            value = max(minimum, value)
        return self._write(collection, doc_id, {**data, field_name: value})

    async def subscribe(
        self, collection: str, filters: Sequence[Filter] = ()
    ) -> AsyncIterator[list[Snapshot]]:
        queue: asyncio.Queue = asyncio.Queue()
        entry = (tuple(filters), queue)
        self._subscribers.setdefault(collection, []).append(entry)
        try:
            yield self._matching(collection, filters)
            while True:
                yield await queue.get()
        finally:
            self._subscribers[collection].remove(entry)
