"""Base interface for document store implementations."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any

from ..core.query import Filter, OrderBy


@dataclass(frozen=True)
class Snapshot:
    """A document as read from the store.

    ``version`` is opaque and changes on every write to the document.
    """

    id: str
    data: dict[str, Any] = field(default_factory=dict)
    version: str | None = None


class DocumentStore(ABC):
    """Abstract document store.

    Each call is atomic for a single document only.  Nothing here spans
    documents, so callers that touch several documents must tolerate a
    partially applied sequence.
    """

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Snapshot | None:
        """Return the document or ``None`` when it does not exist."""

    @abstractmethod
    async def create(
        self, collection: str, doc_id: str, fields: dict[str, Any]
    ) -> Snapshot:
        """Create a document; raise ``VersionConflict`` if it already exists."""

    @abstractmethod
    async def put(
        self, collection: str, doc_id: str, fields: dict[str, Any]
    ) -> Snapshot:
        """Create or overwrite a whole document."""

    @abstractmethod
    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        expected_version: str | None = None,
    ) -> Snapshot:
        """Merge top-level ``fields`` into an existing document.

        Raises ``NotFound`` when the document is missing and
        ``VersionConflict`` when ``expected_version`` no longer matches.
        """

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document; deleting a missing document is not an error."""

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: OrderBy | None = None,
    ) -> list[Snapshot]:
        """Return the documents of ``collection`` matching every filter."""

    @abstractmethod
    async def increment(
        self,
        collection: str,
        doc_id: str,
        field_name: str,
        delta: int,
        minimum: int | None = None,
    ) -> Snapshot:
        """Atomically add ``delta`` to a numeric field, floored at ``minimum``."""

    @abstractmethod
    def subscribe(
        self, collection: str, filters: Sequence[Filter] = ()
    ) -> AsyncIterator[list[Snapshot]]:
        """Yield a full snapshot of the matching documents on every change."""

    async def close(self) -> None:
        """Release any resources held by the store."""
