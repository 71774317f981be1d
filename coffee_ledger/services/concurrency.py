"""Per-document write serialisation.

Two layers keep read-modify-write cycles from losing updates:

* :class:`KeyedLocks` gives every document id its own ``asyncio.Lock`` so a
  single process never runs two cycles on the same document at once.
* :func:`mutate_versioned` writes with the version it read and re-runs the
  whole cycle when another writer got there first.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import (
    AbstractAsyncContextManager,
    AsyncExitStack,
    asynccontextmanager,
    nullcontext,
)
from typing import Any, TypeVar

from ..adapters.base import DocumentStore
from ..core.models import Entity
from ..errors import NotFound, VersionConflict

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)


class KeyedLocks:
    """Lazily created ``asyncio.Lock`` per key.

    Locks are held weakly: once no coroutine holds or waits on a key's lock
    it is dropped, so long-running processes do not accumulate one lock per
    document ever touched.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def __call__(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, keys: Iterable[str]) -> AsyncIterator[None]:
        """Hold the locks of all ``keys``, taken in sorted order."""
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(self(key))
            yield


async def mutate_versioned(
    store: DocumentStore,
    collection: str,
    doc_id: str,
    model: type[E],
    change: Callable[[E], dict[str, Any]],
    *,
    retries: int = 5,
    lock: asyncio.Lock | None = None,
) -> E:
    """Read ``doc_id``, derive updates with ``change`` and write them back.

    ``change`` receives the current model and returns the snake_case field
    updates.  It may raise to refuse the change; nothing is written then.
    The write carries the version that was read, and on ``VersionConflict``
    the cycle starts over with a fresh read, at most ``retries`` times.
    """
    guard: AbstractAsyncContextManager = lock if lock is not None else nullcontext()
    async with guard:
        for attempt in range(1, retries + 1):
            snapshot = await store.get(collection, doc_id)
            if snapshot is None:
                raise NotFound(f"{collection}/{doc_id} not found.")
            current = model.from_snapshot(snapshot)
            _updated, fields = current.patch(**change(current))
            try:
                written = await store.update(
                    collection, doc_id, fields, expected_version=current.version
                )
            except VersionConflict:
                if attempt == retries:
                    raise
                logger.info(
                    "%s/%s changed concurrently, retrying (%d/%d)",
                    collection,
                    doc_id,
                    attempt,
                    retries,
                )
                continue
            return model.from_snapshot(written)
    raise VersionConflict(f"{collection}/{doc_id}: no attempts made.")
