from __future__ import annotations

import asyncio

from .adapters.base import DocumentStore
from .adapters.firestore import FirestoreDocumentStore
from .adapters.memory import MemoryDocumentStore
from .config import Settings, load_settings
from .logging_config import setup_logging
from .services.membership import MembershipSynchronizer
from .services.reconciliation import ReconciliationWorker


def build_store(settings: Settings) -> DocumentStore:
    if settings.backend == "firestore":
        return FirestoreDocumentStore(
            project=settings.firestore_project,
            token=settings.firestore_token or None,
            max_retries=settings.max_write_retries,
        )
    return MemoryDocumentStore(path=settings.data_path)


def main() -> int:
    log = setup_logging()
    settings = load_settings()
    if settings.backend == "firestore" and not settings.firestore_project:
        log.error(
            "FIRESTORE_PROJECT_ID is not set. "
            "Export it in your environment before running."
        )
        return 2
    store = build_store(settings)
    sync = MembershipSynchronizer(store, max_retries=settings.max_write_retries)
    worker = ReconciliationWorker(sync, interval=settings.reconcile_interval)

    async def runner():
        try:
            await worker.run_forever()
        except (KeyboardInterrupt, asyncio.CancelledError):
            log.info("Shutting down...")
        finally:
            await store.close()
        return 0

    return asyncio.run(runner())


if __name__ == "__main__":
    raise SystemExit(main())
