"""Repair of cached farmer counts.

Membership transfers leave an outbox entry behind whenever they fail
between writing a farmer and adjusting the counters.  :func:`process_outbox`
recounts the organizations named there; :func:`reconcile_all` recounts every
organization regardless.  :class:`ReconciliationWorker` runs both on a
fixed interval.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from ..core.models import MEMBERSHIP_OUTBOX, OutboxEntry
from ..errors import LedgerError, NotFound, StoreUnavailable
from .membership import MembershipSynchronizer

logger = logging.getLogger(__name__)


async def process_outbox(sync: MembershipSynchronizer, min_age: float = 0.0) -> int:
    """Recount every organization with a pending outbox entry.

    Returns the number of entries cleared.  Entries whose organization was
    deleted are dropped.  Entries that fail again stay in the outbox with
    ``attempts`` bumped.  Entries younger than ``min_age`` seconds are left
    alone: they may belong to a transfer still running in another process.
    """
    store = sync.store
    snapshots = await store.query(MEMBERSHIP_OUTBOX)
    cutoff = sync.clock() - timedelta(seconds=min_age)
    cleared = 0
    recounted: set[tuple[str, str]] = set()
    for snapshot in snapshots:
        entry = OutboxEntry.from_snapshot(snapshot)
        if min_age and entry.created_at is not None and entry.created_at > cutoff:
            continue
        key = (entry.organization_type, entry.organization_id)
        try:
            if key not in recounted:
                await sync.reconcile_farmer_count(
                    entry.organization_id, entry.organization_type
                )
                recounted.add(key)
        except NotFound:
            logger.info(
                "Dropping outbox entry %s: %s %s no longer exists",
                entry.id,
                entry.organization_type,
                entry.organization_id,
            )
        except LedgerError as exc:
            logger.warning(
                "Outbox entry %s for %s still failing (attempt %d): %s",
                entry.id,
                entry.organization_id,
                entry.attempts + 1,
                exc,
            )
            _updated, fields = entry.patch(
                attempts=entry.attempts + 1, last_error=str(exc)
            )
            try:
                await store.update(MEMBERSHIP_OUTBOX, entry.id, fields)
            except LedgerError:
                logger.debug("Could not record failure on outbox entry %s", entry.id)
            continue
        await store.delete(MEMBERSHIP_OUTBOX, entry.id)
        cleared += 1
    if cleared:
        logger.info("Cleared %d membership outbox entries", cleared)
    return cleared


async def reconcile_all(sync: MembershipSynchronizer) -> dict[str, tuple[int, int]]:
    """Recount every organization; returns ``{id: (stored_before, actual)}``."""
    results = {}
    for org in await sync.list_organizations():
        try:
            results[org.id] = await sync.reconcile_farmer_count(org.id, org.type)
        except NotFound:
            continue
        except LedgerError as exc:
            logger.warning("Could not reconcile %s %s: %s", org.type, org.id, exc)
    drifted = sum(1 for before, actual in results.values() if before != actual)
    logger.info(
        "Reconciled %d organizations, %d had drifted", len(results), drifted
    )
    return results


class ReconciliationWorker:
    """Background loop that keeps ``farmerCount`` honest."""

    def __init__(
        self,
        sync: MembershipSynchronizer,
        interval: float = 300.0,
        full_scan: bool = True,
        outbox_grace: float = 60.0,
    ) -> None:
        self.sync = sync
        self.interval = interval
        self.full_scan = full_scan
        self.outbox_grace = outbox_grace
        self._stopped = asyncio.Event()

    async def run_once(self) -> int:
        cleared = await process_outbox(self.sync, min_age=self.outbox_grace)
        if self.full_scan:
            await reconcile_all(self.sync)
        return cleared

    async def run_forever(self) -> None:
        logger.info("Reconciliation worker started (interval=%ss)", self.interval)
        while not self._stopped.is_set():
            try:
                await self.run_once()
            except StoreUnavailable:
                logger.exception("Reconciliation pass failed")
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Reconciliation worker stopped")

    def stop(self) -> None:
        self._stopped.set()
