"""
Membership synchronizer.

Keeps a farmer's ``organization`` back-reference and the organization's
cached ``farmerCount`` in step.  The two live in different documents and the
store has no multi-document transactions, so a transfer runs as:

1. record an outbox entry for every organization whose count will change,
2. write the farmer's reference (version-checked),
3. apply atomic increments to the counters,
4. delete the outbox entries.

Steps 1 to 4 run while holding the lock of every organization involved, and
:meth:`MembershipSynchronizer.reconcile_farmer_count` takes the same lock, so
a recount never lands between a farmer write and its increment.

A failure after step 1 leaves the outbox entries behind;
:func:`coffee_ledger.services.reconciliation.process_outbox` recounts those
organizations from the farmers collection.  Counters are only ever changed
with the store's atomic increment, never read-modify-written here.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..adapters.base import DocumentStore
from ..core.models import (
    FARMERS,
    MEMBERSHIP_OUTBOX,
    ORGANIZATION_COLLECTIONS,
    Farmer,
    Organization,
    OrganizationRef,
    OutboxEntry,
    collection_for,
    utcnow,
)
from ..core.query import Filter
from ..errors import (
    NotFound,
    OrphanedReference,
    StoreUnavailable,
    VersionConflict,
)
from .concurrency import KeyedLocks, mutate_versioned

logger = logging.getLogger(__name__)

COUNT_FIELD = "farmerCount"
PROFILE_FIELDS = ("full_name", "first_name", "last_name", "phone")

_UNCHANGED: Any = object()


@dataclass(frozen=True)
class ResolvedOrganization:
    """Outcome of following a farmer's organization reference.

    ``state`` is ``member``, ``independent`` or ``orphaned``.  An orphaned
    reference points at an organization that no longer exists and is shown
    as independent.
    """

    state: str
    reference: OrganizationRef
    organization: Organization | None = None

    @property
    def effective(self) -> OrganizationRef:
        if self.state == "member":
            return self.reference
        return OrganizationRef.independent()

    @property
    def display_name(self) -> str:
        if self.organization is not None:
            return self.organization.name
        return "Independent"

    @property
    def needs_reassignment(self) -> bool:
        return self.state == "orphaned"


@dataclass
class BatchResult:
    added: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def success_count(self) -> int:
        return len(self.added)


def _same_membership(a: OrganizationRef, b: OrganizationRef) -> bool:
    if a.is_independent and b.is_independent:
        return True
    return a.type == b.type and a.id == b.id


def _counted(ref: OrganizationRef) -> bool:
    return not ref.is_independent and bool(ref.id)


def _organization_types(organization_type: str | None) -> list[str]:
    if organization_type is None:
        return list(ORGANIZATION_COLLECTIONS)
    collection_for(organization_type)
    return [organization_type]


class MembershipSynchronizer:
    """Farmer to organization links and the organizations' farmer counts."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        max_retries: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.max_retries = max_retries
        self.clock = clock
        self._locks = KeyedLocks()
        self._org_locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_farmer(self, farmer_id: str) -> Farmer:
        snapshot = await self.store.get(FARMERS, farmer_id)
        if snapshot is None:
            raise NotFound(f"Farmer {farmer_id} not found.")
        return Farmer.from_snapshot(snapshot)

    async def get_organization(
        self, organization_id: str, organization_type: str | None = None
    ) -> Organization:
        """Look up an organization, in every organization collection by default.

        An unknown ``organization_type`` raises ``ValueError``.
        """
        for org_type in _organization_types(organization_type):
            snapshot = await self.store.get(collection_for(org_type), organization_id)
            if snapshot is not None:
                return Organization.from_snapshot(snapshot, type=org_type)
        raise NotFound(f"Organization {organization_id} not found.")

    async def list_organizations(
        self, organization_type: str | None = None
    ) -> list[Organization]:
        found = []
        for org_type in _organization_types(organization_type):
            for snapshot in await self.store.query(collection_for(org_type)):
                found.append(Organization.from_snapshot(snapshot, type=org_type))
        return found

    async def list_members(self, organization_id: str) -> list[Farmer]:
        snapshots = await self.store.query(
            FARMERS, [Filter("organization.id", "==", organization_id)]
        )
        return [Farmer.from_snapshot(s) for s in snapshots]

    async def member_count(self, organization_id: str) -> int | None:
        """Authoritative member count for display, ``None`` when unknown."""
        try:
            return len(await self.list_members(organization_id))
        except StoreUnavailable:
            logger.warning(
                "Could not count members of %s; reporting unknown", organization_id
            )
            return None

    async def watch_members(self, organization_id: str) -> AsyncIterator[list[Farmer]]:
        async for snapshots in self.store.subscribe(
            FARMERS, [Filter("organization.id", "==", organization_id)]
        ):
            yield [Farmer.from_snapshot(s) for s in snapshots]

    async def resolve_organization(
        self, farmer: Farmer, strict: bool = False
    ) -> ResolvedOrganization:
        """Follow ``farmer``'s organization reference.

        A reference to a deleted organization is a normal outcome: it comes
        back as ``orphaned`` and displays as independent.  With ``strict``
        it raises :class:`OrphanedReference` instead.
        """
        ref = farmer.organization
        if ref.is_independent:
            return ResolvedOrganization("independent", ref)
        snapshot = await self.store.get(collection_for(ref.type), ref.id)
        if snapshot is None:
            if strict:
                raise OrphanedReference(
                    f"Farmer {farmer.id} references missing {ref.type} {ref.id!r}."
                )
            logger.info(
                "Farmer %s references missing %s %r; treating as independent",
                farmer.id,
                ref.type,
                ref.id,
            )
            return ResolvedOrganization("orphaned", ref)
        return ResolvedOrganization(
            "member", ref, Organization.from_snapshot(snapshot, type=ref.type)
        )

    # ------------------------------------------------------------------
    # Admin actions
    # ------------------------------------------------------------------
    async def create_organization(
        self, organization_type: str, name: str, registration_number: str = ""
    ) -> Organization:
        collection_for(organization_type)
        now = self.clock()
        org = Organization(
            type=organization_type,
            name=name,
            registration_number=registration_number,
            farmer_count=0,
            created_at=now,
            updated_at=now,
        )
        written = await self.store.create(org.collection, org.id, org.to_document())
        logger.info("Created %s %s (%s)", organization_type, org.id, name)
        return Organization.from_snapshot(written, type=organization_type)

    async def register_farmer(
        self,
        full_name: str,
        phone: str = "",
        organization_id: str | None = None,
    ) -> Farmer:
        now = self.clock()
        farmer = Farmer(
            full_name=full_name,
            phone=phone,
            organization=OrganizationRef.independent(),
            created_at=now,
            updated_at=now,
        )
        written = await self.store.create(FARMERS, farmer.id, farmer.to_document())
        logger.info("Registered farmer %s (%s)", farmer.id, full_name)
        if organization_id:
            return await self.add_farmer_to_organization(farmer.id, organization_id)
        return Farmer.from_snapshot(written)

    async def update_farmer(
        self,
        farmer_id: str,
        *,
        organization_id: str | None = _UNCHANGED,
        organization_type: str | None = None,
        **profile: str,
    ) -> Farmer:
        """Edit a farmer's profile and, optionally, their organization.

        ``profile`` takes any of ``full_name``, ``first_name``, ``last_name``
        and ``phone``.  Passing ``organization_id`` moves the farmer through
        the same transfer as :meth:`add_farmer_to_organization`; ``None`` or
        ``""`` makes them independent.
        """
        unknown = set(profile) - set(PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update farmer fields: {sorted(unknown)}")

        farmer = None
        if profile:
            farmer = await mutate_versioned(
                self.store,
                FARMERS,
                farmer_id,
                Farmer,
                lambda current: {**profile, "updated_at": self.clock()},
                retries=self.max_retries,
                lock=self._locks(farmer_id),
            )
            logger.info("Updated farmer %s: %s", farmer_id, ", ".join(sorted(profile)))

        if organization_id is _UNCHANGED:
            return farmer or await self.get_farmer(farmer_id)
        if organization_id:
            return await self.add_farmer_to_organization(
                farmer_id, organization_id, organization_type
            )
        return await self.remove_farmer_from_organization(farmer_id)

    async def delete_farmer(self, farmer_id: str) -> Farmer:
        """Delete a farmer and count them out of their organization.

        Returns the farmer as it was before deletion.
        """
        async with self._locks(farmer_id):
            farmer = await self.get_farmer(farmer_id)
            previous = farmer.organization
            touched = {(previous.type, previous.id)} if _counted(previous) else set()
            async with self._org_locks.hold(org_id for _, org_id in touched):
                outbox = await self._open_outbox(touched, f"delete {farmer_id}")
                await self.store.delete(FARMERS, farmer_id)
                if _counted(previous):
                    try:
                        await self._count_out(previous.type, previous.id, 1)
                    except StoreUnavailable:
                        logger.warning(
                            "Farmer %s deleted but the count of %s was not updated; "
                            "left for reconciliation",
                            farmer_id,
                            previous.id,
                        )
                        raise
                await self._close_outbox(outbox)
        logger.info("Deleted farmer %s", farmer_id)
        return farmer

    async def delete_organization(
        self, organization_id: str, organization_type: str | None = None
    ) -> int:
        """Delete an organization without touching its members.

        Returns the number of farmers left pointing at it.
        """
        org = await self.get_organization(organization_id, organization_type)
        members = await self.list_members(org.id)
        await self.store.delete(org.collection, org.id)
        if members:
            logger.warning(
                "Deleted %s %s; %d farmers now hold an orphaned reference",
                org.type,
                org.id,
                len(members),
            )
        else:
            logger.info("Deleted %s %s", org.type, org.id)
        return len(members)

    async def find_orphaned_farmers(self) -> list[Farmer]:
        snapshots = await self.store.query(
            FARMERS, [Filter("organization.type", "in", list(ORGANIZATION_COLLECTIONS))]
        )
        farmers = [Farmer.from_snapshot(s) for s in snapshots]
        exists: dict[tuple[str, str], bool] = {}
        orphans = []
        for farmer in farmers:
            key = (farmer.organization.type, farmer.organization.id)
            if key not in exists:
                found = await self.store.get(collection_for(key[0]), key[1])
                exists[key] = found is not None
            if not exists[key]:
                orphans.append(farmer)
        return orphans

    async def release_orphans(self, organization_id: str | None = None) -> list[Farmer]:
        """Re-point orphaned farmers to independent.

        No counter changes: the organization they referenced is gone.
        """
        released = []
        for farmer in await self.find_orphaned_farmers():
            if organization_id and farmer.organization.id != organization_id:
                continue
            async with self._locks(farmer.id):
                _updated, fields = farmer.patch(
                    organization=OrganizationRef.independent(), updated_at=self.clock()
                )
                try:
                    written = await self.store.update(
                        FARMERS, farmer.id, fields, expected_version=farmer.version
                    )
                except VersionConflict:
                    logger.info("Farmer %s changed while releasing; skipped", farmer.id)
                    continue
            released.append(Farmer.from_snapshot(written))
        if released:
            logger.info("Released %d orphaned farmers to independent", len(released))
        return released

    # ------------------------------------------------------------------
    # Membership transfers
    # ------------------------------------------------------------------
    async def add_farmer_to_organization(
        self,
        farmer_id: str,
        organization_id: str,
        organization_type: str | None = None,
    ) -> Farmer:
        """Make ``farmer_id`` a member of ``organization_id``.

        A farmer moving from another organization is counted out of it as
        part of the same transfer.
        """
        org = await self.get_organization(organization_id, organization_type)
        return await self._transfer(farmer_id, org)

    async def remove_farmer_from_organization(self, farmer_id: str) -> Farmer:
        """Make ``farmer_id`` independent and count it out of its organization."""
        return await self._transfer(farmer_id, None)

    async def add_farmers_to_organization(
        self,
        farmer_ids: Iterable[str],
        organization_id: str,
        organization_type: str | None = None,
    ) -> BatchResult:
        """Add several farmers, then apply one increment for those written.

        Farmers that cannot be read or written are reported in
        ``failed`` and do not count.  A failure of the final counter
        increment is raised: the farmer writes stand, and the outbox entry
        left behind gets the count repaired.
        """
        org = await self.get_organization(organization_id, organization_type)
        target = org.as_reference()
        result = BatchResult()

        to_move: list[Farmer] = []
        for farmer_id in dict.fromkeys(farmer_ids):
            try:
                farmer = await self.get_farmer(farmer_id)
            except (NotFound, StoreUnavailable) as exc:
                result.failed[farmer_id] = exc.detail
                continue
            if _same_membership(farmer.organization, target):
                result.skipped.append(farmer_id)
            else:
                to_move.append(farmer)
        if not to_move:
            return result

        touched = {(org.type, org.id)} | {
            (f.organization.type, f.organization.id)
            for f in to_move
            if _counted(f.organization)
        }
        # farmer locks before organization locks, the same order as _transfer
        async with self._locks.hold(f.id for f in to_move), self._org_locks.hold(
            org_id for _, org_id in touched
        ):
            outbox = await self._open_outbox(touched, f"batch add to {org.id}")

            moved_from: Counter[tuple[str, str]] = Counter()
            for farmer in to_move:
                try:
                    await self._write_reference(farmer, target)
                except (NotFound, VersionConflict, StoreUnavailable) as exc:
                    logger.warning(
                        "Could not add farmer %s to %s: %s", farmer.id, org.id, exc
                    )
                    result.failed[farmer.id] = exc.detail
                    continue
                result.added.append(farmer.id)
                if _counted(farmer.organization):
                    moved_from[(farmer.organization.type, farmer.organization.id)] += 1

            try:
                if result.added:
                    await self.store.increment(
                        org.collection, org.id, COUNT_FIELD, len(result.added)
                    )
                for (org_type, org_id), count in moved_from.items():
                    await self._count_out(org_type, org_id, count)
            except StoreUnavailable:
                logger.warning(
                    "Farmer count update for %s failed after %d farmer writes; "
                    "left for reconciliation",
                    org.id,
                    len(result.added),
                )
                raise
            await self._close_outbox(outbox)

        logger.info(
            "Added %d farmers to %s (%d skipped, %d failed)",
            len(result.added),
            org.id,
            len(result.skipped),
            len(result.failed),
        )
        return result

    async def reconcile_farmer_count(
        self, organization_id: str, organization_type: str | None = None
    ) -> tuple[int, int]:
        """Overwrite ``farmerCount`` with the number of member farmers.

        Returns ``(stored_before, actual)``.  Transfers in this process hold
        the organization's lock from the farmer write until their increment,
        and the recount takes the same lock.  The write is also checked
        against the version read before counting, so a writer in another
        process that increments during the count forces a recount.
        """
        async with self._org_locks(organization_id):
            for attempt in range(1, self.max_retries + 1):
                org = await self.get_organization(organization_id, organization_type)
                actual = len(await self.list_members(org.id))
                if org.farmer_count != actual:
                    logger.warning(
                        "farmerCount drift on %s %s: stored %d, actual %d",
                        org.type,
                        org.id,
                        org.farmer_count,
                        actual,
                    )
                _updated, fields = org.patch(farmer_count=actual, updated_at=self.clock())
                try:
                    await self.store.update(
                        org.collection, org.id, fields, expected_version=org.version
                    )
                except VersionConflict:
                    if attempt == self.max_retries:
                        raise
                    continue
                return org.farmer_count, actual
        raise VersionConflict(f"Could not reconcile {organization_id}.")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _transfer(self, farmer_id: str, target: Organization | None) -> Farmer:
        new_ref = target.as_reference() if target else OrganizationRef.independent()
        async with self._locks(farmer_id):
            for attempt in range(1, self.max_retries + 1):
                farmer = await self.get_farmer(farmer_id)
                previous = farmer.organization
                if _same_membership(previous, new_ref):
                    logger.debug("Farmer %s already in %s", farmer_id, new_ref.id or "no organization")
                    return farmer

                touched = set()
                if target is not None:
                    touched.add((target.type, target.id))
                if _counted(previous):
                    touched.add((previous.type, previous.id))

                async with self._org_locks.hold(org_id for _, org_id in touched):
                    outbox = await self._open_outbox(touched, f"transfer {farmer_id}")
                    try:
                        updated = await self._write_reference(farmer, new_ref)
                    except VersionConflict:
                        await self._close_outbox(outbox)
                        if attempt == self.max_retries:
                            raise
                        continue

                    try:
                        if target is not None:
                            await self.store.increment(
                                target.collection, target.id, COUNT_FIELD, 1
                            )
                        if _counted(previous):
                            await self._count_out(previous.type, previous.id, 1)
                    except StoreUnavailable:
                        logger.warning(
                            "Farmer %s moved to %s but the count update failed; "
                            "left for reconciliation",
                            farmer_id,
                            new_ref.id or "independent",
                        )
                        raise
                    await self._close_outbox(outbox)

                logger.info(
                    "Farmer %s moved from %s to %s",
                    farmer_id,
                    previous.id or "independent",
                    new_ref.id or "independent",
                )
                return updated
        raise VersionConflict(f"Could not transfer farmer {farmer_id}.")

    async def _write_reference(self, farmer: Farmer, ref: OrganizationRef) -> Farmer:
        _updated, fields = farmer.patch(organization=ref, updated_at=self.clock())
        written = await self.store.update(
            FARMERS, farmer.id, fields, expected_version=farmer.version
        )
        return Farmer.from_snapshot(written)

    async def _count_out(self, org_type: str, org_id: str, count: int) -> None:
        try:
            await self.store.increment(
                collection_for(org_type), org_id, COUNT_FIELD, -count, minimum=0
            )
        except NotFound:
            logger.info("Previous %s %s no longer exists; nothing to count out", org_type, org_id)

    async def _open_outbox(self, touched: set[tuple[str, str]], reason: str) -> list[str]:
        ids = []
        now = self.clock()
        for org_type, org_id in sorted(touched):
            entry = OutboxEntry(
                id=uuid.uuid4().hex,
                organization_id=org_id,
                organization_type=org_type,
                reason=reason,
                created_at=now,
            )
            await self.store.put(MEMBERSHIP_OUTBOX, entry.id, entry.to_document())
            ids.append(entry.id)
        return ids

    async def _close_outbox(self, entry_ids: list[str]) -> None:
        for entry_id in entry_ids:
            await self.store.delete(MEMBERSHIP_OUTBOX, entry_id)
