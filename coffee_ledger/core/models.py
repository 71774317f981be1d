"""Data models for the coffee-finance core entities.

The models are implemented using :mod:`pydantic` so that they provide
runtime validation and convenient serialisation to and from the wire
documents kept in the document store.  Field names on the wire are
camelCase (``farmerCount``, ``amountPaid``); the models expose them in
snake_case and accept either spelling when parsing.

``id`` and ``version`` travel with a model but are never written into the
document body: the store keeps them as document metadata.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .money import ZERO, to_money, to_wire

FARMERS = "farmers"
LOANS = "loans"
CREDIT_REQUESTS = "creditRequests"
MEMBERSHIP_OUTBOX = "membershipOutbox"
ORGANIZATION_COLLECTIONS: dict[str, str] = {
    "cooperative": "cooperatives",
    "sacco": "saccos",
}

OrganizationType = Literal["cooperative", "sacco"]
MembershipType = Literal["independent", "cooperative", "sacco"]
LoanStatus = Literal["pending", "active", "repaid", "defaulted"]
CreditRequestStatus = Literal["pending", "approved", "rejected", "disbursed"]

TERMINAL_LOAN_STATUSES = frozenset({"repaid", "defaulted"})
TERMINAL_REQUEST_STATUSES = frozenset({"rejected", "disbursed"})


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def collection_for(organization_type: str) -> str:
    """Collection holding organizations of ``organization_type``."""
    try:
        return ORGANIZATION_COLLECTIONS[organization_type]
    except KeyError:
        raise ValueError(f"Unknown organization type: {organization_type!r}") from None


class WireModel(BaseModel):
    """Base for every model that is stored as (part of) a document."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict[str, Any]:
        """Return the JSON-compatible wire form with camelCase keys."""
        return self.model_dump(by_alias=True, mode="json")


class Entity(WireModel):
    """A top-level document with its own id and store version."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, exclude=True)
    version: str | None = Field(default=None, exclude=True)

    @classmethod
    def from_snapshot(cls, snapshot: Any, **overrides: Any):
        """Build the model from a store :class:`Snapshot`."""
        data = {**snapshot.data, **overrides}
        data["id"] = snapshot.id
        data["version"] = snapshot.version
        return cls.model_validate(data)

    def patch(self, **updates: Any) -> tuple[Any, dict[str, Any]]:
        """Apply ``updates`` to a copy of the model.

        Returns the updated copy and the changed fields in wire form, ready
        to pass to ``DocumentStore.update``.
        """
        updated = self.model_copy(update=updates)
        document = updated.to_document()
        fields = {to_camel(name): document[to_camel(name)] for name in updates}
        return updated, fields


class OrganizationRef(WireModel):
    """A farmer's back-reference to the organization it belongs to.

    This is a weak reference: the organization may have been deleted since
    it was written.
    """

    type: MembershipType = "independent"
    id: str = ""
    name: str = ""

    @model_validator(mode="after")
    def _target_matches_type(self) -> OrganizationRef:
        if self.type == "independent":
            self.id = ""
            self.name = ""
        elif not self.id:
            raise ValueError(f"A {self.type} reference needs an organization id.")
        return self

    @property
    def is_independent(self) -> bool:
        return self.type == "independent"

    @classmethod
    def independent(cls) -> OrganizationRef:
        return cls(type="independent")


class Farmer(Entity):
    full_name: str = ""
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    organization: OrganizationRef = Field(default_factory=OrganizationRef)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def display_name(self) -> str:
        if self.full_name:
            return self.full_name
        return f"{self.first_name} {self.last_name}".strip() or "Unknown Farmer"


class Organization(Entity):
    """A cooperative or SACCO.

    ``farmer_count`` is a cached aggregate.  The authoritative membership is
    the set of farmers whose ``organization.id`` equals :attr:`id`.
    """

    type: OrganizationType
    name: str
    registration_number: str = ""
    farmer_count: int = Field(default=0, ge=0)
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def collection(self) -> str:
        return collection_for(self.type)

    def as_reference(self) -> OrganizationRef:
        return OrganizationRef(type=self.type, id=self.id, name=self.name)


class Payment(WireModel):
    amount: float = Field(gt=0)
    date: datetime
    recorded_by: str = "admin"
    method: str = "cash"
    note: str = ""


class Disbursement(WireModel):
    method: str = "bank_transfer"
    account_details: str = ""
    notes: str = ""
    approved_by: str | None = None
    approval_date: datetime | None = None


class Loan(Entity):
    farmer_id: str
    farmer_name: str = ""
    organization: OrganizationRef = Field(default_factory=OrganizationRef)
    amount: float = Field(ge=0)  # principal, fixed at creation
    interest_rate: float = 5.0
    purpose: str = ""
    start_date: datetime | None = None
    due_date: datetime | None = None
    status: LoanStatus = "pending"
    payments: list[Payment] = Field(default_factory=list)
    amount_paid: float = 0.0
    remaining_amount: float | None = None
    repaid_at: datetime | None = None
    credit_request_id: str | None = None
    disbursement: Disbursement | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def _default_remaining(self) -> Loan:
        if self.remaining_amount is None:
            balance = to_money(self.amount) - to_money(self.amount_paid)
            self.remaining_amount = to_wire(max(ZERO, balance))
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_LOAN_STATUSES


class DecisionData(WireModel):
    decision: Literal["pending", "approved", "rejected"] = "pending"
    decision_date: datetime | None = None
    decision_by: str | None = None
    approved_amount: float | None = None
    interest_rate: float | None = None
    notes: str = ""


class CreditRequest(Entity):
    farmer_id: str
    farmer_name: str = ""
    organization_name: str = ""
    amount: float = Field(gt=0)
    description: str = ""
    purpose: str = ""
    repayment_period: int = 6  # months
    status: CreditRequestStatus = "pending"
    decision_data: DecisionData = Field(default_factory=DecisionData)
    loan_id: str | None = None
    created_by: str | None = None
    request_date: datetime | None = None
    updated_at: datetime | None = None
    disbursed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REQUEST_STATUSES


class OutboxEntry(Entity):
    """Marks an organization whose ``farmerCount`` may be stale."""

    organization_id: str
    organization_type: OrganizationType
    reason: str = ""
    created_at: datetime | None = None
    attempts: int = 0
    last_error: str | None = None
