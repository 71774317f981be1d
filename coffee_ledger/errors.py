"""Error taxonomy for the ledger, the credit workflow and membership sync.

Validation errors are raised before anything is written.  Store errors are
raised as they happen, which may leave a multi-document sequence partially
applied; the membership outbox and reconciliation repair that state.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for every error raised by :mod:`coffee_ledger`."""

    default_detail = "Ledger operation failed."
    code = "ledger_error"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class NotFound(LedgerError):
    """A referenced farmer, organization, loan or request does not exist."""

    default_detail = "Document not found."
    code = "not_found"


class InvalidTransition(LedgerError):
    """A status change was requested from a state that does not allow it."""

    default_detail = "Transition not allowed from the current status."
    code = "invalid_transition"


class LoanNotActive(InvalidTransition):
    """A payment was recorded against a loan that is not ``active``."""

    default_detail = "Loan is not active."
    code = "loan_not_active"


class InvalidAmount(LedgerError, ValueError):
    """A principal or requested amount is not a positive number."""

    default_detail = "Amount must be a positive number."
    code = "invalid_amount"


class InvalidPaymentAmount(InvalidAmount):
    """A payment amount is non-positive or non-numeric."""

    default_detail = "Payment amount must be a positive number."
    code = "invalid_payment_amount"


class OverpaymentRejected(InvalidPaymentAmount):
    """A payment exceeds the remaining balance under the ``reject`` policy."""

    default_detail = "Payment exceeds the remaining balance."
    code = "overpayment_rejected"


class OrphanedReference(LedgerError):
    """A farmer points at an organization that no longer exists."""

    default_detail = "Organization reference resolves to no document."
    code = "orphaned_reference"


class StoreUnavailable(LedgerError):
    """Transport or backend failure talking to the document store."""

    default_detail = "Document store unavailable."
    code = "store_unavailable"


class VersionConflict(LedgerError):
    """A version-checked write lost against a concurrent writer."""

    default_detail = "Document was modified concurrently."
    code = "version_conflict"


__all__ = [
    "LedgerError",
    "NotFound",
    "InvalidTransition",
    "LoanNotActive",
    "InvalidAmount",
    "InvalidPaymentAmount",
    "OverpaymentRejected",
    "OrphanedReference",
    "StoreUnavailable",
    "VersionConflict",
]
