"""Core package for the coffee ledger.

Loans, credit requests and farmer memberships for coffee cooperatives and
SACCOs, kept in a document store.  The services and models are exposed here
so consumers can import them directly from ``coffee_ledger``.
"""

from .adapters.memory import MemoryDocumentStore
from .core.models import CreditRequest, Farmer, Loan, Organization, OrganizationRef
from .errors import LedgerError
from .services.credit_requests import CreditRequestWorkflow
from .services.loans import LoanLedger
from .services.membership import MembershipSynchronizer

__all__ = [
    "CreditRequest",
    "CreditRequestWorkflow",
    "Farmer",
    "LedgerError",
    "Loan",
    "LoanLedger",
    "MembershipSynchronizer",
    "MemoryDocumentStore",
    "Organization",
    "OrganizationRef",
]
