"""
Loan ledger.

Owns the loan state machine and payment accounting:

    pending --activate--> active --record_payment (balance left)--> active
                          active --record_payment (paid off)-----> repaid
                          active --mark_repaid-------------------> repaid
                          active --mark_defaulted----------------> defaulted

``repaid`` and ``defaulted`` are terminal.  Payments are append-only and
``amount_paid`` is always recomputed from them, never adjusted in place.
Every mutation touches the loan document only.
"""

import logging
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime

from ..adapters.base import DocumentStore
from ..core.models import FARMERS, LOANS, Disbursement, Farmer, Loan, Payment, utcnow
from ..core.money import ZERO, add_months, positive_amount, to_money, to_wire, total
from ..core.query import Filter, OrderBy
from ..errors import (
    InvalidAmount,
    InvalidPaymentAmount,
    InvalidTransition,
    LoanNotActive,
    NotFound,
    OverpaymentRejected,
)
from .concurrency import KeyedLocks, mutate_versioned

logger = logging.getLogger(__name__)

DEFAULT_INTEREST_RATE = 5.0
DEFAULT_TERM_MONTHS = 6


def progress(loan: Loan) -> int:
    """Percentage of the principal paid back, capped at 100."""
    principal = to_money(loan.amount)
    if not principal:
        return 0
    return min(100, round(to_money(loan.amount_paid) / principal * 100))


def audit(loan: Loan) -> list[str]:
    """Return the ledger invariants ``loan`` violates (empty when consistent)."""
    problems = []
    paid = total(p.amount for p in loan.payments)
    if to_money(loan.amount_paid) != paid:
        problems.append(f"amountPaid {loan.amount_paid} != sum(payments) {paid}")
    expected_remaining = max(ZERO, to_money(loan.amount) - to_money(loan.amount_paid))
    if to_money(loan.remaining_amount) != expected_remaining:
        problems.append(
            f"remainingAmount {loan.remaining_amount} != {expected_remaining}"
        )
    if loan.status == "repaid" and loan.repaid_at is None:
        problems.append("repaid loan has no repaidAt")
    if loan.status == "active" and expected_remaining <= 0:
        problems.append("active loan has no balance left")
    return problems


@dataclass(frozen=True)
class PortfolioStats:
    total_loans: int
    active_loans: int
    total_amount: float
    total_repaid: float
    average_interest_rate: float
    default_rate: float  # percent of loans in default


def portfolio_stats(loans: list[Loan]) -> PortfolioStats:
    """Summary figures over a list of loans."""
    count = len(loans)
    defaulted = sum(1 for loan in loans if loan.status == "defaulted")
    return PortfolioStats(
        total_loans=count,
        active_loans=sum(1 for loan in loans if loan.status == "active"),
        total_amount=to_wire(total(loan.amount for loan in loans)),
        total_repaid=to_wire(total(loan.amount_paid for loan in loans)),
        average_interest_rate=(
            sum(loan.interest_rate for loan in loans) / count if count else 0.0
        ),
        default_rate=defaulted / count * 100 if count else 0.0,
    )


class LoanLedger:
    """Loan lifecycle and payment accounting against a document store."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        overpayment_policy: str = "accept",
        recorded_by: str = "admin",
        max_retries: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if overpayment_policy not in ("accept", "reject"):
            raise ValueError(f"Unknown overpayment policy: {overpayment_policy!r}")
        self.store = store
        self.overpayment_policy = overpayment_policy
        self.recorded_by = recorded_by
        self.max_retries = max_retries
        self.clock = clock
        self._locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get(self, loan_id: str) -> Loan:
        snapshot = await self.store.get(LOANS, loan_id)
        if snapshot is None:
            raise NotFound(f"Loan {loan_id} not found.")
        return Loan.from_snapshot(snapshot)

    async def list_loans(self, status: str | None = None) -> list[Loan]:
        filters = [Filter("status", "==", status)] if status else []
        snapshots = await self.store.query(
            LOANS, filters, OrderBy("createdAt", descending=True)
        )
        return [Loan.from_snapshot(s) for s in snapshots]

    async def watch(self, status: str | None = None) -> AsyncIterator[list[Loan]]:
        """Yield the full list of matching loans on every change."""
        filters = [Filter("status", "==", status)] if status else []
        async for snapshots in self.store.subscribe(LOANS, filters):
            yield [Loan.from_snapshot(s) for s in snapshots]

    # ------------------------------------------------------------------
    # Creation and disbursement
    # ------------------------------------------------------------------
    async def create_loan(
        self,
        farmer_id: str,
        amount: object,
        interest_rate: float = DEFAULT_INTEREST_RATE,
        purpose: str = "",
        due_date: datetime | None = None,
        credit_request_id: str | None = None,
        status: str = "pending",
        loan_id: str | None = None,
        disbursement: Disbursement | None = None,
    ) -> Loan:
        """Create a loan for ``farmer_id``.

        The farmer's name and organization are copied onto the loan.  Loans
        start ``pending`` unless they are created already disbursed
        (``status="active"``), as happens for disbursed credit requests.
        """
        principal = to_wire(positive_amount(amount, InvalidAmount))
        if status not in ("pending", "active"):
            raise InvalidTransition(f"Loans cannot be created as {status!r}.")
        if interest_rate < 0:
            raise InvalidAmount("Interest rate cannot be negative.")

        snapshot = await self.store.get(FARMERS, farmer_id)
        if snapshot is None:
            raise NotFound(f"Farmer {farmer_id} not found.")
        farmer = Farmer.from_snapshot(snapshot)

        now = self.clock()
        loan = Loan(
            id=loan_id or uuid.uuid4().hex,
            farmer_id=farmer.id,
            farmer_name=farmer.display_name,
            organization=farmer.organization,
            amount=principal,
            interest_rate=interest_rate,
            purpose=purpose,
            start_date=now if status == "active" else None,
            due_date=due_date or add_months(now, DEFAULT_TERM_MONTHS),
            status=status,
            amount_paid=0.0,
            remaining_amount=principal,
            credit_request_id=credit_request_id,
            disbursement=disbursement,
            created_at=now,
            updated_at=now,
        )
        written = await self.store.create(LOANS, loan.id, loan.to_document())
        logger.info(
            "Loan %s created for farmer %s: amount=%s, rate=%s%%, status=%s",
            loan.id,
            farmer.id,
            principal,
            interest_rate,
            status,
        )
        return Loan.from_snapshot(written)

    async def activate(
        self,
        loan_id: str,
        account_details: str,
        method: str = "bank_transfer",
        notes: str = "",
        approved_by: str | None = None,
    ) -> Loan:
        """Disburse a ``pending`` loan, making it ``active``."""
        if not account_details or not account_details.strip():
            raise ValueError("Account details are required for disbursement.")

        def change(loan: Loan) -> dict:
            if loan.status != "pending":
                raise InvalidTransition(
                    f"Loan {loan_id} is {loan.status}; only pending loans can be disbursed."
                )
            now = self.clock()
            return {
                "status": "active",
                "start_date": now,
                "disbursement": Disbursement(
                    method=method,
                    account_details=account_details.strip(),
                    notes=notes,
                    approved_by=approved_by or self.recorded_by,
                    approval_date=now,
                ),
                "updated_at": now,
            }

        loan = await self._mutate(loan_id, change)
        logger.info("Loan %s disbursed via %s", loan_id, method)
        return loan

    # ------------------------------------------------------------------
    # Payments and status overrides
    # ------------------------------------------------------------------
    async def record_payment(
        self,
        loan_id: str,
        amount: object,
        recorded_by: str | None = None,
        method: str = "cash",
        note: str = "",
    ) -> Loan:
        """Append a payment and recompute the balance.

        The loan becomes ``repaid`` once nothing is left to pay.  Under the
        ``accept`` overpayment policy a payment larger than the balance is
        recorded in full and ``remaining_amount`` floors at zero; under
        ``reject`` it raises :class:`OverpaymentRejected`.
        """
        value = positive_amount(amount, InvalidPaymentAmount)

        def change(loan: Loan) -> dict:
            if loan.status != "active":
                raise LoanNotActive(
                    f"Loan {loan_id} is {loan.status}; payments need an active loan."
                )
            balance = to_money(loan.amount) - total(p.amount for p in loan.payments)
            if self.overpayment_policy == "reject" and value > balance:
                raise OverpaymentRejected(
                    f"Payment {value} exceeds remaining balance {max(ZERO, balance)}."
                )
            now = self.clock()
            payments = [
                *loan.payments,
                Payment(
                    amount=to_wire(value),
                    date=now,
                    recorded_by=recorded_by or self.recorded_by,
                    method=method,
                    note=note,
                ),
            ]
            paid = total(p.amount for p in payments)
            remaining = to_money(loan.amount) - paid
            settled = remaining <= 0
            return {
                "payments": payments,
                "amount_paid": to_wire(paid),
                "remaining_amount": to_wire(max(ZERO, remaining)),
                "status": "repaid" if settled else "active",
                "repaid_at": now if settled else None,
                "updated_at": now,
            }

        loan = await self._mutate(loan_id, change)
        if loan.amount_paid > loan.amount:
            logger.warning(
                "Loan %s overpaid: paid %s against principal %s",
                loan_id,
                loan.amount_paid,
                loan.amount,
            )
        logger.info(
            "Payment of %s recorded on loan %s (paid=%s, remaining=%s, status=%s)",
            value,
            loan_id,
            loan.amount_paid,
            loan.remaining_amount,
            loan.status,
        )
        return loan

    async def mark_repaid(self, loan_id: str, recorded_by: str | None = None) -> Loan:
        """Admin override: close an ``active`` loan as fully repaid.

        The outstanding balance is written into the payment history as a
        ``settlement`` entry so ``amount_paid`` still equals the sum of
        payments.
        """

        def change(loan: Loan) -> dict:
            if loan.status != "active":
                raise InvalidTransition(
                    f"Loan {loan_id} is {loan.status}; only active loans can be marked repaid."
                )
            now = self.clock()
            payments = list(loan.payments)
            outstanding = to_money(loan.amount) - total(p.amount for p in payments)
            if outstanding > 0:
                payments.append(
                    Payment(
                        amount=to_wire(outstanding),
                        date=now,
                        recorded_by=recorded_by or self.recorded_by,
                        method="settlement",
                        note="Marked as fully repaid",
                    )
                )
            return {
                "payments": payments,
                "amount_paid": to_wire(total(p.amount for p in payments)),
                "remaining_amount": 0.0,
                "status": "repaid",
                "repaid_at": now,
                "updated_at": now,
            }

        loan = await self._mutate(loan_id, change)
        logger.info("Loan %s marked as fully repaid", loan_id)
        return loan

    async def mark_defaulted(self, loan_id: str) -> Loan:
        """Admin override: move an ``active`` loan to ``defaulted``."""

        def change(loan: Loan) -> dict:
            if loan.status != "active":
                raise InvalidTransition(
                    f"Loan {loan_id} is {loan.status}; only active loans can default."
                )
            return {"status": "defaulted", "updated_at": self.clock()}

        loan = await self._mutate(loan_id, change)
        logger.info("Loan %s marked as defaulted", loan_id)
        return loan

    # ------------------------------------------------------------------
    progress = staticmethod(progress)
    audit = staticmethod(audit)

    async def _mutate(self, loan_id: str, change) -> Loan:
        return await mutate_versioned(
            self.store,
            LOANS,
            loan_id,
            Loan,
            change,
            retries=self.max_retries,
            lock=self._locks(loan_id),
        )
