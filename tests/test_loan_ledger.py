"""Tests for the loan state machine and payment accounting."""

import asyncio
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from coffee_ledger.adapters.memory import MemoryDocumentStore
from coffee_ledger.core.models import Loan, Payment
from coffee_ledger.errors import (
    InvalidPaymentAmount,
    InvalidTransition,
    LoanNotActive,
    NotFound,
    OverpaymentRejected,
)
from coffee_ledger.services.loans import LoanLedger, audit, portfolio_stats, progress
from coffee_ledger.services.membership import MembershipSynchronizer


async def active_loan(ledger: LoanLedger, amount: float = 1000.0) -> Loan:
    sync = MembershipSynchronizer(ledger.store)
    farmer = await sync.register_farmer("Amina Otieno", phone="0712345678")
    loan = await ledger.create_loan(farmer.id, amount)
    return await ledger.activate(loan.id, account_details="Equity 0123")


def test_payments_until_repaid() -> None:
    async def scenario():
        ledger = LoanLedger(MemoryDocumentStore())
        loan = await active_loan(ledger)

        loan = await ledger.record_payment(loan.id, 300)
        assert loan.status == "active"
        assert loan.amount_paid == 300
        assert loan.remaining_amount == 700
        assert ledger.progress(loan) == 30

        loan = await ledger.record_payment(loan.id, "700")
        assert loan.status == "repaid"
        assert loan.remaining_amount == 0
        assert loan.repaid_at is not None
        assert [p.amount for p in loan.payments] == [300, 700]
        assert audit(loan) == []

    asyncio.run(scenario())


def test_overpayment_accepted_by_default() -> None:
    async def scenario():
        ledger = LoanLedger(MemoryDocumentStore())
        loan = await active_loan(ledger, amount=100)

        loan = await ledger.record_payment(loan.id, 150)
        assert loan.status == "repaid"
        assert loan.amount_paid == 150
        assert loan.remaining_amount == 0
        assert progress(loan) == 100
        assert audit(loan) == []

    asyncio.run(scenario())


def test_overpayment_rejected_by_policy() -> None:
    async def scenario():
        ledger = LoanLedger(MemoryDocumentStore(), overpayment_policy="reject")
        loan = await active_loan(ledger, amount=100)

        with pytest.raises(OverpaymentRejected):
            await ledger.record_payment(loan.id, 150)
        unchanged = await ledger.get(loan.id)
        assert unchanged.payments == []
        assert unchanged.status == "active"

        paid = await ledger.record_payment(loan.id, 100)
        assert paid.status == "repaid"

    asyncio.run(scenario())


def test_unknown_overpayment_policy() -> None:
    with pytest.raises(ValueError):
        LoanLedger(MemoryDocumentStore(), overpayment_policy="sometimes")


@pytest.mark.parametrize(
    "amount", [0, -5, "abc", "", None, True, float("nan"), float("inf"), 0.004, "0.001"]
)
def test_invalid_payment_amounts_write_nothing(amount) -> None:
    async def scenario():
        ledger = LoanLedger(MemoryDocumentStore())
        loan = await active_loan(ledger)
        with pytest.raises(InvalidPaymentAmount):
            await ledger.record_payment(loan.id, amount)
        assert (await ledger.get(loan.id)).version == loan.version

    asyncio.run(scenario())


def test_payment_needs_active_loan() -> None:
    async def scenario():
        ledger = LoanLedger(MemoryDocumentStore())
        sync = MembershipSynchronizer(ledger.store)
        farmer = await sync.register_farmer("Peter Mwangi")
        pending = await ledger.create_loan(farmer.id, 500)
        assert pending.status == "pending"

        with pytest.raises(LoanNotActive):
            await ledger.record_payment(pending.id, 100)
        with pytest.raises(NotFound):
            await ledger.record_payment("missing", 100)

    asyncio.run(scenario())


def test_activate_requires_account_details() -> None:
    async def scenario():
        ledger = LoanLedger(MemoryDocumentStore())
        sync = MembershipSynchronizer(ledger.store)
        farmer = await sync.register_farmer("Peter Mwangi")
        loan = await ledger.create_loan(farmer.id, 500, purpose="Fertilizer")

        with pytest.raises(ValueError):
            await ledger.activate(loan.id, account_details="  ")

        active = await ledger.activate(loan.id, account_details="M-Pesa 0722", method="mobile_money")
        assert active.status == "active"
        assert active.start_date is not None
        assert active.disbursement.method == "mobile_money"
        assert active.farmer_name == "Peter Mwangi"

        with pytest.raises(InvalidTransition):
            await ledger.activate(loan.id, account_details="again")

    asyncio.run(scenario())


def test_mark_repaid_records_settlement() -> None:
    async def scenario():
        ledger = LoanLedger(MemoryDocumentStore(), recorded_by="treasurer")
        loan = await active_loan(ledger)
        await ledger.record_payment(loan.id, 300)

        loan = await ledger.mark_repaid(loan.id)
        assert loan.status == "repaid"
        assert loan.amount_paid == 1000
        assert loan.remaining_amount == 0
        assert loan.payments[-1].method == "settlement"
        assert loan.payments[-1].amount == 700
        assert loan.payments[-1].recorded_by == "treasurer"
        assert audit(loan) == []

        with pytest.raises(InvalidTransition):
            await ledger.mark_repaid(loan.id)

    asyncio.run(scenario())


def test_terminal_states_are_closed() -> None:
    async def scenario():
        ledger = LoanLedger(MemoryDocumentStore())
        loan = await active_loan(ledger)

        loan = await ledger.mark_defaulted(loan.id)
        assert loan.status == "defaulted"
        assert loan.is_terminal

        with pytest.raises(LoanNotActive):
            await ledger.record_payment(loan.id, 10)
        with pytest.raises(InvalidTransition):
            await ledger.mark_repaid(loan.id)
        with pytest.raises(InvalidTransition):
            await ledger.mark_defaulted(loan.id)

    asyncio.run(scenario())


def test_list_loans_by_status() -> None:
    async def scenario():
        ledger = LoanLedger(MemoryDocumentStore())
        first = await active_loan(ledger)
        second = await active_loan(ledger, amount=200)
        await ledger.mark_defaulted(second.id)

        assert [loan.id for loan in await ledger.list_loans("active")] == [first.id]
        assert len(await ledger.list_loans()) == 2

    asyncio.run(scenario())


def test_audit_reports_inconsistencies() -> None:
    when = datetime(2024, 1, 1, tzinfo=UTC)
    loan = Loan(
        farmer_id="f1",
        amount=100,
        status="repaid",
        payments=[Payment(amount=40, date=when)],
        amount_paid=100,
        remaining_amount=0,
    )
    problems = audit(loan)
    assert any("sum(payments)" in p for p in problems)
    assert any("repaidAt" in p for p in problems)


def test_portfolio_stats() -> None:
    loans = [
        Loan(farmer_id="f1", amount=1000, status="active", amount_paid=200, interest_rate=5),
        Loan(farmer_id="f2", amount=500, status="defaulted", interest_rate=10),
        Loan(farmer_id="f3", amount=300, status="repaid", amount_paid=300, interest_rate=6),
        Loan(farmer_id="f4", amount=200, status="pending", interest_rate=3),
    ]
    stats = portfolio_stats(loans)
    assert stats.total_loans == 4
    assert stats.active_loans == 1
    assert stats.total_amount == 2000
    assert stats.total_repaid == 500
    assert stats.average_interest_rate == 6
    assert stats.default_rate == 25

    empty = portfolio_stats([])
    assert empty.total_loans == 0
    assert empty.default_rate == 0


def test_tenth_payments_settle_exactly() -> None:
    async def scenario():
        ledger = LoanLedger(MemoryDocumentStore())
        loan = await active_loan(ledger, amount=1.0)
        for _ in range(10):
            loan = await ledger.record_payment(loan.id, 0.1)
        return loan

    loan = asyncio.run(scenario())
    assert loan.status == "repaid"
    assert loan.amount_paid == 1.0
    assert loan.remaining_amount == 0
    assert progress(loan) == 100
    assert audit(loan) == []


def test_exact_payoff_accepted_under_reject_policy() -> None:
    async def scenario():
        ledger = LoanLedger(MemoryDocumentStore(), overpayment_policy="reject")
        loan = await active_loan(ledger, amount=0.3)
        loan = await ledger.record_payment(loan.id, 0.1)
        loan = await ledger.record_payment(loan.id, 0.2)
        assert loan.status == "repaid"
        assert loan.remaining_amount == 0

    asyncio.run(scenario())


def test_amount_paid_never_decreases() -> None:
    amounts = ["100.10", 0.3, 250.25, "0.05", 19.99, 0.01, 80]

    async def scenario():
        ledger = LoanLedger(MemoryDocumentStore())
        loan = await active_loan(ledger, amount=1000)
        history = []
        for amount in amounts:
            loan = await ledger.record_payment(loan.id, amount)
            history.append(loan.amount_paid)
        return history

    history = asyncio.run(scenario())
    assert history == sorted(history)
    running = Decimal("0")
    for amount, paid in zip(amounts, history):
        running += Decimal(str(amount))
        assert Decimal(str(paid)) == running
