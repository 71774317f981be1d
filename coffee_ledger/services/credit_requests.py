"""
Credit request workflow.

    pending --approve--> approved --disburse--> disbursed
    pending --reject---> rejected

``rejected`` and ``disbursed`` are terminal.  Disbursing a request creates
its loan in the same operation; the loan id is derived from the request id
so a retried disbursement finds the loan it already created.
"""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime

from ..adapters.base import DocumentStore
from ..core.models import (
    CREDIT_REQUESTS,
    FARMERS,
    LOANS,
    CreditRequest,
    DecisionData,
    Disbursement,
    Farmer,
    Loan,
    utcnow,
)
from ..core.money import add_months, positive_amount, to_wire
from ..core.query import Filter, OrderBy
from ..errors import InvalidAmount, InvalidTransition, NotFound
from .concurrency import KeyedLocks, mutate_versioned
from .loans import DEFAULT_INTEREST_RATE, LoanLedger

logger = logging.getLogger(__name__)


def loan_id_for(request_id: str) -> str:
    return f"loan-{request_id}"


class CreditRequestWorkflow:
    """Approval pipeline that precedes loan creation."""

    def __init__(
        self,
        store: DocumentStore,
        ledger: LoanLedger,
        *,
        max_retries: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.max_retries = max_retries
        self.clock = clock
        self._locks = KeyedLocks()

    async def get(self, request_id: str) -> CreditRequest:
        snapshot = await self.store.get(CREDIT_REQUESTS, request_id)
        if snapshot is None:
            raise NotFound(f"Credit request {request_id} not found.")
        return CreditRequest.from_snapshot(snapshot)

    async def list_requests(self, status: str | None = None) -> list[CreditRequest]:
        filters = [Filter("status", "==", status)] if status else []
        snapshots = await self.store.query(
            CREDIT_REQUESTS, filters, OrderBy("requestDate", descending=True)
        )
        return [CreditRequest.from_snapshot(s) for s in snapshots]

    async def submit(
        self,
        farmer_id: str,
        amount: object,
        description: str = "",
        purpose: str = "",
        repayment_period: int = 6,
        created_by: str | None = None,
    ) -> CreditRequest:
        value = to_wire(positive_amount(amount, InvalidAmount))
        if repayment_period < 1:
            raise InvalidAmount("Repayment period must be at least 1 month.")
        snapshot = await self.store.get(FARMERS, farmer_id)
        if snapshot is None:
            raise NotFound(f"Farmer {farmer_id} not found.")
        farmer = Farmer.from_snapshot(snapshot)

        now = self.clock()
        request = CreditRequest(
            id=uuid.uuid4().hex,
            farmer_id=farmer.id,
            farmer_name=farmer.display_name,
            organization_name=farmer.organization.name,
            amount=value,
            description=description,
            purpose=purpose,
            repayment_period=repayment_period,
            status="pending",
            created_by=created_by or self.ledger.recorded_by,
            request_date=now,
            updated_at=now,
        )
        written = await self.store.create(
            CREDIT_REQUESTS, request.id, request.to_document()
        )
        logger.info(
            "Credit request %s submitted for farmer %s: amount=%s",
            request.id,
            farmer.id,
            value,
        )
        return CreditRequest.from_snapshot(written)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------
    async def approve(
        self,
        request_id: str,
        approved_amount: object = None,
        interest_rate: float | None = None,
        notes: str = "",
        decided_by: str | None = None,
    ) -> CreditRequest:
        amount = (
            to_wire(positive_amount(approved_amount, InvalidAmount))
            if approved_amount is not None
            else None
        )
        if interest_rate is not None and interest_rate < 0:
            raise InvalidAmount("Interest rate cannot be negative.")

        def change(request: CreditRequest) -> dict:
            self._require(request, "pending", "approve")
            now = self.clock()
            return {
                "status": "approved",
                "decision_data": DecisionData(
                    decision="approved",
                    decision_date=now,
                    decision_by=decided_by or self.ledger.recorded_by,
                    approved_amount=amount if amount is not None else request.amount,
                    interest_rate=interest_rate,
                    notes=notes,
                ),
                "updated_at": now,
            }

        request = await self._transition(request_id, change)
        logger.info("Credit request %s approved", request_id)
        return request

    async def reject(
        self, request_id: str, notes: str = "", decided_by: str | None = None
    ) -> CreditRequest:
        def change(request: CreditRequest) -> dict:
            self._require(request, "pending", "reject")
            now = self.clock()
            return {
                "status": "rejected",
                "decision_data": DecisionData(
                    decision="rejected",
                    decision_date=now,
                    decision_by=decided_by or self.ledger.recorded_by,
                    notes=notes,
                ),
                "updated_at": now,
            }

        request = await self._transition(request_id, change)
        logger.info("Credit request %s rejected", request_id)
        return request

    async def disburse(
        self,
        request_id: str,
        account_details: str = "",
        method: str = "bank_transfer",
        due_date: datetime | None = None,
        disbursed_by: str | None = None,
    ) -> tuple[CreditRequest, Loan]:
        """Mark an approved request disbursed and create its loan.

        The loan is written first.  If marking the request fails afterwards,
        calling ``disburse`` again reuses that loan instead of creating a
        second one.
        """
        async with self._locks(request_id):
            request = await self.get(request_id)
            self._require(request, "approved", "disburse")

            loan_id = loan_id_for(request.id)
            existing = await self.store.get(LOANS, loan_id)
            if existing is not None:
                loan = Loan.from_snapshot(existing)
                logger.info("Reusing loan %s for credit request %s", loan_id, request_id)
            else:
                decision = request.decision_data
                now = self.clock()
                loan = await self.ledger.create_loan(
                    request.farmer_id,
                    decision.approved_amount or request.amount,
                    interest_rate=(
                        decision.interest_rate
                        if decision.interest_rate is not None
                        else DEFAULT_INTEREST_RATE
                    ),
                    purpose=request.purpose or request.description,
                    due_date=due_date or add_months(now, request.repayment_period),
                    credit_request_id=request.id,
                    status="active",
                    loan_id=loan_id,
                    disbursement=Disbursement(
                        method=method,
                        account_details=account_details,
                        approved_by=disbursed_by or self.ledger.recorded_by,
                        approval_date=now,
                    ),
                )

            def change(current: CreditRequest) -> dict:
                self._require(current, "approved", "disburse")
                now = self.clock()
                return {
                    "status": "disbursed",
                    "loan_id": loan.id,
                    "disbursed_at": now,
                    "updated_at": now,
                }

            request = await mutate_versioned(
                self.store,
                CREDIT_REQUESTS,
                request_id,
                CreditRequest,
                change,
                retries=self.max_retries,
            )
        logger.info("Credit request %s disbursed as loan %s", request_id, loan.id)
        return request, loan

    # ------------------------------------------------------------------
    @staticmethod
    def _require(request: CreditRequest, status: str, action: str) -> None:
        if request.status != status:
            raise InvalidTransition(
                f"Cannot {action} credit request {request.id}: it is {request.status}."
            )

    async def _transition(self, request_id: str, change) -> CreditRequest:
        return await mutate_versioned(
            self.store,
            CREDIT_REQUESTS,
            request_id,
            CreditRequest,
            change,
            retries=self.max_retries,
            lock=self._locks(request_id),
        )
