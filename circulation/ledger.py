"""
Loan ledger: opens and closes checkout transactions, derives due dates,
overdue status and fines.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from .config import LibraryPolicy
from .errors import (
    InvalidDueDate,
    InvalidPayment,
    InvalidReturnDate,
    ItemReservedForAnotherUser,
    ItemUnavailable,
    LoanAlreadyClosed,
)
from .policy import LOAN_STATUS_FOR_CONDITION, accrued_fine, compute_fine
from .repositories import LoanRepository, UnitOfWork
from .schemas import CatalogItem, ItemStatus, Loan, LoanStatus, ReturnCondition, as_utc

logger = logging.getLogger(__name__)


class LoanLedger:
    def __init__(self, policy: LibraryPolicy) -> None:
        self.policy = policy

    def default_due_date(self, checkout_date: datetime) -> datetime:
        return checkout_date + timedelta(days=self.policy.loan_period_days)

    def open_loan(
        self,
        uow: UnitOfWork,
        item: CatalogItem,
        borrower_id: str,
        now: datetime,
        due_date: Optional[datetime] = None,
    ) -> Loan:
        if item.status == ItemStatus.RESERVED:
            if item.reserved_for != borrower_id:
                raise ItemReservedForAnotherUser(f"Item {item.id} is reserved for another borrower")
        elif item.status != ItemStatus.AVAILABLE:
            raise ItemUnavailable(f"Item {item.id} is {item.status.value}")

        # Exclusive loan: the cached status is never trusted alone
        if any(l.is_open for l in uow.loans_for_item(item.id)):
            raise ItemUnavailable(f"Item {item.id} already has an open loan")

        due_date = as_utc(due_date) or self.default_due_date(now)
        if due_date <= now:
            raise InvalidDueDate("Due date must be after the checkout date")

        loan = Loan(item_id=item.id, borrower_id=borrower_id, checkout_date=now, due_date=due_date)
        return uow.stage_loan(loan)

    def close_loan(
        self,
        uow: UnitOfWork,
        loan_id: str,
        condition: ReturnCondition,
        now: datetime,
        return_date: Optional[datetime] = None,
    ) -> Loan:
        loan = uow.loan(loan_id)
        if not loan.is_open:
            raise LoanAlreadyClosed(f"Loan {loan_id} is already {loan.status.value}")

        # Backdated corrections may move the return date into the past only
        return_date = as_utc(return_date) or now
        if return_date < loan.checkout_date or return_date > now:
            raise InvalidReturnDate("Return date must fall between checkout and now")

        fine = compute_fine(loan.due_date, return_date, self.policy, condition)
        closed = loan.model_copy(
            update={
                "return_date": return_date,
                "fine_amount": max(loan.fine_amount, fine),
                "status": LOAN_STATUS_FOR_CONDITION[condition],
            }
        )
        return uow.stage_loan(closed)

    def current_fine(self, loan: Loan, now: datetime) -> float:
        if not loan.is_open:
            return loan.fine_amount
        return max(loan.fine_amount, accrued_fine(loan.due_date, None, now, self.policy))

    def mark_overdue(self, loans: LoanRepository, loan: Loan, now: datetime) -> bool:
        """
        Flag an open loan OVERDUE once its due date has passed and bring its
        stored fine up to date. Idempotent; True only on the
        CHECKED_OUT -> OVERDUE transition.
        """
        if not loan.is_open or loan.due_date >= now:
            return False
        before = loans.flag_overdue(loan.id, accrued_fine(loan.due_date, None, now, self.policy))
        return before is not None and before.status == LoanStatus.CHECKED_OUT

    def record_payment(self, uow: UnitOfWork, loan_id: str, amount: float) -> Loan:
        loan = uow.loan(loan_id)
        if amount <= 0:
            raise InvalidPayment("Payment must be positive")
        if round(loan.fine_paid + amount, 2) > loan.fine_amount:
            raise InvalidPayment(f"Payment exceeds the outstanding fine of {loan.outstanding_fine:.2f}")
        return uow.stage_loan(loan.model_copy(update={"fine_paid": round(loan.fine_paid + amount, 2)}))
