"""
Fine policy.

Pure functions of (due date, return date or now, policy, condition). The
accrued fine for a given loan never decreases as time moves forward.
"""

import math
from datetime import datetime, timedelta
from typing import Optional

from .config import LibraryPolicy
from .schemas import ItemStatus, LoanStatus, ReturnCondition

ONE_DAY = timedelta(days=1)


def days_late(due_date: datetime, at: datetime) -> int:
    """Whole days past due, rounded up; 0 when not late."""
    if at <= due_date:
        return 0
    return math.ceil((at - due_date) / ONE_DAY)


def late_fine(due_date: datetime, at: datetime, policy: LibraryPolicy) -> float:
    return round(days_late(due_date, at) * policy.per_diem_rate, 2)


def compute_fine(
    due_date: datetime,
    at: datetime,
    policy: LibraryPolicy,
    condition: ReturnCondition = ReturnCondition.GOOD,
) -> float:
    if condition == ReturnCondition.LOST:
        return round(policy.replacement_cost, 2)
    fine = late_fine(due_date, at, policy)
    if condition == ReturnCondition.DAMAGED:
        fine += policy.damaged_surcharge
    return round(fine, 2)


def accrued_fine(
    due_date: datetime,
    return_date: Optional[datetime],
    now: datetime,
    policy: LibraryPolicy,
) -> float:
    """Fine owed so far on an open loan (or at its return date)."""
    return late_fine(due_date, return_date or now, policy)


# Final statuses for a return, by condition
LOAN_STATUS_FOR_CONDITION = {
    ReturnCondition.GOOD: LoanStatus.RETURNED,
    ReturnCondition.DAMAGED: LoanStatus.DAMAGED,
    ReturnCondition.LOST: LoanStatus.LOST,
}

ITEM_STATUS_FOR_CONDITION = {
    ReturnCondition.GOOD: ItemStatus.AVAILABLE,
    ReturnCondition.DAMAGED: ItemStatus.DAMAGED,
    ReturnCondition.LOST: ItemStatus.LOST,
}
