"""Read-only reporting projections over loans, holds and the catalog."""

import math
from collections import Counter
from datetime import datetime
from typing import Callable, Dict, List

from pydantic import BaseModel, Field

from .config import LibraryPolicy
from .policy import ONE_DAY, accrued_fine
from .repositories import Store
from .schemas import ItemStatus, Reservation, ReservationStatus, utc_now


class InventorySummary(BaseModel):
    total: int = Field(0, description="Items in the catalog")
    by_status: Dict[str, int] = Field(default_factory=dict, description="Item count per status")


class CirculationSummary(BaseModel):
    open_loans: int = 0
    overdue_loans: int = 0
    pending_holds: int = 0
    ready_holds: int = 0
    fines_accrued: float = 0.0
    fines_outstanding: float = 0.0


class OverdueLoan(BaseModel):
    loan_id: str
    item_id: str
    borrower_id: str
    due_date: datetime
    days_overdue: int
    estimated_fine: float


class Reports:
    def __init__(self, store: Store, policy: LibraryPolicy, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self.policy = policy
        self.clock = clock

    def inventory(self) -> InventorySummary:
        items = [i for i in self.store.items.list_all() if not i.deleted]
        counts = Counter(i.status.value for i in items)
        return InventorySummary(
            total=len(items),
            by_status={status.value: counts.get(status.value, 0) for status in ItemStatus},
        )

    def circulation(self) -> CirculationSummary:
        now = self.clock()
        loans = self.store.loans.list_all()
        open_loans = [l for l in loans if l.is_open]
        holds = self.store.reservations.list_by_status(
            ReservationStatus.PENDING, ReservationStatus.READY_FOR_PICKUP
        )
        accrued = 0.0
        outstanding = 0.0
        for loan in loans:
            fine = loan.fine_amount
            if loan.is_open:
                fine = max(fine, accrued_fine(loan.due_date, None, now, self.policy))
            accrued += fine
            outstanding += max(0.0, fine - loan.fine_paid)
        return CirculationSummary(
            open_loans=len(open_loans),
            overdue_loans=sum(1 for l in open_loans if l.due_date < now),
            pending_holds=sum(1 for r in holds if r.status == ReservationStatus.PENDING),
            ready_holds=sum(1 for r in holds if r.status == ReservationStatus.READY_FOR_PICKUP),
            fines_accrued=round(accrued, 2),
            fines_outstanding=round(outstanding, 2),
        )

    def overdue(self) -> List[OverdueLoan]:
        now = self.clock()
        rows = []
        for loan in self.store.loans.list_open():
            if loan.due_date >= now:
                continue
            rows.append(
                OverdueLoan(
                    loan_id=loan.id,
                    item_id=loan.item_id,
                    borrower_id=loan.borrower_id,
                    due_date=loan.due_date,
                    days_overdue=math.ceil((now - loan.due_date) / ONE_DAY),
                    estimated_fine=max(loan.fine_amount, accrued_fine(loan.due_date, None, now, self.policy)),
                )
            )
        return sorted(rows, key=lambda r: r.days_overdue, reverse=True)

    def stale_pickups(self) -> List[Reservation]:
        """Ready holds past their pickup deadline that no sweep has expired yet."""
        now = self.clock()
        ready = self.store.reservations.list_by_status(ReservationStatus.READY_FOR_PICKUP)
        return sorted((r for r in ready if r.expiry_date < now), key=lambda r: r.expiry_date)
