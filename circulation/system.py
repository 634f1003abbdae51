from datetime import datetime
from typing import Callable, List, Optional, Sequence

from .concurrency import CancelToken
from .config import LibraryPolicy
from .coordinator import LifecycleCoordinator, ReturnOutcome
from .database import build_store
from .errors import LoanNotFound
from .repositories import InMemoryStore, Store
from .reports import Reports
from .reservations import QueueEntry
from .schemas import (
    CatalogItem,
    ItemStatus,
    Loan,
    LoanStatus,
    Reservation,
    ReservationStatus,
    ReturnCondition,
    SweepResult,
    utc_now,
)
from .sweep import EventSink, NotificationSweep


class LibrarySystem:
    """
    A simple facade that wires the store, the lifecycle engine, the sweep
    and the reports, and offers the engine's operations in one place.
    """

    def __init__(
        self,
        store: Optional[Store] = None,
        policy: Optional[LibraryPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store or InMemoryStore()
        self.policy = policy or LibraryPolicy()
        self.clock = clock

        self.coordinator = LifecycleCoordinator(self.store, self.policy, clock)
        self.catalog = self.coordinator.catalog
        self.sweep = NotificationSweep(self.coordinator)
        self.reports = Reports(self.store, self.policy, clock)

    @classmethod
    def from_env(cls) -> "LibrarySystem":
        return cls(store=build_store(), policy=LibraryPolicy.from_env())

    # ---- catalog
    def add_item(
        self,
        title: str,
        author: str,
        isbn: Optional[str] = None,
        category: Optional[str] = None,
    ) -> CatalogItem:
        return self.catalog.register(title, author, isbn, category)

    def get_item(self, item_id: str) -> CatalogItem:
        return self.catalog.get(item_id)

    def list_items(self, status: Optional[ItemStatus] = None) -> List[CatalogItem]:
        return self.catalog.list_items(status)

    def remove_item(self, item_id: str) -> CatalogItem:
        return self.coordinator.remove_item(item_id)

    def force_status(
        self,
        item_id: str,
        status: ItemStatus,
        reason: str,
        cancel: Optional[CancelToken] = None,
    ) -> CatalogItem:
        return self.coordinator.force_status(item_id, status, reason, cancel)

    # ---- circulation
    def checkout(
        self,
        item_id: str,
        borrower_id: str,
        due_date: Optional[datetime] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Loan:
        return self.coordinator.checkout(item_id, borrower_id, due_date, cancel)

    def return_item(
        self,
        loan_id: str,
        condition: ReturnCondition = ReturnCondition.GOOD,
        return_date: Optional[datetime] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ReturnOutcome:
        return self.coordinator.return_item(loan_id, condition, return_date, cancel)

    def record_payment(self, loan_id: str, amount: float) -> Loan:
        return self.coordinator.record_payment(loan_id, amount)

    def get_loan(self, loan_id: str) -> Loan:
        loan = self.store.loans.get(loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found")
        return loan

    def list_loans(
        self,
        borrower_id: Optional[str] = None,
        item_id: Optional[str] = None,
        status: Optional[LoanStatus] = None,
    ) -> List[Loan]:
        if borrower_id:
            loans = self.store.loans.list_by_borrower(borrower_id)
        elif item_id:
            loans = self.store.loans.list_for_item(item_id)
        else:
            loans = self.store.loans.list_all()
        if item_id:
            loans = [l for l in loans if l.item_id == item_id]
        if status is not None:
            loans = [l for l in loans if l.status == status]
        return sorted(loans, key=lambda l: l.checkout_date, reverse=True)

    # ---- holds
    def place_hold(self, item_id: str, borrower_id: str, cancel: Optional[CancelToken] = None) -> Reservation:
        return self.coordinator.place_hold(item_id, borrower_id, cancel)

    def cancel_hold(self, reservation_id: str, cancel: Optional[CancelToken] = None) -> Reservation:
        return self.coordinator.cancel_hold(reservation_id, cancel)

    def queue_position(self, reservation_id: str) -> int:
        return self.coordinator.queue_position(reservation_id)

    def list_holds(
        self,
        borrower_id: Optional[str] = None,
        item_id: Optional[str] = None,
        status: Optional[ReservationStatus] = None,
    ) -> List[Reservation]:
        if borrower_id:
            holds = self.store.reservations.list_by_borrower(borrower_id)
        elif item_id:
            holds = self.store.reservations.list_for_item(item_id)
        else:
            holds = self.store.reservations.list_all()
        if item_id:
            holds = [r for r in holds if r.item_id == item_id]
        if status is not None:
            holds = [r for r in holds if r.status == status]
        return sorted(holds, key=lambda r: r.queue_key)

    def queue_snapshot(self, item_id: str) -> List[QueueEntry]:
        item = self.catalog.get(item_id)
        open_loan = next((l for l in self.store.loans.list_for_item(item_id) if l.is_open), None)
        reservations = self.store.reservations.list_for_item(item_id)
        return self.coordinator.queue.snapshot(item, reservations, open_loan, self.clock())

    # ---- sweep
    def run_sweep(
        self,
        now: Optional[datetime] = None,
        jobs: Optional[Sequence[str]] = None,
        cancel: Optional[CancelToken] = None,
        sink: Optional[EventSink] = None,
    ) -> SweepResult:
        return self.sweep.run(now, jobs, cancel, sink)
