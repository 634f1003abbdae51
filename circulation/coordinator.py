"""
Lifecycle coordinator.

The only component that changes item, loan and reservation status. Each
operation runs under the item's lock: read current state, stage the new
state through the ledger / queue / catalog, check for cancellation, commit.
An operation that fails or is cancelled before commit leaves no trace.

Item states: AVAILABLE, CHECKED_OUT, RESERVED(for borrower), LOST, DAMAGED,
UNDER_MAINTENANCE, DISCARDED.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, List, NamedTuple, Optional

from .catalog import Catalog
from .concurrency import CancelToken, ItemLocks
from .config import LibraryPolicy
from .errors import InvalidState, LoanNotFound, ReservationNotFound
from .ledger import LoanLedger
from .policy import ITEM_STATUS_FOR_CONDITION
from .repositories import Store, UnitOfWork
from .reservations import ReservationQueue
from .schemas import (
    CatalogItem,
    ItemStatus,
    Loan,
    Reservation,
    ReservationStatus,
    ReturnCondition,
    utc_now,
)

logger = logging.getLogger(__name__)

# Statuses staff may force regardless of loans and holds
OVERRIDE_STATUSES = (
    ItemStatus.LOST,
    ItemStatus.DAMAGED,
    ItemStatus.UNDER_MAINTENANCE,
    ItemStatus.DISCARDED,
)


class ReturnOutcome(NamedTuple):
    loan: Loan
    promoted: Optional[Reservation]


class LifecycleCoordinator:
    def __init__(
        self,
        store: Store,
        policy: Optional[LibraryPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
        locks: Optional[ItemLocks] = None,
    ) -> None:
        self.store = store
        self.policy = policy or LibraryPolicy()
        self.clock = clock
        self.locks = locks or ItemLocks(timeout=self.policy.lock_timeout_seconds)
        self.catalog = Catalog(store)
        self.ledger = LoanLedger(self.policy)
        self.queue = ReservationQueue(self.policy)

    @contextmanager
    def _transaction(self, item_id: str, cancel: Optional[CancelToken]) -> Iterator[UnitOfWork]:
        cancel = cancel or CancelToken()
        cancel.check()
        with self.locks.hold(item_id):
            uow = UnitOfWork(self.store)
            # Pin the item version read here; commit fails if it moved
            uow.touch(item_id)
            yield uow
            cancel.check()
            uow.commit()

    # ---- item release

    def _release(self, uow: UnitOfWork, item: CatalogItem, now: datetime) -> Optional[Reservation]:
        """
        Settle a freed item: a hold already waiting for pickup keeps it, else
        the queue head is promoted, else it goes back on the shelf. Returns
        the newly promoted hold, if any.
        """
        ready = self.queue.ready_hold(uow, item.id)
        if ready is not None:
            self.catalog.set_status(uow, item, ItemStatus.RESERVED, now, reserved_for=ready.borrower_id)
            return None
        promoted = self.queue.promote_next(uow, item.id, now)
        if promoted is not None:
            self.catalog.set_status(uow, item, ItemStatus.RESERVED, now, reserved_for=promoted.borrower_id)
            return promoted
        self.catalog.set_status(uow, item, ItemStatus.AVAILABLE, now)
        return None

    # ---- checkout / return

    def checkout(
        self,
        item_id: str,
        borrower_id: str,
        due_date: Optional[datetime] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Loan:
        with self._transaction(item_id, cancel) as uow:
            now = self.clock()
            item = uow.item(item_id)
            loan = self.ledger.open_loan(uow, item, borrower_id, now, due_date)
            # The borrower's own hold on this item is fulfilled by the loan
            for r in uow.reservations_for_item(item_id):
                if r.is_active and r.borrower_id == borrower_id:
                    self.queue.fulfill(uow, r)
            self.catalog.set_status(uow, item, ItemStatus.CHECKED_OUT, now)
        logger.info("checkout item=%s borrower=%s loan=%s due=%s", item_id, borrower_id, loan.id, loan.due_date)
        return loan

    def return_item(
        self,
        loan_id: str,
        condition: ReturnCondition = ReturnCondition.GOOD,
        return_date: Optional[datetime] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ReturnOutcome:
        existing = self.store.loans.get(loan_id)
        if existing is None:
            raise LoanNotFound(f"Loan {loan_id} not found")

        condition = ReturnCondition(condition)
        promoted = None
        with self._transaction(existing.item_id, cancel) as uow:
            now = self.clock()
            loan = self.ledger.close_loan(uow, loan_id, condition, now, return_date)
            item = uow.item(loan.item_id)
            if condition == ReturnCondition.GOOD:
                promoted = self._release(uow, item, now)
            else:
                # Holds stay queued; staff decide what happens next
                self.catalog.set_status(uow, item, ITEM_STATUS_FOR_CONDITION[condition], now)
        logger.info(
            "return loan=%s item=%s condition=%s fine=%.2f promoted=%s",
            loan.id, loan.item_id, condition.value, loan.fine_amount, promoted.id if promoted else None,
        )
        return ReturnOutcome(loan, promoted)

    # ---- holds

    def place_hold(self, item_id: str, borrower_id: str, cancel: Optional[CancelToken] = None) -> Reservation:
        with self._transaction(item_id, cancel) as uow:
            now = self.clock()
            item = uow.item(item_id)
            reservation = self.queue.place_hold(uow, item, borrower_id, now)
        logger.info("hold placed item=%s borrower=%s reservation=%s", item_id, borrower_id, reservation.id)
        return reservation

    def cancel_hold(self, reservation_id: str, cancel: Optional[CancelToken] = None) -> Reservation:
        existing = self.store.reservations.get(reservation_id)
        if existing is None:
            raise ReservationNotFound(f"Reservation {reservation_id} not found")

        promoted = None
        with self._transaction(existing.item_id, cancel) as uow:
            now = self.clock()
            was_ready = uow.reservation(reservation_id).status == ReservationStatus.READY_FOR_PICKUP
            cancelled = self.queue.cancel_hold(uow, reservation_id)
            item = uow.item(cancelled.item_id)
            if was_ready and item.status == ItemStatus.RESERVED and item.reserved_for == cancelled.borrower_id:
                promoted = self._release(uow, item, now)
        logger.info("hold cancelled reservation=%s promoted=%s", reservation_id, promoted.id if promoted else None)
        return cancelled

    def queue_position(self, reservation_id: str) -> int:
        return self.queue.queue_position(self.store, reservation_id)

    def expire_pickup(self, reservation_id: str, now: Optional[datetime] = None) -> Optional[Reservation]:
        """
        Expire one READY_FOR_PICKUP hold whose deadline has passed and hand
        the item to the next in line. No-op (None) if it no longer qualifies.
        """
        existing = self.store.reservations.get(reservation_id)
        if existing is None:
            raise ReservationNotFound(f"Reservation {reservation_id} not found")

        promoted = None
        with self._transaction(existing.item_id, None) as uow:
            now = now or self.clock()
            reservation = uow.reservation(reservation_id)
            if reservation.status != ReservationStatus.READY_FOR_PICKUP or reservation.expiry_date >= now:
                return None
            expired = self.queue.expire(uow, reservation)
            item = uow.item(expired.item_id)
            if item.status == ItemStatus.RESERVED and item.reserved_for == expired.borrower_id:
                promoted = self._release(uow, item, now)
        logger.info("pickup expired reservation=%s promoted=%s", reservation_id, promoted.id if promoted else None)
        return expired

    def expire_stale_pickups(self, now: Optional[datetime] = None) -> List[Reservation]:
        now = now or self.clock()
        expired = []
        for reservation in self.queue.stale_pickups(self.store, now):
            result = self.expire_pickup(reservation.id, now)
            if result is not None:
                expired.append(result)
        return expired

    # ---- sweep support and payments

    def mark_overdue(self, loan_id: str, now: Optional[datetime] = None) -> bool:
        loan = self.store.loans.get(loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found")
        changed = self.ledger.mark_overdue(self.store.loans, loan, now or self.clock())
        if changed:
            logger.info("loan %s overdue (due %s)", loan_id, loan.due_date)
        return changed

    def record_payment(self, loan_id: str, amount: float, cancel: Optional[CancelToken] = None) -> Loan:
        existing = self.store.loans.get(loan_id)
        if existing is None:
            raise LoanNotFound(f"Loan {loan_id} not found")
        with self._transaction(existing.item_id, cancel) as uow:
            loan = self.ledger.record_payment(uow, loan_id, amount)
        logger.info("payment loan=%s amount=%.2f outstanding=%.2f", loan_id, amount, loan.outstanding_fine)
        return loan

    # ---- administrative

    def force_status(
        self,
        item_id: str,
        status: ItemStatus,
        reason: str,
        cancel: Optional[CancelToken] = None,
    ) -> CatalogItem:
        """
        Staff override. LOST, DAMAGED, UNDER_MAINTENANCE and DISCARDED are
        applied as given; AVAILABLE puts the item back into circulation and
        lands on whatever its loans and holds imply.
        """
        status = ItemStatus(status)
        if status not in OVERRIDE_STATUSES and status != ItemStatus.AVAILABLE:
            raise InvalidState(f"{status.value} can only be reached through circulation")

        with self._transaction(item_id, cancel) as uow:
            now = self.clock()
            item = uow.item(item_id)
            previous = item.status
            if status in OVERRIDE_STATUSES:
                updated = self.catalog.set_status(uow, item, status, now, reason=reason)
            elif any(l.is_open for l in uow.loans_for_item(item_id)):
                updated = self.catalog.set_status(uow, item, ItemStatus.CHECKED_OUT, now, reason=reason)
            else:
                self._release(uow, item, now)
                updated = uow.item(item_id)
                updated = self.catalog.set_status(
                    uow, updated, updated.status, now, reserved_for=updated.reserved_for, reason=reason
                )
        logger.warning(
            "forced status item=%s %s -> %s reason=%r", item_id, previous.value, updated.status.value, reason
        )
        return updated

    def remove_item(self, item_id: str, cancel: Optional[CancelToken] = None) -> CatalogItem:
        with self._transaction(item_id, cancel) as uow:
            item = self.catalog.soft_delete(uow, uow.item(item_id), self.clock())
        logger.info("removed item %s from the catalog", item_id)
        return item
