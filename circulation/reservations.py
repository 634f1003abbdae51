"""
Reservation queue.

Per item, PENDING holds form a FIFO queue ordered by reservation date, ties
broken by insertion sequence. The head is promoted to READY_FOR_PICKUP when
the item frees up and has a pickup window to collect it.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel

from .config import LibraryPolicy
from .errors import DuplicateHold, InvalidState, ItemAvailable, ItemUnavailable, ReservationNotFound
from .policy import ONE_DAY
from .repositories import Store, UnitOfWork
from .schemas import CatalogItem, ItemStatus, Loan, Reservation, ReservationStatus

logger = logging.getLogger(__name__)


class QueueEntry(BaseModel):
    reservation: Reservation
    position: Optional[int] = None  # None for the hold that is ready for pickup
    estimated_wait_days: int = 0


def pending_queue(reservations: List[Reservation]) -> List[Reservation]:
    pending = [r for r in reservations if r.status == ReservationStatus.PENDING]
    return sorted(pending, key=lambda r: r.queue_key)


class ReservationQueue:
    def __init__(self, policy: LibraryPolicy) -> None:
        self.policy = policy

    def place_hold(self, uow: UnitOfWork, item: CatalogItem, borrower_id: str, now: datetime) -> Reservation:
        if item.status == ItemStatus.AVAILABLE:
            raise ItemAvailable(f"Item {item.id} is available, check it out instead")
        if item.status == ItemStatus.DISCARDED:
            raise ItemUnavailable(f"Item {item.id} has been discarded")
        if any(r.is_active and r.borrower_id == borrower_id for r in uow.reservations_for_item(item.id)):
            raise DuplicateHold(f"Borrower {borrower_id} already holds item {item.id}")
        if any(l.is_open and l.borrower_id == borrower_id for l in uow.loans_for_item(item.id)):
            raise DuplicateHold(f"Borrower {borrower_id} already has item {item.id} on loan")

        reservation = Reservation(
            item_id=item.id,
            borrower_id=borrower_id,
            reservation_date=now,
            expiry_date=now + timedelta(days=self.policy.hold_expiry_days),
            sequence=uow.store.reservations.next_sequence(),
        )
        return uow.stage_reservation(reservation)

    def cancel_hold(self, uow: UnitOfWork, reservation_id: str) -> Reservation:
        reservation = uow.reservation(reservation_id)
        if not reservation.is_active:
            raise InvalidState(f"Reservation {reservation_id} is {reservation.status.value}")
        return uow.stage_reservation(reservation.model_copy(update={"status": ReservationStatus.CANCELLED}))

    def fulfill(self, uow: UnitOfWork, reservation: Reservation) -> Reservation:
        return uow.stage_reservation(reservation.model_copy(update={"status": ReservationStatus.FULFILLED}))

    def expire(self, uow: UnitOfWork, reservation: Reservation) -> Reservation:
        return uow.stage_reservation(reservation.model_copy(update={"status": ReservationStatus.EXPIRED}))

    def ready_hold(self, uow: UnitOfWork, item_id: str) -> Optional[Reservation]:
        ready = [r for r in uow.reservations_for_item(item_id) if r.status == ReservationStatus.READY_FOR_PICKUP]
        return min(ready, key=lambda r: r.queue_key) if ready else None

    def promote_next(self, uow: UnitOfWork, item_id: str, now: datetime) -> Optional[Reservation]:
        queue = pending_queue(uow.reservations_for_item(item_id))
        if not queue:
            return None
        head = queue[0]
        promoted = head.model_copy(
            update={
                "status": ReservationStatus.READY_FOR_PICKUP,
                "ready_at": now,
                "expiry_date": now + timedelta(days=self.policy.pickup_window_days),
            }
        )
        return uow.stage_reservation(promoted)

    def queue_position(self, store: Store, reservation_id: str) -> int:
        reservation = store.reservations.get(reservation_id)
        if reservation is None:
            raise ReservationNotFound(f"Reservation {reservation_id} not found")
        if reservation.status != ReservationStatus.PENDING:
            raise InvalidState(f"Reservation {reservation_id} is {reservation.status.value}, not queued")
        queue = pending_queue(store.reservations.list_for_item(reservation.item_id))
        return 1 + [r.id for r in queue].index(reservation.id)

    def stale_pickups(self, store: Store, now: datetime) -> List[Reservation]:
        ready = store.reservations.list_by_status(ReservationStatus.READY_FOR_PICKUP)
        return sorted((r for r in ready if r.expiry_date < now), key=lambda r: r.expiry_date)

    def snapshot(
        self,
        item: CatalogItem,
        reservations: List[Reservation],
        open_loan: Optional[Loan],
        now: datetime,
    ) -> List[QueueEntry]:
        """
        Active holds for an item, the ready hold first, with an estimated wait:
        the head waits for the current loan to come back (plus a day to shelve
        it, or a flat few days once the loan is overdue), every later position
        waits one more loan period.
        """
        entries: List[QueueEntry] = []
        for r in reservations:
            if r.status == ReservationStatus.READY_FOR_PICKUP:
                entries.append(QueueEntry(reservation=r))

        if entries:
            # the ready borrower collects it first and keeps it a full period
            head_wait = self.policy.loan_period_days
        elif open_loan is not None and open_loan.due_date < now:
            head_wait = self.policy.overdue_wait_days
        elif open_loan is not None:
            head_wait = max(0, math.ceil((open_loan.due_date - now) / ONE_DAY)) + 1
        elif item.status == ItemStatus.AVAILABLE:
            head_wait = 0
        else:
            head_wait = self.policy.loan_period_days

        for index, r in enumerate(pending_queue(reservations)):
            entries.append(
                QueueEntry(
                    reservation=r,
                    position=index + 1,
                    estimated_wait_days=head_wait + index * self.policy.loan_period_days,
                )
            )
        return entries
