"""
Notification sweep.

A batch pass over loans and holds that expires stale pickups, flags overdue
loans and derives the notifications a mailer should send. It never delivers
anything itself; callers pass a sink that does.

Each (kind, subject, boundary) is announced until it has been delivered
once: events go to the store's notification log under that key only after
the sink accepts them, so running the sweep again with the same clock
yields nothing new, while a batch the sink rejected comes out again.
One failing record is logged and counted; the batch carries on.
"""

import logging
import math
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence

from .concurrency import CancelToken
from .coordinator import LifecycleCoordinator
from .policy import ONE_DAY
from .schemas import (
    LoanStatus,
    NotificationEvent,
    NotificationKind,
    ReservationStatus,
    SweepResult,
    as_utc,
)

logger = logging.getLogger(__name__)

# Delivery (mail, push, webhook) is up to whoever consumes the events
EventSink = Callable[[List[NotificationEvent]], None]

JOB_RESERVATION_EXPIRATION = "reservation-expiration"
JOB_RESERVATION_AVAILABILITY = "reservation-availability"
JOB_OVERDUE = "overdue"
JOB_DUE_DATE = "due-date"

# Expiry runs first so holds promoted by it are announced in the same pass
ALL_JOBS = (
    JOB_RESERVATION_EXPIRATION,
    JOB_RESERVATION_AVAILABILITY,
    JOB_OVERDUE,
    JOB_DUE_DATE,
)


class _Interrupted(Exception):
    pass


class NotificationSweep:
    def __init__(self, coordinator: LifecycleCoordinator) -> None:
        self.coordinator = coordinator
        self.store = coordinator.store
        self.policy = coordinator.policy

    def run(
        self,
        now: Optional[datetime] = None,
        jobs: Optional[Sequence[str]] = None,
        cancel: Optional[CancelToken] = None,
        sink: Optional[EventSink] = None,
    ) -> SweepResult:
        now = as_utc(now) or self.coordinator.clock()
        cancel = cancel or CancelToken()
        jobs = list(jobs or ALL_JOBS)
        unknown = set(jobs) - set(ALL_JOBS)
        if unknown:
            raise ValueError(f"Unknown sweep job(s): {', '.join(sorted(unknown))}")

        result = SweepResult()
        steps = {
            JOB_RESERVATION_EXPIRATION: self._reservation_expiration,
            JOB_RESERVATION_AVAILABILITY: self._reservation_availability,
            JOB_OVERDUE: self._overdue,
            JOB_DUE_DATE: self._due_date,
        }
        try:
            for job in ALL_JOBS:
                if job not in jobs:
                    continue
                if cancel.cancelled:
                    raise _Interrupted()
                steps[job](now, result, cancel)
        except _Interrupted:
            result.interrupted = True
            logger.warning("sweep interrupted after %d record(s)", result.summary.processed)

        self._publish(result, sink)
        s = result.summary
        logger.info(
            "sweep at %s: processed=%d succeeded=%d failed=%d events=%d",
            now.isoformat(), s.processed, s.succeeded, s.failed, len(result.events),
        )
        return result

    # ---- per-record plumbing

    def _each(self, records: Iterable, handler: Callable, result: SweepResult, cancel: CancelToken) -> None:
        for record in records:
            if cancel.cancelled:
                raise _Interrupted()
            result.summary.processed += 1
            try:
                handler(record)
            except Exception:
                result.summary.failed += 1
                logger.exception("sweep failed on %s %s", type(record).__name__, getattr(record, "id", "?"))
            else:
                result.summary.succeeded += 1

    def _emit(self, result: SweepResult, event: NotificationEvent) -> None:
        if self.store.notifications.has(event.key):
            return
        if any(e.key == event.key for e in result.events):
            return
        result.events.append(event)

    def _publish(self, result: SweepResult, sink: Optional[EventSink]) -> None:
        """Hand the events to the sink, then log the ones it accepted."""
        if sink is not None and result.events:
            try:
                sink(list(result.events))
            except Exception:
                logger.exception("delivering %d sweep event(s) failed", len(result.events))
                result.delivery_failed = True
                return
        # Another sweep may have logged the same key meanwhile
        result.events = [e for e in result.events if self.store.notifications.record(e)]

    # ---- jobs

    def _reservation_expiration(self, now: datetime, result: SweepResult, cancel: CancelToken) -> None:
        stale = self.coordinator.queue.stale_pickups(self.store, now)
        self._each(stale, lambda r: self.coordinator.expire_pickup(r.id, now), result, cancel)

        def warn_expiring(reservation) -> None:
            remaining = (reservation.expiry_date - now) / ONE_DAY
            if 0 < remaining <= self.policy.expiring_notice_days:
                self._emit(
                    result,
                    NotificationEvent(
                        kind=NotificationKind.RESERVATION_EXPIRING,
                        subject_id=reservation.id,
                        days_offset=self.policy.expiring_notice_days,
                        borrower_id=reservation.borrower_id,
                        item_id=reservation.item_id,
                        created_at=now,
                    ),
                )

        ready = self.store.reservations.list_by_status(ReservationStatus.READY_FOR_PICKUP)
        self._each(ready, warn_expiring, result, cancel)

    def _reservation_availability(self, now: datetime, result: SweepResult, cancel: CancelToken) -> None:
        def announce(reservation) -> None:
            window = reservation.expiry_date - (reservation.ready_at or now)
            self._emit(
                result,
                NotificationEvent(
                    kind=NotificationKind.RESERVATION_READY,
                    subject_id=reservation.id,
                    days_offset=max(0, round(window / ONE_DAY)),
                    borrower_id=reservation.borrower_id,
                    item_id=reservation.item_id,
                    created_at=now,
                ),
            )

        ready = self.store.reservations.list_by_status(ReservationStatus.READY_FOR_PICKUP)
        self._each(ready, announce, result, cancel)

    def _overdue(self, now: datetime, result: SweepResult, cancel: CancelToken) -> None:
        boundaries: List[int] = sorted(self.policy.overdue_boundaries)

        def notify(loan) -> None:
            self.coordinator.mark_overdue(loan.id, now)
            days_overdue = math.floor((now - loan.due_date) / ONE_DAY)
            crossed = [b for b in boundaries if days_overdue >= b]
            if crossed:
                # Only the furthest boundary reached is announced
                self._emit(
                    result,
                    NotificationEvent(
                        kind=NotificationKind.OVERDUE,
                        subject_id=loan.id,
                        days_offset=max(crossed),
                        borrower_id=loan.borrower_id,
                        item_id=loan.item_id,
                        created_at=now,
                    ),
                )

        late = [l for l in self.store.loans.list_open() if l.due_date < now]
        self._each(late, notify, result, cancel)

    def _due_date(self, now: datetime, result: SweepResult, cancel: CancelToken) -> None:
        boundaries: List[int] = sorted(self.policy.due_soon_boundaries)

        def remind(loan) -> None:
            remaining = (loan.due_date - now) / ONE_DAY
            crossed = [b for b in boundaries if remaining <= b]
            if crossed:
                # Only the closest boundary reached is announced
                self._emit(
                    result,
                    NotificationEvent(
                        kind=NotificationKind.DUE_SOON,
                        subject_id=loan.id,
                        days_offset=min(crossed),
                        borrower_id=loan.borrower_id,
                        item_id=loan.item_id,
                        created_at=now,
                    ),
                )

        upcoming = [
            l for l in self.store.loans.list_open()
            if l.status == LoanStatus.CHECKED_OUT and l.due_date >= now
        ]
        self._each(upcoming, remind, result, cancel)
