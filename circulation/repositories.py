"""
Persistence port.

The engine depends only on these interfaces. ``InMemoryStore`` backs the
tests and the service when no database is configured; ``MongoStore`` in
``database.py`` backs a real deployment.

Writes go through ``UnitOfWork``: components stage new entity versions,
the coordinator checks cancellation and then commits them in one step.
"""

import itertools
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, List, Optional, TypeVar

from pydantic import BaseModel

from .errors import Busy, ItemNotFound, LoanNotFound, ReservationNotFound
from .schemas import (
    OPEN_LOAN_STATUSES,
    CatalogItem,
    Loan,
    LoanStatus,
    NotificationEvent,
    Reservation,
    ReservationStatus,
)

T = TypeVar("T", CatalogItem, Loan, Reservation)


class ItemRepository(ABC):
    @abstractmethod
    def get(self, item_id: str) -> Optional[CatalogItem]: ...

    @abstractmethod
    def list_all(self) -> List[CatalogItem]: ...

    @abstractmethod
    def save(self, item: CatalogItem) -> None: ...


class LoanRepository(ABC):
    @abstractmethod
    def get(self, loan_id: str) -> Optional[Loan]: ...

    @abstractmethod
    def list_all(self) -> List[Loan]: ...

    @abstractmethod
    def list_for_item(self, item_id: str) -> List[Loan]: ...

    @abstractmethod
    def list_by_borrower(self, borrower_id: str) -> List[Loan]: ...

    @abstractmethod
    def list_open(self) -> List[Loan]: ...

    @abstractmethod
    def save(self, loan: Loan) -> None: ...

    @abstractmethod
    def flag_overdue(self, loan_id: str, fine_amount: float) -> Optional[Loan]:
        """
        Conditionally mark an open loan OVERDUE and raise (never lower) its
        fine. Returns the loan as it was before the update, or None if the
        loan is missing or already closed.
        """


class ReservationRepository(ABC):
    @abstractmethod
    def get(self, reservation_id: str) -> Optional[Reservation]: ...

    @abstractmethod
    def list_all(self) -> List[Reservation]: ...

    @abstractmethod
    def list_for_item(self, item_id: str) -> List[Reservation]: ...

    @abstractmethod
    def list_by_borrower(self, borrower_id: str) -> List[Reservation]: ...

    @abstractmethod
    def list_by_status(self, *statuses: ReservationStatus) -> List[Reservation]: ...

    @abstractmethod
    def save(self, reservation: Reservation) -> None: ...

    @abstractmethod
    def next_sequence(self) -> int: ...


class NotificationLog(ABC):
    """Append-only record of emitted notifications, keyed by event key."""

    @abstractmethod
    def record(self, event: NotificationEvent) -> bool:
        """Append the event; False if an event with the same key exists."""

    @abstractmethod
    def has(self, key: str) -> bool: ...

    @abstractmethod
    def list_all(self) -> List[NotificationEvent]: ...


class Store(ABC):
    items: ItemRepository
    loans: LoanRepository
    reservations: ReservationRepository
    notifications: NotificationLog

    @abstractmethod
    def commit(
        self,
        items: Iterable[CatalogItem] = (),
        loans: Iterable[Loan] = (),
        reservations: Iterable[Reservation] = (),
    ) -> None:
        """
        Persist all given entities or none of them.

        Items are versioned: an item with version 0 is new and must not
        exist yet, any other item must carry the stored version plus one.
        Anything else means another writer committed first, and ``Busy``
        is raised with nothing written.
        """


def is_stale(item: CatalogItem, stored_version: Optional[int]) -> bool:
    if item.version == 0:
        return stored_version is not None
    return stored_version != item.version - 1


# ----------------------
# In-memory implementation
# ----------------------

class _MemoryTable:
    def __init__(self, mutex: threading.RLock) -> None:
        self._mutex = mutex
        self._rows: Dict[str, BaseModel] = {}

    def get(self, key: str):
        with self._mutex:
            row = self._rows.get(key)
            return row.model_copy(deep=True) if row is not None else None

    def select(self, predicate: Callable = lambda row: True) -> list:
        with self._mutex:
            return [row.model_copy(deep=True) for row in self._rows.values() if predicate(row)]

    def put(self, row) -> None:
        with self._mutex:
            self._rows[row.id] = row.model_copy(deep=True)


class InMemoryItemRepository(ItemRepository):
    def __init__(self, mutex: threading.RLock) -> None:
        self._table = _MemoryTable(mutex)

    def get(self, item_id: str) -> Optional[CatalogItem]:
        return self._table.get(item_id)

    def list_all(self) -> List[CatalogItem]:
        return self._table.select()

    def save(self, item: CatalogItem) -> None:
        self._table.put(item)


class InMemoryLoanRepository(LoanRepository):
    def __init__(self, mutex: threading.RLock) -> None:
        self._mutex = mutex
        self._table = _MemoryTable(mutex)

    def get(self, loan_id: str) -> Optional[Loan]:
        return self._table.get(loan_id)

    def list_all(self) -> List[Loan]:
        return self._table.select()

    def list_for_item(self, item_id: str) -> List[Loan]:
        return self._table.select(lambda l: l.item_id == item_id)

    def list_by_borrower(self, borrower_id: str) -> List[Loan]:
        return self._table.select(lambda l: l.borrower_id == borrower_id)

    def list_open(self) -> List[Loan]:
        return self._table.select(lambda l: l.status in OPEN_LOAN_STATUSES)

    def save(self, loan: Loan) -> None:
        self._table.put(loan)

    def flag_overdue(self, loan_id: str, fine_amount: float) -> Optional[Loan]:
        with self._mutex:
            before = self._table.get(loan_id)
            if before is None or before.status not in OPEN_LOAN_STATUSES:
                return None
            after = before.model_copy()
            after.status = LoanStatus.OVERDUE
            after.fine_amount = max(before.fine_amount, fine_amount)
            self._table.put(after)
            return before


class InMemoryReservationRepository(ReservationRepository):
    def __init__(self, mutex: threading.RLock) -> None:
        self._table = _MemoryTable(mutex)
        self._sequence = itertools.count(1)
        self._sequence_lock = threading.Lock()

    def get(self, reservation_id: str) -> Optional[Reservation]:
        return self._table.get(reservation_id)

    def list_all(self) -> List[Reservation]:
        return self._table.select()

    def list_for_item(self, item_id: str) -> List[Reservation]:
        return self._table.select(lambda r: r.item_id == item_id)

    def list_by_borrower(self, borrower_id: str) -> List[Reservation]:
        return self._table.select(lambda r: r.borrower_id == borrower_id)

    def list_by_status(self, *statuses: ReservationStatus) -> List[Reservation]:
        return self._table.select(lambda r: r.status in statuses)

    def save(self, reservation: Reservation) -> None:
        self._table.put(reservation)

    def next_sequence(self) -> int:
        with self._sequence_lock:
            return next(self._sequence)


class InMemoryNotificationLog(NotificationLog):
    def __init__(self, mutex: threading.RLock) -> None:
        self._mutex = mutex
        self._events: Dict[str, NotificationEvent] = {}

    def record(self, event: NotificationEvent) -> bool:
        with self._mutex:
            if event.key in self._events:
                return False
            self._events[event.key] = event.model_copy()
            return True

    def has(self, key: str) -> bool:
        with self._mutex:
            return key in self._events

    def list_all(self) -> List[NotificationEvent]:
        with self._mutex:
            return [e.model_copy() for e in self._events.values()]


class InMemoryStore(Store):
    def __init__(self) -> None:
        self._mutex = threading.RLock()
        self.items = InMemoryItemRepository(self._mutex)
        self.loans = InMemoryLoanRepository(self._mutex)
        self.reservations = InMemoryReservationRepository(self._mutex)
        self.notifications = InMemoryNotificationLog(self._mutex)

    def commit(self, items=(), loans=(), reservations=()) -> None:
        items = list(items)
        # One mutex for every table: readers never see half a commit
        with self._mutex:
            for item in items:
                stored = self.items.get(item.id)
                if is_stale(item, stored.version if stored is not None else None):
                    raise Busy(f"Item {item.id} was changed by another writer, retry shortly")
            for item in items:
                self.items.save(item)
            for loan in loans:
                self.loans.save(loan)
            for reservation in reservations:
                self.reservations.save(reservation)


# ----------------------
# Unit of work
# ----------------------

def _overlay(stored: List[T], staged: Dict[str, T], predicate: Callable[[T], bool]) -> List[T]:
    rows = {row.id: row for row in stored}
    for row in staged.values():
        if predicate(row):
            rows[row.id] = row
    return list(rows.values())


class UnitOfWork:
    """
    Staging area for one operation. Reads see staged rows first, then the
    store; nothing reaches the store until ``commit``.
    """

    def __init__(self, store: Store) -> None:
        self.store = store
        self._items: Dict[str, CatalogItem] = {}
        self._loans: Dict[str, Loan] = {}
        self._reservations: Dict[str, Reservation] = {}

    # reads
    def item(self, item_id: str) -> CatalogItem:
        item = self._items.get(item_id) or self.store.items.get(item_id)
        if item is None or item.deleted:
            raise ItemNotFound(f"Item {item_id} not found")
        return item

    def loan(self, loan_id: str) -> Loan:
        loan = self._loans.get(loan_id) or self.store.loans.get(loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found")
        return loan

    def reservation(self, reservation_id: str) -> Reservation:
        reservation = self._reservations.get(reservation_id) or self.store.reservations.get(reservation_id)
        if reservation is None:
            raise ReservationNotFound(f"Reservation {reservation_id} not found")
        return reservation

    def loans_for_item(self, item_id: str) -> List[Loan]:
        return _overlay(self.store.loans.list_for_item(item_id), self._loans, lambda l: l.item_id == item_id)

    def reservations_for_item(self, item_id: str) -> List[Reservation]:
        return _overlay(
            self.store.reservations.list_for_item(item_id),
            self._reservations,
            lambda r: r.item_id == item_id,
        )

    # writes
    def stage_item(self, item: CatalogItem) -> CatalogItem:
        self._items[item.id] = item
        return item

    def stage_loan(self, loan: Loan) -> Loan:
        self._loans[loan.id] = loan
        return loan

    def stage_reservation(self, reservation: Reservation) -> Reservation:
        self._reservations[reservation.id] = reservation
        return reservation

    def touch(self, item_id: str) -> None:
        """Stage the item unchanged so the commit bumps its version."""
        if item_id in self._items:
            return
        item = self.store.items.get(item_id)
        if item is not None:
            self._items[item_id] = item

    def commit(self) -> None:
        for item in self._items.values():
            item.version += 1
        self.store.commit(
            items=list(self._items.values()),
            loans=list(self._loans.values()),
            reservations=list(self._reservations.values()),
        )
