"""
Library circulation engine.

Exports key modules for convenient imports.
"""

from .schemas import (
    ItemStatus,
    LoanStatus,
    ReturnCondition,
    ReservationStatus,
    NotificationKind,
    CatalogItem,
    Loan,
    Reservation,
    NotificationEvent,
    SweepResult,
)

from .errors import (
    CirculationError,
    ItemUnavailable,
    ItemReservedForAnotherUser,
    ItemAvailable,
    DuplicateHold,
    LoanAlreadyClosed,
    InvalidState,
    InvalidDueDate,
    InvalidReturnDate,
    ItemNotFound,
    LoanNotFound,
    ReservationNotFound,
    Busy,
    OperationCancelled,
)

from .config import LibraryPolicy
from .concurrency import CancelToken, ItemLocks
from .repositories import Store, InMemoryStore
from .coordinator import LifecycleCoordinator, ReturnOutcome
from .sweep import NotificationSweep
from .system import LibrarySystem

__all__ = [
    # schemas
    "ItemStatus",
    "LoanStatus",
    "ReturnCondition",
    "ReservationStatus",
    "NotificationKind",
    "CatalogItem",
    "Loan",
    "Reservation",
    "NotificationEvent",
    "SweepResult",
    # errors
    "CirculationError",
    "ItemUnavailable",
    "ItemReservedForAnotherUser",
    "ItemAvailable",
    "DuplicateHold",
    "LoanAlreadyClosed",
    "InvalidState",
    "InvalidDueDate",
    "InvalidReturnDate",
    "ItemNotFound",
    "LoanNotFound",
    "ReservationNotFound",
    "Busy",
    "OperationCancelled",
    # engine
    "LibraryPolicy",
    "CancelToken",
    "ItemLocks",
    "Store",
    "InMemoryStore",
    "LifecycleCoordinator",
    "ReturnOutcome",
    "NotificationSweep",
    "LibrarySystem",
]
