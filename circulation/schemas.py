"""
Database Schemas for Library Circulation

Each Pydantic model maps to the MongoDB collection listed below:
- CatalogItem -> "item"
- Loan -> "loan"
- Reservation -> "reservation"
- NotificationEvent -> "notification"
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from bson import ObjectId
from pydantic import BaseModel, Field


def new_id() -> str:
    return str(ObjectId())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Naive datetimes coming back from Mongo or from request bodies are UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class ItemStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    CHECKED_OUT = "CHECKED_OUT"
    RESERVED = "RESERVED"
    LOST = "LOST"
    DAMAGED = "DAMAGED"
    UNDER_MAINTENANCE = "UNDER_MAINTENANCE"
    DISCARDED = "DISCARDED"


class LoanStatus(str, Enum):
    CHECKED_OUT = "CHECKED_OUT"
    RETURNED = "RETURNED"
    OVERDUE = "OVERDUE"
    LOST = "LOST"
    DAMAGED = "DAMAGED"
    CLAIMED_RETURNED = "CLAIMED_RETURNED"


OPEN_LOAN_STATUSES = (LoanStatus.CHECKED_OUT, LoanStatus.OVERDUE)


class ReturnCondition(str, Enum):
    GOOD = "GOOD"
    DAMAGED = "DAMAGED"
    LOST = "LOST"


class ReservationStatus(str, Enum):
    PENDING = "PENDING"
    READY_FOR_PICKUP = "READY_FOR_PICKUP"
    FULFILLED = "FULFILLED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


ACTIVE_HOLD_STATUSES = (ReservationStatus.PENDING, ReservationStatus.READY_FOR_PICKUP)


class NotificationKind(str, Enum):
    DUE_SOON = "DUE_SOON"
    OVERDUE = "OVERDUE"
    RESERVATION_READY = "RESERVATION_READY"
    RESERVATION_EXPIRING = "RESERVATION_EXPIRING"


class CatalogItem(BaseModel):
    id: str = Field(default_factory=new_id, description="Item identifier")
    isbn: Optional[str] = Field(None, description="ISBN identifier")
    title: str = Field(..., description="Book title")
    author: str = Field(..., description="Author name")
    category: Optional[str] = Field(None, description="Genre or category")
    status: ItemStatus = Field(ItemStatus.AVAILABLE, description="Current circulation status")
    reserved_for: Optional[str] = Field(None, description="Borrower the item is held for while RESERVED")
    status_reason: Optional[str] = Field(None, description="Staff reason for the last forced status")
    updated_at: Optional[datetime] = Field(None, description="Last status change")
    deleted: bool = Field(False, description="Soft-deleted from the catalog")
    version: int = Field(0, ge=0, description="Bumped by every committed change to the item")


class Loan(BaseModel):
    id: str = Field(default_factory=new_id, description="Loan identifier")
    item_id: str = Field(..., description="Item on loan")
    borrower_id: str = Field(..., description="Borrowing member")
    checkout_date: datetime = Field(..., description="When the item left the library")
    due_date: datetime = Field(..., description="When the item is due back")
    return_date: Optional[datetime] = Field(None, description="When the item came back")
    fine_amount: float = Field(0.0, ge=0, description="Accrued fine, never decreases")
    fine_paid: float = Field(0.0, ge=0, description="Payments recorded against the fine")
    status: LoanStatus = Field(LoanStatus.CHECKED_OUT, description="Loan status")

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_LOAN_STATUSES

    @property
    def outstanding_fine(self) -> float:
        return round(max(0.0, self.fine_amount - self.fine_paid), 2)


class Reservation(BaseModel):
    id: str = Field(default_factory=new_id, description="Reservation identifier")
    item_id: str = Field(..., description="Item on hold")
    borrower_id: str = Field(..., description="Member waiting for the item")
    reservation_date: datetime = Field(..., description="When the hold was placed")
    expiry_date: datetime = Field(..., description="Hold expiry; the pickup deadline once ready")
    status: ReservationStatus = Field(ReservationStatus.PENDING, description="Hold status")
    sequence: int = Field(0, ge=0, description="Insertion order, breaks reservation_date ties")
    ready_at: Optional[datetime] = Field(None, description="When the hold became ready for pickup")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_HOLD_STATUSES

    @property
    def queue_key(self):
        return (self.reservation_date, self.sequence, self.id)


class NotificationEvent(BaseModel):
    kind: NotificationKind = Field(..., description="What the mailer should say")
    subject_id: str = Field(..., description="Loan or reservation the event is about")
    days_offset: int = Field(..., description="Boundary that fired, in days")
    borrower_id: Optional[str] = Field(None, description="Recipient")
    item_id: Optional[str] = Field(None, description="Item concerned")
    created_at: Optional[datetime] = Field(None, description="Sweep time that produced it")

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.subject_id}:{self.days_offset}"


class SweepSummary(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0


class SweepResult(BaseModel):
    events: List[NotificationEvent] = Field(default_factory=list)
    summary: SweepSummary = Field(default_factory=SweepSummary)
    interrupted: bool = False
    delivery_failed: bool = False
