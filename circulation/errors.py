"""
Error taxonomy for the circulation engine.

Every error carries a stable ``code`` and a ``status_code`` hint that the
HTTP layer uses when turning it into a response:

- precondition violations (illegal in the current state), never retried
- validation failures (bad input values)
- not-found errors, never silently defaulted
- contention (``Busy``), safe to retry with backoff
"""

from typing import Optional


class CirculationError(Exception):
    code = "circulation_error"
    status_code = 400

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.__class__.__doc__ or self.code
        super().__init__(self.detail)


# ----------------------
# Preconditions
# ----------------------

class PreconditionFailed(CirculationError):
    code = "precondition_failed"
    status_code = 409


class ItemUnavailable(PreconditionFailed):
    """Item is not available for checkout"""
    code = "item_unavailable"


class ItemReservedForAnotherUser(PreconditionFailed):
    """Item is reserved for another borrower"""
    code = "item_reserved"


class ItemAvailable(PreconditionFailed):
    """Item is available, check it out instead of placing a hold"""
    code = "item_available"


class DuplicateHold(PreconditionFailed):
    """Borrower already holds or has borrowed this item"""
    code = "duplicate_hold"


class LoanAlreadyClosed(PreconditionFailed):
    """Loan has already been closed"""
    code = "loan_closed"


class InvalidState(PreconditionFailed):
    """Operation is not valid in the current state"""
    code = "invalid_state"


# ----------------------
# Validation
# ----------------------

class ValidationFailed(CirculationError):
    code = "invalid"
    status_code = 422


class InvalidDueDate(ValidationFailed):
    """Due date must be after the checkout date"""
    code = "invalid_due_date"


class InvalidReturnDate(ValidationFailed):
    """Return date must fall between checkout and now"""
    code = "invalid_return_date"


class InvalidPayment(ValidationFailed):
    """Payment amount is not valid for this loan"""
    code = "invalid_payment"


# ----------------------
# Not found
# ----------------------

class NotFound(CirculationError):
    code = "not_found"
    status_code = 404


class ItemNotFound(NotFound):
    """Item not found"""
    code = "item_not_found"


class LoanNotFound(NotFound):
    """Loan not found"""
    code = "loan_not_found"


class ReservationNotFound(NotFound):
    """Reservation not found"""
    code = "reservation_not_found"


# ----------------------
# Contention / cancellation
# ----------------------

class Busy(CirculationError):
    """Item is busy, retry shortly"""
    code = "busy"
    status_code = 503
    retryable = True


class OperationCancelled(CirculationError):
    """Operation was cancelled before it committed"""
    code = "cancelled"
    status_code = 499
