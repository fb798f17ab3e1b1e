"""Error taxonomy for circulation operations.

Every error carries a stable machine-readable ``code`` and an HTTP status that
the request layer uses as-is. Only :class:`ConflictError` is retryable: it
signals an aborted transaction, not a rule that will fail again on resubmit.
"""

from __future__ import annotations

from typing import Any, Dict


class CirculationError(Exception):
    code = "CIRCULATION_ERROR"
    http_status = 400
    retryable = False
    default_message = "Circulation operation failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


# --- Not found ---
class NotFound(CirculationError):
    code = "NOT_FOUND"
    http_status = 404
    default_message = "Record not found."


class BookNotFound(NotFound):
    code = "BOOK_NOT_FOUND"
    default_message = "Book not found."


class StudentNotFound(NotFound):
    code = "STUDENT_NOT_FOUND"
    default_message = "Student not found."


class LoanNotFound(NotFound):
    code = "LOAN_NOT_FOUND"
    default_message = "No open loan found."


class ReservationNotFound(NotFound):
    code = "RESERVATION_NOT_FOUND"
    default_message = "Reservation not found."


# --- Input ---
class ValidationError(CirculationError):
    code = "VALIDATION_ERROR"
    http_status = 422
    default_message = "Invalid input."


# --- Business rules ---
class BusinessRuleViolation(CirculationError):
    code = "BUSINESS_RULE_VIOLATION"
    http_status = 400


class IssueLimitReached(BusinessRuleViolation):
    code = "ISSUE_LIMIT_REACHED"
    default_message = "Student has reached the maximum number of active loans."


class BookUnavailable(BusinessRuleViolation):
    code = "BOOK_UNAVAILABLE"
    default_message = "Book is not available."


class BookReservedForAnother(BusinessRuleViolation):
    code = "BOOK_RESERVED_FOR_ANOTHER"
    default_message = "Book is reserved for another student."


class AlreadyReserved(BusinessRuleViolation):
    code = "ALREADY_RESERVED"
    default_message = "Book is already reserved."


class BookAlreadyReserved(BusinessRuleViolation):
    code = "BOOK_ALREADY_RESERVED"
    default_message = "Another reservation holds or precedes this book."


class NotActive(BusinessRuleViolation):
    code = "NOT_ACTIVE"
    default_message = "Reservation is not active."


class NotOverdue(BusinessRuleViolation):
    code = "NOT_OVERDUE"
    default_message = "Loan is not overdue."


# --- Infrastructure ---
class ConflictError(CirculationError):
    code = "CONFLICT"
    http_status = 409
    retryable = True
    default_message = "Concurrent update detected; retry the request."


class InternalError(CirculationError):
    code = "INTERNAL_ERROR"
    http_status = 500
    default_message = "Internal storage error."
