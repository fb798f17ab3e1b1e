from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Serialize to a fixed-width UTC string so SQL comparisons order correctly."""
    if value is None:
        return None
    return as_utc(value).strftime(_TIME_FORMAT)


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, _TIME_FORMAT).replace(tzinfo=timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class BookStatus(str, Enum):
    AVAILABLE = "Available"
    ISSUED = "Issued"
    RESERVED = "Reserved"


class LoanStatus(str, Enum):
    ISSUED = "Issued"
    RETURNED = "Returned"
    OVERDUE = "Overdue"  # derived, never stored


class ReservationStatus(str, Enum):
    ACTIVE = "Active"
    FULFILLED = "Fulfilled"
    CANCELLED = "Cancelled"


class Book:
    """A single physical copy, identified by its accession number."""

    def __init__(self, id: str, accession_number: str, title: str, author: str,
                 status: BookStatus = BookStatus.AVAILABLE, isbn: str | None = None,
                 publisher: str | None = None, category: str | None = None,
                 created_at: datetime | None = None) -> None:
        self.id = id
        self.accession_number = accession_number
        self.title = title.strip()
        self.author = author.strip()
        self.status = BookStatus(status)
        self.isbn = isbn
        self.publisher = publisher
        self.category = category
        self.created_at = created_at

    @property
    def available(self) -> bool:
        return self.status is BookStatus.AVAILABLE

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.accession_number}, {self.status.value})"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "accession_number": self.accession_number,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "publisher": self.publisher,
            "category": self.category,
            "status": self.status.value,
            "available": self.available,
            "created_at": _iso(self.created_at),
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Book":
        return Book(
            id=row["id"],
            accession_number=row["accession_number"],
            title=row["title"],
            author=row["author"],
            status=BookStatus(row["status"]),
            isbn=row["isbn"],
            publisher=row["publisher"],
            category=row["category"],
            created_at=from_db_time(row["created_at"]),
        )


class Student:
    def __init__(self, id: str, student_code: str, name: str, email: str | None = None,
                 department: str | None = None, created_at: datetime | None = None) -> None:
        self.id = id
        self.student_code = student_code
        self.name = name.strip()
        self.email = email
        self.department = department
        self.created_at = created_at

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.name} ({self.student_code})"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "student_code": self.student_code,
            "name": self.name,
            "email": self.email,
            "department": self.department,
            "created_at": _iso(self.created_at),
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Student":
        return Student(
            id=row["id"],
            student_code=row["student_code"],
            name=row["name"],
            email=row["email"],
            department=row["department"],
            created_at=from_db_time(row["created_at"]),
        )


class Loan:
    """One borrowing of one book by one student."""

    def __init__(self, id: str, book_id: str, student_id: str, issue_date: datetime,
                 due_date: datetime, status: LoanStatus = LoanStatus.ISSUED,
                 return_date: datetime | None = None, fine: int = 0,
                 issued_by: str | None = None,
                 last_reminder_sent_at: datetime | None = None) -> None:
        self.id = id
        self.book_id = book_id
        self.student_id = student_id
        self.issue_date = issue_date
        self.due_date = due_date
        self.status = LoanStatus(status)
        self.return_date = return_date
        self.fine = fine
        self.issued_by = issued_by
        self.last_reminder_sent_at = last_reminder_sent_at

    @property
    def is_open(self) -> bool:
        return self.status is LoanStatus.ISSUED

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        now = as_utc(now) if now else utcnow()
        return self.is_open and self.due_date < now

    def effective_status(self, now: Optional[datetime] = None) -> LoanStatus:
        """Stored status, with ``Overdue`` derived for late open loans."""
        return LoanStatus.OVERDUE if self.is_overdue(now) else self.status

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "student_id": self.student_id,
            "issue_date": _iso(self.issue_date),
            "due_date": _iso(self.due_date),
            "return_date": _iso(self.return_date),
            "status": self.effective_status(now).value,
            "fine": self.fine,
            "issued_by": self.issued_by,
            "last_reminder_sent_at": _iso(self.last_reminder_sent_at),
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Loan":
        return Loan(
            id=row["id"],
            book_id=row["book_id"],
            student_id=row["student_id"],
            issue_date=from_db_time(row["issue_date"]),
            due_date=from_db_time(row["due_date"]),
            status=LoanStatus(row["status"]),
            return_date=from_db_time(row["return_date"]),
            fine=row["fine"],
            issued_by=row["issued_by"],
            last_reminder_sent_at=from_db_time(row["last_reminder_sent_at"]),
        )


class Reservation:
    def __init__(self, id: str, book_id: str, student_id: str, reserved_at: datetime,
                 status: ReservationStatus = ReservationStatus.ACTIVE,
                 fulfilled_at: datetime | None = None, cancelled_at: datetime | None = None,
                 loan_id: str | None = None) -> None:
        self.id = id
        self.book_id = book_id
        self.student_id = student_id
        self.reserved_at = reserved_at
        self.status = ReservationStatus(status)
        self.fulfilled_at = fulfilled_at
        self.cancelled_at = cancelled_at
        self.loan_id = loan_id

    @property
    def is_pending(self) -> bool:
        """Active, or fulfilled and still waiting for the student to collect."""
        if self.status is ReservationStatus.ACTIVE:
            return True
        return self.status is ReservationStatus.FULFILLED and self.loan_id is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "student_id": self.student_id,
            "reserved_at": _iso(self.reserved_at),
            "status": self.status.value,
            "fulfilled_at": _iso(self.fulfilled_at),
            "cancelled_at": _iso(self.cancelled_at),
            "loan_id": self.loan_id,
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Reservation":
        return Reservation(
            id=row["id"],
            book_id=row["book_id"],
            student_id=row["student_id"],
            reserved_at=from_db_time(row["reserved_at"]),
            status=ReservationStatus(row["status"]),
            fulfilled_at=from_db_time(row["fulfilled_at"]),
            cancelled_at=from_db_time(row["cancelled_at"]),
            loan_id=row["loan_id"],
        )
