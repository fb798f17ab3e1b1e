"""Circulation coordinator.

Every client-facing operation runs inside one ``BEGIN IMMEDIATE`` transaction
that spans the book ledger, the loan ledger and the reservation queue. The
write lock is taken before the first precondition query, so checks and writes
see the same state; any failure rolls the whole operation back.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

from libsync.books import BookLedger
from libsync.config import CirculationSettings, settings as app_settings
from libsync.database import initialize_database, read_connection, transaction
from libsync.errors import (
    BusinessRuleViolation,
    LoanNotFound,
    NotFound,
    ValidationError,
)
from libsync.loans import LoanLedger, ReminderNotice, ReturnReceipt
from libsync.models import Book, Loan, Reservation, Student, as_utc, utcnow
from libsync.reservations import ReservationQueue
from libsync.students import StudentDirectory
from libsync.validators import DateValidator, require_ref

logger = logging.getLogger(__name__)


class _Stores:
    """The three ledgers plus the student directory, bound to one connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self.books = BookLedger(conn)
        self.students = StudentDirectory(conn)
        self.reservations = ReservationQueue(conn, self.books)
        self.loans = LoanLedger(conn, self.books, self.reservations)


class Circulation:
    """Issue, return, reserve, cancel and fulfil with all-or-nothing effects."""

    def __init__(self, db_file: Optional[str] = None,
                 settings: Optional[CirculationSettings] = None) -> None:
        self.db_file = db_file
        self.settings = settings or app_settings.circulation()
        initialize_database(db_file)

    # ------------------------- Plumbing ------------------------- #
    @contextmanager
    def _unit_of_work(self, operation: str) -> Iterator[_Stores]:
        try:
            with transaction(self.db_file) as conn:
                yield _Stores(conn)
        except (BusinessRuleViolation, NotFound, ValidationError) as e:
            logger.info("%s rejected [%s]: %s", operation, e.code, e.message)
            raise

    @contextmanager
    def _reader(self) -> Iterator[_Stores]:
        with read_connection(self.db_file) as conn:
            yield _Stores(conn)

    def _rules(self, override: Optional[CirculationSettings]) -> CirculationSettings:
        return override or self.settings

    @staticmethod
    def _now(now: Optional[datetime]) -> datetime:
        return as_utc(now) if now else utcnow()

    # ------------------------- Inventory ------------------------- #
    def add_book(self, accession_number: str, title: str, author: str, *,
                 isbn: Optional[str] = None, publisher: Optional[str] = None,
                 category: Optional[str] = None) -> Book:
        with self._unit_of_work("add_book") as s:
            book = s.books.add(accession_number, title, author,
                               isbn=isbn, publisher=publisher, category=category)
        logger.info("Added book %s (%s)", book.id, book.accession_number)
        return book

    def add_student(self, student_code: str, name: str, *, email: Optional[str] = None,
                    department: Optional[str] = None) -> Student:
        with self._unit_of_work("add_student") as s:
            student = s.students.add(student_code, name, email=email, department=department)
        logger.info("Added student %s (%s)", student.id, student.student_code)
        return student

    def get_book(self, book_ref: str) -> Book:
        with self._reader() as s:
            return s.books.require(require_ref(book_ref, "Book reference"))

    def get_student(self, student_ref: str) -> Student:
        with self._reader() as s:
            return s.students.require(require_ref(student_ref, "Student reference"))

    def get_reservation(self, reservation_id: str) -> Reservation:
        with self._reader() as s:
            return s.reservations.require(require_ref(reservation_id, "Reservation id"))

    def get_loan(self, loan_id: str) -> Loan:
        with self._reader() as s:
            loan = s.loans.get(require_ref(loan_id, "Loan id"))
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found.")
        return loan

    # ------------------------- Reservations ------------------------- #
    def reserve_book(self, book_ref: str, student_ref: str, *,
                     now: Optional[datetime] = None) -> Reservation:
        book_ref = require_ref(book_ref, "Book reference")
        student_ref = require_ref(student_ref, "Student reference")
        with self._unit_of_work("reserve_book") as s:
            book = s.books.require(book_ref)
            student = s.students.require(student_ref)
            return s.reservations.reserve(book, student, self._now(now))

    def cancel_reservation(self, reservation_id: str, *,
                           now: Optional[datetime] = None) -> Reservation:
        reservation_id = require_ref(reservation_id, "Reservation id")
        with self._unit_of_work("cancel_reservation") as s:
            return s.reservations.cancel(reservation_id, self._now(now))

    def fulfill_reservation(self, reservation_id: str, *,
                            now: Optional[datetime] = None) -> Reservation:
        reservation_id = require_ref(reservation_id, "Reservation id")
        with self._unit_of_work("fulfill_reservation") as s:
            return s.reservations.fulfill(reservation_id, self._now(now))

    def student_reservations(self, student_ref: str) -> List[Reservation]:
        with self._reader() as s:
            student = s.students.require(require_ref(student_ref, "Student reference"))
            return s.reservations.for_student(student.id)

    def book_reservations(self, book_ref: str) -> List[Reservation]:
        with self._reader() as s:
            book = s.books.require(require_ref(book_ref, "Book reference"))
            return s.reservations.for_book(book.id)

    # ------------------------- Loans ------------------------- #
    def issue_book(self, student_ref: str, book_ref: str, due_date=None,
                   issued_by: Optional[str] = None, *, now: Optional[datetime] = None,
                   settings: Optional[CirculationSettings] = None) -> Loan:
        """Lend a book.

        ``student_ref`` may be an internal id or a student code; ``book_ref`` an
        internal id or an accession number. ``due_date`` defaults to the loan
        duration from the active settings.
        """
        student_ref = require_ref(student_ref, "Student reference")
        book_ref = require_ref(book_ref, "Book reference")
        due = DateValidator.parse_datetime(due_date, "due date")
        rules = self._rules(settings)
        with self._unit_of_work("issue_book") as s:
            issued_at = self._now(now)
            if due is not None and due <= issued_at:
                raise ValidationError("Due date must be after the issue date.")
            student = s.students.resolve(student_ref)
            book = s.books.get(book_ref)
            return s.loans.issue(student, book, due, issued_by, rules, issued_at,
                                 student_ref=student_ref, book_ref=book_ref)

    def return_book(self, loan_id: Optional[str] = None, book_ref: Optional[str] = None,
                    student_ref: Optional[str] = None, *, now: Optional[datetime] = None,
                    settings: Optional[CirculationSettings] = None) -> ReturnReceipt:
        """Close an open loan given its id, its book, or its book and student."""
        if not loan_id and not book_ref:
            raise ValidationError("Provide a loan id or a book reference.")
        rules = self._rules(settings)
        with self._unit_of_work("return_book") as s:
            returned_at = self._now(now)
            if loan_id:
                loan = s.loans.require_open(loan_id.strip())
            else:
                book = s.books.require(book_ref.strip())
                student_id = s.students.require(student_ref.strip()).id if student_ref else None
                loan = s.loans.open_for_book(book.id, student_id)
                if loan is None:
                    suffix = f" for student {student_ref}" if student_ref else ""
                    raise LoanNotFound(
                        f"No open loan found for book {book.accession_number}{suffix}."
                    )
            return s.loans.return_loan(loan, rules, returned_at)

    def get_overdue_loans(self, now: Optional[datetime] = None) -> List[Loan]:
        with self._reader() as s:
            return s.loans.overdue(self._now(now))

    def issued_loans(self) -> List[Loan]:
        with self._reader() as s:
            return s.loans.issued()

    def student_loans(self, student_ref: str) -> List[Loan]:
        with self._reader() as s:
            student = s.students.require(require_ref(student_ref, "Student reference"))
            return s.loans.for_student(student.id)

    def record_reminder(self, loan_id: str, *, now: Optional[datetime] = None,
                        settings: Optional[CirculationSettings] = None) -> ReminderNotice:
        """Stamp a reminder on an overdue loan and report the fine accrued so far."""
        loan_id = require_ref(loan_id, "Loan id")
        rules = self._rules(settings)
        with self._unit_of_work("record_reminder") as s:
            loan = s.loans.require_open(loan_id)
            return s.loans.record_reminder(loan, rules, self._now(now))
