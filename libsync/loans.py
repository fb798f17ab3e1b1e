import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from libsync.books import BookLedger
from libsync.config import CirculationSettings
from libsync.errors import (
    BookNotFound,
    BookReservedForAnother,
    BookUnavailable,
    IssueLimitReached,
    LoanNotFound,
    NotOverdue,
    StudentNotFound,
)
from libsync.models import (
    Book,
    BookStatus,
    Loan,
    LoanStatus,
    Reservation,
    Student,
    new_id,
    to_db_time,
)
from libsync.reservations import ReservationQueue

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


def compute_fine(due_date: datetime, returned_at: datetime, fine_per_day: int) -> int:
    """Late fee: partial days round up, returning exactly at the due instant is free."""
    if returned_at <= due_date:
        return 0
    days_late, remainder = divmod(returned_at - due_date, ONE_DAY)
    if remainder:
        days_late += 1
    return max(0, days_late * fine_per_day)


@dataclass
class ReturnReceipt:
    loan: Loan
    fine: int
    book: Book
    next_reservation: Optional[Reservation] = None

    def to_dict(self) -> dict:
        return {
            "loan": self.loan.to_dict(),
            "fine": self.fine,
            "book": self.book.to_dict(),
            "next_reservation": self.next_reservation.to_dict() if self.next_reservation else None,
        }


@dataclass
class ReminderNotice:
    loan: Loan
    accrued_fine: int
    sent_at: datetime

    def to_dict(self) -> dict:
        return {
            "loan": self.loan.to_dict(self.sent_at),
            "accrued_fine": self.accrued_fine,
            "sent_at": self.sent_at.isoformat(),
        }


class LoanLedger:
    """Open and historical loans."""

    def __init__(self, conn: sqlite3.Connection, books: Optional[BookLedger] = None,
                 reservations: Optional[ReservationQueue] = None) -> None:
        self.conn = conn
        self.books = books or BookLedger(conn)
        self.reservations = reservations or ReservationQueue(conn, self.books)

    # ------------------------- Lookups ------------------------- #
    def get(self, loan_id: str) -> Optional[Loan]:
        row = self.conn.execute("SELECT * FROM loans WHERE id = ?", (loan_id,)).fetchone()
        return Loan.from_row(row) if row else None

    def require_open(self, loan_id: str) -> Loan:
        loan = self.get(loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found.")
        if not loan.is_open:
            raise LoanNotFound(f"Loan {loan_id} has already been returned.")
        return loan

    def open_for_book(self, book_id: str, student_id: Optional[str] = None) -> Optional[Loan]:
        if student_id is None:
            row = self.conn.execute(
                "SELECT * FROM loans WHERE book_id = ? AND status = 'Issued'", (book_id,)
            ).fetchone()
        else:
            row = self.conn.execute(
                "SELECT * FROM loans WHERE book_id = ? AND student_id = ? AND status = 'Issued'",
                (book_id, student_id),
            ).fetchone()
        return Loan.from_row(row) if row else None

    def count_open(self, student_id: str) -> int:
        return self.conn.execute(
            "SELECT COUNT(*) FROM loans WHERE student_id = ? AND status = 'Issued'",
            (student_id,),
        ).fetchone()[0]

    def for_student(self, student_id: str) -> List[Loan]:
        rows = self.conn.execute(
            "SELECT * FROM loans WHERE student_id = ? ORDER BY issue_date DESC", (student_id,)
        ).fetchall()
        return [Loan.from_row(r) for r in rows]

    def issued(self) -> List[Loan]:
        rows = self.conn.execute(
            "SELECT * FROM loans WHERE status = 'Issued' ORDER BY due_date"
        ).fetchall()
        return [Loan.from_row(r) for r in rows]

    def overdue(self, now: datetime) -> List[Loan]:
        rows = self.conn.execute(
            "SELECT * FROM loans WHERE status = 'Issued' AND due_date < ? ORDER BY due_date",
            (to_db_time(now),),
        ).fetchall()
        return [Loan.from_row(r) for r in rows]

    # ------------------------- Mutations ------------------------- #
    def issue(self, student: Optional[Student], book: Optional[Book], due_date: Optional[datetime],
              issued_by: Optional[str], rules: CirculationSettings, now: datetime,
              student_ref: str = "", book_ref: str = "") -> Loan:
        """Lend ``book`` to ``student``; preconditions are checked in a fixed order."""
        if student is None:
            raise StudentNotFound(f"Student {student_ref} not found.")
        limit = rules.max_active_loans_per_student
        if self.count_open(student.id) >= limit:
            raise IssueLimitReached(f"Student has reached the maximum of {limit} active loans.")
        if book is None:
            raise BookNotFound(f"Book {book_ref} not found.")
        if book.status not in (BookStatus.AVAILABLE, BookStatus.RESERVED):
            raise BookUnavailable(f"Book {book.accession_number} is not available for issue.")

        claim: Optional[Reservation] = None
        if book.status is BookStatus.RESERVED:
            claim = self.reservations.entitlement(book.id, student.id)
            if claim is None:
                raise BookReservedForAnother(
                    f"Book {book.accession_number} is reserved for another student."
                )

        loan = Loan(
            id=new_id("ln"),
            book_id=book.id,
            student_id=student.id,
            issue_date=now,
            due_date=due_date or now + timedelta(days=rules.loan_duration_days),
            issued_by=issued_by,
        )
        self.conn.execute(
            """
            INSERT INTO loans (id, book_id, student_id, issue_date, due_date, issued_by, status)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (loan.id, loan.book_id, loan.student_id, to_db_time(loan.issue_date),
             to_db_time(loan.due_date), loan.issued_by, loan.status.value),
        )
        if claim is not None:
            self.reservations.consume(claim, loan.id, now)
        self.books.set_status(book.id, BookStatus.ISSUED)
        logger.info("Issued book %s to student %s (loan %s, due %s)",
                    book.id, student.id, loan.id, loan.due_date.isoformat())
        return loan

    def return_loan(self, loan: Loan, rules: CirculationSettings, now: datetime) -> ReturnReceipt:
        if not loan.is_open:
            raise LoanNotFound(f"Loan {loan.id} has already been returned.")
        fine = compute_fine(loan.due_date, now, rules.fine_per_day)
        cursor = self.conn.execute(
            """
            UPDATE loans SET return_date = ?, status = 'Returned', fine = ?
            WHERE id = ? AND status = 'Issued'
            """,
            (to_db_time(now), fine, loan.id),
        )
        if cursor.rowcount == 0:
            raise LoanNotFound(f"Loan {loan.id} has already been returned.")
        loan.return_date = now
        loan.status = LoanStatus.RETURNED
        loan.fine = fine

        promoted = self.reservations.advance_queue(loan.book_id, now)
        book = self.books.require(loan.book_id)
        logger.info("Returned loan %s (book %s, fine %s, book now %s)",
                    loan.id, loan.book_id, fine, book.status.value)
        return ReturnReceipt(loan=loan, fine=fine, book=book, next_reservation=promoted)

    def record_reminder(self, loan: Loan, rules: CirculationSettings, now: datetime) -> ReminderNotice:
        if not loan.is_overdue(now):
            raise NotOverdue(f"Loan {loan.id} is not overdue.")
        self.conn.execute(
            "UPDATE loans SET last_reminder_sent_at = ? WHERE id = ?", (to_db_time(now), loan.id)
        )
        loan.last_reminder_sent_at = now
        accrued = compute_fine(loan.due_date, now, rules.fine_per_day)
        logger.info("Reminder recorded for loan %s (accrued fine %s)", loan.id, accrued)
        return ReminderNotice(loan=loan, accrued_fine=accrued, sent_at=now)
