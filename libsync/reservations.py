import logging
import sqlite3
from datetime import datetime
from typing import List, Optional

from libsync.books import BookLedger
from libsync.errors import (
    AlreadyReserved,
    BookAlreadyReserved,
    BookUnavailable,
    NotActive,
    ReservationNotFound,
)
from libsync.models import (
    Book,
    BookStatus,
    Reservation,
    ReservationStatus,
    Student,
    new_id,
    to_db_time,
)

logger = logging.getLogger(__name__)

# reserved_at first; rowid keeps insertion order for identical timestamps.
_QUEUE_ORDER = "ORDER BY reserved_at ASC, rowid ASC"


class ReservationQueue:
    """Per-book FIFO queue of reservation requests.

    A reservation is *pending* while it is Active, or Fulfilled but not yet
    consumed by a loan. At most one pending Fulfilled reservation exists per
    book; it earmarks the book for its student.
    """

    def __init__(self, conn: sqlite3.Connection, books: Optional[BookLedger] = None) -> None:
        self.conn = conn
        self.books = books or BookLedger(conn)

    # ------------------------- Lookups ------------------------- #
    def get(self, reservation_id: str) -> Optional[Reservation]:
        row = self.conn.execute(
            "SELECT * FROM reservations WHERE id = ?", (reservation_id,)
        ).fetchone()
        return Reservation.from_row(row) if row else None

    def require(self, reservation_id: str) -> Reservation:
        reservation = self.get(reservation_id)
        if reservation is None:
            raise ReservationNotFound(f"Reservation {reservation_id} not found.")
        return reservation

    def active(self, book_id: str) -> List[Reservation]:
        """Active reservations for a book, head of the queue first."""
        rows = self.conn.execute(
            f"SELECT * FROM reservations WHERE book_id = ? AND status = 'Active' {_QUEUE_ORDER}",
            (book_id,),
        ).fetchall()
        return [Reservation.from_row(r) for r in rows]

    def holder(self, book_id: str) -> Optional[Reservation]:
        """The pending Fulfilled reservation earmarking the book, if any."""
        row = self.conn.execute(
            """
            SELECT * FROM reservations
            WHERE book_id = ? AND status = 'Fulfilled' AND loan_id IS NULL
            """,
            (book_id,),
        ).fetchone()
        return Reservation.from_row(row) if row else None

    def pending(self, book_id: str) -> List[Reservation]:
        holder = self.holder(book_id)
        return ([holder] if holder else []) + self.active(book_id)

    def for_book(self, book_id: str) -> List[Reservation]:
        rows = self.conn.execute(
            f"SELECT * FROM reservations WHERE book_id = ? {_QUEUE_ORDER}", (book_id,)
        ).fetchall()
        return [Reservation.from_row(r) for r in rows]

    def for_student(self, student_id: str) -> List[Reservation]:
        rows = self.conn.execute(
            f"SELECT * FROM reservations WHERE student_id = ? {_QUEUE_ORDER}", (student_id,)
        ).fetchall()
        return [Reservation.from_row(r) for r in rows]

    def entitlement(self, book_id: str, student_id: str) -> Optional[Reservation]:
        """Reservation that lets ``student_id`` borrow the reserved book, or None.

        The earmark holder is the only entitled student. Without an earmark, a
        student's Active reservation qualifies when no other student's Active
        reservation is ahead of it in the queue.
        """
        holder = self.holder(book_id)
        if holder is not None:
            return holder if holder.student_id == student_id else None
        for reservation in self.active(book_id):
            if reservation.student_id == student_id:
                return reservation
            # someone else is ahead
            return None
        return None

    # ------------------------- Mutations ------------------------- #
    def enqueue(self, book_id: str, student_id: str, reserved_at: datetime) -> Reservation:
        """Append an Active reservation without checking any rule."""
        reservation = Reservation(
            id=new_id("rs"),
            book_id=book_id,
            student_id=student_id,
            reserved_at=reserved_at,
        )
        self.conn.execute(
            "INSERT INTO reservations (id, book_id, student_id, reserved_at, status) "
            "VALUES (?, ?, ?, ?, ?)",
            (reservation.id, book_id, student_id, to_db_time(reserved_at),
             reservation.status.value),
        )
        return reservation

    def reserve(self, book: Book, student: Student, now: datetime) -> Reservation:
        if self.active(book.id):
            raise AlreadyReserved(f"Book {book.accession_number} is already reserved.")
        if not book.available:
            raise BookUnavailable(f"Book {book.accession_number} is not available for reservation.")
        reservation = self.enqueue(book.id, student.id, now)
        self.books.set_status(book.id, BookStatus.RESERVED)
        logger.info("Reserved book %s for student %s (%s)", book.id, student.id, reservation.id)
        return reservation

    def fulfill(self, reservation_id: str, now: datetime) -> Reservation:
        """Promote an Active reservation, earmarking the book for its student."""
        reservation = self.require(reservation_id)
        if reservation.status is not ReservationStatus.ACTIVE:
            raise NotActive(
                f"Reservation {reservation.id} is {reservation.status.value}, not Active."
            )
        book = self.books.require(reservation.book_id)
        if book.status is BookStatus.ISSUED:
            raise BookUnavailable(f"Book {book.accession_number} is currently on loan.")
        holder = self.holder(book.id)
        if holder is not None:
            raise BookAlreadyReserved(
                f"Book {book.accession_number} is already held by reservation {holder.id}."
            )
        head = self.active(book.id)[0]
        if head.id != reservation.id:
            raise BookAlreadyReserved(
                f"Reservation {head.id} is ahead of {reservation.id} in the queue."
            )
        self._mark_fulfilled(reservation, now)
        self.books.set_status(book.id, BookStatus.RESERVED)
        logger.info("Fulfilled reservation %s for book %s", reservation.id, book.id)
        return reservation

    def cancel(self, reservation_id: str, now: datetime) -> Reservation:
        reservation = self.require(reservation_id)
        if not reservation.is_pending:
            raise NotActive(f"Reservation {reservation.id} can no longer be cancelled.")
        was_holder = reservation.status is ReservationStatus.FULFILLED
        self.conn.execute(
            "UPDATE reservations SET status = 'Cancelled', cancelled_at = ? WHERE id = ?",
            (to_db_time(now), reservation.id),
        )
        reservation.status = ReservationStatus.CANCELLED
        reservation.cancelled_at = now

        book = self.books.require(reservation.book_id)
        if book.status is BookStatus.RESERVED:
            if was_holder:
                self.advance_queue(book.id, now)
            elif not self.pending(book.id):
                self.books.set_status(book.id, BookStatus.AVAILABLE)
        logger.info("Cancelled reservation %s for book %s", reservation.id, book.id)
        return reservation

    def advance_queue(self, book_id: str, now: datetime) -> Optional[Reservation]:
        """Hand the book to the head of the queue, or make it Available.

        Returns the reservation promoted by this call, if any.
        """
        if self.holder(book_id) is not None:
            self.books.set_status(book_id, BookStatus.RESERVED)
            return None
        queue = self.active(book_id)
        if not queue:
            self.books.set_status(book_id, BookStatus.AVAILABLE)
            return None
        head = queue[0]
        self._mark_fulfilled(head, now)
        self.books.set_status(book_id, BookStatus.RESERVED)
        logger.info("Queue advanced: reservation %s now holds book %s", head.id, book_id)
        return head

    def consume(self, reservation: Reservation, loan_id: str, now: datetime) -> None:
        """Tie a reservation to the loan that satisfied it."""
        self.conn.execute(
            """
            UPDATE reservations
            SET status = 'Fulfilled', fulfilled_at = COALESCE(fulfilled_at, ?), loan_id = ?
            WHERE id = ?
            """,
            (to_db_time(now), loan_id, reservation.id),
        )
        reservation.status = ReservationStatus.FULFILLED
        reservation.fulfilled_at = reservation.fulfilled_at or now
        reservation.loan_id = loan_id

    def _mark_fulfilled(self, reservation: Reservation, now: datetime) -> None:
        self.conn.execute(
            "UPDATE reservations SET status = 'Fulfilled', fulfilled_at = ? WHERE id = ?",
            (to_db_time(now), reservation.id),
        )
        reservation.status = ReservationStatus.FULFILLED
        reservation.fulfilled_at = now
