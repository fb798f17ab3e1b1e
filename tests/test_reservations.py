from datetime import datetime, timedelta, timezone

import pytest

from libsync.errors import (
    AlreadyReserved,
    BookAlreadyReserved,
    BookNotFound,
    BookUnavailable,
    NotActive,
    ReservationNotFound,
    StudentNotFound,
)
from libsync.models import BookStatus, ReservationStatus

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def test_reserve_flips_book_to_reserved(circ, book, student, check_invariants):
    reservation = circ.reserve_book(book.accession_number, student.student_code, now=T0)

    assert reservation.status is ReservationStatus.ACTIVE
    assert reservation.reserved_at == T0
    stored = circ.get_book(book.id)
    assert stored.status is BookStatus.RESERVED
    assert stored.available is False
    check_invariants()


def test_reserve_twice_fails_already_reserved(circ, book, student, other_student):
    circ.reserve_book(book.id, student.id)

    with pytest.raises(AlreadyReserved):
        circ.reserve_book(book.id, other_student.id)

    assert len(circ.book_reservations(book.id)) == 1


def test_reserve_issued_book_fails_unavailable(circ, book, student, other_student):
    circ.issue_book(student.id, book.id)

    with pytest.raises(BookUnavailable):
        circ.reserve_book(book.id, other_student.id)

    assert circ.book_reservations(book.id) == []


def test_reserve_unknown_book_or_student(circ, book, student):
    with pytest.raises(BookNotFound):
        circ.reserve_book("NO-SUCH-BOOK", student.id)
    with pytest.raises(StudentNotFound):
        circ.reserve_book(book.id, "NOBODY")


def test_cancel_restores_available(circ, book, student, check_invariants):
    reservation = circ.reserve_book(book.id, student.id)

    cancelled = circ.cancel_reservation(reservation.id)

    assert cancelled.status is ReservationStatus.CANCELLED
    assert cancelled.cancelled_at is not None
    assert circ.get_book(book.id).available is True
    check_invariants()


def test_cancel_twice_is_rejected(circ, book, student):
    reservation = circ.reserve_book(book.id, student.id)
    circ.cancel_reservation(reservation.id)

    with pytest.raises(NotActive):
        circ.cancel_reservation(reservation.id)


def test_cancel_unknown_reservation(circ):
    with pytest.raises(ReservationNotFound):
        circ.cancel_reservation("rs_missing")


def test_fulfill_head_of_queue(circ, book, student, check_invariants):
    reservation = circ.reserve_book(book.id, student.id, now=T0)

    fulfilled = circ.fulfill_reservation(reservation.id, now=T0 + timedelta(hours=1))

    assert fulfilled.status is ReservationStatus.FULFILLED
    assert fulfilled.fulfilled_at == T0 + timedelta(hours=1)
    assert circ.get_book(book.id).status is BookStatus.RESERVED
    check_invariants()


def test_fulfill_out_of_order_conflicts(circ, book, student, other_student, enqueue, check_invariants):
    circ.reserve_book(book.id, student.id, now=T0)
    later = enqueue(book.id, other_student.id, T0 + timedelta(minutes=5))

    with pytest.raises(BookAlreadyReserved):
        circ.fulfill_reservation(later.id)

    assert circ.get_reservation(later.id).status is ReservationStatus.ACTIVE
    check_invariants()


def test_fulfill_while_another_is_held_conflicts(circ, book, student, other_student, enqueue):
    first = circ.reserve_book(book.id, student.id, now=T0)
    second = enqueue(book.id, other_student.id, T0 + timedelta(minutes=5))
    circ.fulfill_reservation(first.id)

    with pytest.raises(BookAlreadyReserved):
        circ.fulfill_reservation(second.id)


def test_fulfill_non_active_is_rejected(circ, book, student):
    reservation = circ.reserve_book(book.id, student.id)
    circ.fulfill_reservation(reservation.id)

    with pytest.raises(NotActive):
        circ.fulfill_reservation(reservation.id)


def test_fulfill_while_book_on_loan(circ, book, student, other_student, enqueue):
    circ.issue_book(student.id, book.id)
    waiting = enqueue(book.id, other_student.id, T0)

    with pytest.raises(BookUnavailable):
        circ.fulfill_reservation(waiting.id)


def test_identical_timestamps_resolve_by_insertion_order(circ, book, student, other_student, enqueue):
    first = enqueue(book.id, other_student.id, T0)
    second = enqueue(book.id, student.id, T0)

    with pytest.raises(BookAlreadyReserved):
        circ.fulfill_reservation(second.id)

    assert circ.fulfill_reservation(first.id).status is ReservationStatus.FULFILLED


def test_cancelling_held_reservation_promotes_next(circ, book, student, other_student, enqueue,
                                                   check_invariants):
    first = circ.reserve_book(book.id, student.id, now=T0)
    second = enqueue(book.id, other_student.id, T0 + timedelta(minutes=1))
    circ.fulfill_reservation(first.id)

    circ.cancel_reservation(first.id)

    assert circ.get_reservation(second.id).status is ReservationStatus.FULFILLED
    assert circ.get_book(book.id).status is BookStatus.RESERVED
    check_invariants()


def test_cancelling_one_of_several_keeps_book_reserved(circ, book, student, other_student, enqueue,
                                                       check_invariants):
    first = circ.reserve_book(book.id, student.id, now=T0)
    enqueue(book.id, other_student.id, T0 + timedelta(minutes=1))

    circ.cancel_reservation(first.id)

    assert circ.get_book(book.id).status is BookStatus.RESERVED
    check_invariants()


def test_student_reservation_history(circ, book, student):
    other_book = circ.add_book("ACC-002", "Emma", "Jane Austen")
    r1 = circ.reserve_book(book.id, student.id, now=T0)
    r2 = circ.reserve_book(other_book.id, student.student_code, now=T0 + timedelta(days=1))
    circ.cancel_reservation(r1.id)

    history = circ.student_reservations("s001")

    assert [r.id for r in history] == [r1.id, r2.id]
    assert [r.status for r in history] == [ReservationStatus.CANCELLED, ReservationStatus.ACTIVE]


def test_cancel_while_book_on_loan_keeps_it_issued(circ, book, student, other_student, enqueue,
                                                   check_invariants):
    circ.issue_book(student.id, book.id, now=T0)
    waiting = enqueue(book.id, other_student.id, T0 + timedelta(hours=1))

    cancelled = circ.cancel_reservation(waiting.id, now=T0 + timedelta(hours=2))

    assert cancelled.status is ReservationStatus.CANCELLED
    assert circ.get_book(book.id).status is BookStatus.ISSUED
    assert len(circ.issued_loans()) == 1
    check_invariants()
