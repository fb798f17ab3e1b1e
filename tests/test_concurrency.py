import threading
from datetime import datetime, timedelta, timezone

import pytest

from libsync.books import BookLedger
from libsync.circulation import Circulation
from libsync.config import CirculationSettings, settings
from libsync.database import get_db_connection, transaction
from libsync.errors import (
    BookAlreadyReserved,
    BookReservedForAnother,
    BookUnavailable,
    CirculationError,
    ConflictError,
    NotActive,
)
from libsync.models import BookStatus, ReservationStatus

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def _race(*calls):
    """Start every call behind one barrier and collect results or errors in order."""
    barrier = threading.Barrier(len(calls))
    outcomes = [None] * len(calls)

    def run(i, fn):
        barrier.wait()
        try:
            outcomes[i] = fn()
        except CirculationError as e:
            outcomes[i] = e

    threads = [threading.Thread(target=run, args=(i, fn)) for i, fn in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return outcomes


def _count(db_file, sql, params=()):
    conn = get_db_connection(db_file)
    try:
        return conn.execute(sql, params).fetchone()[0]
    finally:
        conn.close()


def test_concurrent_issue_of_one_copy(db_file, circ, book, student, other_student, check_invariants):
    # Separate coordinators so each thread works through its own connections
    first = Circulation(db_file, CirculationSettings())
    second = Circulation(db_file, CirculationSettings())

    outcomes = _race(
        lambda: first.issue_book(student.id, book.id),
        lambda: second.issue_book(other_student.id, book.id),
    )

    errors = [o for o in outcomes if isinstance(o, CirculationError)]
    assert len(errors) == 1
    assert isinstance(errors[0], BookUnavailable)
    assert _count(db_file, "SELECT COUNT(*) FROM loans WHERE book_id = ?", (book.id,)) == 1
    assert circ.get_book(book.id).status is BookStatus.ISSUED
    check_invariants()


def test_concurrent_fulfil_of_two_reservations(db_file, circ, book, student, other_student, enqueue,
                                               check_invariants):
    first = enqueue(book.id, student.id, T0)
    second = enqueue(book.id, other_student.id, T0 + timedelta(minutes=1))

    outcomes = _race(
        lambda: circ.fulfill_reservation(first.id),
        lambda: circ.fulfill_reservation(second.id),
    )

    assert sum(isinstance(o, BookAlreadyReserved) for o in outcomes) == 1
    assert sum(not isinstance(o, CirculationError) for o in outcomes) == 1
    assert circ.get_reservation(first.id).status is ReservationStatus.FULFILLED
    assert circ.get_reservation(second.id).status is ReservationStatus.ACTIVE
    check_invariants()


def test_concurrent_fulfil_of_one_reservation(db_file, circ, book, student, check_invariants):
    reservation = circ.reserve_book(book.id, student.id, now=T0)

    outcomes = _race(
        lambda: circ.fulfill_reservation(reservation.id),
        lambda: circ.fulfill_reservation(reservation.id),
    )

    assert sum(isinstance(o, NotActive) for o in outcomes) == 1
    assert circ.get_reservation(reservation.id).status is ReservationStatus.FULFILLED
    check_invariants()


def test_concurrent_issue_and_reserve(db_file, circ, book, student, other_student, check_invariants):
    outcomes = _race(
        lambda: circ.issue_book(student.id, book.id),
        lambda: circ.reserve_book(book.id, other_student.id),
    )

    issued, reserved = outcomes
    if isinstance(reserved, CirculationError):
        # Issue won: the copy was already out
        assert isinstance(reserved, BookUnavailable)
        assert circ.get_book(book.id).status is BookStatus.ISSUED
    else:
        # Reserve won: the copy is held for the other student
        assert isinstance(issued, BookReservedForAnother)
        assert circ.get_book(book.id).status is BookStatus.RESERVED
    check_invariants()


def test_failure_mid_issue_rolls_back_every_write(db_file, circ, book, student, monkeypatch,
                                                 check_invariants):
    reservation = circ.reserve_book(book.id, student.id, now=T0)

    def broken_set_status(self, book_id, status):
        raise RuntimeError("disk unplugged")

    monkeypatch.setattr(BookLedger, "set_status", broken_set_status)

    with pytest.raises(RuntimeError):
        circ.issue_book(student.id, book.id, now=T0 + timedelta(hours=1))

    monkeypatch.undo()
    assert _count(db_file, "SELECT COUNT(*) FROM loans") == 0
    assert circ.get_book(book.id).status is BookStatus.RESERVED
    stored = circ.get_reservation(reservation.id)
    assert stored.status is ReservationStatus.ACTIVE
    assert stored.loan_id is None
    check_invariants()


def test_lock_timeout_surfaces_retryable_conflict(db_file, circ, book, student, monkeypatch):
    monkeypatch.setattr(settings, "database_busy_timeout", 0.1)

    with transaction(db_file):
        with pytest.raises(ConflictError) as excinfo:
            circ.issue_book(student.id, book.id)

    assert excinfo.value.retryable is True
    assert excinfo.value.http_status == 409
    assert circ.get_book(book.id).available is True
