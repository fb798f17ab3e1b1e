import os

import pytest

from libsync.circulation import Circulation
from libsync.config import CirculationSettings
from libsync.database import get_db_connection, transaction
from libsync.reservations import ReservationQueue


@pytest.fixture
def db_file(tmp_path, request):
    # Unique database file per test
    path = str(tmp_path / f"circulation_{request.node.name}.db")
    yield path
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(path + suffix):
            try:
                os.remove(path + suffix)
            except OSError:
                pass


@pytest.fixture
def circ(db_file):
    return Circulation(db_file=db_file, settings=CirculationSettings())


@pytest.fixture
def student(circ):
    return circ.add_student("S001", "Asha Rao", email="asha@example.edu", department="CSE")


@pytest.fixture
def other_student(circ):
    return circ.add_student("S002", "Ben Okafor", email="ben@example.edu", department="ECE")


@pytest.fixture
def third_student(circ):
    return circ.add_student("S003", "Chen Wei", department="MECH")


@pytest.fixture
def book(circ):
    return circ.add_book("ACC-001", "Dune", "Frank Herbert", category="Fiction")


@pytest.fixture
def enqueue(db_file):
    """Append an Active reservation directly, bypassing the reserve rules."""
    def _enqueue(book_id, student_id, reserved_at):
        with transaction(db_file) as conn:
            return ReservationQueue(conn).enqueue(book_id, student_id, reserved_at)
    return _enqueue


@pytest.fixture
def check_invariants(db_file):
    """Assert the cross-store invariants against the committed state."""
    def _check():
        conn = get_db_connection(db_file)
        try:
            open_loans = conn.execute(
                "SELECT book_id, COUNT(*) FROM loans WHERE status = 'Issued' "
                "GROUP BY book_id HAVING COUNT(*) > 1"
            ).fetchall()
            assert open_loans == []

            holders = conn.execute(
                "SELECT book_id, COUNT(*) FROM reservations "
                "WHERE status = 'Fulfilled' AND loan_id IS NULL "
                "GROUP BY book_id HAVING COUNT(*) > 1"
            ).fetchall()
            assert holders == []

            for row in conn.execute("SELECT id, status FROM books").fetchall():
                has_loan = conn.execute(
                    "SELECT 1 FROM loans WHERE book_id = ? AND status = 'Issued'", (row["id"],)
                ).fetchone() is not None
                has_pending = conn.execute(
                    "SELECT 1 FROM reservations WHERE book_id = ? AND "
                    "(status = 'Active' OR (status = 'Fulfilled' AND loan_id IS NULL))",
                    (row["id"],),
                ).fetchone() is not None
                if has_loan:
                    assert row["status"] == "Issued"
                elif has_pending:
                    assert row["status"] == "Reserved"
                else:
                    assert row["status"] == "Available"
        finally:
            conn.close()
    return _check
