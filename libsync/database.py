import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from libsync.config import settings
from libsync.errors import CirculationError, ConflictError, InternalError

logger = logging.getLogger(__name__)

# Default database file: LIBRARY_DB_FILE, else libsync.db in the working directory.
# Shared by every process so CLI invocations see each other's writes.
DATABASE_FILE = settings.database_file

_LOCK_MESSAGES = ("database is locked", "database table is locked", "database is busy")


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a new connection. Transactions are managed explicitly by the caller."""
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=settings.database_busy_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def _translate(exc: sqlite3.Error) -> CirculationError:
    """Map a storage exception onto the circulation error taxonomy."""
    if isinstance(exc, sqlite3.IntegrityError):
        return ConflictError(f"Concurrent update rejected by storage: {exc}")
    if isinstance(exc, sqlite3.OperationalError) and any(
        m in str(exc).lower() for m in _LOCK_MESSAGES
    ):
        return ConflictError("Timed out waiting for a concurrent transaction; retry the request.")
    return InternalError(f"Storage failure: {exc}")


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.execute("ROLLBACK")


@contextmanager
def transaction(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Run a block inside one write transaction.

    ``BEGIN IMMEDIATE`` takes the write lock before the first read, so every
    precondition query in the block sees the state the write will apply to.
    Any exception rolls the whole block back; sqlite errors are re-raised as
    :class:`ConflictError` or :class:`InternalError`.
    """
    conn = get_db_connection(db_file)
    try:
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            err = _translate(e)
            logger.warning("Could not start transaction: %s", err.message)
            raise err from e
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            _rollback(conn)
            err = _translate(e)
            if isinstance(err, ConflictError):
                logger.warning("Transaction aborted: %s", err.message)
            else:
                logger.error("Transaction failed: %s", err.message)
            raise err from e
        except BaseException:
            _rollback(conn)
            raise
    finally:
        conn.close()


@contextmanager
def read_connection(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Connection for read-only queries; sees the last committed state."""
    conn = get_db_connection(db_file)
    try:
        yield conn
    except sqlite3.Error as e:
        raise _translate(e) from e
    finally:
        conn.close()


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the circulation tables if they do not exist.

    A locked or unreadable database surfaces as :class:`ConflictError` or
    :class:`InternalError`, like any other storage failure.
    """
    conn = get_db_connection(db_file)
    try:
        # WAL is persistent: readers keep working while a writer holds the lock.
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS books (
                id TEXT PRIMARY KEY,
                accession_number TEXT UNIQUE NOT NULL,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT,
                publisher TEXT,
                category TEXT,
                status TEXT NOT NULL DEFAULT 'Available'
                    CHECK(status IN ('Available', 'Issued', 'Reserved')),
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS students (
                id TEXT PRIMARY KEY,
                student_code TEXT UNIQUE NOT NULL,
                name TEXT NOT NULL,
                email TEXT,
                department TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS loans (
                id TEXT PRIMARY KEY,
                book_id TEXT NOT NULL REFERENCES books(id),
                student_id TEXT NOT NULL REFERENCES students(id),
                issue_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                issued_by TEXT,
                fine INTEGER NOT NULL DEFAULT 0,
                last_reminder_sent_at TEXT,
                status TEXT NOT NULL DEFAULT 'Issued'
                    CHECK(status IN ('Issued', 'Returned'))
            );

            CREATE TABLE IF NOT EXISTS reservations (
                id TEXT PRIMARY KEY,
                book_id TEXT NOT NULL REFERENCES books(id),
                student_id TEXT NOT NULL REFERENCES students(id),
                reserved_at TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'Active'
                    CHECK(status IN ('Active', 'Fulfilled', 'Cancelled')),
                fulfilled_at TEXT,
                cancelled_at TEXT,
                loan_id TEXT REFERENCES loans(id)
            );

            CREATE INDEX IF NOT EXISTS idx_books_status ON books(status);
            CREATE INDEX IF NOT EXISTS idx_loans_student_status ON loans(student_id, status);
            CREATE INDEX IF NOT EXISTS idx_loans_due_date ON loans(status, due_date);
            CREATE INDEX IF NOT EXISTS idx_reservations_book_status
                ON reservations(book_id, status, reserved_at);
            CREATE INDEX IF NOT EXISTS idx_reservations_student ON reservations(student_id);
            CREATE INDEX IF NOT EXISTS idx_students_email ON students(lower(email));

            -- One open loan per book.
            CREATE UNIQUE INDEX IF NOT EXISTS uq_loans_open_per_book
                ON loans(book_id) WHERE status = 'Issued';
            -- One unconsumed fulfilled reservation per book.
            CREATE UNIQUE INDEX IF NOT EXISTS uq_reservations_pending_fulfilled
                ON reservations(book_id) WHERE status = 'Fulfilled' AND loan_id IS NULL;
        """)
    except sqlite3.Error as e:
        err = _translate(e)
        logger.warning("Could not create tables: %s", err.message)
        raise err from e
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables when needed."""
    create_tables(db_file)
    logger.debug("Database initialized at %s", db_file or DATABASE_FILE)
