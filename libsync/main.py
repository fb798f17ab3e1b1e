import logging
import subprocess
import sys
from functools import wraps
from typing import Dict, Optional

import typer

from libsync.circulation import Circulation
from libsync.config import settings
from libsync.errors import CirculationError
from libsync.ui_helpers import print_record, print_records, set_output_mode


app = typer.Typer(help="LibSync circulation CLI")

BOOK_FIELDS = ("accession_number", "title", "author", "status")
STUDENT_FIELDS = ("student_code", "name", "email")
LOAN_FIELDS = ("book_id", "student_id", "due_date", "status", "fine")
RESERVATION_FIELDS = ("book_id", "student_id", "reserved_at", "status")

_state: Dict[str, Optional[str]] = {"db_file": None}


def get_circulation() -> Circulation:
    return Circulation(db_file=_state["db_file"])


def handle_errors(func):
    """Print circulation errors with their code and exit non-zero."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except CirculationError as e:
            print(f"Error [{e.code}]: {e.message}")
            if e.retryable:
                print("The request can be retried.")
            raise typer.Exit(code=1)
    return wrapper


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None, "--output", "-o", help="Output format: plain | json | rich (default: plain)",
    ),
    db: Optional[str] = typer.Option(
        None, "--db", envvar="LIBRARY_DB_FILE", help="SQLite database file",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log circulation events"),
):
    """Global options for the CLI."""
    if output:
        set_output_mode(output)
    _state["db_file"] = db
    logging.basicConfig(level=logging.INFO if verbose else settings.log_level.upper(),
                        format="%(levelname)s %(name)s: %(message)s")


@app.command("init-db")
@handle_errors
def cli_init_db():
    """Create the circulation tables."""
    circ = get_circulation()
    print(f"Database ready: {circ.db_file or 'default location'}")


@app.command("add-book")
@handle_errors
def cli_add_book(
    accession_number: str,
    title: str,
    author: str,
    isbn: Optional[str] = typer.Option(None, help="ISBN"),
    publisher: Optional[str] = typer.Option(None, help="Publisher"),
    category: Optional[str] = typer.Option(None, help="Category"),
):
    """Add a copy to the inventory."""
    book = get_circulation().add_book(accession_number, title, author,
                                      isbn=isbn, publisher=publisher, category=category)
    print_record("Book", book.to_dict(), BOOK_FIELDS)


@app.command("add-student")
@handle_errors
def cli_add_student(
    student_code: str,
    name: str,
    email: Optional[str] = typer.Option(None, help="Email address"),
    department: Optional[str] = typer.Option(None, help="Department"),
):
    """Register a student in the directory."""
    student = get_circulation().add_student(student_code, name, email=email, department=department)
    print_record("Student", student.to_dict(), STUDENT_FIELDS)


@app.command("reserve")
@handle_errors
def cli_reserve(book: str, student: str):
    """Reserve a book (accession number or id) for a student (code or id)."""
    reservation = get_circulation().reserve_book(book, student)
    print_record("Reservation", reservation.to_dict(), RESERVATION_FIELDS)


@app.command("cancel")
@handle_errors
def cli_cancel(reservation_id: str):
    """Cancel a reservation."""
    reservation = get_circulation().cancel_reservation(reservation_id)
    print_record("Reservation", reservation.to_dict(), RESERVATION_FIELDS)


@app.command("fulfill")
@handle_errors
def cli_fulfill(reservation_id: str):
    """Fulfil the reservation at the head of its book's queue."""
    reservation = get_circulation().fulfill_reservation(reservation_id)
    print_record("Reservation", reservation.to_dict(), RESERVATION_FIELDS)


@app.command("issue")
@handle_errors
def cli_issue(
    student: str,
    book: str,
    due: Optional[str] = typer.Option(None, "--due", help="Due date (YYYY-MM-DD or ISO datetime)"),
    issued_by: Optional[str] = typer.Option(None, "--issued-by", help="Librarian issuing the book"),
):
    """Issue a book to a student."""
    loan = get_circulation().issue_book(student, book, due, issued_by)
    print_record("Loan", loan.to_dict(), LOAN_FIELDS)


@app.command("return")
@handle_errors
def cli_return(
    loan_id: Optional[str] = typer.Argument(None, help="Loan id"),
    book: Optional[str] = typer.Option(None, "--book", help="Book accession number or id"),
    student: Optional[str] = typer.Option(None, "--student", help="Student code or id"),
):
    """Return a loan by id, or the open loan of a book."""
    receipt = get_circulation().return_book(loan_id=loan_id, book_ref=book, student_ref=student)
    print_record("Loan", receipt.loan.to_dict(), LOAN_FIELDS)
    print(f"Fine: {receipt.fine}")
    if receipt.next_reservation:
        print(f"Book held for reservation {receipt.next_reservation.id} "
              f"(student {receipt.next_reservation.student_id})")
    else:
        print(f"Book status: {receipt.book.status.value}")


@app.command("overdue")
@handle_errors
def cli_overdue():
    """List open loans past their due date."""
    loans = get_circulation().get_overdue_loans()
    print_records("Overdue loans", [loan.to_dict() for loan in loans], ("id",) + LOAN_FIELDS)


@app.command("loans")
@handle_errors
def cli_loans(student: str):
    """Show a student's loan history."""
    loans = get_circulation().student_loans(student)
    print_records("Loans", [loan.to_dict() for loan in loans], ("id",) + LOAN_FIELDS)


@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, help="Bind address"),
    port: int = typer.Option(settings.api_port, help="Port"),
):
    """Run the HTTP API with uvicorn."""
    print(f"Starting API on http://{host}:{port}")
    subprocess.run(
        [sys.executable, "-m", "uvicorn", "libsync.api:app", "--host", host, "--port", str(port)],
        check=False,
    )


if __name__ == "__main__":
    app()
