import logging
import sqlite3
from datetime import datetime
from typing import Optional

from libsync.errors import BookNotFound, ValidationError
from libsync.models import Book, BookStatus, new_id, to_db_time, utcnow
from libsync.validators import IdentifierValidator, TextValidator

logger = logging.getLogger(__name__)


class BookLedger:
    """Current state of every physical copy.

    A pure state container bound to one connection: it performs no business
    validation. Status writes are only meaningful on a connection owned by a
    :func:`libsync.database.transaction` block.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def get(self, ref: str) -> Optional[Book]:
        """Resolve a book by internal id, falling back to accession number."""
        row = self.conn.execute("SELECT * FROM books WHERE id = ?", (ref,)).fetchone()
        if row is None:
            row = self.conn.execute(
                "SELECT * FROM books WHERE accession_number = ?",
                (IdentifierValidator.normalize(ref),),
            ).fetchone()
        return Book.from_row(row) if row else None

    def require(self, ref: str) -> Book:
        book = self.get(ref)
        if book is None:
            raise BookNotFound(f"Book {ref} not found.")
        return book

    def set_status(self, book_id: str, status: BookStatus) -> None:
        cursor = self.conn.execute(
            "UPDATE books SET status = ? WHERE id = ?", (BookStatus(status).value, book_id)
        )
        if cursor.rowcount == 0:
            raise BookNotFound(f"Book {book_id} not found.")
        logger.debug("Book %s -> %s", book_id, BookStatus(status).value)

    def add(self, accession_number: str, title: str, author: str, *,
            isbn: Optional[str] = None, publisher: Optional[str] = None,
            category: Optional[str] = None, now: Optional[datetime] = None) -> Book:
        """Inventory load: a new copy always starts out Available."""
        book = Book(
            id=new_id("bk"),
            accession_number=IdentifierValidator.require(accession_number, "accession number"),
            title=TextValidator.require(title, "Title"),
            author=TextValidator.require(author, "Author"),
            isbn=TextValidator.optional(isbn),
            publisher=TextValidator.optional(publisher),
            category=TextValidator.optional(category),
            created_at=now or utcnow(),
        )
        exists = self.conn.execute(
            "SELECT 1 FROM books WHERE accession_number = ?", (book.accession_number,)
        ).fetchone()
        if exists:
            raise ValidationError(f"Accession number {book.accession_number} already exists.")
        self.conn.execute(
            """
            INSERT INTO books (id, accession_number, title, author, isbn, publisher,
                               category, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (book.id, book.accession_number, book.title, book.author, book.isbn,
             book.publisher, book.category, book.status.value, to_db_time(book.created_at)),
        )
        return book
