import sqlite3
from datetime import datetime
from typing import Optional

from libsync.errors import StudentNotFound, ValidationError
from libsync.models import Student, new_id, to_db_time, utcnow
from libsync.validators import IdentifierValidator, TextValidator


class StudentDirectory:
    """Student lookup keyed by internal id or external student code."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def resolve(self, ref: str) -> Optional[Student]:
        """Look a student up by internal id, then student code, then email."""
        row = self.conn.execute("SELECT * FROM students WHERE id = ?", (ref,)).fetchone()
        if row is None:
            row = self.conn.execute(
                "SELECT * FROM students WHERE student_code = ?",
                (IdentifierValidator.normalize(ref),),
            ).fetchone()
        if row is None and "@" in ref:
            row = self.conn.execute(
                "SELECT * FROM students WHERE lower(email) = ? ORDER BY created_at LIMIT 1",
                (ref.strip().lower(),),
            ).fetchone()
        return Student.from_row(row) if row else None

    def require(self, ref: str) -> Student:
        student = self.resolve(ref)
        if student is None:
            raise StudentNotFound(f"Student {ref} not found.")
        return student

    def add(self, student_code: str, name: str, *, email: Optional[str] = None,
            department: Optional[str] = None, now: Optional[datetime] = None) -> Student:
        student = Student(
            id=new_id("st"),
            student_code=IdentifierValidator.require(student_code, "student code"),
            name=TextValidator.require(name, "Name"),
            email=TextValidator.optional(email),
            department=TextValidator.optional(department),
            created_at=now or utcnow(),
        )
        exists = self.conn.execute(
            "SELECT 1 FROM students WHERE student_code = ?", (student.student_code,)
        ).fetchone()
        if exists:
            raise ValidationError(f"Student code {student.student_code} already exists.")
        self.conn.execute(
            """
            INSERT INTO students (id, student_code, name, email, department, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (student.id, student.student_code, student.name, student.email,
             student.department, to_db_time(student.created_at)),
        )
        return student
