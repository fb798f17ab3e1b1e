import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from libsync.circulation import Circulation
from libsync.config import settings
from libsync.database import read_connection
from libsync.errors import CirculationError

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)

circulation = Circulation(db_file=os.environ.get("LIBRARY_DB_FILE") or None)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("%s %s using database %s", settings.app_name, settings.app_version,
                circulation.db_file or "default")
    yield


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Errors ---
@app.exception_handler(CirculationError)
async def circulation_error_handler(request: Request, exc: CirculationError):
    """Business and storage errors keep their stable code in the response body."""
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency validating the API key."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Models ---
class BookCreateModel(BaseModel):
    accession_number: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    category: Optional[str] = None


class BookModel(BaseModel):
    id: str
    accession_number: str
    title: str
    author: str
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    category: Optional[str] = None
    status: str
    available: bool
    created_at: Optional[str] = None


class StudentCreateModel(BaseModel):
    student_code: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    email: Optional[str] = None
    department: Optional[str] = None


class StudentModel(BaseModel):
    id: str
    student_code: str
    name: str
    email: Optional[str] = None
    department: Optional[str] = None
    created_at: Optional[str] = None


class ReservationCreateModel(BaseModel):
    book: str = Field(..., min_length=1, description="Book id or accession number")
    student: str = Field(..., min_length=1, description="Student id or student code")


class ReservationModel(BaseModel):
    id: str
    book_id: str
    student_id: str
    reserved_at: str
    status: str
    fulfilled_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    loan_id: Optional[str] = None


class IssueRequestModel(BaseModel):
    student: str = Field(..., min_length=1, description="Student id or student code")
    book: str = Field(..., min_length=1, description="Book id or accession number")
    due_date: Optional[str] = Field(None, description="ISO date or datetime; defaults to the loan duration")
    issued_by: Optional[str] = None


class ReturnRequestModel(BaseModel):
    book: str = Field(..., min_length=1, description="Book id or accession number")
    student: Optional[str] = Field(None, description="Student id or student code")


class LoanModel(BaseModel):
    id: str
    book_id: str
    student_id: str
    issue_date: str
    due_date: str
    return_date: Optional[str] = None
    status: str
    fine: int
    issued_by: Optional[str] = None
    last_reminder_sent_at: Optional[str] = None


class ReturnReceiptModel(BaseModel):
    loan: LoanModel
    fine: int
    book: BookModel
    next_reservation: Optional[ReservationModel] = None


class ReminderModel(BaseModel):
    loan: LoanModel
    accrued_fine: int
    sent_at: str


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health endpoint with a quick database round-trip."""
    db_ok = True
    try:
        with read_connection(circulation.db_file) as conn:
            conn.execute("SELECT 1")
    except CirculationError:
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
    }


# --- Books ---
@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_book(payload: BookCreateModel):
    """Load one copy into the inventory."""
    book = circulation.add_book(payload.accession_number, payload.title, payload.author,
                                isbn=payload.isbn, publisher=payload.publisher,
                                category=payload.category)
    return BookModel(**book.to_dict())


@app.get("/books/{book_ref}", response_model=BookModel)
def get_book(book_ref: str):
    return BookModel(**circulation.get_book(book_ref).to_dict())


@app.get("/books/{book_ref}/reservations", response_model=List[ReservationModel])
def get_book_reservations(book_ref: str):
    return [ReservationModel(**r.to_dict()) for r in circulation.book_reservations(book_ref)]


# --- Students ---
@app.post("/students", response_model=StudentModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_student(payload: StudentCreateModel):
    student = circulation.add_student(payload.student_code, payload.name,
                                      email=payload.email, department=payload.department)
    return StudentModel(**student.to_dict())


@app.get("/students/{student_ref}/loans", response_model=List[LoanModel])
def get_student_loans(student_ref: str):
    return [LoanModel(**loan.to_dict()) for loan in circulation.student_loans(student_ref)]


@app.get("/students/{student_ref}/reservations", response_model=List[ReservationModel])
def get_student_reservations(student_ref: str):
    return [ReservationModel(**r.to_dict()) for r in circulation.student_reservations(student_ref)]


# --- Reservations ---
@app.post("/reservations", response_model=ReservationModel, status_code=201,
          dependencies=[Depends(get_api_key)])
def reserve_book(payload: ReservationCreateModel):
    reservation = circulation.reserve_book(payload.book, payload.student)
    return ReservationModel(**reservation.to_dict())


@app.post("/reservations/{reservation_id}/cancel", response_model=ReservationModel,
          dependencies=[Depends(get_api_key)])
def cancel_reservation(reservation_id: str):
    return ReservationModel(**circulation.cancel_reservation(reservation_id).to_dict())


@app.post("/reservations/{reservation_id}/fulfill", response_model=ReservationModel,
          dependencies=[Depends(get_api_key)])
def fulfill_reservation(reservation_id: str):
    return ReservationModel(**circulation.fulfill_reservation(reservation_id).to_dict())


# --- Loans ---
@app.post("/loans/issue", response_model=LoanModel, status_code=201, dependencies=[Depends(get_api_key)])
def issue_book(payload: IssueRequestModel):
    loan = circulation.issue_book(payload.student, payload.book, payload.due_date, payload.issued_by)
    return LoanModel(**loan.to_dict())


@app.post("/loans/return", response_model=ReturnReceiptModel, dependencies=[Depends(get_api_key)])
def return_book_by_reference(payload: ReturnRequestModel):
    """Return the open loan of a book, optionally narrowed to one student."""
    receipt = circulation.return_book(book_ref=payload.book, student_ref=payload.student)
    return ReturnReceiptModel(**receipt.to_dict())


@app.get("/loans/issued", response_model=List[LoanModel])
def get_issued_loans():
    return [LoanModel(**loan.to_dict()) for loan in circulation.issued_loans()]


@app.get("/loans/overdue", response_model=List[LoanModel])
def get_overdue_loans(limit: int = Query(100, ge=1, le=1000, description="Maximum number of loans")):
    """Open loans past their due date, earliest due first."""
    return [LoanModel(**loan.to_dict()) for loan in circulation.get_overdue_loans()[:limit]]


@app.get("/loans/{loan_id}", response_model=LoanModel)
def get_loan(loan_id: str):
    return LoanModel(**circulation.get_loan(loan_id).to_dict())


@app.post("/loans/{loan_id}/return", response_model=ReturnReceiptModel, dependencies=[Depends(get_api_key)])
def return_book(loan_id: str):
    return ReturnReceiptModel(**circulation.return_book(loan_id=loan_id).to_dict())


@app.post("/loans/{loan_id}/reminder", response_model=ReminderModel, dependencies=[Depends(get_api_key)])
def record_reminder(loan_id: str):
    """Record that an overdue reminder went out; delivery itself happens elsewhere."""
    return ReminderModel(**circulation.record_reminder(loan_id).to_dict())
