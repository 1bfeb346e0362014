import logging
from datetime import date, datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Response, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from bookbeacon.book import Book
from bookbeacon.config import settings
from bookbeacon.database import get_db_connection
from bookbeacon.exceptions import (
    BookNotFoundError,
    ConflictError,
    LibraryError,
    MemberNotFoundError,
    NotFoundError,
    RuleViolationError,
    TransactionNotFoundError,
)
from bookbeacon.library import Library
from bookbeacon.member import Member

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

library = Library()

app = FastAPI(title=f"{settings.app_name} API", version=settings.app_version)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that validates the API key."""
    if api_key == settings.api_key:
        return api_key
    else:
        raise HTTPException(
            status_code=403,
            detail="Could not validate credentials",
        )


def _http_error(e: Exception) -> HTTPException:
    """Map a library failure onto its HTTP status."""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ConflictError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, RuleViolationError):
        return HTTPException(status_code=400, detail=str(e))
    # plain ValueError: malformed field value (ISBN, email, quantity)
    return HTTPException(status_code=422, detail=str(e))


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health endpoint with a quick database round trip."""
    db_ok = True
    try:
        conn = get_db_connection(library.db_file)
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except Exception as e:
        logger.error(f"Health check database probe failed: {e}")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "version": settings.app_version,
    }


# --- Models ---
class BookModel(BaseModel):
    id: int
    title: str
    author: str
    category: Optional[str] = None
    isbn: str
    quantity: int
    available: int
    published_year: Optional[int] = None
    description: Optional[str] = None


class BookCreateModel(BaseModel):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    isbn: str = Field(min_length=10, description="ISBN-10 or ISBN-13, hyphens allowed")
    quantity: int = Field(default=1, ge=0)
    category: Optional[str] = None
    published_year: Optional[int] = None
    description: Optional[str] = None


class UpdateBookModel(BaseModel):
    """Catalog fields only; copy counts follow quantity changes."""
    title: Optional[str] = None
    author: Optional[str] = None
    category: Optional[str] = None
    isbn: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=0)
    published_year: Optional[int] = None
    description: Optional[str] = None


class MemberModel(BaseModel):
    id: int
    name: str
    email: str
    phone: Optional[str] = None
    role: Optional[str] = None
    membership_id: str
    join_date: Optional[date] = None
    status: str
    books_issued: int


class MemberCreateModel(BaseModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    membership_id: str = Field(min_length=1)
    phone: Optional[str] = None
    role: Optional[str] = None
    join_date: Optional[date] = None
    status: Optional[str] = None


class UpdateMemberModel(BaseModel):
    """Profile fields only; the loan count is owned by the ledger."""
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[str] = None
    membership_id: Optional[str] = None
    join_date: Optional[date] = None
    status: Optional[str] = None


class TransactionModel(BaseModel):
    id: int
    member_id: int
    book_id: int
    issue_date: date
    due_date: date
    return_date: Optional[date] = None
    status: str
    fine: float
    member_name: Optional[str] = None
    book_title: Optional[str] = None
    book_isbn: Optional[str] = None


class IssueRequest(BaseModel):
    """Identify the member and the book by surrogate id or by natural key."""
    member_id: Optional[int] = None
    book_id: Optional[int] = None
    membership_id: Optional[str] = None
    isbn: Optional[str] = None


class ReturnRequest(BaseModel):
    membership_id: str
    isbn: str


class StatsModel(BaseModel):
    total_books: int
    total_copies: int
    available_copies: int
    total_members: int
    active_members: int
    issued_books: int
    overdue_books: int
    total_fines: float


# --- Helpers ---
def _book_model(book: Book) -> BookModel:
    return BookModel(**book.to_dict())


def _member_model(member: Member) -> MemberModel:
    return MemberModel(**member.to_dict())


def _transaction_models(transactions) -> List[TransactionModel]:
    return [TransactionModel(**t.to_dict()) for t in transactions]


def _resolve_issue_request(request: IssueRequest):
    """Turn natural keys into surrogate ids."""
    member_id = request.member_id
    if member_id is None:
        if not request.membership_id:
            raise HTTPException(status_code=422, detail="Provide member_id or membership_id.")
        member = library.find_member_by_membership_id(request.membership_id)
        if not member:
            raise MemberNotFoundError(f"Member with membership ID {request.membership_id} not found.")
        member_id = member.id

    book_id = request.book_id
    if book_id is None:
        if not request.isbn:
            raise HTTPException(status_code=422, detail="Provide book_id or isbn.")
        book = library.find_book_by_isbn(request.isbn)
        if not book:
            raise BookNotFoundError(f"Book with ISBN {request.isbn} not found.")
        book_id = book.id

    return member_id, book_id


# --- Statistics ---
@app.get("/stats", response_model=StatsModel)
def get_library_stats():
    """Dashboard figures for the whole library."""
    return StatsModel(**library.get_statistics())


# --- Books ---
@app.get("/books", response_model=List[BookModel])
def get_books(q: Optional[str] = Query(None, description="Search title, author, category or ISBN")):
    """List all books, optionally filtered by a search query."""
    books = library.search_books(q) if q else library.list_books()
    return [_book_model(b) for b in books]


@app.get("/books/isbn/{isbn}", response_model=BookModel)
def get_book_by_isbn(isbn: str):
    book = library.find_book_by_isbn(isbn)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return _book_model(book)


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: int):
    """Get a single book by id."""
    book = library.get_book(book_id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return _book_model(book)


@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_book(payload: BookCreateModel):
    """Add a new title to the catalog; all copies start available."""
    book = Book(**payload.model_dump())
    try:
        library.add_book(book)
    except (LibraryError, ValueError) as e:
        raise _http_error(e) from e
    return _book_model(book)


@app.put("/books/{book_id}", response_model=BookModel, dependencies=[Depends(get_api_key)])
def update_book(book_id: int, update: UpdateBookModel):
    try:
        book = library.update_book(book_id, **update.model_dump(exclude_unset=True))
    except (LibraryError, ValueError) as e:
        raise _http_error(e) from e
    return _book_model(book)


@app.delete("/books/{book_id}", status_code=204, dependencies=[Depends(get_api_key)])
def delete_book(book_id: int):
    try:
        library.remove_book(book_id)
    except LibraryError as e:
        raise _http_error(e) from e
    return Response(status_code=204)


# --- Members ---
@app.get("/members", response_model=List[MemberModel])
def get_members(q: Optional[str] = Query(None, description="Search name, email, membership ID or role")):
    """List all members, optionally filtered by a search query."""
    members = library.search_members(q) if q else library.list_members()
    return [_member_model(m) for m in members]


@app.get("/members/membership/{membership_id}", response_model=MemberModel)
def get_member_by_membership_id(membership_id: str):
    member = library.find_member_by_membership_id(membership_id)
    if not member:
        raise HTTPException(status_code=404, detail="Member not found.")
    return _member_model(member)


@app.get("/members/{member_id}", response_model=MemberModel)
def get_member(member_id: int):
    member = library.get_member(member_id)
    if not member:
        raise HTTPException(status_code=404, detail="Member not found.")
    return _member_model(member)


@app.post("/members", response_model=MemberModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_member(payload: MemberCreateModel):
    """Register a new member."""
    member = Member(**payload.model_dump())
    try:
        library.add_member(member)
    except (LibraryError, ValueError) as e:
        raise _http_error(e) from e
    return _member_model(member)


@app.put("/members/{member_id}", response_model=MemberModel, dependencies=[Depends(get_api_key)])
def update_member(member_id: int, update: UpdateMemberModel):
    try:
        member = library.update_member(member_id, **update.model_dump(exclude_unset=True))
    except (LibraryError, ValueError) as e:
        raise _http_error(e) from e
    return _member_model(member)


@app.delete("/members/{member_id}", status_code=204, dependencies=[Depends(get_api_key)])
def delete_member(member_id: int):
    try:
        library.remove_member(member_id)
    except LibraryError as e:
        raise _http_error(e) from e
    return Response(status_code=204)


# --- Transactions ---
@app.post("/transactions/issue", response_model=TransactionModel, dependencies=[Depends(get_api_key)])
def issue_book(request: IssueRequest):
    """Lend a book to a member."""
    try:
        member_id, book_id = _resolve_issue_request(request)
        transaction = library.ledger.issue(member_id, book_id)
    except LibraryError as e:
        raise _http_error(e) from e
    return TransactionModel(**transaction.to_dict())


@app.post("/transactions/return/{transaction_id}", response_model=TransactionModel,
          dependencies=[Depends(get_api_key)])
def return_book(transaction_id: int):
    """Close a loan and settle any overdue fine."""
    try:
        transaction = library.ledger.return_book(transaction_id)
    except LibraryError as e:
        raise _http_error(e) from e
    return TransactionModel(**transaction.to_dict())


@app.post("/transactions/return", response_model=TransactionModel, dependencies=[Depends(get_api_key)])
def return_book_by_keys(request: ReturnRequest):
    """Close the open loan identified by membership ID and ISBN."""
    loan = library.ledger.active_loan(request.membership_id, request.isbn)
    if not loan:
        raise _http_error(TransactionNotFoundError(
            f"No open loan of ISBN {request.isbn} for membership ID {request.membership_id}."
        ))
    try:
        transaction = library.ledger.return_book(loan.id)
    except LibraryError as e:
        raise _http_error(e) from e
    return TransactionModel(**transaction.to_dict())


@app.get("/transactions", response_model=List[TransactionModel])
def get_transactions(status: Optional[str] = Query(None, description="ISSUED | RETURNED")):
    try:
        transactions = library.ledger.list_transactions(status)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return _transaction_models(transactions)


@app.get("/transactions/overdue", response_model=List[TransactionModel])
def get_overdue_transactions():
    return _transaction_models(library.ledger.list_overdue())


@app.get("/transactions/member/{member_id}", response_model=List[TransactionModel])
def get_member_transactions(member_id: int):
    """Borrowing history of one member."""
    if not library.get_member(member_id):
        raise HTTPException(status_code=404, detail="Member not found.")
    return _transaction_models(library.ledger.transactions_for_member(member_id))


@app.get("/transactions/book/{book_id}", response_model=List[TransactionModel])
def get_book_transactions(book_id: int):
    """Borrowing history of one book."""
    if not library.get_book(book_id):
        raise HTTPException(status_code=404, detail="Book not found.")
    return _transaction_models(library.ledger.transactions_for_book(book_id))


@app.get("/transactions/{transaction_id}", response_model=TransactionModel)
def get_transaction(transaction_id: int):
    transaction = library.ledger.get_transaction(transaction_id)
    if not transaction:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return TransactionModel(**transaction.to_dict())
