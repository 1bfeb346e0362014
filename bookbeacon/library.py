import logging
import re
import sqlite3
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from bookbeacon.book import Book
from bookbeacon.database import atomic, get_db_connection, initialize_database, resolve_database_file
from bookbeacon.exceptions import (
    BookNotFoundError,
    ConflictError,
    HasLoanHistoryError,
    MemberNotFoundError,
    QuantityBelowLoansError,
)
from bookbeacon.ledger import BorrowingLedger
from bookbeacon.member import ACTIVE, Member
from bookbeacon.transaction import ISSUED, RETURNED
from bookbeacon.validators import ISBNValidator, TextValidator

logger = logging.getLogger(__name__)

_BOOK_COLUMNS = "id, title, author, category, isbn, quantity, available, published_year, description"
_MEMBER_COLUMNS = "id, name, email, phone, role, membership_id, join_date, status, books_issued"
_LIKE = "LIKE ? ESCAPE '\\'"
_ISBN_QUERY = re.compile(r"[0-9Xx\s-]+")


def _like_pattern(text: str) -> str:
    """Substring pattern for LIKE with the wildcard characters taken literally."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class Library:
    """Manages the book catalog, the member registry and their persistence.

    Copy and loan counters are read-only here; they change only through
    ``self.ledger``.
    """

    def __init__(self, db_file: Optional[str] = None, clock: Callable[[], date] = date.today) -> None:
        self.db_file = resolve_database_file(db_file)
        self.clock = clock

        # Make sure the schema is current on every start
        initialize_database(self.db_file)

        self.ledger = BorrowingLedger(self.db_file, clock=clock)

    # ------------------------- Books ------------------------- #
    def add_book(self, book: Book) -> Book:
        """Add a new title to the catalog. Prevent duplicates by ISBN."""
        book.isbn = ISBNValidator.normalize_isbn(book.isbn)
        if not ISBNValidator.is_valid_isbn(book.isbn):
            raise ValueError("Invalid ISBN format.")
        if not TextValidator.is_non_empty(book.title) or not TextValidator.is_non_empty(book.author):
            raise ValueError("Title and author are required.")
        if book.quantity is None or book.quantity < 0:
            raise ValueError("Quantity must be zero or greater.")
        if self.isbn_exists(book.isbn):
            raise ConflictError(f"Book with ISBN {book.isbn} already exists.")

        # Every copy of a new title starts on the shelf
        book.available = book.quantity

        conn = get_db_connection(self.db_file)
        try:
            with atomic(conn):
                cursor = conn.execute(
                    """
                    INSERT INTO books (title, author, category, isbn, quantity, available,
                                       published_year, description)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        book.title, book.author, book.category, book.isbn, book.quantity,
                        book.available, book.published_year, book.description,
                    ),
                )
                book.id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Book with ISBN {book.isbn} already exists.") from e
        finally:
            conn.close()

        logger.info(f"Added book id={book.id} isbn={book.isbn} quantity={book.quantity}")
        return book

    def get_book(self, book_id: int) -> Optional[Book]:
        return self._fetch_one(f"SELECT {_BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,), Book)

    def find_book_by_isbn(self, isbn: str) -> Optional[Book]:
        """Find a single book by ISBN."""
        norm = ISBNValidator.normalize_isbn(isbn)
        return self._fetch_one(f"SELECT {_BOOK_COLUMNS} FROM books WHERE isbn = ?", (norm,), Book)

    def isbn_exists(self, isbn: str) -> bool:
        return self._exists("SELECT 1 FROM books WHERE isbn = ?", (ISBNValidator.normalize_isbn(isbn),))

    def list_books(self) -> List[Book]:
        """List every book in the catalog (fresh on each call)."""
        return self._fetch_all(f"SELECT {_BOOK_COLUMNS} FROM books ORDER BY title, id", (), Book)

    def search_books(self, query: str) -> List[Book]:
        """Search books by title, author, category or ISBN.

        A query made only of ISBN characters is compared without hyphens or
        spaces, the way ISBNs are stored.
        """
        query = query.strip()
        pattern = _like_pattern(query)
        isbn_query = query
        if _ISBN_QUERY.fullmatch(query):
            isbn_query = ISBNValidator.normalize_isbn(query) or query
        return self._fetch_all(
            f"""
            SELECT {_BOOK_COLUMNS} FROM books
            WHERE title {_LIKE} OR author {_LIKE} OR category {_LIKE} OR isbn {_LIKE}
            ORDER BY title, id
            """,
            (pattern, pattern, pattern, _like_pattern(isbn_query)),
            Book,
        )

    def update_book(self, book_id: int, *, title: Optional[str] = None, author: Optional[str] = None,
                    category: Optional[str] = None, isbn: Optional[str] = None, quantity: Optional[int] = None,
                    published_year: Optional[int] = None, description: Optional[str] = None) -> Book:
        """Update catalog fields of a book.

        ``available`` cannot be set directly: a quantity change shifts it by the
        same amount, and is refused when it would leave fewer copies than are
        currently on loan.
        """
        update_fields: Dict[str, Any] = {}
        if title is not None:
            if not TextValidator.is_non_empty(title):
                raise ValueError("Title is required.")
            update_fields["title"] = title.strip()
        if author is not None:
            if not TextValidator.is_non_empty(author):
                raise ValueError("Author is required.")
            update_fields["author"] = author.strip()
        if category is not None:
            update_fields["category"] = category
        if published_year is not None:
            update_fields["published_year"] = published_year
        if description is not None:
            update_fields["description"] = description
        if isbn is not None:
            norm = ISBNValidator.normalize_isbn(isbn)
            if not ISBNValidator.is_valid_isbn(norm):
                raise ValueError("Invalid ISBN format.")
            update_fields["isbn"] = norm
        if quantity is not None and quantity < 0:
            raise ValueError("Quantity must be zero or greater.")

        conn = get_db_connection(self.db_file)
        try:
            with atomic(conn):
                row = conn.execute("SELECT quantity, available FROM books WHERE id = ?", (book_id,)).fetchone()
                if not row:
                    raise BookNotFoundError(f"Book {book_id} not found.")

                if quantity is not None and quantity != row["quantity"]:
                    on_loan = row["quantity"] - row["available"]
                    new_available = row["available"] + (quantity - row["quantity"])
                    if new_available < 0:
                        raise QuantityBelowLoansError(
                            f"Quantity {quantity} is below the {on_loan} copies currently on loan."
                        )
                    update_fields["quantity"] = quantity
                    update_fields["available"] = new_available

                if "isbn" in update_fields:
                    clash = conn.execute(
                        "SELECT 1 FROM books WHERE isbn = ? AND id != ?", (update_fields["isbn"], book_id)
                    ).fetchone()
                    if clash:
                        raise ConflictError(f"Book with ISBN {update_fields['isbn']} already exists.")

                if update_fields:
                    set_clause = ", ".join([f"{field} = ?" for field in update_fields.keys()])
                    params = list(update_fields.values()) + [book_id]
                    conn.execute(f"UPDATE books SET {set_clause} WHERE id = ?", params)
        except sqlite3.IntegrityError as e:
            raise ConflictError(str(e)) from e
        finally:
            conn.close()

        return self.get_book(book_id)

    def remove_book(self, book_id: int) -> None:
        conn = get_db_connection(self.db_file)
        try:
            with atomic(conn):
                if not conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone():
                    raise BookNotFoundError(f"Book {book_id} not found.")
                if conn.execute("SELECT 1 FROM transactions WHERE book_id = ? LIMIT 1", (book_id,)).fetchone():
                    raise HasLoanHistoryError(f"Book {book_id} has borrowing history and cannot be deleted.")
                conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
        finally:
            conn.close()
        logger.info(f"Removed book id={book_id}")

    # ------------------------- Members ------------------------- #
    def add_member(self, member: Member) -> Member:
        """Register a new member. Membership ID and email must be unique."""
        if not TextValidator.validate_name(member.name):
            raise ValueError("Member name is required.")
        if not TextValidator.validate_email(member.email):
            raise ValueError("Invalid email address.")
        if not TextValidator.is_non_empty(member.membership_id):
            raise ValueError("Membership ID is required.")

        member.email = TextValidator.normalize_email(member.email)
        if self.membership_id_exists(member.membership_id):
            raise ConflictError(f"Member with membership ID {member.membership_id} already exists.")
        if self._exists("SELECT 1 FROM members WHERE email = ?", (member.email,)):
            raise ConflictError(f"Member with email {member.email} already exists.")

        member.join_date = member.join_date or self.clock()
        member.status = member.status or ACTIVE
        member.books_issued = 0

        conn = get_db_connection(self.db_file)
        try:
            with atomic(conn):
                cursor = conn.execute(
                    """
                    INSERT INTO members (name, email, phone, role, membership_id, join_date, status, books_issued)
                    VALUES (?, ?, ?, ?, ?, ?, ?, 0)
                    """,
                    (
                        member.name, member.email, member.phone, member.role, member.membership_id,
                        member.join_date.isoformat(), member.status,
                    ),
                )
                member.id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Member with membership ID {member.membership_id} already exists.") from e
        finally:
            conn.close()

        logger.info(f"Registered member id={member.id} membership_id={member.membership_id}")
        return member

    def get_member(self, member_id: int) -> Optional[Member]:
        return self._fetch_one(f"SELECT {_MEMBER_COLUMNS} FROM members WHERE id = ?", (member_id,), Member)

    def find_member_by_membership_id(self, membership_id: str) -> Optional[Member]:
        return self._fetch_one(
            f"SELECT {_MEMBER_COLUMNS} FROM members WHERE membership_id = ?", (membership_id.strip(),), Member
        )

    def membership_id_exists(self, membership_id: str) -> bool:
        return self._exists("SELECT 1 FROM members WHERE membership_id = ?", (membership_id.strip(),))

    def list_members(self) -> List[Member]:
        return self._fetch_all(f"SELECT {_MEMBER_COLUMNS} FROM members ORDER BY name, id", (), Member)

    def search_members(self, query: str) -> List[Member]:
        """Search members by name, email, membership ID or role."""
        pattern = _like_pattern(query.strip())
        return self._fetch_all(
            f"""
            SELECT {_MEMBER_COLUMNS} FROM members
            WHERE name {_LIKE} OR email {_LIKE} OR membership_id {_LIKE} OR role {_LIKE}
            ORDER BY name, id
            """,
            (pattern, pattern, pattern, pattern),
            Member,
        )

    def update_member(self, member_id: int, *, name: Optional[str] = None, email: Optional[str] = None,
                      phone: Optional[str] = None, role: Optional[str] = None,
                      membership_id: Optional[str] = None, join_date: Optional[date] = None,
                      status: Optional[str] = None) -> Member:
        """Update profile fields of a member. ``books_issued`` is owned by the ledger."""
        update_fields: Dict[str, Any] = {}
        if name is not None:
            if not TextValidator.validate_name(name):
                raise ValueError("Member name is required.")
            update_fields["name"] = name.strip()
        if email is not None:
            if not TextValidator.validate_email(email):
                raise ValueError("Invalid email address.")
            update_fields["email"] = TextValidator.normalize_email(email)
        if phone is not None:
            update_fields["phone"] = phone
        if role is not None:
            update_fields["role"] = role
        if membership_id is not None:
            if not TextValidator.is_non_empty(membership_id):
                raise ValueError("Membership ID is required.")
            update_fields["membership_id"] = membership_id.strip()
        if join_date is not None:
            update_fields["join_date"] = join_date.isoformat()
        if status is not None and status.strip():
            update_fields["status"] = status.strip()

        conn = get_db_connection(self.db_file)
        try:
            with atomic(conn):
                if not conn.execute("SELECT 1 FROM members WHERE id = ?", (member_id,)).fetchone():
                    raise MemberNotFoundError(f"Member {member_id} not found.")
                for key in ("membership_id", "email"):
                    if key in update_fields:
                        clash = conn.execute(
                            f"SELECT 1 FROM members WHERE {key} = ? AND id != ?", (update_fields[key], member_id)
                        ).fetchone()
                        if clash:
                            label = "membership ID" if key == "membership_id" else "email"
                            raise ConflictError(f"Member with {label} {update_fields[key]} already exists.")

                if update_fields:
                    set_clause = ", ".join([f"{field} = ?" for field in update_fields.keys()])
                    params = list(update_fields.values()) + [member_id]
                    conn.execute(f"UPDATE members SET {set_clause} WHERE id = ?", params)
        finally:
            conn.close()

        return self.get_member(member_id)

    def remove_member(self, member_id: int) -> None:
        conn = get_db_connection(self.db_file)
        try:
            with atomic(conn):
                if not conn.execute("SELECT 1 FROM members WHERE id = ?", (member_id,)).fetchone():
                    raise MemberNotFoundError(f"Member {member_id} not found.")
                if conn.execute("SELECT 1 FROM transactions WHERE member_id = ? LIMIT 1", (member_id,)).fetchone():
                    raise HasLoanHistoryError(
                        f"Member {member_id} has borrowing history and cannot be deleted; set status to Inactive instead."
                    )
                conn.execute("DELETE FROM members WHERE id = ?", (member_id,))
        finally:
            conn.close()
        logger.info(f"Removed member id={member_id}")

    # ------------------------- Statistics ------------------------- #
    def get_statistics(self, today: Optional[date] = None) -> Dict[str, Any]:
        """Get library dashboard statistics."""
        today = today or self.clock()
        conn = get_db_connection(self.db_file)
        try:
            books = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(quantity), 0), COALESCE(SUM(available), 0) FROM books"
            ).fetchone()
            members = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(CASE WHEN status = ? THEN 1 ELSE 0 END), 0) FROM members",
                (ACTIVE,),
            ).fetchone()
            issued = conn.execute("SELECT COUNT(*) FROM transactions WHERE status = ?", (ISSUED,)).fetchone()[0]
            overdue = conn.execute(
                "SELECT COUNT(*) FROM transactions WHERE status = ? AND due_date < ?", (ISSUED, today.isoformat())
            ).fetchone()[0]
            fines = conn.execute(
                "SELECT COALESCE(SUM(fine), 0) FROM transactions WHERE status = ?", (RETURNED,)
            ).fetchone()[0]

            return {
                "total_books": books[0],
                "total_copies": books[1],
                "available_copies": books[2],
                "total_members": members[0],
                "active_members": members[1],
                "issued_books": issued,
                "overdue_books": overdue,
                "total_fines": round(float(fines), 2),
            }
        finally:
            conn.close()

    # ------------------------- Helpers ------------------------- #
    def _fetch_one(self, sql: str, params: tuple, model):
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(sql, params).fetchone()
            return model.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def _fetch_all(self, sql: str, params: tuple, model) -> list:
        conn = get_db_connection(self.db_file)
        try:
            return [model.from_dict(dict(row)) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def _exists(self, sql: str, params: tuple) -> bool:
        conn = get_db_connection(self.db_file)
        try:
            return conn.execute(sql, params).fetchone() is not None
        finally:
            conn.close()

    def close(self) -> None:
        """No-op: connections are opened and closed per operation."""
        return None
