import logging
import sqlite3
from datetime import date, timedelta
from typing import Callable, List, Optional

from bookbeacon.config import settings
from bookbeacon.database import atomic, get_db_connection
from bookbeacon.exceptions import (
    AlreadyReturnedError,
    BookNotFoundError,
    BookUnavailableError,
    LoanLimitReachedError,
    MemberInactiveError,
    MemberNotFoundError,
    RuleViolationError,
    TransactionNotFoundError,
)
from bookbeacon.member import ACTIVE
from bookbeacon.transaction import ISSUED, RETURNED, STATUSES, Transaction
from bookbeacon.validators import ISBNValidator

logger = logging.getLogger(__name__)

_TRANSACTION_SELECT = """
    SELECT t.id, t.member_id, t.book_id, t.issue_date, t.due_date, t.return_date,
           t.status, t.fine, m.name AS member_name, b.title AS book_title, b.isbn AS book_isbn
    FROM transactions t
    JOIN members m ON m.id = t.member_id
    JOIN books b ON b.id = t.book_id
"""


class BorrowingLedger:
    """Owns the issue/return lifecycle and its effect on the copy and loan counters.

    Every mutation of ``books.available`` and ``members.books_issued`` happens
    here, inside a single write transaction together with the transaction row
    it belongs to. ``clock`` supplies "today" whenever a caller does not pass
    an explicit date.
    """

    def __init__(self, db_file: Optional[str] = None, clock: Callable[[], date] = date.today,
                 loan_period_days: Optional[int] = None, max_books_per_member: Optional[int] = None,
                 fine_per_day: Optional[float] = None) -> None:
        self.db_file = db_file
        self.clock = clock
        self.loan_period_days = settings.loan_period_days if loan_period_days is None else loan_period_days
        self.max_books_per_member = (
            settings.max_books_per_member if max_books_per_member is None else max_books_per_member
        )
        self.fine_per_day = settings.fine_per_day if fine_per_day is None else fine_per_day

    # ------------------------- Lifecycle ------------------------- #
    def issue(self, member_id: int, book_id: int, today: Optional[date] = None) -> Transaction:
        """Lend one copy of a book to a member."""
        today = today or self.clock()
        conn = get_db_connection(self.db_file)
        try:
            with atomic(conn):
                member = conn.execute(
                    "SELECT id, name, status, books_issued FROM members WHERE id = ?", (member_id,)
                ).fetchone()
                if not member:
                    raise MemberNotFoundError(f"Member {member_id} not found.")

                book = conn.execute(
                    "SELECT id, title, available FROM books WHERE id = ?", (book_id,)
                ).fetchone()
                if not book:
                    raise BookNotFoundError(f"Book {book_id} not found.")

                if member["status"] != ACTIVE:
                    raise MemberInactiveError(f"Member {member['name']} is {member['status']} and cannot borrow.")
                if book["available"] <= 0:
                    raise BookUnavailableError(f"Book '{book['title']}' is not available.")
                if member["books_issued"] >= self.max_books_per_member:
                    raise LoanLimitReachedError(
                        f"Member {member['name']} has reached the limit of {self.max_books_per_member} books."
                    )

                # Guarded decrements: the WHERE clause keeps the counters in range even
                # if the row changed after the read above
                cursor = conn.execute(
                    "UPDATE books SET available = available - 1 WHERE id = ? AND available > 0",
                    (book_id,),
                )
                if cursor.rowcount != 1:
                    raise BookUnavailableError(f"Book '{book['title']}' is not available.")

                cursor = conn.execute(
                    """
                    UPDATE members SET books_issued = books_issued + 1
                    WHERE id = ? AND status = ? AND books_issued < ?
                    """,
                    (member_id, ACTIVE, self.max_books_per_member),
                )
                if cursor.rowcount != 1:
                    raise LoanLimitReachedError(
                        f"Member {member['name']} has reached the limit of {self.max_books_per_member} books."
                    )

                due_date = today + timedelta(days=self.loan_period_days)
                cursor = conn.execute(
                    """
                    INSERT INTO transactions (member_id, book_id, issue_date, due_date, status, fine)
                    VALUES (?, ?, ?, ?, ?, 0)
                    """,
                    (member_id, book_id, today.isoformat(), due_date.isoformat(), ISSUED),
                )
                transaction = self._fetch(conn, cursor.lastrowid)
        except RuleViolationError as e:
            logger.warning(f"Issue rejected for member={member_id} book={book_id}: {e}")
            raise
        finally:
            conn.close()

        logger.info(
            f"Issued book={book_id} to member={member_id} as transaction={transaction.id}, due {transaction.due_date}"
        )
        return transaction

    def return_book(self, transaction_id: int, today: Optional[date] = None) -> Transaction:
        """Close an open loan, computing the overdue fine and restoring the counters."""
        today = today or self.clock()
        conn = get_db_connection(self.db_file)
        try:
            with atomic(conn):
                row = conn.execute(
                    "SELECT id, member_id, book_id, due_date, status FROM transactions WHERE id = ?",
                    (transaction_id,),
                ).fetchone()
                if not row:
                    raise TransactionNotFoundError(f"Transaction {transaction_id} not found.")
                if row["status"] == RETURNED:
                    raise AlreadyReturnedError(f"Transaction {transaction_id} has already been returned.")

                fine = self.calculate_fine(date.fromisoformat(row["due_date"]), today)
                cursor = conn.execute(
                    """
                    UPDATE transactions SET status = ?, return_date = ?, fine = ?
                    WHERE id = ? AND status = ?
                    """,
                    (RETURNED, today.isoformat(), fine, transaction_id, ISSUED),
                )
                if cursor.rowcount != 1:
                    raise AlreadyReturnedError(f"Transaction {transaction_id} has already been returned.")

                # CHECK constraints on both tables reject an out-of-range counter
                conn.execute("UPDATE books SET available = available + 1 WHERE id = ?", (row["book_id"],))
                conn.execute(
                    "UPDATE members SET books_issued = books_issued - 1 WHERE id = ?", (row["member_id"],)
                )
                transaction = self._fetch(conn, transaction_id)
        except RuleViolationError as e:
            logger.warning(f"Return rejected for transaction={transaction_id}: {e}")
            raise
        finally:
            conn.close()

        logger.info(f"Returned transaction={transaction_id} on {today}, fine={transaction.fine:.2f}")
        return transaction

    def calculate_fine(self, due_date: date, returned_on: date) -> float:
        """Whole days past the due date times the daily rate; zero when on time."""
        days_late = (returned_on - due_date).days
        if days_late <= 0:
            return 0.0
        return round(days_late * self.fine_per_day, 2)

    # ------------------------- Queries ------------------------- #
    def get_transaction(self, transaction_id: int) -> Optional[Transaction]:
        conn = get_db_connection(self.db_file)
        try:
            return self._fetch(conn, transaction_id)
        finally:
            conn.close()

    def transactions_for_member(self, member_id: int) -> List[Transaction]:
        return self._query("WHERE t.member_id = ?", (member_id,))

    def transactions_for_book(self, book_id: int) -> List[Transaction]:
        return self._query("WHERE t.book_id = ?", (book_id,))

    def list_transactions(self, status: Optional[str] = None) -> List[Transaction]:
        if status is None:
            return self._query("", ())
        status = status.upper()
        if status not in STATUSES:
            raise ValueError(f"Invalid status '{status}'. Allowed: {', '.join(STATUSES)}")
        return self._query("WHERE t.status = ?", (status,))

    def list_overdue(self, today: Optional[date] = None) -> List[Transaction]:
        """Open loans whose due date has passed."""
        today = today or self.clock()
        # ISO dates compare correctly as strings
        return self._query("WHERE t.status = ? AND t.due_date < ?", (ISSUED, today.isoformat()))

    def active_loan(self, membership_id: str, isbn: str) -> Optional[Transaction]:
        """The open loan of a given book to a given member, addressed by natural keys."""
        loans = self._query(
            "WHERE m.membership_id = ? AND b.isbn = ? AND t.status = ?",
            (membership_id.strip(), ISBNValidator.normalize_isbn(isbn), ISSUED),
        )
        return loans[0] if loans else None

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _fetch(conn: sqlite3.Connection, transaction_id: int) -> Optional[Transaction]:
        row = conn.execute(f"{_TRANSACTION_SELECT} WHERE t.id = ?", (transaction_id,)).fetchone()
        return Transaction.from_dict(dict(row)) if row else None

    def _query(self, where: str, params: tuple) -> List[Transaction]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(f"{_TRANSACTION_SELECT} {where} ORDER BY t.id", params).fetchall()
            return [Transaction.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()
