import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from bookbeacon.config import settings

logger = logging.getLogger(__name__)


def resolve_database_file(db_file: Optional[str] = None) -> str:
    """Pick the SQLite file to use.

    Priority:
    1) an explicit ``db_file`` argument
    2) LIBRARY_DB_FILE read at call time (tests switch it per test)
    3) the configured default
    """
    return db_file or os.environ.get("LIBRARY_DB_FILE") or settings.database_file


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a short-lived connection to the SQLite database.

    The connection runs in autocommit mode; writes that must be atomic go
    through ``atomic()``.
    """
    conn = sqlite3.connect(
        resolve_database_file(db_file),
        timeout=settings.database_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


@contextmanager
def atomic(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside one write transaction.

    BEGIN IMMEDIATE takes the database write lock up front, so two writers
    doing read-modify-write on the same row are serialized instead of both
    acting on a stale read.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def create_tables(db_file: Optional[str] = None) -> None:
    """Creates the required tables if they do not exist."""
    conn = get_db_connection(db_file)
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                category TEXT,
                isbn TEXT NOT NULL UNIQUE,
                quantity INTEGER NOT NULL DEFAULT 1 CHECK(quantity >= 0),
                available INTEGER NOT NULL DEFAULT 1,
                published_year INTEGER,
                description TEXT,
                CHECK(available >= 0 AND available <= quantity)
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS members (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                phone TEXT,
                role TEXT,
                membership_id TEXT NOT NULL UNIQUE,
                join_date TEXT,
                status TEXT NOT NULL DEFAULT 'Active',
                books_issued INTEGER NOT NULL DEFAULT 0 CHECK(books_issued >= 0)
            )
        """)

        # Transactions are never deleted, so the referenced rows are kept too
        conn.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                member_id INTEGER NOT NULL,
                book_id INTEGER NOT NULL,
                issue_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL CHECK(status IN ('ISSUED', 'RETURNED')),
                fine REAL NOT NULL DEFAULT 0,
                FOREIGN KEY (member_id) REFERENCES members(id) ON DELETE RESTRICT,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE RESTRICT,
                CHECK((status = 'RETURNED') = (return_date IS NOT NULL))
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_books_author ON books(author)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_member_id ON transactions(member_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_book_id ON transactions(book_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_status ON transactions(status)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_status_due ON transactions(status, due_date)")
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initializes the database, creating tables when needed."""
    create_tables(db_file)
    logger.debug(f"Database ready at {resolve_database_file(db_file)}")
