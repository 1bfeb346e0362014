import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console

from bookbeacon.book import Book
from bookbeacon.config import settings
from bookbeacon.database import resolve_database_file
from bookbeacon.exceptions import LibraryError, TransactionNotFoundError
from bookbeacon.library import Library
from bookbeacon.member import Member
from bookbeacon.ui_helpers import (
    print_books,
    print_members,
    print_stats_result,
    print_transactions,
    set_output_mode,
)

APP_NAME = "Book Beacon CLI"

console = Console()


# Single Library instance per database file
class LibraryManager:
    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        """Get or create the Library instance."""
        current_db = resolve_database_file()
        # Rebuild when the database file changes (e.g. a per-test database)
        if cls._instance is None or current_db != cls._db_file_snapshot:
            cls._instance = Library(current_db)
            cls._db_file_snapshot = current_db
        return cls._instance


def _fail(e: Exception) -> None:
    print(f"Error: {e}")
    raise typer.Exit(code=1)


# --- Typer CLI application ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (e.g. output mode)."""
    if output:
        set_output_mode(output)


@app.command("books")
def cli_books(query: Optional[str] = typer.Option(None, "--query", "-q", help="Search title, author, category or ISBN")):
    """List catalog books."""
    lib = LibraryManager.get_instance()
    print_books(lib.search_books(query) if query else lib.list_books())


@app.command("members")
def cli_members(query: Optional[str] = typer.Option(None, "--query", "-q", help="Search name, email, membership ID or role")):
    """List registered members."""
    lib = LibraryManager.get_instance()
    print_members(lib.search_members(query) if query else lib.list_members())


@app.command("add-book")
def cli_add_book(
    isbn: str,
    title: str,
    author: str,
    quantity: int = typer.Option(1, "--quantity", "-n", min=0, help="Number of copies"),
    category: Optional[str] = typer.Option(None, "--category", "-c"),
    published_year: Optional[int] = typer.Option(None, "--year", "-y"),
):
    """Add a title to the catalog."""
    lib = LibraryManager.get_instance()
    try:
        book = lib.add_book(Book(title=title, author=author, isbn=isbn, quantity=quantity, category=category,
                                 published_year=published_year))
    except (LibraryError, ValueError) as e:
        _fail(e)
    print(f"Successfully added: {book.title} by {book.author} (id {book.id}, {book.quantity} copies)")


@app.command("add-member")
def cli_add_member(
    membership_id: str,
    name: str,
    email: str,
    phone: Optional[str] = typer.Option(None, "--phone"),
    role: Optional[str] = typer.Option(None, "--role", help="e.g. Student, Faculty, Staff"),
):
    """Register a new member."""
    lib = LibraryManager.get_instance()
    try:
        member = lib.add_member(Member(name=name, email=email, membership_id=membership_id, phone=phone, role=role))
    except (LibraryError, ValueError) as e:
        _fail(e)
    print(f"Registered member: {member.name} ({member.membership_id}), id {member.id}")


@app.command("issue")
def cli_issue(membership_id: str, isbn: str):
    """Issue a book (by ISBN) to a member (by membership ID)."""
    lib = LibraryManager.get_instance()
    member = lib.find_member_by_membership_id(membership_id)
    if not member:
        _fail(LookupError(f"Member with membership ID {membership_id} not found."))
    book = lib.find_book_by_isbn(isbn)
    if not book:
        _fail(LookupError(f"Book with ISBN {isbn} not found."))
    try:
        transaction = lib.ledger.issue(member.id, book.id)
    except LibraryError as e:
        _fail(e)
    print(f"Issued '{transaction.book_title}' to {transaction.member_name}; "
          f"transaction {transaction.id}, due {transaction.due_date.isoformat()}")


@app.command("return")
def cli_return(
    transaction_id: Optional[int] = typer.Argument(None, help="Transaction id"),
    membership_id: Optional[str] = typer.Option(None, "--member", "-m", help="Membership ID of the borrower"),
    isbn: Optional[str] = typer.Option(None, "--isbn", "-i", help="ISBN of the borrowed book"),
):
    """Return a book by transaction id, or by --member and --isbn."""
    lib = LibraryManager.get_instance()
    if transaction_id is None:
        if not (membership_id and isbn):
            _fail(ValueError("Provide a transaction id or both --member and --isbn."))
        loan = lib.ledger.active_loan(membership_id, isbn)
        if not loan:
            _fail(TransactionNotFoundError(f"No open loan of ISBN {isbn} for membership ID {membership_id}."))
        transaction_id = loan.id
    try:
        transaction = lib.ledger.return_book(transaction_id)
    except LibraryError as e:
        _fail(e)
    print(f"Returned '{transaction.book_title}' from {transaction.member_name}; fine {transaction.fine:.2f}")


@app.command("history")
def cli_history(
    membership_id: Optional[str] = typer.Option(None, "--member", "-m", help="Membership ID"),
    isbn: Optional[str] = typer.Option(None, "--isbn", "-i", help="Book ISBN"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="ISSUED | RETURNED"),
):
    """Show borrowing history for a member, a book, or the whole library."""
    lib = LibraryManager.get_instance()
    if membership_id:
        member = lib.find_member_by_membership_id(membership_id)
        if not member:
            _fail(LookupError(f"Member with membership ID {membership_id} not found."))
        transactions = lib.ledger.transactions_for_member(member.id)
    elif isbn:
        book = lib.find_book_by_isbn(isbn)
        if not book:
            _fail(LookupError(f"Book with ISBN {isbn} not found."))
        transactions = lib.ledger.transactions_for_book(book.id)
    else:
        try:
            transactions = lib.ledger.list_transactions(status)
        except ValueError as e:
            _fail(e)
    print_transactions(transactions)


@app.command("overdue")
def cli_overdue():
    """List open loans past their due date."""
    print_transactions(LibraryManager.get_instance().ledger.list_overdue(), "No overdue books.")


@app.command("stats")
def cli_stats():
    """Show library statistics."""
    print_stats_result(LibraryManager.get_instance().get_statistics())


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Start the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "bookbeacon.api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` could not be started. Make sure it is installed.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
