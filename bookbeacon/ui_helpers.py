import os
import json
from typing import Any, Dict, List, Sequence, Tuple
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "BOOKBEACON_CLI_OUTPUT"

_console = Console()

BOOK_COLUMNS = (("id", "ID"), ("isbn", "ISBN"), ("title", "Title"), ("author", "Author"), ("available", "Available"),
                ("quantity", "Quantity"))
MEMBER_COLUMNS = (("id", "ID"), ("membership_id", "Membership ID"), ("name", "Name"), ("email", "Email"),
                  ("status", "Status"), ("books_issued", "Books Issued"))
TRANSACTION_COLUMNS = (("id", "ID"), ("member_name", "Member"), ("book_title", "Book"), ("issue_date", "Issued"),
                       ("due_date", "Due"), ("return_date", "Returned"), ("status", "Status"), ("fine", "Fine"))


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode
    else:
        # Ignore invalid values; keep the current default
        pass


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _plain_line(record: Dict[str, Any], kind: str) -> str:
    if kind == "book":
        return f"[{record['id']}] {record['isbn']} - {record['title']} by {record['author']} " \
               f"({record['available']}/{record['quantity']} available)"
    if kind == "member":
        return f"[{record['id']}] {record['membership_id']} - {record['name']} <{record['email']}> " \
               f"{record['status']}, {record['books_issued']} issued"
    line = f"[{record['id']}] {record['book_title']} -> {record['member_name']} " \
           f"{record['status']} issued {record['issue_date']} due {record['due_date']}"
    if record.get("return_date"):
        line += f" returned {record['return_date']} fine {record['fine']:.2f}"
    return line


def print_records(records: List[Any], kind: str, title: str, columns: Sequence[Tuple[str, str]],
                  empty_message: str) -> None:
    """Print records according to the current output mode.
    - plain: one line per record, or the empty message
    - json: JSON array of ``to_dict()`` payloads
    - rich: Rich table
    """
    mode = get_output_mode()

    if not records:
        # Same empty-state message in every mode keeps scripted use predictable
        print(empty_message)
        return

    payload = [r.to_dict() for r in records]
    if mode == "json":
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for _, header in columns:
            table.add_column(header)
        for item in payload:
            table.add_row(*["" if item.get(key) is None else str(item.get(key)) for key, _ in columns])
        _console.print(table)
    else:
        for item in payload:
            print(_plain_line(item, kind))


def print_books(books: List[Any]) -> None:
    print_records(books, "book", "📚 Books", BOOK_COLUMNS, "No books in library.")


def print_members(members: List[Any]) -> None:
    print_records(members, "member", "👥 Members", MEMBER_COLUMNS, "No members registered.")


def print_transactions(transactions: List[Any], empty_message: str = "No transactions found.") -> None:
    print_records(transactions, "transaction", "🔁 Transactions", TRANSACTION_COLUMNS, empty_message)


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print statistics according to the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = {
        "total_books": "Total Books",
        "total_copies": "Total Copies",
        "available_copies": "Available Copies",
        "total_members": "Total Members",
        "active_members": "Active Members",
        "issued_books": "Issued Books",
        "overdue_books": "Overdue Books",
        "total_fines": "Total Fines",
    }

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for key, label in labels.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, label in labels.items():
            print(f"{label}: {stats.get(key, 0)}")
