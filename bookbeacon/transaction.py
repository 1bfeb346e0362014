from __future__ import annotations

from datetime import date

ISSUED = "ISSUED"
RETURNED = "RETURNED"
STATUSES = (ISSUED, RETURNED)


def _as_date(value) -> date | None:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


class Transaction:
    """A single loan of one book copy to one member.

    Created by the ledger's issue operation and closed exactly once by return;
    ``return_date`` is only ever set together with the ``RETURNED`` status.
    """

    def __init__(self, member_id: int, book_id: int, issue_date: date, due_date: date,
                 status: str = ISSUED, return_date: date | None = None, fine: float = 0.0,
                 id: int | None = None, member_name: str | None = None,
                 book_title: str | None = None, book_isbn: str | None = None) -> None:
        self.id = id
        self.member_id = member_id
        self.book_id = book_id
        self.issue_date = issue_date
        self.due_date = due_date
        self.return_date = return_date
        self.status = status
        self.fine = fine
        # Display fields joined from the member and book rows
        self.member_name = member_name
        self.book_title = book_title
        self.book_isbn = book_isbn

    @property
    def is_returned(self) -> bool:
        return self.status == RETURNED

    def is_overdue(self, today: date) -> bool:
        return self.status == ISSUED and today > self.due_date

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "member_id": self.member_id,
            "book_id": self.book_id,
            "issue_date": self.issue_date.isoformat(),
            "due_date": self.due_date.isoformat(),
            "return_date": self.return_date.isoformat() if self.return_date else None,
            "status": self.status,
            "fine": self.fine,
            "member_name": self.member_name,
            "book_title": self.book_title,
            "book_isbn": self.book_isbn,
        }

    @staticmethod
    def from_dict(data: dict) -> "Transaction":
        return Transaction(
            id=data.get("id"),
            member_id=data["member_id"],
            book_id=data["book_id"],
            issue_date=_as_date(data["issue_date"]),
            due_date=_as_date(data["due_date"]),
            return_date=_as_date(data.get("return_date")),
            status=data.get("status", ISSUED),
            fine=float(data.get("fine") or 0.0),
            member_name=data.get("member_name"),
            book_title=data.get("book_title"),
            book_isbn=data.get("book_isbn"),
        )
