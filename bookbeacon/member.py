from __future__ import annotations

from datetime import date

ACTIVE = "Active"


class Member:
    """A registered library member and the number of books they hold."""

    def __init__(self, name: str, email: str, membership_id: str, phone: str | None = None,
                 role: str | None = None, join_date: date | None = None, status: str | None = None,
                 books_issued: int = 0, id: int | None = None) -> None:
        self.id = id
        self.name = name.strip()
        self.email = email.strip()
        self.membership_id = membership_id.strip()
        self.phone = phone
        self.role = role
        self.join_date = join_date
        self.status = status or ACTIVE
        self.books_issued = books_issued

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.name} ({self.membership_id})"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role,
            "membership_id": self.membership_id,
            "join_date": self.join_date.isoformat() if self.join_date else None,
            "status": self.status,
            "books_issued": self.books_issued,
        }

    @staticmethod
    def from_dict(data: dict) -> "Member":
        # SQLite hands dates back as ISO strings
        joined = data.get("join_date")
        if isinstance(joined, str):
            joined = date.fromisoformat(joined)

        return Member(
            id=data.get("id"),
            name=data["name"],
            email=data["email"],
            membership_id=data["membership_id"],
            phone=data.get("phone"),
            role=data.get("role"),
            join_date=joined,
            status=data.get("status"),
            books_issued=data.get("books_issued") or 0,
        )
