from __future__ import annotations


class Book:
    """Represents a catalog title and its copy counts."""

    def __init__(self, title: str, author: str, isbn: str, quantity: int = 1, available: int | None = None,
                 category: str | None = None, published_year: int | None = None,
                 description: str | None = None, id: int | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip()
        self.category = category
        self.quantity = quantity
        # A freshly catalogued title has every copy on the shelf
        self.available = quantity if available is None else available
        self.published_year = published_year
        self.description = description

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "category": self.category,
            "isbn": self.isbn,
            "quantity": self.quantity,
            "available": self.available,
            "published_year": self.published_year,
            "description": self.description,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            isbn=data["isbn"],
            category=data.get("category"),
            quantity=data.get("quantity", 1),
            available=data.get("available"),
            published_year=data.get("published_year"),
            description=data.get("description"),
        )
