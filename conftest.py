from datetime import date

import pytest

from bookbeacon.book import Book
from bookbeacon.library import Library
from bookbeacon.member import Member

TODAY = date(2024, 3, 1)


class FixedClock:
    """Callable clock the tests can move forward."""

    def __init__(self, today: date = TODAY):
        self.today = today

    def __call__(self) -> date:
        return self.today


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def db_file(tmp_path, request):
    # Unique database file per test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def lib(db_file, clock):
    lib = Library(db_file=db_file, clock=clock)
    yield lib
    lib.close()


@pytest.fixture
def book(lib):
    return lib.add_book(Book("Effective Java", "Joshua Bloch", "9780134686097", quantity=2, category="Programming"))


@pytest.fixture
def member(lib):
    return lib.add_member(Member("Ada Lovelace", "ada@example.com", "MEM-001", role="Student"))
