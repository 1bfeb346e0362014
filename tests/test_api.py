import importlib
import sqlite3
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from bookbeacon.config import settings
from bookbeacon.library import Library

HEADERS = {"X-API-Key": settings.api_key}

BOOK = {
    "title": "Effective Java",
    "author": "Joshua Bloch",
    "isbn": "978-0-13-468609-7",
    "quantity": 2,
    "category": "Programming",
    "published_year": 2018,
}
MEMBER = {"name": "Ada Lovelace", "email": "ada@example.com", "membership_id": "MEM-001", "role": "Student"}


@pytest.fixture
def client(db_file, clock, monkeypatch):
    # Point the module-level Library at a per-test database before (re)import
    monkeypatch.setenv("LIBRARY_DB_FILE", db_file)
    import bookbeacon.api as api_module
    importlib.reload(api_module)
    # Swap in a Library driven by the test clock
    monkeypatch.setattr(api_module, "library", Library(db_file=db_file, clock=clock))

    with TestClient(api_module.app) as test_client:
        yield test_client


def _create(client, path, payload):
    response = client.post(path, json=payload, headers=HEADERS)
    assert response.status_code == 201, response.text
    return response.json()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["db"] is True


def test_write_requires_api_key(client):
    response = client.post("/books", json=BOOK, headers={"X-API-Key": "invalid-key"})
    assert response.status_code == 403


def test_book_crud(client):
    created = _create(client, "/books", BOOK)
    assert created["isbn"] == "9780134686097"
    assert created["available"] == 2

    assert client.get(f"/books/{created['id']}").json()["title"] == "Effective Java"
    assert client.get("/books/isbn/9780134686097").json()["id"] == created["id"]
    assert len(client.get("/books", params={"q": "bloch"}).json()) == 1
    assert len(client.get("/books", params={"q": "978-0-13-468609-7"}).json()) == 1
    assert client.get("/books", params={"q": "%"}).json() == []

    # available is not writable through the generic update
    response = client.put(f"/books/{created['id']}", json={"quantity": 4, "available": 0}, headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["quantity"] == 4
    assert response.json()["available"] == 4

    assert client.delete(f"/books/{created['id']}", headers=HEADERS).status_code == 204
    assert client.get(f"/books/{created['id']}").status_code == 404


def test_book_errors(client):
    _create(client, "/books", BOOK)
    assert client.post("/books", json=BOOK, headers=HEADERS).status_code == 409
    assert client.post("/books", json={**BOOK, "isbn": "1234567890"}, headers=HEADERS).status_code == 422
    assert client.post("/books", json={**BOOK, "quantity": -1}, headers=HEADERS).status_code == 422
    assert client.put("/books/999", json={"title": "x"}, headers=HEADERS).status_code == 404
    created = client.get("/books/isbn/9780134686097").json()
    assert client.put(f"/books/{created['id']}", json={"title": "  "}, headers=HEADERS).status_code == 422
    assert client.get("/books/isbn/9780201633610").status_code == 404


def test_member_crud(client):
    created = _create(client, "/members", MEMBER)
    assert created["status"] == "Active"
    assert created["books_issued"] == 0
    assert created["join_date"] == "2024-03-01"

    assert client.get("/members/membership/MEM-001").json()["id"] == created["id"]
    assert len(client.get("/members").json()) == 1
    assert [m["id"] for m in client.get("/members", params={"q": "lovelace"}).json()] == [created["id"]]
    assert client.get("/members", params={"q": "hopper"}).json() == []

    response = client.put(f"/members/{created['id']}", json={"status": "Inactive", "books_issued": 3},
                          headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["status"] == "Inactive"
    assert response.json()["books_issued"] == 0

    assert client.post("/members", json=MEMBER, headers=HEADERS).status_code == 409
    assert client.delete(f"/members/{created['id']}", headers=HEADERS).status_code == 204
    assert client.get(f"/members/{created['id']}").status_code == 404


def test_issue_and_return_flow(client, clock):
    book = _create(client, "/books", BOOK)
    member = _create(client, "/members", MEMBER)

    response = client.post("/transactions/issue", json={"member_id": member["id"], "book_id": book["id"]},
                           headers=HEADERS)
    assert response.status_code == 200
    transaction = response.json()
    assert transaction["status"] == "ISSUED"
    assert transaction["due_date"] == "2024-03-15"
    assert transaction["book_title"] == "Effective Java"
    assert client.get(f"/books/{book['id']}").json()["available"] == 1
    assert client.get(f"/members/{member['id']}").json()["books_issued"] == 1

    clock.today = clock.today + timedelta(days=20)
    response = client.post(f"/transactions/return/{transaction['id']}", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["status"] == "RETURNED"
    assert response.json()["fine"] == 6.0
    assert response.json()["return_date"] == "2024-03-21"

    # Double return is a rule violation
    response = client.post(f"/transactions/return/{transaction['id']}", headers=HEADERS)
    assert response.status_code == 400
    assert "already been returned" in response.json()["detail"]

    history = client.get(f"/transactions/member/{member['id']}").json()
    assert [t["id"] for t in history] == [transaction["id"]]
    assert len(client.get(f"/transactions/book/{book['id']}").json()) == 1
    assert client.get(f"/transactions/{transaction['id']}").json()["fine"] == 6.0


def test_issue_by_natural_keys_and_return_by_keys(client):
    _create(client, "/books", BOOK)
    _create(client, "/members", MEMBER)

    response = client.post("/transactions/issue", json={"membership_id": "MEM-001", "isbn": "9780134686097"},
                           headers=HEADERS)
    assert response.status_code == 200

    response = client.post("/transactions/return", json={"membership_id": "MEM-001", "isbn": "9780134686097"},
                           headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["status"] == "RETURNED"

    response = client.post("/transactions/return", json={"membership_id": "MEM-001", "isbn": "9780134686097"},
                           headers=HEADERS)
    assert response.status_code == 404


def test_issue_rule_violations(client):
    book = _create(client, "/books", {**BOOK, "quantity": 1})
    first = _create(client, "/members", MEMBER)
    second = _create(client, "/members", {**MEMBER, "email": "grace@example.com", "membership_id": "MEM-002"})

    ok = client.post("/transactions/issue", json={"member_id": first["id"], "book_id": book["id"]}, headers=HEADERS)
    assert ok.status_code == 200

    response = client.post("/transactions/issue", json={"member_id": second["id"], "book_id": book["id"]},
                           headers=HEADERS)
    assert response.status_code == 400
    assert "not available" in response.json()["detail"]

    assert client.post("/transactions/issue", json={"member_id": 999, "book_id": book["id"]},
                       headers=HEADERS).status_code == 404
    assert client.post("/transactions/issue", json={"member_id": first["id"]}, headers=HEADERS).status_code == 422
    assert client.post("/transactions/return/999", headers=HEADERS).status_code == 404

    # A book with loan history cannot be deleted
    assert client.delete(f"/books/{book['id']}", headers=HEADERS).status_code == 400


def test_loan_limit_over_http(client):
    member = _create(client, "/members", MEMBER)
    isbns = ["9780132350884", "9780201633610", "9780262033848", "9780596007126"]
    books = [_create(client, "/books", {**BOOK, "isbn": isbn, "quantity": 1}) for isbn in isbns]

    for b in books[:3]:
        response = client.post("/transactions/issue", json={"member_id": member["id"], "book_id": b["id"]},
                               headers=HEADERS)
        assert response.status_code == 200

    response = client.post("/transactions/issue", json={"member_id": member["id"], "book_id": books[3]["id"]},
                           headers=HEADERS)
    assert response.status_code == 400
    assert client.get(f"/members/{member['id']}").json()["books_issued"] == 3


def test_issue_to_inactive_member_over_http(client):
    book = _create(client, "/books", BOOK)
    member = _create(client, "/members", {**MEMBER, "status": "Inactive"})

    response = client.post("/transactions/issue", json={"member_id": member["id"], "book_id": book["id"]},
                           headers=HEADERS)
    assert response.status_code == 400
    assert "cannot borrow" in response.json()["detail"]
    assert client.get(f"/books/{book['id']}").json()["available"] == 2
    assert client.get("/transactions").json() == []


def test_health_closes_connection_on_database_error(client, monkeypatch):
    import bookbeacon.api as api_module

    conn = MagicMock()
    conn.execute.side_effect = sqlite3.OperationalError("disk I/O error")
    monkeypatch.setattr(api_module, "get_db_connection", lambda db_file: conn)

    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "degraded"
    conn.close.assert_called_once()


def test_transaction_listing_and_stats(client, clock):
    book = _create(client, "/books", BOOK)
    member = _create(client, "/members", MEMBER)
    client.post("/transactions/issue", json={"member_id": member["id"], "book_id": book["id"]}, headers=HEADERS)

    assert len(client.get("/transactions", params={"status": "ISSUED"}).json()) == 1
    assert client.get("/transactions", params={"status": "RETURNED"}).json() == []
    assert client.get("/transactions", params={"status": "LOST"}).status_code == 400
    assert client.get("/transactions/overdue").json() == []

    clock.today = clock.today + timedelta(days=15)
    assert len(client.get("/transactions/overdue").json()) == 1

    stats = client.get("/stats").json()
    assert stats["total_books"] == 1
    assert stats["available_copies"] == 1
    assert stats["issued_books"] == 1
    assert stats["overdue_books"] == 1


def test_history_for_unknown_records(client):
    assert client.get("/transactions/member/999").status_code == 404
    assert client.get("/transactions/book/999").status_code == 404
    assert client.get("/transactions/999").status_code == 404
