"""Book Beacon - Library Record Service

This package contains the core application modules including:
- API endpoints (api.py)
- Catalog and membership management (library.py)
- Borrowing ledger for issue/return (ledger.py)
- CLI interface (main.py)
- Data models (book.py, member.py, transaction.py)
- Database layer (database.py)
"""

__version__ = "1.0.0"
