"""Library App - lending library service package

This package contains the application modules:
- API endpoints (api.py)
- Catalog and stock bookkeeping (library.py)
- Accounts, purchases, cart and loans services
- CLI interface (main.py)
- Data models (book.py, user.py, loan.py)
- Database layer (database.py)
"""

__version__ = "1.0.0"
