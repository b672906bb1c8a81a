import sqlite3
from datetime import date

import pytest

from library_app import database
from library_app.cart import CartService
from library_app.errors import ConflictError, NotFoundError
from library_app.loans import LoanService
from library_app.purchases import PurchaseService


def test_empty_catalog(lib):
    assert lib.list_books() == []


def test_create_and_get_book(lib, make_book):
    book = make_book()

    found = lib.get_book(book.id)
    assert found.title == "Dune"
    assert found.purchase_stock == 3
    assert found.rental_stock == 2
    assert found.price == 10.5
    assert found.available is True


def test_create_requires_title_and_author(lib):
    with pytest.raises(ValueError, match="title is required"):
        lib.create_book({"title": "  ", "author": "Someone"})
    with pytest.raises(ValueError, match="author is required"):
        lib.create_book({"title": "Something"})


def test_legacy_stock_fills_both_pools(lib):
    book = lib.create_book({"title": "Emma", "author": "Jane Austen", "stock": 4})
    assert book.purchase_stock == 4
    assert book.rental_stock == 4


def test_negative_stock_is_clamped(make_book):
    book = make_book(purchase_stock=-5, rental_stock=0)
    assert book.purchase_stock == 0
    assert book.available is False


def test_unknown_category_is_rejected(make_book):
    with pytest.raises(ValueError, match="invalid category_id"):
        make_book(category_id=9999)


def test_category_name_is_joined(lib, make_book):
    category = lib.list_categories()[0]
    book = make_book(category_id=category["id"])
    assert book.category_name == category["name"]


def test_only_available_filter(lib, make_book):
    make_book(title="In stock")
    make_book(title="Sold out", purchase_stock=0, rental_stock=0)

    titles = [b.title for b in lib.list_books(only_available=True)]
    assert titles == ["In stock"]
    assert len(lib.list_books()) == 2


def test_get_missing_book(lib):
    with pytest.raises(NotFoundError):
        lib.get_book(404)
    # Still a LookupError for callers that only know the builtin
    with pytest.raises(LookupError):
        lib.get_book(404)


def test_update_recomputes_availability(lib, make_book):
    book = make_book()
    updated = lib.update_book(book.id, {"purchase_stock": 0, "rental_stock": 0})
    assert updated.available is False

    restocked = lib.update_book(book.id, {"rental_stock": 1})
    assert restocked.available is True
    assert restocked.rental_stock == 1


def test_update_without_changes(lib, make_book):
    book = make_book()
    with pytest.raises(ValueError, match="No changes"):
        lib.update_book(book.id, {})


def test_update_missing_book(lib):
    with pytest.raises(NotFoundError):
        lib.update_book(123, {"title": "Ghost"})


def test_delete_book(lib, make_book):
    book = make_book()
    lib.delete_book(book.id)
    with pytest.raises(NotFoundError):
        lib.get_book(book.id)


def test_delete_blocked_by_outstanding_loan(lib, make_book, member):
    book = make_book()
    LoanService().create_loan(member.id, book.id)

    with pytest.raises(ConflictError, match="loans pending return"):
        lib.delete_book(book.id)


def test_delete_allowed_after_return(lib, make_book, member):
    book = make_book(purchase_stock=0)
    loans = LoanService()
    loan_id = loans.create_loan(member.id, book.id)[0]
    loans.return_loan(loan_id, member.id)

    lib.delete_book(book.id)
    assert lib.list_books() == []


def test_delete_blocked_by_purchases(lib, make_book, member):
    book = make_book()
    PurchaseService().purchase(member.id, book.id)

    with pytest.raises(ConflictError, match="purchases"):
        lib.delete_book(book.id)


def test_delete_clears_cart_items(lib, make_book, member):
    book = make_book()
    carts = CartService()
    carts.add_item(member.id, book.id, 1)

    lib.delete_book(book.id)
    assert carts.list_items(member.id) == []


def test_statistics(lib, make_book, member):
    book = make_book(price=12.0)
    make_book(title="Empty", purchase_stock=0, rental_stock=0)
    PurchaseService().purchase(member.id, book.id)
    loans = LoanService()
    loans.create_loan(member.id, book.id, today=date(2024, 1, 1))
    loans.create_loan(member.id, book.id, today=date.today())

    stats = lib.get_statistics()
    assert stats["total_books"] == 2
    assert stats["available_books"] == 1
    assert stats["purchase_copies"] == 2
    assert stats["rental_copies"] == 0
    assert stats["total_users"] == 1
    assert stats["active_loans"] == 1
    assert stats["overdue_loans"] == 1
    assert stats["total_purchases"] == 1
    assert stats["revenue"] == 12.0


def test_loan_history(lib, make_book, member):
    book = make_book()
    LoanService().create_loan(member.id, book.id, quantity=2)

    history = lib.loan_history(book.id)
    assert len(history) == 2
    assert history[0]["user_email"] == "reader@example.com"


def test_schema_is_seeded(db_file):
    conn = database.get_db_connection()
    try:
        roles = {row["id"]: row["name"] for row in conn.execute("SELECT id, name FROM roles")}
        categories = conn.execute("SELECT COUNT(*) FROM categories").fetchone()[0]
    finally:
        conn.close()
    assert roles == {1: "ADMIN", 2: "USER"}
    assert categories == len(database.DEFAULT_CATEGORIES)


def test_legacy_stock_column_is_migrated(tmp_path, monkeypatch):
    path = str(tmp_path / "legacy.db")
    conn = sqlite3.connect(path)
    conn.execute(
        """
        CREATE TABLE books (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            author TEXT NOT NULL,
            description TEXT,
            available INTEGER NOT NULL DEFAULT 0,
            stock INTEGER,
            price REAL,
            category_id INTEGER,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    conn.execute("INSERT INTO books (title, author, stock) VALUES ('Old', 'Author', 3)")
    conn.execute("INSERT INTO books (title, author, stock, available) VALUES ('Broken', 'Author', -2, 1)")
    conn.commit()
    conn.close()

    monkeypatch.setattr(database, "DATABASE_FILE", path)
    database.initialize_database()

    conn = database.get_db_connection()
    try:
        rows = {
            row["title"]: (row["purchase_stock"], row["rental_stock"], row["available"])
            for row in conn.execute("SELECT title, purchase_stock, rental_stock, available FROM books")
        }
    finally:
        conn.close()
    assert rows["Old"] == (3, 3, 1)
    # Negative legacy stock never becomes a negative pool.
    assert rows["Broken"] == (0, 0, 0)


def test_check_connection(db_file):
    assert database.check_connection() is True
