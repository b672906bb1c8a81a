import logging
import sqlite3
from datetime import date
from typing import Any, Dict, List, Mapping, Optional

from library_app.book import Book
from library_app.database import get_db_connection, transaction
from library_app.errors import ConflictError, NotFoundError
from library_app.validators import NumberValidator, TextValidator

logger = logging.getLogger(__name__)

BOOK_SELECT = """
    SELECT b.id, b.title, b.author, b.description, b.available, b.purchase_stock,
           b.rental_stock, b.price, b.category_id, b.created_at,
           c.name AS category_name
      FROM books b
      LEFT JOIN categories c ON c.id = b.category_id
"""

# Loans count as outstanding until they are returned.
OUTSTANDING_LOAN_SQL = "status <> 'returned'"


def refresh_availability(conn: sqlite3.Connection, book_id: int) -> None:
    """Recompute the ``available`` flag from both stock pools."""
    conn.execute(
        """
        UPDATE books
           SET available = CASE WHEN purchase_stock > 0 OR rental_stock > 0 THEN 1 ELSE 0 END
         WHERE id = ?
        """,
        (book_id,),
    )


def fetch_book_for_update(conn: sqlite3.Connection, book_id: int) -> Book:
    """Read a book inside an open transaction; NotFoundError if it is gone."""
    row = conn.execute(f"{BOOK_SELECT} WHERE b.id = ?", (book_id,)).fetchone()
    if row is None:
        raise NotFoundError("Book not found")
    return Book.from_row(row)


def _category_id(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError("invalid category_id") from None


class Library:
    """Manages the catalog and the purchase/rental stock pools."""

    # ------------------------- Catalog reads ------------------------- #
    def list_books(self, only_available: bool = False) -> List[Book]:
        query = BOOK_SELECT
        if only_available:
            query += " WHERE b.available = 1"
        query += " ORDER BY b.id DESC"
        conn = get_db_connection()
        try:
            rows = conn.execute(query).fetchall()
            return [Book.from_row(row) for row in rows]
        finally:
            conn.close()

    def get_book(self, book_id: int) -> Book:
        conn = get_db_connection()
        try:
            row = conn.execute(f"{BOOK_SELECT} WHERE b.id = ?", (book_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError("Book not found")
        return Book.from_row(row)

    def list_categories(self) -> List[Dict[str, Any]]:
        conn = get_db_connection()
        try:
            rows = conn.execute("SELECT id, name FROM categories ORDER BY name ASC").fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def loan_history(self, book_id: int) -> List[Dict[str, Any]]:
        """Who has rented this book, most recent loan first."""
        conn = get_db_connection()
        try:
            rows = conn.execute(
                """
                SELECT l.id, l.loaned_on, l.due_on, l.returned_on, l.status, l.extensions,
                       u.id AS user_id, u.name AS user_name, u.email AS user_email
                  FROM loans l
                  JOIN users u ON u.id = l.user_id
                 WHERE l.book_id = ?
                 ORDER BY l.id DESC
                """,
                (book_id,),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    # ------------------------- Catalog writes ------------------------- #
    def create_book(self, data: Mapping[str, Any]) -> Book:
        """Insert a book. ``stock`` is accepted as the default for both pools."""
        title = TextValidator.required(data.get("title"), "title")
        author = TextValidator.required(data.get("author"), "author")
        legacy_stock = data.get("stock")
        purchase_stock = NumberValidator.stock(
            data["purchase_stock"] if data.get("purchase_stock") is not None else legacy_stock
        )
        rental_stock = NumberValidator.stock(
            data["rental_stock"] if data.get("rental_stock") is not None else legacy_stock
        )
        price = None
        if data.get("price") is not None:
            price = NumberValidator.price(data["price"]) or 0.0
        description = data.get("description")
        book = Book(
            title=title,
            author=author,
            description=None if description is None else str(description),
            purchase_stock=purchase_stock,
            rental_stock=rental_stock,
            price=price,
            category_id=_category_id(data.get("category_id")),
        )

        try:
            with transaction() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO books (title, author, description, available, purchase_stock,
                                       rental_stock, price, category_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (book.title, book.author, book.description, int(book.is_available()),
                     book.purchase_stock, book.rental_stock, book.price, book.category_id),
                )
                book_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValueError("invalid category_id") from e
        logger.info("Created book %s (%s)", book_id, book.title)
        return self.get_book(book_id)

    def update_book(self, book_id: int, changes: Mapping[str, Any]) -> Book:
        """Apply a partial update; the availability flag is always recomputed."""
        updates: List[str] = []
        values: List[Any] = []

        if changes.get("title") is not None:
            updates.append("title = ?")
            values.append(TextValidator.required(changes["title"], "title"))
        if changes.get("author") is not None:
            updates.append("author = ?")
            values.append(TextValidator.required(changes["author"], "author"))
        if changes.get("description") is not None:
            updates.append("description = ?")
            values.append(str(changes["description"]))
        if "category_id" in changes:
            updates.append("category_id = ?")
            values.append(_category_id(changes["category_id"]))
        for pool in ("purchase_stock", "rental_stock"):
            if changes.get(pool) is not None:
                updates.append(f"{pool} = ?")
                values.append(NumberValidator.stock(changes[pool]))
        if changes.get("price") is not None:
            updates.append("price = ?")
            values.append(NumberValidator.price(changes["price"]) or 0.0)

        if not updates:
            raise ValueError("No changes")

        try:
            with transaction() as conn:
                cursor = conn.execute(
                    f"UPDATE books SET {', '.join(updates)} WHERE id = ?",
                    (*values, book_id),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError("Book not found")
                refresh_availability(conn, book_id)
        except sqlite3.IntegrityError as e:
            raise ValueError("invalid category_id") from e
        return self.get_book(book_id)

    def delete_book(self, book_id: int) -> None:
        """Remove a book that has no outstanding loans and was never sold."""
        try:
            with transaction() as conn:
                outstanding = conn.execute(
                    f"SELECT 1 FROM loans WHERE book_id = ? AND {OUTSTANDING_LOAN_SQL} LIMIT 1",
                    (book_id,),
                ).fetchone()
                if outstanding:
                    raise ConflictError(
                        "This book still has loans pending return. Record the return and try again."
                    )
                sold = conn.execute("SELECT 1 FROM purchases WHERE book_id = ? LIMIT 1", (book_id,)).fetchone()
                if sold:
                    raise ConflictError("Cannot delete: the book has purchases")

                conn.execute("DELETE FROM cart_items WHERE book_id = ?", (book_id,))
                conn.execute("DELETE FROM loans WHERE book_id = ? AND status = 'returned'", (book_id,))
                cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
                if cursor.rowcount == 0:
                    raise NotFoundError("Book not found")
        except sqlite3.IntegrityError as e:
            raise ConflictError("Cannot delete: the book has associated records") from e
        logger.info("Deleted book %s", book_id)

    # ------------------------- Reporting ------------------------- #
    def get_statistics(self, today: Optional[date] = None) -> Dict[str, Any]:
        today_iso = (today or date.today()).isoformat()
        conn = get_db_connection()
        try:
            books = conn.execute(
                """
                SELECT COUNT(*) AS total_books,
                       COALESCE(SUM(available), 0) AS available_books,
                       COALESCE(SUM(purchase_stock), 0) AS purchase_copies,
                       COALESCE(SUM(rental_stock), 0) AS rental_copies
                  FROM books
                """
            ).fetchone()
            users = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
            active_loans = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE status = 'active' AND due_on >= ?", (today_iso,)
            ).fetchone()[0]
            overdue_loans = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE status = 'active' AND due_on < ?", (today_iso,)
            ).fetchone()[0]
            purchases = conn.execute(
                "SELECT COUNT(*) AS total, COALESCE(SUM(price), 0) AS revenue FROM purchases"
            ).fetchone()
            return {
                "total_books": books["total_books"],
                "available_books": books["available_books"],
                "purchase_copies": books["purchase_copies"],
                "rental_copies": books["rental_copies"],
                "total_users": users,
                "active_loans": active_loans,
                "overdue_loans": overdue_loans,
                "total_purchases": purchases["total"],
                "revenue": float(purchases["revenue"]),
            }
        finally:
            conn.close()
