import logging
from datetime import date
from typing import Any, Dict, List, Optional

from library_app.database import get_db_connection, transaction
from library_app.errors import ConflictError, NotFoundError
from library_app.library import fetch_book_for_update, refresh_availability
from library_app.validators import NumberValidator

logger = logging.getLogger(__name__)


def require_user(conn, user_id: int) -> None:
    if conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone() is None:
        raise NotFoundError("User not found. Log in or register.")


def record_purchase(conn, user_id: int, book_id: int, price: float, quantity: int, today: date) -> None:
    """Insert one purchase row per copy and take the copies out of the purchase pool."""
    conn.executemany(
        "INSERT INTO purchases (purchased_on, price, user_id, book_id) VALUES (?, ?, ?, ?)",
        [(today.isoformat(), price, user_id, book_id)] * quantity,
    )
    conn.execute(
        "UPDATE books SET purchase_stock = MAX(purchase_stock - ?, 0) WHERE id = ?",
        (quantity, book_id),
    )
    refresh_availability(conn, book_id)


class PurchaseService:
    """Direct (single copy) purchases and purchase history."""

    def list_purchases(self, user_id: int) -> List[Dict[str, Any]]:
        conn = get_db_connection()
        try:
            rows = conn.execute(
                """
                SELECT p.id, p.purchased_on, p.price, b.id AS book_id, b.title, b.author
                  FROM purchases p
                  LEFT JOIN books b ON b.id = p.book_id
                 WHERE p.user_id = ?
                 ORDER BY p.id DESC
                """,
                (user_id,),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def purchase(self, user_id: int, book_id: int, price: Any = None, today: Optional[date] = None) -> int:
        """Buy one copy. The catalog price wins over a client-supplied one."""
        today = today or date.today()
        with transaction() as conn:
            require_user(conn, user_id)
            book = fetch_book_for_update(conn, book_id)
            if book.purchase_stock <= 0:
                raise ConflictError("Book not available for purchase")

            unit_price = book.price if book.price is not None else NumberValidator.price(price)
            if unit_price is None:
                raise ValueError("invalid price")

            record_purchase(conn, user_id, book_id, unit_price, 1, today)
            purchase_id = conn.execute("SELECT last_insert_rowid()").fetchone()[0]
        logger.info("User %s bought book %s for %.2f", user_id, book_id, unit_price)
        return purchase_id
