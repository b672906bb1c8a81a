import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional

from library_app.database import get_db_connection, transaction
from library_app.errors import ConflictError
from library_app.library import fetch_book_for_update
from library_app.purchases import record_purchase, require_user
from library_app.validators import NumberValidator

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    purchase_count: int
    total: float


class CartService:
    """Persistent per-user cart, reconciled against purchase stock."""

    def list_items(self, user_id: int) -> List[Dict[str, Any]]:
        conn = get_db_connection()
        try:
            rows = conn.execute(
                """
                SELECT ci.book_id, ci.quantity, b.title, b.author, b.price, b.purchase_stock
                  FROM cart_items ci
                  LEFT JOIN books b ON b.id = ci.book_id
                 WHERE ci.user_id = ?
                 ORDER BY ci.created_at DESC, ci.rowid DESC
                """,
                (user_id,),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def add_item(self, user_id: int, book_id: int, quantity: Any = 1) -> int:
        """Add ``quantity`` copies; the cart never holds more than the stock. Returns the new total."""
        qty = NumberValidator.positive_int(quantity, "quantity")
        with transaction() as conn:
            require_user(conn, user_id)
            book = fetch_book_for_update(conn, book_id)
            if book.purchase_stock <= 0:
                raise ConflictError("Book not available for purchase")

            row = conn.execute(
                "SELECT quantity FROM cart_items WHERE user_id = ? AND book_id = ?",
                (user_id, book_id),
            ).fetchone()
            current = max(int(row["quantity"] or 0), 0) if row else 0
            next_total = current + qty
            if next_total > book.purchase_stock:
                raise ConflictError(
                    f"Not enough stock. Your cart has {current} and the available stock is {book.purchase_stock}."
                )

            conn.execute(
                """
                INSERT INTO cart_items (user_id, book_id, quantity) VALUES (?, ?, ?)
                ON CONFLICT(user_id, book_id) DO UPDATE SET quantity = excluded.quantity
                """,
                (user_id, book_id, next_total),
            )
        return next_total

    def remove_item(self, user_id: int, book_id: int) -> None:
        conn = get_db_connection()
        try:
            conn.execute("DELETE FROM cart_items WHERE user_id = ? AND book_id = ?", (user_id, book_id))
            conn.commit()
        finally:
            conn.close()

    def checkout(self, user_id: int, today: Optional[date] = None) -> CheckoutResult:
        """Buy everything in the cart, or nothing at all."""
        today = today or date.today()
        purchase_count = 0
        total = 0.0
        with transaction() as conn:
            items = conn.execute(
                "SELECT book_id, quantity FROM cart_items WHERE user_id = ? ORDER BY book_id",
                (user_id,),
            ).fetchall()
            if not items:
                raise ValueError("The cart is empty")

            for item in items:
                qty = item["quantity"]
                if not isinstance(qty, int) or qty <= 0:
                    raise ValueError("Invalid cart")

                book = fetch_book_for_update(conn, item["book_id"])
                if book.purchase_stock < qty:
                    raise ConflictError("Insufficient stock to complete the purchase")
                if NumberValidator.price(book.price) is None:
                    raise ValueError("Invalid price")

                record_purchase(conn, user_id, book.id, book.price, qty, today)
                purchase_count += qty
                total += book.price * qty

            conn.execute("DELETE FROM cart_items WHERE user_id = ?", (user_id,))
        logger.info("User %s checked out %s copies (%.2f)", user_id, purchase_count, total)
        return CheckoutResult(purchase_count=purchase_count, total=round(total, 2))
