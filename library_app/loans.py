import logging
from datetime import date, timedelta
from typing import Any, List, Optional

from library_app.config import settings
from library_app.database import get_db_connection, transaction
from library_app.errors import ConflictError, NotFoundError, PermissionDeniedError
from library_app.library import fetch_book_for_update, refresh_availability
from library_app.loan import ACTIVE, RETURNED, Loan
from library_app.purchases import require_user
from library_app.user import User
from library_app.validators import NumberValidator

logger = logging.getLogger(__name__)

LOAN_SELECT = """
    SELECT l.id, l.user_id, l.book_id, l.loaned_on, l.due_on, l.returned_on, l.status, l.extensions,
           b.title, b.author, u.name AS user_name, u.email AS user_email
      FROM loans l
      LEFT JOIN books b ON b.id = l.book_id
      LEFT JOIN users u ON u.id = l.user_id
"""


class LoanService:
    """Rentals: lending from the rental pool, extensions and returns."""

    def get_loan(self, loan_id: int) -> Loan:
        conn = get_db_connection()
        try:
            row = conn.execute(f"{LOAN_SELECT} WHERE l.id = ?", (loan_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError("Loan not found")
        return Loan.from_row(row)

    def list_loans(self, user_id: int) -> List[Loan]:
        conn = get_db_connection()
        try:
            rows = conn.execute(f"{LOAN_SELECT} WHERE l.user_id = ? ORDER BY l.id DESC", (user_id,)).fetchall()
            return [Loan.from_row(row) for row in rows]
        finally:
            conn.close()

    def list_all_loans(self, q: Optional[str] = None) -> List[Loan]:
        """Admin view, optionally filtered by borrower name or e-mail."""
        query = LOAN_SELECT
        params: list = []
        needle = (q or "").strip().lower()
        if needle:
            query += " WHERE (LOWER(u.name) LIKE ? OR LOWER(u.email) LIKE ?)"
            params.extend([f"%{needle}%", f"%{needle}%"])
        query += " ORDER BY l.id DESC"
        conn = get_db_connection()
        try:
            return [Loan.from_row(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def overdue_loans(self, today: Optional[date] = None) -> List[Loan]:
        today = today or date.today()
        conn = get_db_connection()
        try:
            rows = conn.execute(
                f"{LOAN_SELECT} WHERE l.status = ? AND l.due_on < ? ORDER BY l.due_on ASC",
                (ACTIVE, today.isoformat()),
            ).fetchall()
            return [Loan.from_row(row) for row in rows]
        finally:
            conn.close()

    def create_loan(self, user_id: int, book_id: int, quantity: Any = 1,
                    today: Optional[date] = None) -> List[int]:
        """Lend ``quantity`` copies; each copy becomes its own loan."""
        qty = NumberValidator.positive_int(quantity, "quantity", maximum=settings.max_loan_quantity)
        today = today or date.today()
        due_on = today + timedelta(days=settings.loan_period_days)

        with transaction() as conn:
            require_user(conn, user_id)
            book = fetch_book_for_update(conn, book_id)
            if book.rental_stock < qty:
                raise ConflictError("Book not available for loan")

            loan_ids = []
            for _ in range(qty):
                cursor = conn.execute(
                    """
                    INSERT INTO loans (loaned_on, due_on, status, extensions, user_id, book_id)
                    VALUES (?, ?, ?, 0, ?, ?)
                    """,
                    (today.isoformat(), due_on.isoformat(), ACTIVE, user_id, book_id),
                )
                loan_ids.append(cursor.lastrowid)

            conn.execute(
                "UPDATE books SET rental_stock = MAX(rental_stock - ?, 0) WHERE id = ?",
                (qty, book_id),
            )
            refresh_availability(conn, book_id)
        logger.info("User %s borrowed %s copies of book %s until %s", user_id, qty, book_id, due_on)
        return loan_ids

    def extend_loan(self, loan_id: int, actor: User) -> Loan:
        """Push the due date back; regular users get a limited number of extensions."""
        with transaction() as conn:
            row = conn.execute(
                "SELECT id, user_id, book_id, loaned_on, due_on, status, extensions FROM loans WHERE id = ?",
                (loan_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError("Loan not found")
            loan = Loan.from_row(row)

            if not actor.can_act_for(loan.user_id):
                raise PermissionDeniedError("Not authorized")
            if not loan.is_active:
                raise ConflictError("Only active loans can be extended")
            if not loan.can_extend(actor.is_admin):
                raise ConflictError("Extension limit reached")

            new_due = date.fromisoformat(loan.due_on) + timedelta(days=settings.loan_extension_days)
            conn.execute(
                "UPDATE loans SET due_on = ?, extensions = extensions + 1 WHERE id = ?",
                (new_due.isoformat(), loan_id),
            )
        logger.info("Loan %s extended to %s by user %s", loan_id, new_due, actor.id)
        return self.get_loan(loan_id)

    def return_loan(self, loan_id: int, user_id: int, today: Optional[date] = None) -> Loan:
        """Close the loan and put the copy back into the rental pool."""
        today = today or date.today()
        with transaction() as conn:
            row = conn.execute("SELECT book_id, status, user_id FROM loans WHERE id = ?", (loan_id,)).fetchone()
            if row is None:
                raise NotFoundError("Loan not found")
            if int(row["user_id"]) != user_id:
                raise ValueError("user_id does not match the loan")
            if row["status"] == RETURNED:
                raise ConflictError("This loan was already returned")

            conn.execute(
                "UPDATE loans SET status = ?, returned_on = ? WHERE id = ?",
                (RETURNED, today.isoformat(), loan_id),
            )
            conn.execute("UPDATE books SET rental_stock = rental_stock + 1 WHERE id = ?", (row["book_id"],))
            refresh_availability(conn, row["book_id"])
        logger.info("Loan %s returned on %s", loan_id, today)
        return self.get_loan(loan_id)
