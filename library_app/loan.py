from __future__ import annotations

from datetime import date
from typing import Any, Mapping

from library_app.config import settings

ACTIVE = "active"
RETURNED = "returned"
OVERDUE = "overdue"


class Loan:
    """One rented copy of a book.

    Only ``active`` and ``returned`` are stored; ``overdue`` is derived from the
    due date when the loan is read.
    """

    def __init__(self, loan_id: int, user_id: int, book_id: int, loaned_on: str, due_on: str,
                 status: str = ACTIVE, extensions: int = 0, returned_on: str | None = None,
                 title: str | None = None, author: str | None = None,
                 user_name: str | None = None, user_email: str | None = None) -> None:
        self.id = loan_id
        self.user_id = user_id
        self.book_id = book_id
        self.loaned_on = loaned_on
        self.due_on = due_on
        self.status = status
        self.extensions = extensions
        self.returned_on = returned_on
        self.title = title
        self.author = author
        self.user_name = user_name
        self.user_email = user_email

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE

    def effective_status(self, today: date | None = None) -> str:
        if not self.is_active:
            return RETURNED
        today = today or date.today()
        if date.fromisoformat(self.due_on) < today:
            return OVERDUE
        return ACTIVE

    def can_extend(self, is_admin: bool = False) -> bool:
        if not self.is_active:
            return False
        return is_admin or self.extensions < settings.max_loan_extensions

    def to_dict(self, today: date | None = None) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "title": self.title,
            "author": self.author,
            "user_name": self.user_name,
            "user_email": self.user_email,
            "loaned_on": self.loaned_on,
            "due_on": self.due_on,
            "returned_on": self.returned_on,
            "status": self.effective_status(today),
            "extensions": self.extensions,
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Loan":
        data = dict(row)
        return Loan(
            loan_id=int(data["id"]),
            user_id=int(data["user_id"]),
            book_id=int(data["book_id"]),
            loaned_on=data["loaned_on"],
            due_on=data["due_on"],
            status=data.get("status") or ACTIVE,
            extensions=int(data.get("extensions") or 0),
            returned_on=data.get("returned_on"),
            title=data.get("title"),
            author=data.get("author"),
            user_name=data.get("user_name"),
            user_email=data.get("user_email"),
        )
