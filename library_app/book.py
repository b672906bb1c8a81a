from __future__ import annotations

from typing import Any, Mapping


class Book:
    """A catalog entry with separate purchase and rental stock pools."""

    def __init__(self, title: str, author: str, book_id: int | None = None, description: str | None = None,
                 purchase_stock: int = 0, rental_stock: int = 0, price: float | None = None,
                 category_id: int | None = None, category_name: str | None = None,
                 available: bool | None = None, created_at: str | None = None) -> None:
        self.id = book_id
        self.title = title.strip()
        self.author = author.strip()
        self.description = description
        self.purchase_stock = max(int(purchase_stock or 0), 0)
        self.rental_stock = max(int(rental_stock or 0), 0)
        self.price = price
        self.category_id = category_id
        self.category_name = category_name
        self.created_at = created_at
        # The stored flag is only trusted when the row says so; otherwise derive it.
        self.available = self.is_available() if available is None else bool(available)

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (#{self.id})"

    def is_available(self) -> bool:
        return self.purchase_stock > 0 or self.rental_stock > 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "description": self.description,
            "available": self.available,
            "purchase_stock": self.purchase_stock,
            "rental_stock": self.rental_stock,
            "price": self.price,
            "category_id": self.category_id,
            "category_name": self.category_name,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Book":
        data = dict(row)
        return Book(
            title=data.get("title") or "",
            author=data.get("author") or "",
            book_id=data.get("id"),
            description=data.get("description"),
            purchase_stock=data.get("purchase_stock") or 0,
            rental_stock=data.get("rental_stock") or 0,
            price=data.get("price"),
            category_id=data.get("category_id"),
            category_name=data.get("category_name"),
            available=data.get("available"),
            created_at=data.get("created_at"),
        )
