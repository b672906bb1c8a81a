from __future__ import annotations

from typing import Any, Mapping

from library_app.database import ADMIN_ROLE_ID


class User:
    """A library account. The password hash never leaves this object via to_dict()."""

    def __init__(self, user_id: int, name: str, email: str, role_id: int | None,
                 role_name: str | None = None, password_hash: str | None = None) -> None:
        self.id = user_id
        self.name = name
        self.email = email
        self.role_id = role_id
        self.role_name = role_name
        self.password_hash = password_hash

    @property
    def is_admin(self) -> bool:
        return self.role_id == ADMIN_ROLE_ID

    def can_act_for(self, user_id: int) -> bool:
        """Admins act on anyone; everyone else only on themselves."""
        return self.is_admin or self.id == user_id

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role_id": self.role_id,
            "role_name": self.role_name,
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "User":
        data = dict(row)
        return User(
            user_id=int(data["id"]),
            name=data.get("name") or "",
            email=data.get("email") or "",
            role_id=None if data.get("role_id") is None else int(data["role_id"]),
            role_name=data.get("role_name"),
            password_hash=data.get("password_hash"),
        )
