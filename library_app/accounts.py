import hashlib
import logging
import secrets
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import bcrypt

from library_app.config import settings
from library_app.database import ADMIN_ROLE_ID, USER_ROLE_ID, get_db_connection, transaction
from library_app.errors import AuthenticationError, ConflictError, NotFoundError, PermissionDeniedError
from library_app.library import OUTSTANDING_LOAN_SQL
from library_app.user import User
from library_app.validators import EmailValidator, TextValidator

logger = logging.getLogger(__name__)

USER_SELECT = """
    SELECT u.id, u.name, u.email, u.role_id, u.password_hash, r.name AS role_name
      FROM users u
      LEFT JOIN roles r ON r.id = u.role_id
"""


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.bcrypt_rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash stored in the row.
        return False


def _check_new_password(password: Optional[str]) -> str:
    value = "" if password is None else str(password)
    if len(value) < settings.min_password_length:
        raise ValueError(
            f"The new password must be at least {settings.min_password_length} characters long"
        )
    return value


class AccountService:
    """User accounts: registration, login, profile and admin management."""

    # ------------------------- Lookups ------------------------- #
    def get_user(self, user_id: int) -> User:
        conn = get_db_connection()
        try:
            row = conn.execute(f"{USER_SELECT} WHERE u.id = ?", (user_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError("User not found")
        return User.from_row(row)

    def find_user(self, user_id: int) -> Optional[User]:
        try:
            return self.get_user(user_id)
        except LookupError:
            return None

    def find_by_email(self, email: str) -> Optional[User]:
        conn = get_db_connection()
        try:
            row = conn.execute(
                f"{USER_SELECT} WHERE LOWER(TRIM(u.email)) = ?", (EmailValidator.normalize(email),)
            ).fetchone()
        finally:
            conn.close()
        return User.from_row(row) if row else None

    def list_users(self) -> List[User]:
        conn = get_db_connection()
        try:
            rows = conn.execute(f"{USER_SELECT} ORDER BY u.id DESC").fetchall()
            return [User.from_row(row) for row in rows]
        finally:
            conn.close()

    def role_exists(self, role_id: int) -> bool:
        conn = get_db_connection()
        try:
            return conn.execute("SELECT 1 FROM roles WHERE id = ?", (role_id,)).fetchone() is not None
        finally:
            conn.close()

    # ------------------------- Registration & login ------------------------- #
    def _insert_user(self, name: str, email: str, password: str, role_id: int) -> User:
        if not EmailValidator.looks_valid(email):
            raise ValueError("invalid email")
        if self.find_by_email(email):
            raise ConflictError("Email is already registered")
        password_hash = hash_password(password)
        conn = get_db_connection()
        try:
            cursor = conn.execute(
                "INSERT INTO users (name, email, password_hash, role_id) VALUES (?, ?, ?, ?)",
                (name, email, password_hash, role_id),
            )
            conn.commit()
            user_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ConflictError("Email is already registered") from e
        finally:
            conn.close()
        logger.info("Registered user %s with role %s", user_id, role_id)
        return self.get_user(user_id)

    def register(self, name: Optional[str], email: Optional[str], password: Optional[str]) -> User:
        """Self-service registration; always creates a regular user."""
        clean_name = TextValidator.clean(name)
        clean_email = EmailValidator.normalize(email)
        if not clean_name or not clean_email or not password:
            raise ValueError("name, email and password are required")
        return self._insert_user(clean_name, clean_email, str(password), USER_ROLE_ID)

    def simple_register(self, username: Optional[str], password: Optional[str],
                        name: Optional[str] = None) -> User:
        """Register with just a username (an e-mail) and a password."""
        email = EmailValidator.normalize(username)
        if not email or not password:
            raise ValueError("username and password are required")
        display_name = TextValidator.clean(name) or email.split("@")[0] or "User"
        return self._insert_user(display_name, email, str(password), USER_ROLE_ID)

    def authenticate(self, email: Optional[str], password: Optional[str]) -> User:
        clean_email = EmailValidator.normalize(email)
        if not clean_email or not password:
            raise ValueError("email and password are required")
        user = self.find_by_email(clean_email)
        # Same answer for unknown e-mail and wrong password.
        if user is None or not verify_password(str(password), user.password_hash):
            logger.info("Failed login for %s", clean_email)
            raise AuthenticationError("Invalid credentials")
        return user

    # ------------------------- Profile ------------------------- #
    def _email_taken(self, email: str, exclude_user_id: int) -> bool:
        conn = get_db_connection()
        try:
            row = conn.execute(
                "SELECT 1 FROM users WHERE LOWER(TRIM(email)) = ? AND id <> ? LIMIT 1",
                (email, exclude_user_id),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def _update_user(self, user_id: int, name: Optional[str] = None, email: Optional[str] = None,
                     password: Optional[str] = None) -> User:
        updates: List[str] = []
        values: list = []

        if name is not None:
            next_name = TextValidator.clean(name)
            if not next_name:
                raise ValueError("name is required")
            updates.append("name = ?")
            values.append(next_name)

        if email is not None:
            next_email = EmailValidator.normalize(email)
            if not next_email:
                raise ValueError("email is required")
            if not EmailValidator.looks_valid(next_email):
                raise ValueError("invalid email")
            if self._email_taken(next_email, user_id):
                raise ConflictError("Email is already registered")
            updates.append("email = ?")
            values.append(next_email)

        if password:
            updates.append("password_hash = ?")
            values.append(hash_password(str(password)))

        if not updates:
            raise ValueError("No changes")

        conn = get_db_connection()
        try:
            cursor = conn.execute(f"UPDATE users SET {', '.join(updates)} WHERE id = ?", (*values, user_id))
            conn.commit()
            if cursor.rowcount == 0:
                raise NotFoundError("User not found")
        except sqlite3.IntegrityError as e:
            raise ConflictError("Email is already registered") from e
        finally:
            conn.close()
        return self.get_user(user_id)

    def update_profile(self, user_id: int, name: Optional[str] = None, email: Optional[str] = None) -> User:
        return self._update_user(user_id, name=name, email=email)

    def change_password(self, user_id: int, current_password: Optional[str], new_password: Optional[str]) -> None:
        if not current_password or not new_password:
            raise ValueError("current_password and new_password are required")
        next_password = _check_new_password(new_password)
        user = self.get_user(user_id)
        if not verify_password(str(current_password), user.password_hash):
            raise AuthenticationError("Current password is incorrect")
        self.set_password(user_id, next_password)

    def set_password(self, user_id: int, password: str) -> None:
        conn = get_db_connection()
        try:
            cursor = conn.execute(
                "UPDATE users SET password_hash = ? WHERE id = ?", (hash_password(password), user_id)
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise NotFoundError("User not found")
        finally:
            conn.close()

    # ------------------------- Admin ------------------------- #
    def create_user(self, name: Optional[str], email: Optional[str], password: Optional[str],
                    role_id: Optional[int] = None) -> User:
        clean_name = TextValidator.clean(name)
        clean_email = EmailValidator.normalize(email)
        if not clean_name or not clean_email or not password:
            raise ValueError("name, email and password are required")
        rid = USER_ROLE_ID if role_id is None else int(role_id)
        if not self.role_exists(rid):
            raise ValueError("Invalid role")
        return self._insert_user(clean_name, clean_email, str(password), rid)

    def admin_update_user(self, user_id: int, name: Optional[str] = None, email: Optional[str] = None,
                          password: Optional[str] = None) -> User:
        return self._update_user(user_id, name=name, email=email, password=password)

    def change_role(self, actor: User, user_id: int, role_id: int) -> None:
        if actor.id == user_id and role_id != ADMIN_ROLE_ID:
            raise PermissionDeniedError(
                "You cannot demote yourself. Another administrator has to do it."
            )
        if not self.role_exists(role_id):
            raise ValueError("Invalid role")
        conn = get_db_connection()
        try:
            cursor = conn.execute("UPDATE users SET role_id = ? WHERE id = ?", (role_id, user_id))
            conn.commit()
            if cursor.rowcount == 0:
                raise NotFoundError("User not found")
        finally:
            conn.close()
        logger.info("User %s set role of %s to %s", actor.id, user_id, role_id)

    def delete_user(self, actor: User, user_id: int) -> None:
        if actor.id == user_id:
            raise PermissionDeniedError("Only another administrator can delete you")
        try:
            with transaction() as conn:
                outstanding = conn.execute(
                    f"SELECT 1 FROM loans WHERE user_id = ? AND {OUTSTANDING_LOAN_SQL} LIMIT 1",
                    (user_id,),
                ).fetchone()
                if outstanding:
                    raise ConflictError(
                        "This user still has loans pending return. Record the return and try again."
                    )
                conn.execute("DELETE FROM cart_items WHERE user_id = ?", (user_id,))
                conn.execute("DELETE FROM purchases WHERE user_id = ?", (user_id,))
                conn.execute("DELETE FROM loans WHERE user_id = ? AND status = 'returned'", (user_id,))
                cursor = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
                if cursor.rowcount == 0:
                    raise NotFoundError("User not found")
        except sqlite3.IntegrityError as e:
            raise ConflictError("Cannot delete: the user has associated records") from e
        logger.info("User %s deleted user %s", actor.id, user_id)


@dataclass
class _ResetEntry:
    user_id: int
    salt: str
    code_hash: str
    expires_at: float


def _hash_code(salt: str, code: str) -> str:
    return hashlib.sha256(f"{salt}:{code}".encode("utf-8")).hexdigest()


class PasswordResetStore:
    """In-memory one-time codes for the "forgot password" flow.

    Codes live in process memory only and are returned to the caller directly
    (there is no mail delivery), which makes this a demo flow.
    """

    def __init__(self, accounts: AccountService, ttl_seconds: Optional[int] = None,
                 clock=time.time) -> None:
        self._accounts = accounts
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.password_reset_ttl_seconds
        self._clock = clock
        self._entries: Dict[str, _ResetEntry] = {}
        self._lock = threading.Lock()

    def request(self, email: Optional[str]) -> Optional[Tuple[str, int]]:
        """Issue a code for ``email``. Returns None when no such account exists."""
        clean_email = EmailValidator.normalize(email)
        if not clean_email:
            raise ValueError("email is required")
        user = self._accounts.find_by_email(clean_email)
        if user is None:
            return None
        code = f"{secrets.randbelow(1_000_000):06d}"
        salt = secrets.token_hex(16)
        with self._lock:
            self._entries[clean_email] = _ResetEntry(
                user_id=user.id,
                salt=salt,
                code_hash=_hash_code(salt, code),
                expires_at=self._clock() + self._ttl,
            )
        logger.info("Password reset code issued for user %s", user.id)
        return code, self._ttl

    def reset(self, email: Optional[str], code: Optional[str], new_password: Optional[str]) -> None:
        clean_email = EmailValidator.normalize(email)
        if not clean_email or not code or not new_password:
            raise ValueError("email, code and new_password are required")
        with self._lock:
            entry = self._entries.get(clean_email)
            if entry is None:
                raise ValueError("Invalid or expired code")
            if self._clock() > entry.expires_at:
                del self._entries[clean_email]
                raise ValueError("Invalid or expired code")
            if not secrets.compare_digest(_hash_code(entry.salt, str(code).strip()), entry.code_hash):
                raise AuthenticationError("Incorrect code")
            password = _check_new_password(new_password)
            del self._entries[clean_email]
        self._accounts.set_password(entry.user_id, password)
