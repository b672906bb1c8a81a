import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from library_app.config import settings

logger = logging.getLogger(__name__)

# Default database file. Tests point this at a temporary file before
# calling initialize_database().
DATABASE_FILE = settings.data_file

# SQLite INTEGER is a signed 64-bit value.
MAX_ROW_ID = 2**63 - 1

ADMIN_ROLE_ID = 1
USER_ROLE_ID = 2

DEFAULT_ROLES = [
    (ADMIN_ROLE_ID, "ADMIN"),
    (USER_ROLE_ID, "USER"),
]

DEFAULT_CATEGORIES = [
    "Fiction",
    "Non-fiction",
    "Science",
    "History",
    "Children",
    "Technology",
]


def _connect(isolation_level: Optional[str] = "") -> sqlite3.Connection:
    conn = sqlite3.connect(DATABASE_FILE, isolation_level=isolation_level)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def get_db_connection() -> sqlite3.Connection:
    """Open a new connection to the SQLite database."""
    return _connect()


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Yield a connection holding the database write lock.

    ``BEGIN IMMEDIATE`` takes the reserved lock up front, so stock read inside
    the block cannot be changed by another writer before we commit.
    """
    conn = _connect(isolation_level=None)
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def _columns(cursor: sqlite3.Cursor, table: str) -> set:
    cursor.execute(f"PRAGMA table_info({table})")
    return {column[1] for column in cursor.fetchall()}


def create_tables() -> None:
    """Create the tables if they do not exist and patch older schemas."""
    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS roles (
            id INTEGER PRIMARY KEY,
            name TEXT UNIQUE NOT NULL
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            role_id INTEGER NOT NULL DEFAULT 2,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (role_id) REFERENCES roles(id)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT UNIQUE NOT NULL
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS books (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            author TEXT NOT NULL,
            description TEXT,
            available INTEGER NOT NULL DEFAULT 0,
            purchase_stock INTEGER NOT NULL DEFAULT 0,
            rental_stock INTEGER NOT NULL DEFAULT 0,
            price REAL,
            category_id INTEGER,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE SET NULL
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS purchases (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            purchased_on TEXT NOT NULL,
            price REAL NOT NULL,
            user_id INTEGER NOT NULL,
            book_id INTEGER NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id),
            FOREIGN KEY (book_id) REFERENCES books(id)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS loans (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            loaned_on TEXT NOT NULL,
            due_on TEXT NOT NULL,
            returned_on TEXT,
            status TEXT NOT NULL DEFAULT 'active',
            extensions INTEGER NOT NULL DEFAULT 0,
            user_id INTEGER NOT NULL,
            book_id INTEGER NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id),
            FOREIGN KEY (book_id) REFERENCES books(id)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS cart_items (
            user_id INTEGER NOT NULL,
            book_id INTEGER NOT NULL,
            quantity INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (user_id, book_id),
            FOREIGN KEY (user_id) REFERENCES users(id),
            FOREIGN KEY (book_id) REFERENCES books(id)
        )
    """)

    # Older databases kept a single `stock` column; split it into the
    # purchase and rental pools.
    book_columns = _columns(cursor, "books")
    added_pools = False
    if "purchase_stock" not in book_columns:
        cursor.execute("ALTER TABLE books ADD COLUMN purchase_stock INTEGER NOT NULL DEFAULT 0")
        added_pools = True
    if "rental_stock" not in book_columns:
        cursor.execute("ALTER TABLE books ADD COLUMN rental_stock INTEGER NOT NULL DEFAULT 0")
        added_pools = True
    if added_pools and "stock" in book_columns:
        logger.info("Backfilling purchase/rental stock from legacy stock column")
        cursor.execute("UPDATE books SET purchase_stock = MAX(stock, 0) WHERE purchase_stock = 0 AND stock IS NOT NULL")
        cursor.execute("UPDATE books SET rental_stock = MAX(stock, 0) WHERE rental_stock = 0 AND stock IS NOT NULL")
        cursor.execute("""
            UPDATE books
               SET available = CASE WHEN purchase_stock > 0 OR rental_stock > 0 THEN 1 ELSE 0 END
        """)

    loan_columns = _columns(cursor, "loans")
    if "extensions" not in loan_columns:
        cursor.execute("ALTER TABLE loans ADD COLUMN extensions INTEGER NOT NULL DEFAULT 0")
    if "returned_on" not in loan_columns:
        cursor.execute("ALTER TABLE loans ADD COLUMN returned_on TEXT")

    cursor.executemany("INSERT OR IGNORE INTO roles (id, name) VALUES (?, ?)", DEFAULT_ROLES)
    cursor.executemany(
        "INSERT OR IGNORE INTO categories (name) VALUES (?)",
        [(name,) for name in DEFAULT_CATEGORIES],
    )

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_available ON books(available)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_user ON loans(user_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_book ON loans(book_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_status_due ON loans(status, due_on)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_purchases_user ON purchases(user_id)")

    conn.commit()
    conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Point the module at ``db_file`` (if given) and make sure the schema exists."""
    global DATABASE_FILE
    if db_file:
        DATABASE_FILE = db_file
    directory = os.path.dirname(os.path.abspath(DATABASE_FILE))
    os.makedirs(directory, exist_ok=True)
    create_tables()
    logger.debug("Database ready at %s", DATABASE_FILE)


def check_connection() -> bool:
    """Run a trivial query; used by the health endpoint."""
    try:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT 1 AS ok").fetchone()
            return row["ok"] == 1
        finally:
            conn.close()
    except sqlite3.Error:
        logger.exception("Database health check failed")
        return False
