import pytest

from library_app import database
from library_app.accounts import AccountService
from library_app.config import settings
from library_app.database import ADMIN_ROLE_ID
from library_app.library import Library
from library_app.ui_helpers import OUTPUT_MODE_ENV


@pytest.fixture
def db_file(tmp_path, monkeypatch):
    # Every test gets its own database file
    path = str(tmp_path / "library_test.db")
    monkeypatch.setattr(database, "DATABASE_FILE", path)
    # Cheap hashes keep the suite fast
    monkeypatch.setattr(settings, "bcrypt_rounds", 4)
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")
    database.initialize_database()
    return path


@pytest.fixture
def lib(db_file):
    return Library()


@pytest.fixture
def accounts(db_file):
    return AccountService()


@pytest.fixture
def member(accounts):
    return accounts.register("Reader", "reader@example.com", "secret")


@pytest.fixture
def admin(accounts):
    return accounts.create_user("Admin", "admin@example.com", "secret", role_id=ADMIN_ROLE_ID)


@pytest.fixture
def make_book(lib):
    def _make(**overrides):
        data = {
            "title": "Dune",
            "author": "Frank Herbert",
            "purchase_stock": 3,
            "rental_stock": 2,
            "price": 10.5,
        }
        data.update(overrides)
        return lib.create_book(data)

    return _make
