from datetime import date

import pytest

from library_app.errors import ConflictError, NotFoundError
from library_app.purchases import PurchaseService


@pytest.fixture
def purchases(db_file):
    return PurchaseService()


def test_purchase_takes_one_copy(purchases, lib, member, make_book):
    book = make_book(purchase_stock=2, price=9.99)
    purchase_id = purchases.purchase(member.id, book.id, today=date(2024, 5, 4))

    assert purchase_id > 0
    assert lib.get_book(book.id).purchase_stock == 1
    history = purchases.list_purchases(member.id)
    assert history == [
        {
            "id": purchase_id,
            "purchased_on": "2024-05-04",
            "price": 9.99,
            "book_id": book.id,
            "title": "Dune",
            "author": "Frank Herbert",
        }
    ]


def test_catalog_price_wins(purchases, member, make_book):
    book = make_book(price=20.0)
    purchases.purchase(member.id, book.id, price=1.0)
    assert purchases.list_purchases(member.id)[0]["price"] == 20.0


def test_client_price_used_when_catalog_has_none(purchases, member, make_book):
    book = make_book(price=None)
    purchases.purchase(member.id, book.id, price="7.5")
    assert purchases.list_purchases(member.id)[0]["price"] == 7.5


def test_no_price_anywhere(purchases, member, make_book):
    book = make_book(price=None)
    with pytest.raises(ValueError, match="invalid price"):
        purchases.purchase(member.id, book.id)


def test_purchase_out_of_stock(purchases, member, make_book):
    book = make_book(purchase_stock=0, rental_stock=4)
    with pytest.raises(ConflictError, match="not available for purchase"):
        purchases.purchase(member.id, book.id)


def test_last_purchase_keeps_rentable_book_available(purchases, lib, member, make_book):
    book = make_book(purchase_stock=1, rental_stock=1)
    purchases.purchase(member.id, book.id)
    assert lib.get_book(book.id).available is True


def test_purchase_unknown_user(purchases, make_book):
    book = make_book()
    with pytest.raises(NotFoundError, match="Log in or register"):
        purchases.purchase(999, book.id)
