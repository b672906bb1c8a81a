import math

import pytest

from library_app.validators import EmailValidator, NumberValidator, TextValidator


def test_email_normalize():
    assert EmailValidator.normalize("  Reader@Example.COM ") == "reader@example.com"
    assert EmailValidator.normalize(None) == ""
    assert EmailValidator.looks_valid("a@b.c")
    assert not EmailValidator.looks_valid("not an email")


def test_text_required():
    assert TextValidator.required("  Dune  ", "title") == "Dune"
    with pytest.raises(ValueError, match="title is required"):
        TextValidator.required(None, "title")


@pytest.mark.parametrize("value,expected", [(None, 1), (3, 3), ("4", 4), (2.9, 2)])
def test_positive_int(value, expected):
    assert NumberValidator.positive_int(value) == expected


@pytest.mark.parametrize("value", [0, -2, "x", True, math.inf, 0.5])
def test_positive_int_rejects(value):
    with pytest.raises(ValueError, match="invalid quantity"):
        NumberValidator.positive_int(value)


def test_positive_int_maximum():
    assert NumberValidator.positive_int(20, maximum=20) == 20
    with pytest.raises(ValueError, match="maximum quantity: 20"):
        NumberValidator.positive_int(21, maximum=20)


@pytest.mark.parametrize("value,expected", [(5, 5), ("7", 7), (-3, 0), ("junk", 0), (None, 0), (math.nan, 0)])
def test_stock(value, expected):
    assert NumberValidator.stock(value) == expected


@pytest.mark.parametrize("value,expected", [(9.5, 9.5), ("3", 3.0), (None, None), ("free", None), (math.inf, None)])
def test_price(value, expected):
    assert NumberValidator.price(value) == expected
