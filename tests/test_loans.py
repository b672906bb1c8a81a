from datetime import date

import pytest

from library_app.errors import ConflictError, NotFoundError, PermissionDeniedError
from library_app.loan import ACTIVE, OVERDUE, RETURNED, Loan
from library_app.loans import LoanService

TODAY = date(2024, 3, 1)


@pytest.fixture
def loans(db_file):
    return LoanService()


def test_create_loan_sets_due_date(loans, lib, member, make_book):
    book = make_book(rental_stock=2)
    loan_ids = loans.create_loan(member.id, book.id, today=TODAY)

    assert len(loan_ids) == 1
    loan = loans.get_loan(loan_ids[0])
    assert loan.loaned_on == "2024-03-01"
    assert loan.due_on == "2024-03-16"
    assert loan.status == ACTIVE
    assert loan.extensions == 0
    assert lib.get_book(book.id).rental_stock == 1


def test_create_loan_with_quantity(loans, lib, member, make_book):
    book = make_book(rental_stock=5)
    loan_ids = loans.create_loan(member.id, book.id, quantity=3)
    assert len(loan_ids) == 3
    assert lib.get_book(book.id).rental_stock == 2


def test_rental_pool_is_independent_of_purchase_pool(loans, member, make_book):
    book = make_book(purchase_stock=10, rental_stock=0)
    with pytest.raises(ConflictError, match="not available for loan"):
        loans.create_loan(member.id, book.id)


def test_loan_more_than_stock(loans, member, make_book):
    book = make_book(rental_stock=2)
    with pytest.raises(ConflictError):
        loans.create_loan(member.id, book.id, quantity=3)


def test_loan_quantity_limit(loans, member, make_book):
    book = make_book(rental_stock=50)
    with pytest.raises(ValueError, match="maximum quantity: 20"):
        loans.create_loan(member.id, book.id, quantity=21)


def test_loan_fractional_quantity_truncates(loans, member, make_book):
    book = make_book(rental_stock=5)
    assert len(loans.create_loan(member.id, book.id, quantity=2.7)) == 2


def test_loan_unknown_user(loans, make_book):
    book = make_book()
    with pytest.raises(NotFoundError, match="User not found"):
        loans.create_loan(999, book.id)


def test_last_copy_makes_book_unavailable(loans, lib, member, make_book):
    book = make_book(purchase_stock=0, rental_stock=1)
    loans.create_loan(member.id, book.id)
    assert lib.get_book(book.id).available is False


def test_extend_loan(loans, member, make_book):
    book = make_book()
    loan_id = loans.create_loan(member.id, book.id, today=TODAY)[0]

    loan = loans.extend_loan(loan_id, member)
    assert loan.due_on == "2024-03-21"
    assert loan.extensions == 1


def test_extension_limit_for_members(loans, member, make_book):
    book = make_book()
    loan_id = loans.create_loan(member.id, book.id, today=TODAY)[0]
    loans.extend_loan(loan_id, member)
    loans.extend_loan(loan_id, member)

    with pytest.raises(ConflictError, match="Extension limit reached"):
        loans.extend_loan(loan_id, member)


def test_admin_bypasses_extension_limit(loans, member, admin, make_book):
    book = make_book()
    loan_id = loans.create_loan(member.id, book.id, today=TODAY)[0]
    for _ in range(3):
        loan = loans.extend_loan(loan_id, admin)
    assert loan.extensions == 3
    assert loan.due_on == "2024-03-31"


def test_extend_someone_elses_loan(loans, accounts, member, make_book):
    other = accounts.register("Other", "other@example.com", "secret")
    book = make_book()
    loan_id = loans.create_loan(member.id, book.id)[0]

    with pytest.raises(PermissionDeniedError):
        loans.extend_loan(loan_id, other)


def test_extend_returned_loan(loans, member, make_book):
    book = make_book()
    loan_id = loans.create_loan(member.id, book.id)[0]
    loans.return_loan(loan_id, member.id)

    with pytest.raises(ConflictError, match="Only active loans"):
        loans.extend_loan(loan_id, member)


def test_overdue_loan_can_still_be_extended(loans, member, make_book):
    book = make_book()
    loan_id = loans.create_loan(member.id, book.id, today=date(2020, 1, 1))[0]
    loan = loans.extend_loan(loan_id, member)
    assert loan.due_on == "2020-01-21"


def test_return_loan(loans, lib, member, make_book):
    book = make_book(purchase_stock=0, rental_stock=1)
    loan_id = loans.create_loan(member.id, book.id)[0]

    loan = loans.return_loan(loan_id, member.id, today=TODAY)

    assert loan.status == RETURNED
    assert loan.returned_on == "2024-03-01"
    restored = lib.get_book(book.id)
    assert restored.rental_stock == 1
    assert restored.available is True


def test_return_twice(loans, member, make_book):
    book = make_book()
    loan_id = loans.create_loan(member.id, book.id)[0]
    loans.return_loan(loan_id, member.id)

    with pytest.raises(ConflictError, match="already returned"):
        loans.return_loan(loan_id, member.id)


def test_return_with_wrong_user(loans, member, admin, make_book):
    book = make_book()
    loan_id = loans.create_loan(member.id, book.id)[0]
    with pytest.raises(ValueError):
        loans.return_loan(loan_id, admin.id)


def test_return_missing_loan(loans, member):
    with pytest.raises(NotFoundError):
        loans.return_loan(42, member.id)


def test_overdue_listing(loans, member, make_book):
    book = make_book(rental_stock=3)
    late = loans.create_loan(member.id, book.id, today=date(2024, 1, 1))[0]
    loans.create_loan(member.id, book.id, today=TODAY)

    overdue = loans.overdue_loans(today=TODAY)
    assert [loan.id for loan in overdue] == [late]
    assert overdue[0].to_dict(TODAY)["status"] == OVERDUE


def test_list_all_loans_filter(loans, accounts, member, make_book):
    other = accounts.register("Someone Else", "else@example.com", "secret")
    book = make_book()
    loans.create_loan(member.id, book.id)
    loans.create_loan(other.id, book.id)

    assert len(loans.list_all_loans()) == 2
    found = loans.list_all_loans("READER")
    assert len(found) == 1
    assert found[0].user_email == "reader@example.com"
    assert loans.list_loans(other.id)[0].title == "Dune"


def test_effective_status():
    loan = Loan(1, 1, 1, "2024-01-01", "2024-01-16")
    assert loan.effective_status(date(2024, 1, 16)) == ACTIVE
    assert loan.effective_status(date(2024, 1, 17)) == OVERDUE
    loan.status = RETURNED
    assert loan.effective_status(date(2024, 1, 17)) == RETURNED
    assert not loan.can_extend(is_admin=True)
