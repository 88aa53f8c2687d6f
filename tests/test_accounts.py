from datetime import date

import pytest

from conftest import USER_ID
from errors import Conflict, ValidationFailed
from models import AccountType, Category, CategoryGroup, ClearedStatus
from schemas import (
    AccountIn,
    AccountUpdateIn,
    BudgetIn,
    CategoryGroupIn,
    CategoryIn,
    PayeeIn,
    TransactionIn,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    PayeeService,
    TransactionService,
)


def test_credit_card_gets_a_payment_category(session, ledger) -> None:
    payment = session.get(Category, ledger.card.payment_category_id)
    group = session.get(CategoryGroup, payment.group_id)

    assert payment.name == "Visa Payments"
    assert group.name == "Credit Card Payments"
    assert group.budget_id == ledger.budget.id
    assert ledger.card.on_budget
    assert not ledger.brokerage.on_budget
    assert ledger.brokerage.payment_category_id is None


def test_second_card_reuses_the_payment_group(session, ledger) -> None:
    amex = AccountService(session, USER_ID).create(
        ledger.budget.id, AccountIn(name="Amex", type=AccountType.credit_card)
    )
    visa_payment = session.get(Category, ledger.card.payment_category_id)
    amex_payment = session.get(Category, amex.payment_category_id)

    assert amex_payment.group_id == visa_payment.group_id
    assert amex_payment.name == "Amex Payments"


def test_account_names_are_unique_per_budget(session, ledger) -> None:
    accounts = AccountService(session, USER_ID)
    with pytest.raises(Conflict):
        accounts.create(
            ledger.budget.id, AccountIn(name="checking", type=AccountType.cash)
        )

    other = BudgetService(session, USER_ID).create(BudgetIn(name="Other"))
    copy = accounts.create(other.id, AccountIn(name="Checking", type=AccountType.cash))
    assert copy.budget_id == other.id


def test_balances_split_cleared_and_uncleared(session, ledger) -> None:
    txns = TransactionService(session, USER_ID)
    txns.create(
        ledger.budget.id,
        TransactionIn(
            account_id=ledger.checking.id,
            date=date(2024, 4, 3),
            amount_cents=-2_000,
            category_id=ledger.fun.id,
        ),
    )
    txns.create(
        ledger.budget.id,
        TransactionIn(
            account_id=ledger.checking.id,
            date=date(2024, 4, 4),
            amount_cents=-500,
            category_id=ledger.fun.id,
            cleared=ClearedStatus.cleared,
        ),
    )

    accounts = AccountService(session, USER_ID)
    balances = accounts.calculate_balances(ledger.checking.id)
    assert balances.working_cents == 97_500
    assert balances.cleared_cents == 99_500
    assert balances.uncleared_cents == -2_000

    by_account = accounts.balances_for_budget(ledger.budget.id)
    assert by_account[ledger.checking.id] == balances
    assert ledger.savings.id not in by_account


def test_renaming_a_card_renames_its_payment_category(session, ledger) -> None:
    accounts = AccountService(session, USER_ID)
    accounts.update(ledger.card.id, AccountUpdateIn(name="Visa Gold"))

    payment = session.get(Category, ledger.card.payment_category_id)
    assert payment.name == "Visa Gold Payments"


def test_changing_type_rederives_on_budget(session, ledger) -> None:
    accounts = AccountService(session, USER_ID)
    updated = accounts.update(
        ledger.savings.id, AccountUpdateIn(type=AccountType.investment)
    )
    assert not updated.on_budget

    updated = accounts.update(
        ledger.savings.id,
        AccountUpdateIn(type=AccountType.savings, on_budget=False),
    )
    assert updated.type == AccountType.savings
    assert not updated.on_budget


def test_closed_accounts_are_hidden_and_reject_new_transactions(session, ledger) -> None:
    accounts = AccountService(session, USER_ID)
    accounts.close(ledger.savings.id)

    names = [a.name for a in accounts.list_all(ledger.budget.id)]
    assert "Savings" not in names
    assert "Savings" in [
        a.name for a in accounts.list_all(ledger.budget.id, include_closed=True)
    ]

    with pytest.raises(ValidationFailed, match="closed"):
        TransactionService(session, USER_ID).create(
            ledger.budget.id,
            TransactionIn(
                account_id=ledger.savings.id, date=date(2024, 4, 5), amount_cents=100
            ),
        )

    accounts.reopen(ledger.savings.id)
    assert "Savings" in [a.name for a in accounts.list_all(ledger.budget.id)]


def test_reconciliation_reports_difference_and_locks_cleared(session, ledger) -> None:
    txns = TransactionService(session, USER_ID)
    txns.create(
        ledger.budget.id,
        TransactionIn(
            account_id=ledger.checking.id,
            date=date(2024, 4, 6),
            amount_cents=-1_000,
            category_id=ledger.fun.id,
            cleared=ClearedStatus.cleared,
        ),
    )
    [pending] = txns.create(
        ledger.budget.id,
        TransactionIn(
            account_id=ledger.checking.id,
            date=date(2024, 4, 7),
            amount_cents=-300,
            category_id=ledger.fun.id,
        ),
    )
    accounts = AccountService(session, USER_ID)

    summary = accounts.start_reconciliation(ledger.checking.id, 99_500)
    assert summary.cleared_balance_cents == 99_000
    assert summary.difference_cents == 500

    # The initial balance row and the cleared spend.
    assert accounts.finish_reconciliation(ledger.checking.id) == 2
    session.refresh(pending)
    assert pending.cleared == ClearedStatus.uncleared


def test_category_and_group_deletion_rules(session, ledger) -> None:
    categories = CategoryService(session, USER_ID)

    with pytest.raises(Conflict, match="payment category"):
        categories.delete_category(ledger.card.payment_category_id)

    BudgetService(session, USER_ID).assign(ledger.rent.id, 2024, 4, 1_000)
    with pytest.raises(ValidationFailed):
        categories.delete_category(ledger.rent.id)

    with pytest.raises(ValidationFailed, match="still has categories"):
        categories.delete_group(ledger.groceries.group_id)

    spare = categories.create_group(ledger.budget.id, CategoryGroupIn(name="Spare"))
    unused = categories.create_category(CategoryIn(group_id=spare.id, name="Unused"))
    categories.delete_category(unused.id)
    categories.delete_group(spare.id)

    assert [g.name for g in categories.list_groups(ledger.budget.id)] == [
        "Everyday",
        "Credit Card Payments",
    ]


def test_duplicate_names_conflict(session, ledger) -> None:
    categories = CategoryService(session, USER_ID)
    with pytest.raises(Conflict):
        categories.create_category(
            CategoryIn(group_id=ledger.groceries.group_id, name="groceries")
        )
    with pytest.raises(Conflict):
        categories.create_group(ledger.budget.id, CategoryGroupIn(name="EVERYDAY"))

    payees = PayeeService(session, USER_ID)
    payees.create(ledger.budget.id, PayeeIn(name="Landlord"))
    with pytest.raises(Conflict):
        payees.create(ledger.budget.id, PayeeIn(name="landlord"))
