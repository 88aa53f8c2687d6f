from datetime import date

import pytest

from conftest import OTHER_USER_ID, USER_ID, assigned
from errors import Forbidden, InsufficientFunds, NotFound, ValidationFailed
from models import AccountType, Budget
from schemas import AccountIn, BudgetIn, TransactionIn
from services import AccountService, BudgetService, TransactionService


def _categories(view):
    return {c.id: c for g in view.groups for c in g.categories}


def test_move_money_requires_sufficient_assigned_amount(session, ledger) -> None:
    budgets = BudgetService(session, USER_ID)
    budgets.assign(ledger.groceries.id, 2024, 4, 3_000)

    with pytest.raises(InsufficientFunds):
        budgets.move(ledger.groceries.id, ledger.fun.id, 2024, 4, 5_000)

    assert assigned(session, ledger.groceries.id) == 3_000
    assert assigned(session, ledger.fun.id) == 0


def test_move_money_rejects_bad_requests(session, ledger) -> None:
    budgets = BudgetService(session, USER_ID)
    budgets.assign(ledger.groceries.id, 2024, 4, 3_000)

    with pytest.raises(ValidationFailed, match="must differ"):
        budgets.move(ledger.groceries.id, ledger.groceries.id, 2024, 4, 100)
    with pytest.raises(ValidationFailed, match="positive"):
        budgets.move(ledger.groceries.id, ledger.fun.id, 2024, 4, 0)
    with pytest.raises(ValidationFailed, match="Payment categories"):
        budgets.move(
            ledger.groceries.id, ledger.card.payment_category_id, 2024, 4, 1_000
        )


def test_move_matches_direct_assignment(session, ledger) -> None:
    budgets = BudgetService(session, USER_ID)
    budgets.assign(ledger.groceries.id, 2024, 4, 5_000)

    source, destination = budgets.move(ledger.groceries.id, ledger.fun.id, 2024, 4, 2_000)

    assert source.assigned_cents == 3_000
    assert destination.assigned_cents == 2_000
    view = budgets.get_budget_view(ledger.budget.id, 2024, 4)
    assert view.total_assigned_cents == 5_000


def test_assign_is_absolute_and_rejects_negative(session, ledger) -> None:
    budgets = BudgetService(session, USER_ID)
    budgets.assign(ledger.rent.id, 2024, 4, 90_000)
    entry = budgets.assign(ledger.rent.id, 2024, 4, 80_000)
    assert entry.assigned_cents == 80_000

    with pytest.raises(ValidationFailed, match="negative"):
        budgets.assign(ledger.rent.id, 2024, 4, -1)
    assert assigned(session, ledger.rent.id) == 80_000


def test_assigning_the_overspent_amount_covers_it(session, ledger) -> None:
    budgets = BudgetService(session, USER_ID)
    TransactionService(session, USER_ID).create(
        ledger.budget.id,
        TransactionIn(
            account_id=ledger.checking.id,
            date=date(2024, 4, 15),
            amount_cents=-3_000,
            category_id=ledger.fun.id,
        ),
    )
    fun = _categories(budgets.get_budget_view(ledger.budget.id, 2024, 4))[ledger.fun.id]
    assert fun.available_cents == -3_000
    assert fun.is_overspent

    budgets.assign(ledger.fun.id, 2024, 4, 3_000)

    fun = _categories(budgets.get_budget_view(ledger.budget.id, 2024, 4))[ledger.fun.id]
    assert fun.available_cents == 0
    assert not fun.is_overspent


def test_budget_view_totals_are_additive(session, ledger) -> None:
    budgets = BudgetService(session, USER_ID)
    txns = TransactionService(session, USER_ID)
    budgets.assign(ledger.groceries.id, 2024, 4, 40_000)
    budgets.assign(ledger.rent.id, 2024, 4, 50_000)
    budgets.assign(ledger.fun.id, 2024, 6, 1_000)
    txns.create(
        ledger.budget.id,
        TransactionIn(
            account_id=ledger.checking.id, date=date(2024, 4, 25), amount_cents=20_000
        ),
    )
    # Tracking-account inflows are not budget income.
    txns.create(
        ledger.budget.id,
        TransactionIn(
            account_id=ledger.brokerage.id, date=date(2024, 4, 25), amount_cents=7_500
        ),
    )

    april = budgets.get_budget_view(ledger.budget.id, 2024, 4)
    categories = _categories(april).values()
    assert april.total_assigned_cents == sum(c.assigned_cents for c in categories)
    assert april.total_assigned_cents == 90_000
    assert april.total_income_cents == 120_000
    assert april.to_be_budgeted_cents == 30_000
    assert sum(g.assigned_cents for g in april.groups) == april.total_assigned_cents

    june = budgets.get_budget_view(ledger.budget.id, 2024, 6)
    assert june.total_income_cents == 0
    assert june.total_assigned_cents == 1_000
    assert june.to_be_budgeted_cents == -1_000

    with pytest.raises(ValidationFailed):
        budgets.get_budget_view(ledger.budget.id, 2024, 13)


def test_budget_access_is_scoped_to_owner(session, ledger) -> None:
    with pytest.raises(Forbidden):
        BudgetService(session, OTHER_USER_ID).get(ledger.budget.id)
    with pytest.raises(Forbidden):
        BudgetService(session, OTHER_USER_ID).assign(ledger.groceries.id, 2024, 4, 1)
    with pytest.raises(NotFound):
        BudgetService(session, USER_ID).get(4_242)
    assert BudgetService(session, OTHER_USER_ID).list_all() == []


def test_deleting_a_budget_removes_everything_beneath_it(session, ledger) -> None:
    budgets = BudgetService(session, USER_ID)
    keep = budgets.create(BudgetIn(name="Keep"))
    AccountService(session, USER_ID).create(
        keep.id, AccountIn(name="Wallet", type=AccountType.cash)
    )
    budgets.assign(ledger.groceries.id, 2024, 4, 1_000)
    TransactionService(session, USER_ID).create(
        ledger.budget.id,
        TransactionIn(
            account_id=ledger.card.id,
            date=date(2024, 4, 2),
            amount_cents=-500,
            category_id=ledger.groceries.id,
        ),
    )

    budget_id = ledger.budget.id
    budgets.delete(budget_id)

    assert session.get(Budget, budget_id) is None
    assert [b.name for b in budgets.list_all()] == ["Keep"]
    assert len(AccountService(session, USER_ID).list_all(keep.id)) == 1
