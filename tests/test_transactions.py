from datetime import date

import pytest
from sqlalchemy import func, select

from conftest import OTHER_USER_ID, USER_ID
from errors import Forbidden, NotFound, ValidationFailed
from models import ClearedStatus, SplitTransaction, Transaction
from schemas import (
    BudgetIn,
    CategoryGroupIn,
    CategoryIn,
    SplitIn,
    TransactionIn,
    TransactionPatch,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    TransactionFilters,
    TransactionService,
)


def _count(session, model) -> int:
    return session.scalar(select(func.count(model.id)))


def test_transfer_creates_symmetric_pair_and_deletes_both(session, ledger) -> None:
    txns = TransactionService(session, USER_ID)

    outflow, inflow = txns.create(
        ledger.budget.id,
        TransactionIn(
            account_id=ledger.checking.id,
            date=date(2024, 4, 3),
            amount_cents=-2_500,
            is_transfer=True,
            transfer_account_id=ledger.savings.id,
            memo="Rainy day",
        ),
    )

    assert outflow.amount_cents == -2_500
    assert inflow.amount_cents == 2_500
    assert outflow.transfer_group_id == inflow.transfer_group_id
    assert outflow.transfer_account_id == ledger.savings.id
    assert inflow.transfer_account_id == ledger.checking.id
    assert inflow.memo == "Rainy day"
    assert outflow.category_id is None and inflow.category_id is None

    pair_ids = sorted([outflow.id, inflow.id])
    deleted = txns.delete(inflow.id)

    assert sorted(deleted) == pair_ids
    assert all(session.get(Transaction, txn_id) is None for txn_id in pair_ids)


def test_transfer_category_rules_follow_account_kinds(session, ledger) -> None:
    txns = TransactionService(session, USER_ID)

    def transfer(source, destination, category_id=None):
        return txns.create(
            ledger.budget.id,
            TransactionIn(
                account_id=source.id,
                date=date(2024, 4, 9),
                amount_cents=1_000,
                is_transfer=True,
                transfer_account_id=destination.id,
                category_id=category_id,
            ),
        )

    with pytest.raises(ValidationFailed, match="budget accounts"):
        transfer(ledger.checking, ledger.savings, ledger.fun.id)
    with pytest.raises(ValidationFailed, match="need a category"):
        transfer(ledger.checking, ledger.brokerage)

    outflow, inflow = transfer(ledger.checking, ledger.brokerage, ledger.fun.id)
    assert outflow.category_id == ledger.fun.id
    assert inflow.category_id is None

    outflow, inflow = transfer(ledger.brokerage, ledger.checking)
    assert outflow.category_id is None and inflow.category_id is None

    with pytest.raises(ValidationFailed, match="same account"):
        transfer(ledger.checking, ledger.checking)


def test_transfer_cannot_change_account_or_category(session, ledger) -> None:
    txns = TransactionService(session, USER_ID)
    outflow, inflow = txns.create(
        ledger.budget.id,
        TransactionIn(
            account_id=ledger.checking.id,
            date=date(2024, 4, 3),
            amount_cents=1_000,
            is_transfer=True,
            transfer_account_id=ledger.savings.id,
        ),
    )

    with pytest.raises(ValidationFailed, match="Transfers can only change"):
        txns.update(outflow.id, TransactionPatch(category_id=ledger.fun.id))

    rows = txns.update(inflow.id, TransactionPatch(amount_cents=4_000, memo="More"))
    by_account = {row.account_id: row for row in rows}
    assert by_account[ledger.checking.id].amount_cents == -4_000
    assert by_account[ledger.savings.id].amount_cents == 4_000
    assert all(row.memo == "More" for row in rows)


def test_split_with_mismatched_sum_persists_nothing(session, ledger) -> None:
    txns = TransactionService(session, USER_ID)
    before = _count(session, Transaction)

    with pytest.raises(ValidationFailed, match="Split amounts"):
        txns.create(
            ledger.budget.id,
            TransactionIn(
                account_id=ledger.checking.id,
                date=date(2024, 4, 4),
                amount_cents=-10_000,
                payee_name="Market",
                splits=[
                    SplitIn(category_id=ledger.groceries.id, amount_cents=-6_000),
                    SplitIn(category_id=ledger.fun.id, amount_cents=-3_000),
                ],
            ),
        )

    assert _count(session, Transaction) == before
    assert _count(session, SplitTransaction) == 0


def test_split_children_drive_activity_and_totals_are_fixed(session, ledger) -> None:
    txns = TransactionService(session, USER_ID)
    [txn] = txns.create(
        ledger.budget.id,
        TransactionIn(
            account_id=ledger.checking.id,
            date=date(2024, 4, 4),
            amount_cents=-10_000,
            splits=[
                SplitIn(category_id=ledger.groceries.id, amount_cents=-6_000),
                SplitIn(category_id=ledger.fun.id, amount_cents=-4_000),
            ],
        ),
    )
    assert txn.is_split
    assert txn.category_id is None
    assert sum(s.amount_cents for s in txn.splits) == txn.amount_cents

    view = BudgetService(session, USER_ID).get_budget_view(ledger.budget.id, 2024, 4)
    activity = {c.id: c.activity_cents for g in view.groups for c in g.categories}
    assert activity[ledger.groceries.id] == -6_000
    assert activity[ledger.fun.id] == -4_000

    with pytest.raises(ValidationFailed, match="split total"):
        txns.update(txn.id, TransactionPatch(amount_cents=-9_000))

    with pytest.raises(ValidationFailed, match="Split amounts"):
        txns.replace_splits(
            txn.id, [SplitIn(category_id=ledger.rent.id, amount_cents=-9_000)]
        )

    replaced = txns.replace_splits(
        txn.id,
        [
            SplitIn(category_id=ledger.rent.id, amount_cents=-7_000),
            SplitIn(category_id=ledger.fun.id, amount_cents=-3_000),
        ],
    )
    assert [s.category_id for s in replaced.splits] == [ledger.rent.id, ledger.fun.id]
    assert _count(session, SplitTransaction) == 2


def test_reconciled_transactions_are_locked(session, ledger) -> None:
    txns = TransactionService(session, USER_ID)
    [txn] = txns.create(
        ledger.budget.id,
        TransactionIn(
            account_id=ledger.checking.id,
            date=date(2024, 4, 2),
            amount_cents=-1_200,
            category_id=ledger.fun.id,
            cleared=ClearedStatus.cleared,
        ),
    )
    AccountService(session, USER_ID).finish_reconciliation(ledger.checking.id)
    session.refresh(txn)
    assert txn.cleared == ClearedStatus.reconciled

    with pytest.raises(ValidationFailed, match="Reconciled"):
        txns.update(txn.id, TransactionPatch(amount_cents=-1_500))
    with pytest.raises(ValidationFailed, match="Reconciled"):
        txns.delete(txn.id)

    [updated] = txns.update(txn.id, TransactionPatch(memo="Cinema", approved=False))
    assert updated.memo == "Cinema"
    assert updated.approved is False


def test_payee_is_found_or_created_by_name(session, ledger) -> None:
    txns = TransactionService(session, USER_ID)
    [first] = txns.create(
        ledger.budget.id,
        TransactionIn(
            account_id=ledger.checking.id,
            date=date(2024, 4, 2),
            amount_cents=-500,
            payee_name="Corner Shop",
        ),
    )
    [second] = txns.create(
        ledger.budget.id,
        TransactionIn(
            account_id=ledger.checking.id,
            date=date(2024, 4, 3),
            amount_cents=-700,
            payee_name="  corner shop ",
        ),
    )
    assert first.payee_id == second.payee_id


def test_ownership_failures(session, ledger) -> None:
    other_budget = BudgetService(session, USER_ID).create(BudgetIn(name="Side"))
    categories = CategoryService(session, USER_ID)
    group = categories.create_group(other_budget.id, CategoryGroupIn(name="Misc"))
    foreign_category = categories.create_category(
        CategoryIn(group_id=group.id, name="Misc")
    )

    with pytest.raises(Forbidden):
        TransactionService(session, OTHER_USER_ID).create(
            ledger.budget.id,
            TransactionIn(
                account_id=ledger.checking.id, date=date(2024, 4, 1), amount_cents=-100
            ),
        )
    with pytest.raises(NotFound, match="Category"):
        TransactionService(session, USER_ID).create(
            ledger.budget.id,
            TransactionIn(
                account_id=ledger.checking.id,
                date=date(2024, 4, 1),
                amount_cents=-100,
                category_id=foreign_category.id,
            ),
        )
    with pytest.raises(NotFound, match="Account"):
        TransactionService(session, USER_ID).create(
            ledger.budget.id,
            TransactionIn(account_id=9_999, date=date(2024, 4, 1), amount_cents=-100),
        )
    with pytest.raises(Forbidden):
        TransactionService(session, OTHER_USER_ID).list(ledger.budget.id)


def test_list_filters_by_account_and_category(session, ledger) -> None:
    txns = TransactionService(session, USER_ID)
    for day, account, category in (
        (2, ledger.checking, ledger.groceries),
        (3, ledger.checking, ledger.fun),
        (4, ledger.savings, ledger.groceries),
    ):
        txns.create(
            ledger.budget.id,
            TransactionIn(
                account_id=account.id,
                date=date(2024, 4, day),
                amount_cents=-1_000,
                category_id=category.id,
            ),
        )

    groceries = txns.list(
        ledger.budget.id, TransactionFilters(category_id=ledger.groceries.id)
    )
    assert [t.date.day for t in groceries] == [4, 2]

    on_checking = txns.list(
        ledger.budget.id,
        TransactionFilters(account_id=ledger.checking.id, start=date(2024, 4, 2)),
    )
    assert [t.date.day for t in on_checking] == [3, 2]


def test_update_rejects_clearing_required_fields(session, ledger) -> None:
    txns = TransactionService(session, USER_ID)
    [txn] = txns.create(
        ledger.budget.id,
        TransactionIn(
            account_id=ledger.checking.id,
            date=date(2024, 4, 5),
            amount_cents=-800,
            category_id=ledger.fun.id,
        ),
    )

    for field in ("date", "amount_cents", "account_id", "cleared", "approved"):
        with pytest.raises(ValidationFailed, match=f"Cannot clear {field}"):
            txns.update(txn.id, TransactionPatch(**{field: None}))

    stored = txns.get(txn.id)
    assert stored.date == date(2024, 4, 5)
    assert stored.amount_cents == -800
    assert stored.account_id == ledger.checking.id

    [updated] = txns.update(txn.id, TransactionPatch(category_id=None, memo=None))
    assert updated.category_id is None
