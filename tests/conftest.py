import os
import tempfile
from dataclasses import dataclass
from datetime import date

os.environ.setdefault("ENVELOPES_DATA_DIR", tempfile.mkdtemp(prefix="envelopes-test-"))

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import Account, AccountType, Budget, BudgetEntry, Category
from schemas import AccountIn, BudgetIn, CategoryGroupIn, CategoryIn
from services import AccountService, BudgetService, CategoryService

USER_ID = 1
OTHER_USER_ID = 2
APRIL = date(2024, 4, 1)


@dataclass
class Ledger:
    budget: Budget
    groceries: Category
    rent: Category
    fun: Category
    checking: Account
    savings: Account
    card: Account
    brokerage: Account


def assigned(session: Session, category_id: int, year: int = 2024, month: int = 4) -> int:
    value = session.scalar(
        select(BudgetEntry.assigned_cents).where(
            BudgetEntry.category_id == category_id,
            BudgetEntry.year == year,
            BudgetEntry.month == month,
        )
    )
    return value or 0


@pytest.fixture()
def session():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        yield session


@pytest.fixture()
def ledger(session) -> Ledger:
    budget = BudgetService(session, USER_ID).create(BudgetIn(name="Household"))
    categories = CategoryService(session, USER_ID)
    group = categories.create_group(budget.id, CategoryGroupIn(name="Everyday"))
    groceries = categories.create_category(CategoryIn(group_id=group.id, name="Groceries"))
    rent = categories.create_category(CategoryIn(group_id=group.id, name="Rent"))
    fun = categories.create_category(CategoryIn(group_id=group.id, name="Fun"))

    accounts = AccountService(session, USER_ID)
    checking = accounts.create(
        budget.id,
        AccountIn(
            name="Checking",
            type=AccountType.checking,
            initial_balance_cents=100_000,
            initial_balance_date=APRIL,
        ),
    )
    savings = accounts.create(
        budget.id, AccountIn(name="Savings", type=AccountType.savings)
    )
    card = accounts.create(
        budget.id, AccountIn(name="Visa", type=AccountType.credit_card)
    )
    brokerage = accounts.create(
        budget.id, AccountIn(name="Brokerage", type=AccountType.investment)
    )
    return Ledger(
        budget=budget,
        groceries=groceries,
        rent=rent,
        fun=fun,
        checking=checking,
        savings=savings,
        card=card,
        brokerage=brokerage,
    )
