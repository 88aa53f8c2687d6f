"""
Ownership resolution.

Every entity resolves to exactly one budget id through a single query, and the
``Ownership`` guard turns that into NotFound/Forbidden before a service touches
anything. Services never walk relationships to answer "who owns this".
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import Forbidden, NotFound
from models import (
    Account,
    Budget,
    Category,
    CategoryGroup,
    Goal,
    Payee,
    Transaction,
)


def budget_id_for_account(session: Session, account_id: int) -> Optional[int]:
    return session.scalar(select(Account.budget_id).where(Account.id == account_id))


def budget_id_for_group(session: Session, group_id: int) -> Optional[int]:
    return session.scalar(
        select(CategoryGroup.budget_id).where(CategoryGroup.id == group_id)
    )


def budget_id_for_category(session: Session, category_id: int) -> Optional[int]:
    return session.scalar(
        select(CategoryGroup.budget_id)
        .join(Category, Category.group_id == CategoryGroup.id)
        .where(Category.id == category_id)
    )


def budget_id_for_transaction(session: Session, transaction_id: int) -> Optional[int]:
    return session.scalar(
        select(Transaction.budget_id).where(Transaction.id == transaction_id)
    )


def budget_id_for_payee(session: Session, payee_id: int) -> Optional[int]:
    return session.scalar(select(Payee.budget_id).where(Payee.id == payee_id))


def budget_id_for_goal(session: Session, goal_id: int) -> Optional[int]:
    return session.scalar(
        select(CategoryGroup.budget_id)
        .join(Category, Category.group_id == CategoryGroup.id)
        .join(Goal, Goal.category_id == Category.id)
        .where(Goal.id == goal_id)
    )


class Ownership:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _check(self, budget_id: Optional[int], label: str) -> int:
        if budget_id is None:
            raise NotFound(f"{label} not found")
        owner = self.session.scalar(select(Budget.user_id).where(Budget.id == budget_id))
        if owner is None:
            raise NotFound(f"{label} not found")
        if owner != self.user_id:
            raise Forbidden(f"{label} belongs to another user")
        return budget_id

    def _in_budget(self, actual: int, expected: Optional[int], label: str) -> None:
        if expected is not None and actual != expected:
            raise NotFound(f"{label} not found in this budget")

    def require_budget(self, budget_id: int) -> Budget:
        self._check(budget_id, "Budget")
        return self.session.get(Budget, budget_id)

    def require_account(
        self, account_id: int, *, budget_id: Optional[int] = None
    ) -> Account:
        actual = self._check(budget_id_for_account(self.session, account_id), "Account")
        self._in_budget(actual, budget_id, "Account")
        return self.session.get(Account, account_id)

    def require_group(
        self, group_id: int, *, budget_id: Optional[int] = None
    ) -> CategoryGroup:
        actual = self._check(budget_id_for_group(self.session, group_id), "Category group")
        self._in_budget(actual, budget_id, "Category group")
        return self.session.get(CategoryGroup, group_id)

    def require_category(
        self, category_id: int, *, budget_id: Optional[int] = None
    ) -> Category:
        actual = self._check(
            budget_id_for_category(self.session, category_id), "Category"
        )
        self._in_budget(actual, budget_id, "Category")
        return self.session.get(Category, category_id)

    def require_transaction(self, transaction_id: int) -> Transaction:
        self._check(
            budget_id_for_transaction(self.session, transaction_id), "Transaction"
        )
        return self.session.get(Transaction, transaction_id)

    def require_payee(self, payee_id: int, *, budget_id: Optional[int] = None) -> Payee:
        actual = self._check(budget_id_for_payee(self.session, payee_id), "Payee")
        self._in_budget(actual, budget_id, "Payee")
        return self.session.get(Payee, payee_id)

    def require_goal(self, goal_id: int) -> Goal:
        self._check(budget_id_for_goal(self.session, goal_id), "Goal")
        return self.session.get(Goal, goal_id)
