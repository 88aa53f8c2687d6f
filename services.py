from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from rapidfuzz.distance import Levenshtein

from budget_entries import assigned_for_month, get_or_create_entry
from config import get_settings
from credit_cards import CreditCardAdjuster
from csv_utils import export_transactions, parse_csv
from database import atomic
from errors import Conflict, Forbidden, InsufficientFunds, NotFound, ValidationFailed
from models import (
    ON_BUDGET_ACCOUNT_TYPES,
    Account,
    AccountType,
    Budget,
    BudgetEntry,
    CardAdjustment,
    Category,
    CategoryGroup,
    ClearedStatus,
    Goal,
    GoalType,
    Payee,
    SplitTransaction,
    Transaction,
)
from money import divide_up, percent
from ownership import Ownership, budget_id_for_category
from periods import month_period, months_between
from schemas import (
    AccountIn,
    AccountUpdateIn,
    BudgetIn,
    BudgetUpdateIn,
    CategoryGroupIn,
    CategoryGroupUpdateIn,
    CategoryIn,
    CategoryUpdateIn,
    GoalIn,
    ImportedTransactionIn,
    PayeeIn,
    SplitIn,
    TransactionIn,
    TransactionPatch,
)

logger = logging.getLogger(__name__)

INITIAL_BALANCE_PAYEE = "Initial Balance"

# Rows whose budget effect is already carried by BudgetEntry adjustments.
_CARRIED_BY_ENTRIES = (
    CardAdjustment.spending,
    CardAdjustment.refund_to_category,
    CardAdjustment.refund_to_tbb,
)


def local_today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def _validate_month(year: int, month: int) -> None:
    if not 1 <= month <= 12:
        raise ValidationFailed("Month must be between 1 and 12")
    if not 1970 <= year <= 3000:
        raise ValidationFailed("Year is out of range")


def _clean_name(value: Optional[str], label: str) -> str:
    clean = (value or "").strip()
    if not clean:
        raise ValidationFailed(f"{label} name cannot be empty")
    return clean


class BudgetService:
    @dataclass(frozen=True)
    class GoalProgress:
        type: GoalType
        target_amount_cents: Optional[int]
        target_date: Optional[date]
        monthly_funding_cents: Optional[int]
        progress_percent: Optional[float]
        monthly_progress_percent: Optional[float]
        needed_cents: int

    @dataclass(frozen=True)
    class CategoryView:
        id: int
        group_id: int
        name: str
        assigned_cents: int
        activity_cents: int
        available_cents: int
        is_overspent: bool
        is_payment_category: bool
        goal: Optional["BudgetService.GoalProgress"]

    @dataclass(frozen=True)
    class GroupView:
        id: int
        name: str
        assigned_cents: int
        activity_cents: int
        available_cents: int
        categories: list["BudgetService.CategoryView"]

    @dataclass(frozen=True)
    class BudgetView:
        budget_id: int
        year: int
        month: int
        total_income_cents: int
        total_assigned_cents: int
        total_activity_cents: int
        total_available_cents: int
        to_be_budgeted_cents: int
        groups: list["BudgetService.GroupView"]

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.ownership = Ownership(session, user_id)

    def list_all(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.name, Budget.id)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, budget_id: int) -> Budget:
        return self.ownership.require_budget(budget_id)

    def create(self, data: BudgetIn) -> Budget:
        with atomic(self.session):
            budget = Budget(
                user_id=self.user_id,
                name=_clean_name(data.name, "Budget"),
                description=data.description,
            )
            self.session.add(budget)
            self.session.flush()
        logger.info("budget_created: id=%s user=%s", budget.id, self.user_id)
        return budget

    def update(self, budget_id: int, data: BudgetUpdateIn) -> Budget:
        changes = data.model_dump(exclude_unset=True)
        with atomic(self.session):
            budget = self.ownership.require_budget(budget_id)
            if "name" in changes:
                budget.name = _clean_name(changes["name"], "Budget")
            if "description" in changes:
                budget.description = changes["description"]
            self.session.flush()
        logger.info("budget_updated: id=%s", budget_id)
        return budget

    def delete(self, budget_id: int) -> None:
        with atomic(self.session):
            self.ownership.require_budget(budget_id)
            txn_ids = select(Transaction.id).where(Transaction.budget_id == budget_id)
            group_ids = select(CategoryGroup.id).where(
                CategoryGroup.budget_id == budget_id
            )
            category_ids = select(Category.id).where(Category.group_id.in_(group_ids))
            self.session.execute(
                delete(SplitTransaction).where(
                    SplitTransaction.transaction_id.in_(txn_ids)
                )
            )
            self.session.execute(
                delete(Transaction).where(Transaction.budget_id == budget_id)
            )
            self.session.execute(delete(Goal).where(Goal.category_id.in_(category_ids)))
            self.session.execute(
                delete(BudgetEntry).where(BudgetEntry.category_id.in_(category_ids))
            )
            self.session.execute(
                update(Account)
                .where(Account.budget_id == budget_id)
                .values(payment_category_id=None)
            )
            self.session.execute(delete(Account).where(Account.budget_id == budget_id))
            self.session.execute(delete(Category).where(Category.group_id.in_(group_ids)))
            self.session.execute(
                delete(CategoryGroup).where(CategoryGroup.budget_id == budget_id)
            )
            self.session.execute(delete(Payee).where(Payee.budget_id == budget_id))
            self.session.execute(delete(Budget).where(Budget.id == budget_id))
        logger.info("budget_deleted: id=%s", budget_id)

    def _payment_category_ids(self, category_ids: Sequence[int]) -> set[int]:
        if not category_ids:
            return set()
        stmt = select(Account.payment_category_id).where(
            Account.payment_category_id.in_(list(category_ids))
        )
        return set(self.session.scalars(stmt).all())

    def assign(
        self, category_id: int, year: int, month: int, amount_cents: int
    ) -> BudgetEntry:
        """Set the assigned amount for the month (absolute, not a delta)."""
        if amount_cents < 0:
            raise ValidationFailed("Assigned amount cannot be negative")
        _validate_month(year, month)
        with atomic(self.session):
            self.ownership.require_category(category_id)
            entry = get_or_create_entry(
                self.session, category_id, year, month, for_update=True
            )
            entry.assigned_cents = amount_cents
            self.session.flush()
        logger.info(
            "money_assigned: category=%s month=%04d-%02d amount_cents=%s",
            category_id,
            year,
            month,
            amount_cents,
        )
        return entry

    def move(
        self,
        from_category_id: int,
        to_category_id: int,
        year: int,
        month: int,
        amount_cents: int,
    ) -> tuple[BudgetEntry, BudgetEntry]:
        if from_category_id == to_category_id:
            raise ValidationFailed("Source and destination categories must differ")
        if amount_cents <= 0:
            raise ValidationFailed("Amount to move must be positive")
        _validate_month(year, month)
        with atomic(self.session):
            self.ownership.require_category(from_category_id)
            budget_id = budget_id_for_category(self.session, from_category_id)
            self.ownership.require_category(to_category_id, budget_id=budget_id)
            if self._payment_category_ids([from_category_id, to_category_id]):
                raise ValidationFailed(
                    "Payment categories are funded by their credit card, not by moves"
                )

            # Lock both entries in a stable order.
            entries = {
                category_id: get_or_create_entry(
                    self.session, category_id, year, month, for_update=True
                )
                for category_id in sorted((from_category_id, to_category_id))
            }
            source = entries[from_category_id]
            destination = entries[to_category_id]
            if source.assigned_cents < amount_cents:
                raise InsufficientFunds(
                    f"Only {source.assigned_cents} cents assigned; cannot move {amount_cents}"
                )
            source.assigned_cents -= amount_cents
            destination.assigned_cents += amount_cents
            self.session.flush()
        logger.info(
            "money_moved: from=%s to=%s month=%04d-%02d amount_cents=%s",
            from_category_id,
            to_category_id,
            year,
            month,
            amount_cents,
        )
        return source, destination

    def _activity_by_category(
        self, budget_id: int, start: date, end: date
    ) -> tuple[dict[int, int], int]:
        counted = (
            Transaction.budget_id == budget_id,
            Transaction.is_transfer.is_(False),
            Transaction.date >= start,
            Transaction.date <= end,
            Account.on_budget.is_(True),
            Transaction.cc_adjustment.not_in(_CARRIED_BY_ENTRIES),
        )
        activity: dict[int, int] = {}

        direct = self.session.execute(
            select(Transaction.category_id, func.sum(Transaction.amount_cents))
            .join(Account, Account.id == Transaction.account_id)
            .where(
                *counted,
                Transaction.is_split.is_(False),
                Transaction.category_id.is_not(None),
            )
            .group_by(Transaction.category_id)
        ).all()
        for category_id, total in direct:
            activity[category_id] = activity.get(category_id, 0) + int(total or 0)

        splits = self.session.execute(
            select(SplitTransaction.category_id, func.sum(SplitTransaction.amount_cents))
            .join(Transaction, Transaction.id == SplitTransaction.transaction_id)
            .join(Account, Account.id == Transaction.account_id)
            .where(*counted, Transaction.is_split.is_(True))
            .group_by(SplitTransaction.category_id)
        ).all()
        for category_id, total in splits:
            activity[category_id] = activity.get(category_id, 0) + int(total or 0)

        income = self.session.scalar(
            select(func.coalesce(func.sum(Transaction.amount_cents), 0))
            .join(Account, Account.id == Transaction.account_id)
            .where(
                *counted,
                Transaction.is_split.is_(False),
                Transaction.category_id.is_(None),
                Transaction.amount_cents > 0,
            )
        )
        return activity, int(income or 0)

    def _goal_progress(
        self, goal: Goal, assigned: int, available: int, year: int, month: int
    ) -> "BudgetService.GoalProgress":
        progress: Optional[float] = None
        monthly_progress: Optional[float] = None
        if goal.type == GoalType.monthly_funding:
            monthly = goal.monthly_funding_cents or 0
            monthly_progress = percent(assigned, monthly)
            needed = max(0, monthly - assigned)
        else:
            target = goal.target_amount_cents or 0
            progress = percent(available, target)
            remaining = max(0, target - available)
            if goal.type == GoalType.target_balance_by_date and goal.target_date:
                months_left = max(1, months_between(year, month, goal.target_date))
                needed = divide_up(remaining, months_left)
            else:
                needed = remaining
        return BudgetService.GoalProgress(
            type=goal.type,
            target_amount_cents=goal.target_amount_cents,
            target_date=goal.target_date,
            monthly_funding_cents=goal.monthly_funding_cents,
            progress_percent=progress,
            monthly_progress_percent=monthly_progress,
            needed_cents=needed,
        )

    def get_budget_view(
        self, budget_id: int, year: int, month: int
    ) -> "BudgetService.BudgetView":
        _validate_month(year, month)
        self.ownership.require_budget(budget_id)
        period = month_period(year, month)

        groups = self.session.scalars(
            select(CategoryGroup)
            .where(CategoryGroup.budget_id == budget_id)
            .order_by(CategoryGroup.sort_order, CategoryGroup.id)
            .options(
                selectinload(CategoryGroup.categories).selectinload(Category.goal)
            )
        ).all()
        category_ids = [c.id for g in groups for c in g.categories]
        assigned_map = assigned_for_month(self.session, year, month, category_ids)
        payment_ids = self._payment_category_ids(category_ids)
        activity_map, total_income = self._activity_by_category(
            budget_id, period.start, period.end
        )

        group_views: list[BudgetService.GroupView] = []
        total_assigned = total_activity = total_available = 0
        for group in groups:
            category_views: list[BudgetService.CategoryView] = []
            for category in group.categories:
                assigned = assigned_map.get(category.id, 0)
                activity = activity_map.get(category.id, 0)
                available = assigned + activity
                goal = (
                    self._goal_progress(category.goal, assigned, available, year, month)
                    if category.goal is not None
                    else None
                )
                category_views.append(
                    BudgetService.CategoryView(
                        id=category.id,
                        group_id=group.id,
                        name=category.name,
                        assigned_cents=assigned,
                        activity_cents=activity,
                        available_cents=available,
                        is_overspent=available < 0,
                        is_payment_category=category.id in payment_ids,
                        goal=goal,
                    )
                )
            group_assigned = sum(c.assigned_cents for c in category_views)
            group_activity = sum(c.activity_cents for c in category_views)
            group_available = sum(c.available_cents for c in category_views)
            total_assigned += group_assigned
            total_activity += group_activity
            total_available += group_available
            group_views.append(
                BudgetService.GroupView(
                    id=group.id,
                    name=group.name,
                    assigned_cents=group_assigned,
                    activity_cents=group_activity,
                    available_cents=group_available,
                    categories=category_views,
                )
            )

        return BudgetService.BudgetView(
            budget_id=budget_id,
            year=year,
            month=month,
            total_income_cents=total_income,
            total_assigned_cents=total_assigned,
            total_activity_cents=total_activity,
            total_available_cents=total_available,
            to_be_budgeted_cents=total_income - total_assigned,
            groups=group_views,
        )


class PayeeService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.ownership = Ownership(session, user_id)

    def _by_name(
        self, budget_id: int, name: str, *, exclude_id: Optional[int] = None
    ) -> Optional[Payee]:
        stmt = select(Payee).where(
            Payee.budget_id == budget_id, func.lower(Payee.name) == name.lower()
        )
        if exclude_id is not None:
            stmt = stmt.where(Payee.id != exclude_id)
        return self.session.scalars(stmt).first()

    def list_all(self, budget_id: int) -> list[Payee]:
        self.ownership.require_budget(budget_id)
        stmt = select(Payee).where(Payee.budget_id == budget_id).order_by(Payee.name)
        return list(self.session.scalars(stmt).all())

    def get(self, payee_id: int) -> Payee:
        return self.ownership.require_payee(payee_id)

    def find_or_create(self, budget_id: int, name: str) -> Payee:
        clean = _clean_name(name, "Payee")
        existing = self._by_name(budget_id, clean)
        if existing:
            return existing
        payee = Payee(budget_id=budget_id, name=clean)
        self.session.add(payee)
        self.session.flush()
        return payee

    def create(self, budget_id: int, data: PayeeIn) -> Payee:
        with atomic(self.session):
            self.ownership.require_budget(budget_id)
            clean = _clean_name(data.name, "Payee")
            if self._by_name(budget_id, clean):
                raise Conflict("Payee with this name already exists")
            payee = Payee(budget_id=budget_id, name=clean)
            self.session.add(payee)
            self.session.flush()
        logger.info("payee_created: id=%s budget=%s", payee.id, budget_id)
        return payee

    def rename(self, payee_id: int, data: PayeeIn) -> Payee:
        with atomic(self.session):
            payee = self.ownership.require_payee(payee_id)
            clean = _clean_name(data.name, "Payee")
            if self._by_name(payee.budget_id, clean, exclude_id=payee.id):
                raise Conflict("Payee with this name already exists")
            payee.name = clean
            self.session.flush()
        logger.info("payee_renamed: id=%s", payee_id)
        return payee


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.ownership = Ownership(session, user_id)

    def _group_name_taken(
        self, budget_id: int, name: str, exclude_id: Optional[int] = None
    ) -> bool:
        stmt = select(CategoryGroup.id).where(
            CategoryGroup.budget_id == budget_id,
            func.lower(CategoryGroup.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(CategoryGroup.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def _category_name_taken(
        self, group_id: int, name: str, exclude_id: Optional[int] = None
    ) -> bool:
        stmt = select(Category.id).where(
            Category.group_id == group_id, func.lower(Category.name) == name.lower()
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def list_groups(self, budget_id: int) -> list[CategoryGroup]:
        self.ownership.require_budget(budget_id)
        stmt = (
            select(CategoryGroup)
            .where(CategoryGroup.budget_id == budget_id)
            .order_by(CategoryGroup.sort_order, CategoryGroup.id)
            .options(selectinload(CategoryGroup.categories))
        )
        return list(self.session.scalars(stmt).all())

    def get_group(self, group_id: int) -> CategoryGroup:
        return self.ownership.require_group(group_id)

    def create_group(self, budget_id: int, data: CategoryGroupIn) -> CategoryGroup:
        with atomic(self.session):
            self.ownership.require_budget(budget_id)
            name = _clean_name(data.name, "Category group")
            if self._group_name_taken(budget_id, name):
                raise Conflict("Category group with this name already exists")
            group = CategoryGroup(
                budget_id=budget_id, name=name, sort_order=data.sort_order
            )
            self.session.add(group)
            self.session.flush()
        logger.info("category_group_created: id=%s budget=%s", group.id, budget_id)
        return group

    def update_group(self, group_id: int, data: CategoryGroupUpdateIn) -> CategoryGroup:
        changes = data.model_dump(exclude_unset=True)
        with atomic(self.session):
            group = self.ownership.require_group(group_id)
            if "name" in changes:
                name = _clean_name(changes["name"], "Category group")
                if self._group_name_taken(group.budget_id, name, exclude_id=group.id):
                    raise Conflict("Category group with this name already exists")
                group.name = name
            if changes.get("sort_order") is not None:
                group.sort_order = changes["sort_order"]
            self.session.flush()
        logger.info("category_group_updated: id=%s", group_id)
        return group

    def delete_group(self, group_id: int) -> None:
        with atomic(self.session):
            group = self.ownership.require_group(group_id)
            has_categories = self.session.scalar(
                select(func.count(Category.id)).where(Category.group_id == group.id)
            )
            if has_categories:
                raise ValidationFailed(
                    "Cannot delete a category group that still has categories"
                )
            self.session.delete(group)
        logger.info("category_group_deleted: id=%s", group_id)

    def list_categories(self, budget_id: int) -> list[Category]:
        self.ownership.require_budget(budget_id)
        stmt = (
            select(Category)
            .join(CategoryGroup, CategoryGroup.id == Category.group_id)
            .where(CategoryGroup.budget_id == budget_id)
            .order_by(CategoryGroup.sort_order, Category.sort_order, Category.name)
        )
        return list(self.session.scalars(stmt).all())

    def get_category(self, category_id: int) -> Category:
        return self.ownership.require_category(category_id)

    def create_category(self, data: CategoryIn) -> Category:
        with atomic(self.session):
            group = self.ownership.require_group(data.group_id)
            name = _clean_name(data.name, "Category")
            if self._category_name_taken(group.id, name):
                raise Conflict("Category with this name already exists in the group")
            category = Category(
                group_id=group.id, name=name, sort_order=data.sort_order
            )
            self.session.add(category)
            self.session.flush()
        logger.info("category_created: id=%s group=%s", category.id, group.id)
        return category

    def update_category(self, category_id: int, data: CategoryUpdateIn) -> Category:
        changes = data.model_dump(exclude_unset=True)
        with atomic(self.session):
            category = self.ownership.require_category(category_id)
            budget_id = budget_id_for_category(self.session, category_id)
            if changes.get("group_id") is not None:
                group = self.ownership.require_group(
                    changes["group_id"], budget_id=budget_id
                )
                category.group_id = group.id
            if "name" in changes:
                category.name = _clean_name(changes["name"], "Category")
            if self._category_name_taken(
                category.group_id, category.name, exclude_id=category.id
            ):
                raise Conflict("Category with this name already exists in the group")
            if changes.get("sort_order") is not None:
                category.sort_order = changes["sort_order"]
            self.session.flush()
        logger.info("category_updated: id=%s", category_id)
        return category

    def delete_category(self, category_id: int) -> None:
        with atomic(self.session):
            category = self.ownership.require_category(category_id)
            linked = self.session.scalar(
                select(Account.id).where(Account.payment_category_id == category.id)
            )
            if linked is not None:
                raise Conflict("Category is the payment category of a credit card")
            in_use = (
                select(func.count(BudgetEntry.id)).where(
                    BudgetEntry.category_id == category.id
                ),
                select(func.count(Transaction.id)).where(
                    Transaction.category_id == category.id
                ),
                select(func.count(SplitTransaction.id)).where(
                    SplitTransaction.category_id == category.id
                ),
            )
            if any(self.session.scalar(stmt) for stmt in in_use):
                raise ValidationFailed(
                    "Cannot delete a category with budget entries or transactions"
                )
            if category.goal is not None:
                self.session.delete(category.goal)
                self.session.flush()
            self.session.delete(category)
        logger.info("category_deleted: id=%s", category_id)


class GoalService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.ownership = Ownership(session, user_id)

    @staticmethod
    def _validated(data: GoalIn) -> dict[str, object]:
        fields: dict[str, object] = {
            "target_amount_cents": None,
            "target_date": None,
            "monthly_funding_cents": None,
        }
        if data.type in (GoalType.target_balance, GoalType.target_balance_by_date):
            if not data.target_amount_cents or data.target_amount_cents <= 0:
                raise ValidationFailed("Target goals need a positive target amount")
            fields["target_amount_cents"] = data.target_amount_cents
            if data.type == GoalType.target_balance_by_date:
                if data.target_date is None:
                    raise ValidationFailed("Dated target goals need a target date")
                fields["target_date"] = data.target_date
        else:
            if not data.monthly_funding_cents or data.monthly_funding_cents <= 0:
                raise ValidationFailed(
                    "Monthly funding goals need a positive monthly amount"
                )
            fields["monthly_funding_cents"] = data.monthly_funding_cents
        return fields

    def get(self, category_id: int) -> Goal:
        self.ownership.require_category(category_id)
        goal = self.session.scalar(select(Goal).where(Goal.category_id == category_id))
        if goal is None:
            raise NotFound("Goal not found")
        return goal

    def upsert(self, category_id: int, data: GoalIn) -> Goal:
        fields = self._validated(data)
        with atomic(self.session):
            self.ownership.require_category(category_id)
            goal = self.session.scalar(
                select(Goal).where(Goal.category_id == category_id)
            )
            if goal is None:
                goal = Goal(category_id=category_id, type=data.type)
                self.session.add(goal)
            goal.type = data.type
            goal.name = data.name
            for key, value in fields.items():
                setattr(goal, key, value)
            self.session.flush()
        logger.info("goal_saved: category=%s type=%s", category_id, data.type.value)
        return goal

    def delete(self, category_id: int) -> None:
        with atomic(self.session):
            goal = self.get(category_id)
            self.session.delete(goal)
        logger.info("goal_deleted: category=%s", category_id)


class AccountService:
    @dataclass(frozen=True)
    class Balances:
        account_id: int
        working_cents: int
        cleared_cents: int
        uncleared_cents: int

    @dataclass(frozen=True)
    class Reconciliation:
        account_id: int
        statement_balance_cents: int
        cleared_balance_cents: int
        difference_cents: int

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.ownership = Ownership(session, user_id)

    def _name_taken(
        self, budget_id: int, name: str, exclude_id: Optional[int] = None
    ) -> bool:
        stmt = select(Account.id).where(
            Account.budget_id == budget_id, func.lower(Account.name) == name.lower()
        )
        if exclude_id is not None:
            stmt = stmt.where(Account.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def _ensure_payment_category(self, account: Account) -> Category:
        if account.payment_category_id is not None:
            return self.session.get(Category, account.payment_category_id)
        group_name = get_settings().payment_group_name
        group = self.session.scalar(
            select(CategoryGroup).where(
                CategoryGroup.budget_id == account.budget_id,
                CategoryGroup.name == group_name,
            )
        )
        if group is None:
            group = CategoryGroup(budget_id=account.budget_id, name=group_name)
            self.session.add(group)
            self.session.flush()
        name = f"{account.name} Payments"
        taken = self.session.scalar(
            select(Category.id).where(Category.group_id == group.id, Category.name == name)
        )
        if taken is not None:
            raise Conflict(f"Category '{name}' already exists")
        category = Category(group_id=group.id, name=name)
        self.session.add(category)
        self.session.flush()
        account.payment_category_id = category.id
        self.session.flush()
        return category

    def create(self, budget_id: int, data: AccountIn) -> Account:
        with atomic(self.session):
            self.ownership.require_budget(budget_id)
            name = _clean_name(data.name, "Account")
            if self._name_taken(budget_id, name):
                raise Conflict("Account with this name already exists")
            on_budget = (
                data.on_budget
                if data.on_budget is not None
                else data.type in ON_BUDGET_ACCOUNT_TYPES
            )
            account = Account(
                budget_id=budget_id,
                name=name,
                type=data.type,
                on_budget=on_budget,
                official_name=data.official_name,
                note=data.note,
            )
            self.session.add(account)
            self.session.flush()
            if data.type == AccountType.credit_card:
                self._ensure_payment_category(account)
            if data.initial_balance_cents:
                payee = PayeeService(self.session, self.user_id).find_or_create(
                    budget_id, INITIAL_BALANCE_PAYEE
                )
                self.session.add(
                    Transaction(
                        budget_id=budget_id,
                        account_id=account.id,
                        payee_id=payee.id,
                        date=data.initial_balance_date or local_today(),
                        amount_cents=data.initial_balance_cents,
                        memo=INITIAL_BALANCE_PAYEE,
                        cleared=ClearedStatus.cleared,
                        approved=True,
                    )
                )
                self.session.flush()
        logger.info(
            "account_created: id=%s budget=%s type=%s on_budget=%s",
            account.id,
            budget_id,
            account.type.value,
            account.on_budget,
        )
        return account

    def list_all(self, budget_id: int, *, include_closed: bool = False) -> list[Account]:
        self.ownership.require_budget(budget_id)
        stmt = select(Account).where(Account.budget_id == budget_id)
        if not include_closed:
            stmt = stmt.where(Account.is_closed.is_(False))
        stmt = stmt.order_by(Account.on_budget.desc(), Account.name)
        return list(self.session.scalars(stmt).all())

    def get(self, account_id: int) -> Account:
        return self.ownership.require_account(account_id)

    def update(self, account_id: int, data: AccountUpdateIn) -> Account:
        changes = data.model_dump(exclude_unset=True)
        with atomic(self.session):
            account = self.ownership.require_account(account_id)
            if changes.get("name") is not None:
                name = _clean_name(changes["name"], "Account")
                if self._name_taken(account.budget_id, name, exclude_id=account.id):
                    raise Conflict("Account with this name already exists")
                account.name = name
                if account.payment_category_id is not None:
                    category = self.session.get(Category, account.payment_category_id)
                    category.name = f"{name} Payments"
            if changes.get("type") is not None:
                account.type = changes["type"]
                if changes.get("on_budget") is None:
                    account.on_budget = account.type in ON_BUDGET_ACCOUNT_TYPES
            if changes.get("on_budget") is not None:
                account.on_budget = changes["on_budget"]
            for key in ("official_name", "note"):
                if key in changes:
                    setattr(account, key, changes[key])
            self.session.flush()
            if account.type == AccountType.credit_card:
                self._ensure_payment_category(account)
        logger.info("account_updated: id=%s", account_id)
        return account

    def close(self, account_id: int) -> Account:
        with atomic(self.session):
            account = self.ownership.require_account(account_id)
            account.is_closed = True
        logger.info("account_closed: id=%s", account_id)
        return account

    def reopen(self, account_id: int) -> Account:
        with atomic(self.session):
            account = self.ownership.require_account(account_id)
            account.is_closed = False
        logger.info("account_reopened: id=%s", account_id)
        return account

    def _balance_columns(self):
        cleared_amount = case(
            (
                Transaction.cleared.in_(
                    [ClearedStatus.cleared, ClearedStatus.reconciled]
                ),
                Transaction.amount_cents,
            ),
            else_=0,
        )
        return (
            func.coalesce(func.sum(Transaction.amount_cents), 0),
            func.coalesce(func.sum(cleared_amount), 0),
        )

    def calculate_balances(self, account_id: int) -> "AccountService.Balances":
        self.ownership.require_account(account_id)
        working, cleared = self.session.execute(
            select(*self._balance_columns()).where(Transaction.account_id == account_id)
        ).one()
        working, cleared = int(working), int(cleared)
        return AccountService.Balances(
            account_id=account_id,
            working_cents=working,
            cleared_cents=cleared,
            uncleared_cents=working - cleared,
        )

    def balances_for_budget(self, budget_id: int) -> dict[int, "AccountService.Balances"]:
        self.ownership.require_budget(budget_id)
        rows = self.session.execute(
            select(Transaction.account_id, *self._balance_columns())
            .where(Transaction.budget_id == budget_id)
            .group_by(Transaction.account_id)
        ).all()
        result: dict[int, AccountService.Balances] = {}
        for account_id, working, cleared in rows:
            working, cleared = int(working), int(cleared)
            result[account_id] = AccountService.Balances(
                account_id=account_id,
                working_cents=working,
                cleared_cents=cleared,
                uncleared_cents=working - cleared,
            )
        return result

    def start_reconciliation(
        self, account_id: int, statement_balance_cents: int
    ) -> "AccountService.Reconciliation":
        balances = self.calculate_balances(account_id)
        return AccountService.Reconciliation(
            account_id=account_id,
            statement_balance_cents=statement_balance_cents,
            cleared_balance_cents=balances.cleared_cents,
            difference_cents=statement_balance_cents - balances.cleared_cents,
        )

    def finish_reconciliation(self, account_id: int) -> int:
        with atomic(self.session):
            self.ownership.require_account(account_id)
            result = self.session.execute(
                update(Transaction)
                .where(
                    Transaction.account_id == account_id,
                    Transaction.cleared == ClearedStatus.cleared,
                )
                .values(cleared=ClearedStatus.reconciled)
                .execution_options(synchronize_session="fetch")
            )
            count = result.rowcount or 0
        logger.info("account_reconciled: id=%s transactions=%s", account_id, count)
        return count


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    start: Optional[date] = None
    end: Optional[date] = None
    approved: Optional[bool] = None
    limit: int = 200
    offset: int = 0


class TransactionService:
    LOCKED_EDITABLE = frozenset({"memo", "approved"})
    TRANSFER_EDITABLE = frozenset({"date", "amount_cents", "memo", "cleared", "approved"})
    NOT_NULLABLE = frozenset({"account_id", "date", "amount_cents", "cleared", "approved"})

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.ownership = Ownership(session, user_id)
        self.cards = CreditCardAdjuster(session)
        self.payees = PayeeService(session, user_id)

    def _resolve_payee(
        self, budget_id: int, payee_id: Optional[int], payee_name: Optional[str]
    ) -> Optional[int]:
        if payee_id is not None:
            return self.ownership.require_payee(payee_id, budget_id=budget_id).id
        if payee_name and payee_name.strip():
            return self.payees.find_or_create(budget_id, payee_name).id
        return None

    def _check_import_id(self, account_id: int, import_id: Optional[str]) -> None:
        if not import_id:
            return
        exists = self.session.scalar(
            select(Transaction.id).where(
                Transaction.account_id == account_id,
                Transaction.import_id == import_id,
            )
        )
        if exists is not None:
            raise Conflict("A transaction with this import id already exists")

    def _check_splits(self, budget_id: int, amount_cents: int, splits: list[SplitIn]) -> None:
        total = sum(split.amount_cents for split in splits)
        if total != amount_cents:
            raise ValidationFailed(
                f"Split amounts sum to {total}, expected {amount_cents}"
            )
        for split in splits:
            self.ownership.require_category(split.category_id, budget_id=budget_id)

    def _sibling(self, txn: Transaction) -> Transaction:
        sibling = self.session.scalar(
            select(Transaction).where(
                Transaction.transfer_group_id == txn.transfer_group_id,
                Transaction.id != txn.id,
            )
        )
        if sibling is None:
            raise NotFound("Transfer counterpart not found")
        return sibling

    def _transfer_categories(
        self,
        budget_id: int,
        source: Account,
        destination: Account,
        category_id: Optional[int],
    ) -> tuple[Optional[int], Optional[int]]:
        """Category for (source row, destination row) by on/off-budget pairing."""
        if source.on_budget == destination.on_budget:
            if category_id is not None:
                kind = "budget" if source.on_budget else "tracking"
                raise ValidationFailed(
                    f"Transfers between {kind} accounts cannot have a category"
                )
            return None, None
        if category_id is not None:
            self.ownership.require_category(category_id, budget_id=budget_id)
        if source.on_budget:
            if category_id is None:
                raise ValidationFailed(
                    "Transfers from a budget account to a tracking account need a category"
                )
            return category_id, None
        return None, category_id

    def _create_transfer(
        self, budget_id: int, source: Account, data: TransactionIn
    ) -> list[Transaction]:
        if data.splits:
            raise ValidationFailed("A transfer cannot be split")
        if data.transfer_account_id is None:
            raise ValidationFailed("A transfer needs a destination account")
        if data.transfer_account_id == source.id:
            raise ValidationFailed("Cannot transfer to the same account")
        if data.amount_cents == 0:
            raise ValidationFailed("Transfer amount cannot be zero")
        destination = self.ownership.require_account(
            data.transfer_account_id, budget_id=budget_id
        )
        if destination.is_closed:
            raise ValidationFailed("Destination account is closed")
        source_category, destination_category = self._transfer_categories(
            budget_id, source, destination, data.category_id
        )
        amount = abs(data.amount_cents)
        common = dict(
            budget_id=budget_id,
            payee_id=self._resolve_payee(budget_id, data.payee_id, data.payee_name),
            date=data.date,
            memo=data.memo,
            cleared=data.cleared,
            approved=data.approved,
            is_transfer=True,
            transfer_group_id=str(uuid.uuid4()),
        )
        outflow = Transaction(
            account_id=source.id,
            transfer_account_id=destination.id,
            category_id=source_category,
            amount_cents=-amount,
            **common,
        )
        inflow = Transaction(
            account_id=destination.id,
            transfer_account_id=source.id,
            category_id=destination_category,
            amount_cents=amount,
            **common,
        )
        self.session.add_all([outflow, inflow])
        self.session.flush()
        self.cards.apply_payment(inflow, source, destination)
        return [outflow, inflow]

    def _create_regular(
        self, budget_id: int, account: Account, data: TransactionIn
    ) -> Transaction:
        if data.transfer_account_id is not None:
            raise ValidationFailed("A destination account is only valid for transfers")
        if data.splits:
            if data.category_id is not None:
                raise ValidationFailed("A split transaction cannot carry a category")
            self._check_splits(budget_id, data.amount_cents, data.splits)
        elif data.category_id is not None:
            self.ownership.require_category(data.category_id, budget_id=budget_id)
        self._check_import_id(account.id, data.import_id)

        txn = Transaction(
            budget_id=budget_id,
            account_id=account.id,
            payee_id=self._resolve_payee(budget_id, data.payee_id, data.payee_name),
            category_id=data.category_id,
            date=data.date,
            amount_cents=data.amount_cents,
            memo=data.memo,
            cleared=data.cleared,
            approved=data.approved,
            is_split=bool(data.splits),
            import_id=data.import_id,
        )
        for split in data.splits:
            txn.splits.append(
                SplitTransaction(
                    category_id=split.category_id,
                    amount_cents=split.amount_cents,
                    memo=split.memo,
                )
            )
        self.session.add(txn)
        self.session.flush()
        self.cards.apply(txn, account)
        return txn

    def _create(self, budget_id: int, data: TransactionIn) -> list[Transaction]:
        self.ownership.require_budget(budget_id)
        account = self.ownership.require_account(data.account_id, budget_id=budget_id)
        if account.is_closed:
            raise ValidationFailed("Account is closed")
        if data.is_transfer:
            return self._create_transfer(budget_id, account, data)
        return [self._create_regular(budget_id, account, data)]

    def create(self, budget_id: int, data: TransactionIn) -> list[Transaction]:
        """
        Record a transaction and return the persisted row(s).

        A transfer produces two rows sharing one transfer group; everything
        else produces one. Credit-card adjustments happen in the same unit of
        work.
        """
        with atomic(self.session):
            rows = self._create(budget_id, data)
        for row in rows:
            logger.info(
                "transaction_created: id=%s account=%s amount_cents=%s transfer=%s cc=%s",
                row.id,
                row.account_id,
                row.amount_cents,
                row.is_transfer,
                row.cc_adjustment.value,
            )
        return rows

    def get(self, transaction_id: int) -> Transaction:
        return self.ownership.require_transaction(transaction_id)

    def list(self, budget_id: int, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        filters = filters or TransactionFilters()
        self.ownership.require_budget(budget_id)
        stmt = select(Transaction).where(Transaction.budget_id == budget_id)
        if filters.account_id is not None:
            self.ownership.require_account(filters.account_id, budget_id=budget_id)
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        if filters.category_id is not None:
            split_parents = select(SplitTransaction.transaction_id).where(
                SplitTransaction.category_id == filters.category_id
            )
            stmt = stmt.where(
                or_(
                    Transaction.category_id == filters.category_id,
                    Transaction.id.in_(split_parents),
                )
            )
        if filters.start:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.date <= filters.end)
        if filters.approved is not None:
            stmt = stmt.where(Transaction.approved.is_(filters.approved))
        stmt = (
            stmt.order_by(Transaction.date.desc(), Transaction.id.desc())
            .options(selectinload(Transaction.splits))
            .offset(filters.offset)
            .limit(filters.limit)
        )
        return list(self.session.scalars(stmt).all())

    @staticmethod
    def _changed(txn: Transaction, changes: dict[str, object]) -> dict[str, object]:
        return {
            key: value
            for key, value in changes.items()
            if not hasattr(txn, key) or getattr(txn, key) != value
        }

    def _update_transfer(
        self, txn: Transaction, changes: dict[str, object]
    ) -> list[Transaction]:
        disallowed = set(changes) - self.TRANSFER_EDITABLE
        if disallowed:
            raise ValidationFailed(
                "Transfers can only change date, amount, memo, cleared state or approval"
            )
        sibling = self._sibling(txn)
        if sibling.cleared == ClearedStatus.reconciled and set(changes) & {
            "date",
            "amount_cents",
        }:
            raise ValidationFailed("The other side of this transfer is reconciled")
        if "amount_cents" in changes and changes["amount_cents"] == 0:
            raise ValidationFailed("Transfer amount cannot be zero")

        pair = [txn, sibling]
        for row in pair:
            self.cards.reverse(row)
        if "amount_cents" in changes:
            amount = abs(int(changes["amount_cents"]))
            for row in pair:
                row.amount_cents = amount if row.amount_cents > 0 else -amount
        for key in ("date", "memo", "approved"):
            if key in changes:
                for row in pair:
                    setattr(row, key, changes[key])
        if "cleared" in changes:
            txn.cleared = changes["cleared"]
        self.session.flush()

        outflow, inflow = sorted(pair, key=lambda row: row.amount_cents)
        source = self.session.get(Account, outflow.account_id)
        destination = self.session.get(Account, inflow.account_id)
        self.cards.apply_payment(inflow, source, destination)
        return pair

    def _update_regular(self, txn: Transaction, changes: dict[str, object]) -> Transaction:
        account = self.session.get(Account, txn.account_id)
        if txn.is_split:
            if "amount_cents" in changes:
                raise ValidationFailed(
                    "A split total cannot change; replace its splits instead"
                )
            if changes.get("category_id") is not None:
                raise ValidationFailed("A split transaction cannot carry a category")

        new_account = account
        if "account_id" in changes:
            new_account = self.ownership.require_account(int(changes["account_id"]))
            if new_account.budget_id != txn.budget_id:
                raise Forbidden("Cannot move a transaction to another budget")
            if new_account.is_closed:
                raise ValidationFailed("Account is closed")
            self._check_import_id(new_account.id, txn.import_id)
        if changes.get("category_id") is not None:
            self.ownership.require_category(
                int(changes["category_id"]), budget_id=txn.budget_id
            )
        if "payee_id" in changes or "payee_name" in changes:
            txn.payee_id = self._resolve_payee(
                txn.budget_id, changes.get("payee_id"), changes.get("payee_name")
            )

        self.cards.reverse(txn, account)
        for key in ("account_id", "date", "amount_cents", "category_id", "memo", "cleared", "approved"):
            if key in changes:
                setattr(txn, key, changes[key])
        self.session.flush()
        self.cards.apply(txn, new_account)
        return txn

    def update(self, transaction_id: int, patch: TransactionPatch) -> list[Transaction]:
        with atomic(self.session):
            txn = self.ownership.require_transaction(transaction_id)
            changes = self._changed(txn, patch.model_dump(exclude_unset=True))
            nulled = sorted(
                key for key in self.NOT_NULLABLE if key in changes and changes[key] is None
            )
            if nulled:
                raise ValidationFailed(f"Cannot clear {', '.join(nulled)}")
            if txn.cleared == ClearedStatus.reconciled and set(changes) - self.LOCKED_EDITABLE:
                raise ValidationFailed(
                    "Reconciled transactions can only have memo or approval changed"
                )
            if txn.is_transfer:
                rows = self._update_transfer(txn, changes)
            else:
                rows = [self._update_regular(txn, changes)]
        logger.info(
            "transaction_updated: id=%s fields=%s",
            transaction_id,
            ",".join(sorted(changes)) or "-",
        )
        return rows

    def _delete(self, txn: Transaction) -> list[int]:
        rows = [txn]
        if txn.is_transfer:
            rows.append(self._sibling(txn))
        if any(row.cleared == ClearedStatus.reconciled for row in rows):
            raise ValidationFailed("Reconciled transactions cannot be deleted")
        for row in rows:
            self.cards.reverse(row)
        deleted = [row.id for row in rows]
        # Split children go with their header through the delete-orphan cascade.
        for row in rows:
            self.session.delete(row)
        self.session.flush()
        return deleted

    def delete(self, transaction_id: int) -> list[int]:
        with atomic(self.session):
            txn = self.ownership.require_transaction(transaction_id)
            deleted = self._delete(txn)
        logger.info("transaction_deleted: ids=%s", ",".join(map(str, deleted)))
        return deleted

    def replace_splits(self, transaction_id: int, splits: list[SplitIn]) -> Transaction:
        with atomic(self.session):
            txn = self.ownership.require_transaction(transaction_id)
            if not txn.is_split:
                raise ValidationFailed("Transaction is not split")
            if txn.cleared == ClearedStatus.reconciled:
                raise ValidationFailed("Reconciled transactions cannot be edited")
            if not splits:
                raise ValidationFailed("A split transaction needs at least one split")
            self._check_splits(txn.budget_id, txn.amount_cents, splits)
            txn.splits.clear()
            self.session.flush()
            for split in splits:
                txn.splits.append(
                    SplitTransaction(
                        category_id=split.category_id,
                        amount_cents=split.amount_cents,
                        memo=split.memo,
                    )
                )
            self.session.flush()
        logger.info("splits_replaced: txn=%s count=%s", transaction_id, len(splits))
        return txn

    def export_csv(self, budget_id: int, filters: Optional[TransactionFilters] = None) -> str:
        filters = filters or TransactionFilters(limit=100_000)
        return export_transactions(self.list(budget_id, filters))


class ImportService:
    @dataclass
    class Result:
        created: list[int] = field(default_factory=list)
        skipped: list[str] = field(default_factory=list)
        errors: list[str] = field(default_factory=list)

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.ownership = Ownership(session, user_id)
        self.transactions = TransactionService(session, user_id)

    def _budget_categories(self, budget_id: int) -> list[Category]:
        payment_ids = select(Account.payment_category_id).where(
            Account.budget_id == budget_id, Account.payment_category_id.is_not(None)
        )
        stmt = (
            select(Category)
            .join(CategoryGroup, CategoryGroup.id == Category.group_id)
            .where(CategoryGroup.budget_id == budget_id, Category.id.not_in(payment_ids))
        )
        return list(self.session.scalars(stmt).all())

    @staticmethod
    def match_category(hint: Optional[str], categories: Sequence[Category]) -> Optional[int]:
        """Exact (case-insensitive) match, else a unique match within one edit."""
        wanted = (hint or "").strip().lower()
        if not wanted:
            return None
        exact = [c for c in categories if c.name.strip().lower() == wanted]
        if len(exact) == 1:
            return exact[0].id
        if exact:
            return None
        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in categories:
            dist = int(Levenshtein.distance(wanted, category.name.strip().lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)
        if best_distance is not None and best_distance <= 1 and len(best) == 1:
            return best[0].id
        return None

    def _import(
        self, account: Account, records: Sequence[ImportedTransactionIn]
    ) -> "ImportService.Result":
        result = ImportService.Result()
        seen = set(
            self.session.scalars(
                select(Transaction.import_id).where(
                    Transaction.account_id == account.id,
                    Transaction.import_id.in_([r.import_id for r in records]),
                )
            ).all()
        )
        categories = self._budget_categories(account.budget_id)
        for record in records:
            if record.import_id in seen:
                result.skipped.append(record.import_id)
                continue
            rows = self.transactions._create(
                account.budget_id,
                TransactionIn(
                    account_id=account.id,
                    date=record.date,
                    amount_cents=record.amount_cents,
                    payee_name=record.payee_name,
                    category_id=self.match_category(record.category_name, categories),
                    memo=record.memo,
                    cleared=(
                        ClearedStatus.uncleared if record.pending else ClearedStatus.cleared
                    ),
                    approved=False,
                    import_id=record.import_id,
                ),
            )
            seen.add(record.import_id)
            result.created.extend(row.id for row in rows)
        return result

    def import_transactions(
        self, account_id: int, records: Sequence[ImportedTransactionIn]
    ) -> "ImportService.Result":
        with atomic(self.session):
            account = self.ownership.require_account(account_id)
            result = self._import(account, records)
        logger.info(
            "transactions_imported: account=%s created=%s skipped=%s",
            account_id,
            len(result.created),
            len(result.skipped),
        )
        return result

    def remove_imported(self, account_id: int, import_ids: Sequence[str]) -> list[int]:
        if not import_ids:
            return []
        with atomic(self.session):
            self.ownership.require_account(account_id)
            rows = self.session.scalars(
                select(Transaction).where(
                    Transaction.account_id == account_id,
                    Transaction.import_id.in_(list(import_ids)),
                )
            ).all()
            deleted: list[int] = []
            for row in rows:
                deleted.extend(self.transactions._delete(row))
        logger.info(
            "imported_transactions_removed: account=%s removed=%s", account_id, len(deleted)
        )
        return deleted

    def import_csv(self, account_id: int, content: str) -> "ImportService.Result":
        records, errors = parse_csv(content)
        result = self.import_transactions(account_id, records)
        result.errors.extend(errors)
        return result
