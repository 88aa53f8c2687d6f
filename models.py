from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit_card = "credit_card"
    cash = "cash"
    line_of_credit = "line_of_credit"
    investment = "investment"
    mortgage = "mortgage"
    other_asset = "other_asset"
    other_liability = "other_liability"


ON_BUDGET_ACCOUNT_TYPES = frozenset(
    {
        AccountType.checking,
        AccountType.savings,
        AccountType.cash,
        AccountType.credit_card,
        AccountType.line_of_credit,
    }
)


class ClearedStatus(str, Enum):
    uncleared = "uncleared"
    cleared = "cleared"
    reconciled = "reconciled"


class GoalType(str, Enum):
    target_balance = "target_balance"
    target_balance_by_date = "target_balance_by_date"
    monthly_funding = "monthly_funding"


class CardAdjustment(str, Enum):
    none = "none"
    spending = "spending"
    refund_to_category = "refund_to_category"
    refund_to_tbb = "refund_to_tbb"
    payment = "payment"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255))

    accounts: Mapped[list["Account"]] = relationship(
        "Account", back_populates="budget"
    )
    category_groups: Mapped[list["CategoryGroup"]] = relationship(
        "CategoryGroup",
        back_populates="budget",
        order_by="(CategoryGroup.sort_order, CategoryGroup.id)",
    )

    __table_args__ = (Index("ix_budgets_user", "user_id"),)


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    on_budget: Mapped[bool] = mapped_column(Boolean, nullable=False)
    official_name: Mapped[Optional[str]] = mapped_column(String(200))
    note: Mapped[Optional[str]] = mapped_column(Text)
    is_closed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payment_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id")
    )

    budget: Mapped["Budget"] = relationship("Budget", back_populates="accounts")
    payment_category: Mapped[Optional["Category"]] = relationship(
        "Category", foreign_keys=[payment_category_id]
    )

    __table_args__ = (
        UniqueConstraint("budget_id", "name", name="uq_account_budget_name"),
        UniqueConstraint("payment_category_id", name="uq_account_payment_category"),
    )


class CategoryGroup(Base, TimestampMixin):
    __tablename__ = "category_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    budget: Mapped["Budget"] = relationship(
        "Budget", back_populates="category_groups"
    )
    categories: Mapped[list["Category"]] = relationship(
        "Category",
        back_populates="group",
        order_by="(Category.sort_order, Category.name)",
    )

    __table_args__ = (
        UniqueConstraint("budget_id", "name", name="uq_group_budget_name"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("category_groups.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    group: Mapped["CategoryGroup"] = relationship(
        "CategoryGroup", back_populates="categories"
    )
    goal: Mapped[Optional["Goal"]] = relationship(
        "Goal", back_populates="category", uselist=False
    )

    __table_args__ = (
        UniqueConstraint("group_id", "name", name="uq_category_group_name"),
    )


class BudgetEntry(Base, TimestampMixin):
    __tablename__ = "budget_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    # May go negative: overspending borrowed from future months.
    assigned_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint(
            "category_id", "year", "month", name="uq_budget_entry_category_month"
        ),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_entry_month"),
        Index("ix_budget_entries_month", "year", "month"),
    )


class Payee(Base, TimestampMixin):
    __tablename__ = "payees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    __table_args__ = (
        UniqueConstraint("budget_id", "name", name="uq_payee_budget_name"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    payee_id: Mapped[Optional[int]] = mapped_column(ForeignKey("payees.id"))
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    date: Mapped[date] = mapped_column(Date, nullable=False)
    # Positive = inflow, negative = outflow.
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    memo: Mapped[Optional[str]] = mapped_column(Text)
    cleared: Mapped[ClearedStatus] = mapped_column(
        SAEnum(ClearedStatus), default=ClearedStatus.uncleared, nullable=False
    )
    approved: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_transfer: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    transfer_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id")
    )
    transfer_group_id: Mapped[Optional[str]] = mapped_column(String(36))
    is_split: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    import_id: Mapped[Optional[str]] = mapped_column(String(100))
    cc_adjustment: Mapped[CardAdjustment] = mapped_column(
        SAEnum(CardAdjustment), default=CardAdjustment.none, nullable=False
    )
    # Amount moved into (spending) or out of (refunds, payments) the card's
    # payment category when this row was posted.
    cc_covered_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    account: Mapped["Account"] = relationship("Account", foreign_keys=[account_id])
    transfer_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[transfer_account_id]
    )
    payee: Mapped[Optional["Payee"]] = relationship("Payee")
    category: Mapped[Optional["Category"]] = relationship("Category")
    splits: Mapped[list["SplitTransaction"]] = relationship(
        "SplitTransaction",
        back_populates="transaction",
        order_by="SplitTransaction.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("account_id", "import_id", name="uq_txn_account_import_id"),
        Index("ix_transactions_budget_date", "budget_id", "date"),
        Index("ix_transactions_account_date", "account_id", "date"),
        Index("ix_transactions_category", "category_id"),
        Index("ix_transactions_transfer_group", "transfer_group_id"),
    )


class SplitTransaction(Base, TimestampMixin):
    __tablename__ = "split_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    memo: Mapped[Optional[str]] = mapped_column(Text)

    transaction: Mapped["Transaction"] = relationship(
        "Transaction", back_populates="splits"
    )
    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (Index("ix_split_transactions_parent", "transaction_id"),)


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    name: Mapped[Optional[str]] = mapped_column(String(100))
    type: Mapped[GoalType] = mapped_column(SAEnum(GoalType), nullable=False)
    target_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    target_date: Mapped[Optional[date]] = mapped_column(Date)
    monthly_funding_cents: Mapped[Optional[int]] = mapped_column(Integer)

    category: Mapped["Category"] = relationship("Category", back_populates="goal")

    __table_args__ = (
        UniqueConstraint("category_id", name="uq_goal_category"),
        CheckConstraint(
            "target_amount_cents IS NULL OR target_amount_cents > 0",
            name="ck_goal_target_positive",
        ),
        CheckConstraint(
            "monthly_funding_cents IS NULL OR monthly_funding_cents > 0",
            name="ck_goal_monthly_positive",
        ),
    )
