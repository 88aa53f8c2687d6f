import datetime as dt
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import AccountType, CardAdjustment, ClearedStatus, GoalType


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=255)


class BudgetUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=255)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    on_budget: Optional[bool] = None
    official_name: Optional[str] = Field(default=None, max_length=200)
    note: Optional[str] = None
    initial_balance_cents: int = 0
    initial_balance_date: Optional[dt.date] = None


class AccountUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    on_budget: Optional[bool] = None
    official_name: Optional[str] = Field(default=None, max_length=200)
    note: Optional[str] = None


class CategoryGroupIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    sort_order: int = 0


class CategoryGroupUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    sort_order: Optional[int] = None


class CategoryIn(BaseModel):
    group_id: int
    name: str = Field(..., min_length=1, max_length=100)
    sort_order: int = 0


class CategoryUpdateIn(BaseModel):
    group_id: Optional[int] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    sort_order: Optional[int] = None


class PayeeIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)


class SplitIn(BaseModel):
    category_id: int
    amount_cents: int
    memo: Optional[str] = None


class TransactionIn(BaseModel):
    account_id: int
    date: dt.date
    amount_cents: int
    payee_id: Optional[int] = None
    payee_name: Optional[str] = Field(default=None, max_length=200)
    category_id: Optional[int] = None
    memo: Optional[str] = None
    cleared: ClearedStatus = ClearedStatus.uncleared
    approved: bool = True
    is_transfer: bool = False
    transfer_account_id: Optional[int] = None
    splits: list[SplitIn] = Field(default_factory=list)
    import_id: Optional[str] = Field(default=None, max_length=100)


class TransactionPatch(BaseModel):
    """Partial update; only fields the caller sent are applied."""

    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    date: Optional[dt.date] = None
    amount_cents: Optional[int] = None
    payee_id: Optional[int] = None
    payee_name: Optional[str] = Field(default=None, max_length=200)
    category_id: Optional[int] = None
    memo: Optional[str] = None
    cleared: Optional[ClearedStatus] = None
    approved: Optional[bool] = None


class AssignMoneyIn(BaseModel):
    category_id: int
    year: int = Field(..., ge=1970, le=3000)
    month: int = Field(..., ge=1, le=12)
    amount_cents: int


class MoveMoneyIn(BaseModel):
    from_category_id: int
    to_category_id: int
    year: int = Field(..., ge=1970, le=3000)
    month: int = Field(..., ge=1, le=12)
    amount_cents: int


class GoalIn(BaseModel):
    type: GoalType
    name: Optional[str] = Field(default=None, max_length=100)
    target_amount_cents: Optional[int] = None
    target_date: Optional[dt.date] = None
    monthly_funding_cents: Optional[int] = None


class ImportedTransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    import_id: str = Field(..., min_length=1, max_length=100)
    date: dt.date
    amount_cents: int
    payee_name: Optional[str] = Field(default=None, max_length=200)
    memo: Optional[str] = None
    pending: bool = True
    category_name: Optional[str] = Field(default=None, max_length=100)


class ImportRemoveIn(BaseModel):
    import_ids: list[str] = Field(default_factory=list)


class ReconcileIn(BaseModel):
    statement_balance_cents: int


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str]
    created_at: datetime


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    budget_id: int
    name: str
    type: AccountType
    on_budget: bool
    official_name: Optional[str]
    note: Optional[str]
    is_closed: bool
    payment_category_id: Optional[int]


class AccountWithBalancesOut(AccountOut):
    working_balance_cents: int
    cleared_balance_cents: int
    uncleared_balance_cents: int


class CategoryGroupOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    budget_id: int
    name: str
    sort_order: int


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    group_id: int
    name: str
    sort_order: int


class PayeeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    budget_id: int
    name: str


class SplitOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category_id: int
    amount_cents: int
    memo: Optional[str]


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    budget_id: int
    account_id: int
    payee_id: Optional[int]
    category_id: Optional[int]
    date: dt.date
    amount_cents: int
    memo: Optional[str]
    cleared: ClearedStatus
    approved: bool
    is_transfer: bool
    transfer_account_id: Optional[int]
    transfer_group_id: Optional[str]
    is_split: bool
    import_id: Optional[str]
    cc_adjustment: CardAdjustment
    cc_covered_cents: int
    splits: list[SplitOut] = Field(default_factory=list)


class BudgetEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    category_id: int
    year: int
    month: int
    assigned_cents: int


class GoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category_id: int
    name: Optional[str]
    type: GoalType
    target_amount_cents: Optional[int]
    target_date: Optional[dt.date]
    monthly_funding_cents: Optional[int]


class ReconciliationOut(BaseModel):
    account_id: int
    statement_balance_cents: int
    cleared_balance_cents: int
    difference_cents: int


class ImportResultOut(BaseModel):
    created: list[int] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
