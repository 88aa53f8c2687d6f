"""initial ledger schema

Revision ID: 202610191200
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610191200"
down_revision = None
branch_labels = None
depends_on = None


ACCOUNT_TYPES = (
    "checking",
    "savings",
    "credit_card",
    "cash",
    "line_of_credit",
    "investment",
    "mortgage",
    "other_asset",
    "other_liability",
)
CLEARED_STATUSES = ("uncleared", "cleared", "reconciled")
GOAL_TYPES = ("target_balance", "target_balance_by_date", "monthly_funding")
CARD_ADJUSTMENTS = (
    "none",
    "spending",
    "refund_to_category",
    "refund_to_tbb",
    "payment",
)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.String(length=255)),
        *_timestamps(),
    )
    op.create_index("ix_budgets_user", "budgets", ["user_id"])

    op.create_table(
        "category_groups",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("budget_id", "name", name="uq_group_budget_name"),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "group_id",
            sa.Integer(),
            sa.ForeignKey("category_groups.id"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("group_id", "name", name="uq_category_group_name"),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", sa.Enum(*ACCOUNT_TYPES, name="accounttype"), nullable=False),
        sa.Column("on_budget", sa.Boolean(), nullable=False),
        sa.Column("official_name", sa.String(length=200)),
        sa.Column("note", sa.Text()),
        sa.Column("is_closed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "payment_category_id", sa.Integer(), sa.ForeignKey("categories.id")
        ),
        *_timestamps(),
        sa.UniqueConstraint("budget_id", "name", name="uq_account_budget_name"),
        sa.UniqueConstraint(
            "payment_category_id", name="uq_account_payment_category"
        ),
    )

    op.create_table(
        "payees",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=200), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("budget_id", "name", name="uq_payee_budget_name"),
    )

    op.create_table(
        "budget_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("assigned_cents", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint(
            "category_id", "year", "month", name="uq_budget_entry_category_month"
        ),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_entry_month"),
    )
    op.create_index("ix_budget_entries_month", "budget_entries", ["year", "month"])

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=100)),
        sa.Column("type", sa.Enum(*GOAL_TYPES, name="goaltype"), nullable=False),
        sa.Column("target_amount_cents", sa.Integer()),
        sa.Column("target_date", sa.Date()),
        sa.Column("monthly_funding_cents", sa.Integer()),
        *_timestamps(),
        sa.UniqueConstraint("category_id", name="uq_goal_category"),
        sa.CheckConstraint(
            "target_amount_cents IS NULL OR target_amount_cents > 0",
            name="ck_goal_target_positive",
        ),
        sa.CheckConstraint(
            "monthly_funding_cents IS NULL OR monthly_funding_cents > 0",
            name="ck_goal_monthly_positive",
        ),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("payee_id", sa.Integer(), sa.ForeignKey("payees.id")),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("memo", sa.Text()),
        sa.Column(
            "cleared",
            sa.Enum(*CLEARED_STATUSES, name="clearedstatus"),
            nullable=False,
            server_default="uncleared",
        ),
        sa.Column("approved", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_transfer", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("transfer_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("transfer_group_id", sa.String(length=36)),
        sa.Column("is_split", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("import_id", sa.String(length=100)),
        sa.Column(
            "cc_adjustment",
            sa.Enum(*CARD_ADJUSTMENTS, name="cardadjustment"),
            nullable=False,
            server_default="none",
        ),
        sa.Column("cc_covered_cents", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("account_id", "import_id", name="uq_txn_account_import_id"),
    )
    op.create_index(
        "ix_transactions_budget_date", "transactions", ["budget_id", "date"]
    )
    op.create_index(
        "ix_transactions_account_date", "transactions", ["account_id", "date"]
    )
    op.create_index("ix_transactions_category", "transactions", ["category_id"])
    op.create_index(
        "ix_transactions_transfer_group", "transactions", ["transfer_group_id"]
    )

    op.create_table(
        "split_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id"),
            nullable=False,
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("memo", sa.Text()),
        *_timestamps(),
    )
    op.create_index(
        "ix_split_transactions_parent", "split_transactions", ["transaction_id"]
    )


def downgrade():
    op.drop_index("ix_split_transactions_parent", table_name="split_transactions")
    op.drop_table("split_transactions")
    op.drop_index("ix_transactions_transfer_group", table_name="transactions")
    op.drop_index("ix_transactions_category", table_name="transactions")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_index("ix_transactions_budget_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("goals")
    op.drop_index("ix_budget_entries_month", table_name="budget_entries")
    op.drop_table("budget_entries")
    op.drop_table("payees")
    op.drop_table("accounts")
    op.drop_table("categories")
    op.drop_table("category_groups")
    op.drop_index("ix_budgets_user", table_name="budgets")
    op.drop_table("budgets")
    sa.Enum(name="cardadjustment").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="clearedstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="goaltype").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="accounttype").drop(op.get_bind(), checkfirst=True)
