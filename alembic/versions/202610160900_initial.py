"""initial finance tracker schema

Revision ID: 202610160900
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610160900"
down_revision = None
branch_labels = None
depends_on = None

CURRENCY = sa.Enum("USD", "EUR", "GBP", "INR", "CAD", "AUD", name="currencycode")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="categorytype"), nullable=False
        ),
        sa.Column("color", sa.String(length=9)),
        sa.Column("icon", sa.String(length=50)),
        sa.Column(
            "state",
            sa.Enum("active", "archived", name="categorystate"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("archived_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )
    op.create_index("ix_categories_user_id", "categories", ["user_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column(
            "type",
            sa.Enum("income", "expense", "transfer", name="transactiontype"),
            nullable=False,
        ),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("category_name", sa.String(length=100)),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency_code", CURRENCY, nullable=False, server_default="USD"),
        sa.Column("note", sa.Text(), nullable=False),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "cancelled", name="transactionstatus"),
            nullable=False,
            server_default="completed",
        ),
        sa.Column("location", sa.String(length=100)),
        sa.Column("source", sa.String(length=40)),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "recurrence_frequency",
            sa.Enum("daily", "weekly", "monthly", "yearly", name="recurrencefrequency"),
        ),
        sa.Column("recurrence_interval", sa.Integer()),
        sa.Column("recurrence_end_date", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "category_id IS NOT NULL OR type = 'transfer'",
            name="ck_transactions_category_required",
        ),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_category_date",
        "transactions",
        ["user_id", "category_id", "date"],
    )
    op.create_index(
        "ix_transactions_user_type_date", "transactions", ["user_id", "type", "date"]
    )

    op.create_table(
        "transaction_tags",
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("name", sa.String(length=20), primary_key=True),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum("monthly", "yearly", "custom", name="budgettype"),
            nullable=False,
            server_default="monthly",
        ),
        sa.Column("start_date", sa.DateTime(), nullable=False),
        sa.Column("end_date", sa.DateTime(), nullable=False),
        sa.Column(
            "total_budget_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("currency_code", CURRENCY, nullable=False, server_default="USD"),
        sa.Column(
            "status",
            sa.Enum("active", "completed", "cancelled", name="budgetstatus"),
            nullable=False,
            server_default="active",
        ),
        sa.Column(
            "notifications_enabled",
            sa.Boolean(),
            nullable=False,
            server_default=sa.true(),
        ),
        sa.Column(
            "notification_threshold", sa.Integer(), nullable=False, server_default="80"
        ),
        sa.Column("email_alerts", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("push_alerts", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("tags_json", sa.Text()),
        sa.Column("notes", sa.String(length=500)),
        sa.Column("last_reconciled_at", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint("end_date > start_date", name="ck_budget_period_order"),
        sa.CheckConstraint(
            "notification_threshold >= 0 AND notification_threshold <= 100",
            name="ck_budget_threshold_range",
        ),
    )
    op.create_index("ix_budgets_user_start", "budgets", ["user_id", "start_date"])
    op.create_index("ix_budgets_user_status", "budgets", ["user_id", "status"])

    op.create_table(
        "budget_allocations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("allocated_cents", sa.Integer(), nullable=False),
        sa.Column("spent_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "color", sa.String(length=9), nullable=False, server_default="#3B82F6"
        ),
        sa.UniqueConstraint("budget_id", "category_id", name="uq_allocation_category"),
        sa.CheckConstraint(
            "allocated_cents > 0", name="ck_allocation_amount_positive"
        ),
        sa.CheckConstraint("spent_cents >= 0", name="ck_allocation_spent_non_negative"),
    )


def downgrade():
    op.drop_table("budget_allocations")
    op.drop_index("ix_budgets_user_status", table_name="budgets")
    op.drop_index("ix_budgets_user_start", table_name="budgets")
    op.drop_table("budgets")
    op.drop_table("transaction_tags")
    op.drop_index("ix_transactions_user_type_date", table_name="transactions")
    op.drop_index("ix_transactions_user_category_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_categories_user_id", table_name="categories")
    op.drop_table("categories")
