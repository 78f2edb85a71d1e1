"""initial schema

Revision ID: 202610010900
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610010900"
down_revision = None
branch_labels = None
depends_on = None


MONEY = sa.Numeric(12, 2)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum("EXPENSE", "INCOME", "TRANSFER", name="categorytype"),
            nullable=False,
        ),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("description", sa.Text()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_category_date",
        "transactions",
        ["user_id", "category_id", "date"],
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("UPCOMING", "ACTIVE", "COMPLETED", name="budgetstatus"),
            nullable=False,
        ),
        *_timestamps(),
        sa.CheckConstraint("end_date >= start_date", name="ck_budget_dates_ordered"),
    )
    op.create_index("ix_budgets_user_status", "budgets", ["user_id", "status"])

    op.create_table(
        "budget_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("limit_amount", MONEY, nullable=False),
        sa.Column("spent_amount", MONEY, nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("budget_id", "category_id", name="uq_budget_category"),
        sa.CheckConstraint("spent_amount >= 0", name="ck_budget_category_spent_nonneg"),
        sa.CheckConstraint("limit_amount > 0", name="ck_budget_category_limit_positive"),
    )

    op.create_table(
        "rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column(
            "condition_type",
            sa.Enum("GREATER_THAN", "LESS_THAN", "EQUAL_TO", name="conditiontype"),
            nullable=False,
        ),
        sa.Column("threshold", MONEY, nullable=False),
        sa.Column(
            "period",
            sa.Enum(
                "DAILY", "WEEKLY", "MONTHLY", "QUARTERLY", "YEARLY", name="timeperiod"
            ),
            nullable=False,
        ),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_rules_user_active", "rules", ["user_id", "active"])

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("target_amount", MONEY, nullable=False),
        sa.Column("current_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("target_date", sa.Date(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )

    op.create_table(
        "alerts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "source_type",
            sa.Enum("BUDGET", "RULE", "GOAL", name="sourcetype"),
            nullable=False,
        ),
        sa.Column("source_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=40), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index(
        "ix_alerts_source_unread", "alerts", ["source_type", "source_id", "kind", "read"]
    )
    op.create_index("ix_alerts_user_read", "alerts", ["user_id", "read"])

    op.create_table(
        "applied_deltas",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(length=120), nullable=False, unique=True),
        sa.Column("transaction_id", sa.Integer()),
        sa.Column("amount", MONEY, nullable=False),
        *_timestamps(),
    )


def downgrade():
    op.drop_table("applied_deltas")
    op.drop_index("ix_alerts_user_read", table_name="alerts")
    op.drop_index("ix_alerts_source_unread", table_name="alerts")
    op.drop_table("alerts")
    op.drop_table("goals")
    op.drop_index("ix_rules_user_active", table_name="rules")
    op.drop_table("rules")
    op.drop_table("budget_categories")
    op.drop_index("ix_budgets_user_status", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_user_category_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
    op.drop_table("users")
