"""initial budget engine schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


CHANNELS = ("sms", "push", "email", "app")
PATTERN_STATUSES = ("active", "inactive", "learning")
EXPENSE_STATUSES = ("pending", "confirmed", "cancelled")
EXPENSE_SOURCES = ("manual", "sms", "whatsapp", "bank_api", "notification")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer()),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("archived_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )

    op.create_table(
        "bank_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("bank_name", sa.String(length=100), nullable=False),
        sa.Column("account_alias", sa.String(length=100), nullable=False),
        sa.Column("account_number_mask", sa.String(length=20), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_notification_enabled", sa.Boolean(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_bank_accounts_user_id", "bank_accounts", ["user_id"])

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("spent_cents", sa.Integer(), nullable=False),
        sa.Column("remaining_cents", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("auto_create_next", sa.Boolean(), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "year", "month", name="uq_budget_user_month"),
        sa.CheckConstraint("total_cents > 0", name="ck_budget_total_positive"),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_month_range"),
    )
    op.create_index("ix_budget_user_active", "budgets", ["user_id", "is_active"])

    op.create_table(
        "budget_allocations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("allocated_cents", sa.Integer(), nullable=False),
        sa.Column("spent_cents", sa.Integer(), nullable=False),
        sa.Column("remaining_cents", sa.Integer(), nullable=False),
        sa.Column("daily_limit_cents", sa.Integer(), nullable=False),
        sa.Column("current_daily_limit_cents", sa.Integer(), nullable=False),
        sa.Column("last_calculated_at", sa.DateTime()),
        sa.Column("last_rollover_on", sa.Date()),
        sa.Column("alert_threshold", sa.Float(), nullable=False),
        sa.Column("is_over_budget", sa.Boolean(), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "budget_id", "category_id", name="uq_allocation_category"
        ),
        sa.CheckConstraint(
            "allocated_cents >= 0", name="ck_allocation_amount_positive"
        ),
        sa.CheckConstraint(
            "alert_threshold >= 0 AND alert_threshold <= 1",
            name="ck_allocation_alert_threshold_range",
        ),
    )

    op.create_table(
        "notification_patterns",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "bank_account_id",
            sa.Integer(),
            sa.ForeignKey("bank_accounts.id"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.String(length=500)),
        sa.Column(
            "channel", sa.Enum(*CHANNELS, name="notificationchannel"), nullable=False
        ),
        sa.Column(
            "status", sa.Enum(*PATTERN_STATUSES, name="patternstatus"), nullable=False
        ),
        sa.Column("message_pattern", sa.Text()),
        sa.Column("example_message", sa.Text()),
        sa.Column("keywords_trigger", sa.JSON(), nullable=False),
        sa.Column("keywords_exclude", sa.JSON(), nullable=False),
        sa.Column("amount_regex", sa.String(length=500)),
        sa.Column("date_regex", sa.String(length=500)),
        sa.Column("description_regex", sa.String(length=500)),
        sa.Column("merchant_regex", sa.String(length=500)),
        sa.Column("requires_validation", sa.Boolean(), nullable=False),
        sa.Column("confidence_threshold", sa.Float(), nullable=False),
        sa.Column("auto_approve", sa.Boolean(), nullable=False),
        sa.Column("match_count", sa.Integer(), nullable=False),
        sa.Column("success_count", sa.Integer(), nullable=False),
        sa.Column("last_matched_at", sa.DateTime()),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "confidence_threshold >= 0 AND confidence_threshold <= 1",
            name="ck_pattern_confidence_threshold_range",
        ),
    )
    op.create_index(
        "ix_notification_patterns_user_id", "notification_patterns", ["user_id"]
    )
    op.create_index(
        "ix_patterns_account_channel_status_priority",
        "notification_patterns",
        ["bank_account_id", "channel", "status", "priority"],
    )
    op.create_index(
        "uq_pattern_default_per_channel",
        "notification_patterns",
        ["bank_account_id", "channel"],
        unique=True,
        sqlite_where=sa.text("is_default = 1"),
        postgresql_where=sa.text("is_default"),
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column(
            "allocation_id",
            sa.Integer(),
            sa.ForeignKey("budget_allocations.id"),
            nullable=False,
        ),
        sa.Column(
            "pattern_id",
            sa.Integer(),
            sa.ForeignKey("notification_patterns.id", ondelete="SET NULL"),
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "status", sa.Enum(*EXPENSE_STATUSES, name="expensestatus"), nullable=False
        ),
        sa.Column(
            "source", sa.Enum(*EXPENSE_SOURCES, name="expensesource"), nullable=False
        ),
        sa.Column("merchant", sa.String(length=100)),
        sa.Column("notes", sa.Text()),
        sa.Column("raw_data", sa.Text()),
        sa.Column("confidence", sa.Float()),
        sa.Column("tags", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_expense_amount_positive"),
    )
    op.create_index(
        "ix_expenses_allocation_status", "expenses", ["allocation_id", "status"]
    )
    op.create_index(
        "ix_expenses_user_category_date",
        "expenses",
        ["user_id", "category_id", "date"],
    )
    op.create_index("ix_expenses_user_date", "expenses", ["user_id", "date"])


def downgrade():
    op.drop_index("ix_expenses_user_date", table_name="expenses")
    op.drop_index("ix_expenses_user_category_date", table_name="expenses")
    op.drop_index("ix_expenses_allocation_status", table_name="expenses")
    op.drop_table("expenses")
    op.drop_index("uq_pattern_default_per_channel", table_name="notification_patterns")
    op.drop_index(
        "ix_patterns_account_channel_status_priority",
        table_name="notification_patterns",
    )
    op.drop_index(
        "ix_notification_patterns_user_id", table_name="notification_patterns"
    )
    op.drop_table("notification_patterns")
    op.drop_table("budget_allocations")
    op.drop_index("ix_budget_user_active", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_bank_accounts_user_id", table_name="bank_accounts")
    op.drop_table("bank_accounts")
    op.drop_table("categories")

    for name in ("expensesource", "expensestatus", "patternstatus", "notificationchannel"):
        sa.Enum(name=name).drop(op.get_bind(), checkfirst=True)
