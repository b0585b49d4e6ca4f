"""initial finance tracker schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None

TRANSACTION_TYPE = sa.Enum("income", "expense", name="transactiontype")
FREQUENCY = sa.Enum("daily", "weekly", "monthly", "yearly", name="frequency")
ALERT_LEVEL = sa.Enum("warning", "exceeded", name="alertlevel")
NOTIFICATION_TYPE = sa.Enum(
    "budget_alert", "bill_reminder", "goal_milestone", "system", name="notificationtype"
)
ACCOUNT_TYPE = sa.Enum("cash", "bank", "ewallet", "credit", "other", name="accounttype")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("type", ACCOUNT_TYPE, nullable=False),
        sa.Column("starting_balance_cents", sa.Integer(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False),
        sa.Column("color", sa.String(9), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_accounts_user_id", "accounts", ["user_id"])

    op.create_table(
        "categories",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("sub_categories", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "type", "name", name="uq_category_user_type_name"
        ),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(160), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category_id", sa.String(64), nullable=False),
        sa.Column("account_id", sa.String(64), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("sub_category", sa.String(100), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("origin_schedule_id", sa.String(64), nullable=True),
        sa.Column("occurrence_date", sa.Date(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id",
            "origin_schedule_id",
            "occurrence_date",
            name="uq_txn_origin_occurrence",
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_category_date",
        "transactions",
        ["user_id", "category_id", "date"],
    )

    op.create_table(
        "recurring_schedules",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category_id", sa.String(64), nullable=False),
        sa.Column("frequency", FREQUENCY, nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("next_due_date", sa.Date(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("sub_category", sa.String(100), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("account_id", sa.String(64), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_schedule_amount_positive"),
        sa.CheckConstraint(
            "next_due_date >= start_date", name="ck_schedule_next_after_start"
        ),
    )
    op.create_index(
        "ix_recurring_schedules_user_id", "recurring_schedules", ["user_id"]
    )

    op.create_table(
        "bill_reminders",
        sa.Column("id", sa.String(200), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("schedule_id", sa.String(64), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("days_before_due", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "user_id",
            "schedule_id",
            "due_date",
            "days_before_due",
            name="uq_bill_reminder_occurrence_lead",
        ),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("category_id", sa.String(64), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("month", sa.String(9), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
    )
    op.create_index("ix_budgets_user_id", "budgets", ["user_id"])

    op.create_table(
        "budget_alerts",
        sa.Column("id", sa.String(200), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("budget_id", sa.String(64), nullable=False),
        sa.Column("category_id", sa.String(64), nullable=False),
        sa.Column("alert_level", ALERT_LEVEL, nullable=False),
        sa.Column("period_key", sa.String(7), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "user_id",
            "budget_id",
            "alert_level",
            "period_key",
            name="uq_budget_alert_level_period",
        ),
    )
    op.create_index(
        "ix_budget_alerts_user_period", "budget_alerts", ["user_id", "period_key"]
    )

    op.create_table(
        "user_settings",
        sa.Column("user_id", sa.String(128), primary_key=True),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("bill_reminder_days", sa.JSON(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("type", NOTIFICATION_TYPE, nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("read", sa.Boolean(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_notifications_user_created", "notifications", ["user_id", "created_at"]
    )

    op.create_table(
        "goals",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("target_amount_cents", sa.Integer(), nullable=False),
        sa.Column("current_amount_cents", sa.Integer(), nullable=False),
        sa.Column("deadline", sa.Date(), nullable=True),
        sa.Column("account_id", sa.String(64), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("target_amount_cents > 0", name="ck_goal_target_positive"),
    )
    op.create_index("ix_goals_user_id", "goals", ["user_id"])

    op.create_table(
        "transfers",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("from_account_id", sa.String(64), nullable=False),
        sa.Column("to_account_id", sa.String(64), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("from_transaction_id", sa.String(160), nullable=True),
        sa.Column("to_transaction_id", sa.String(160), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transfer_amount_positive"),
        sa.CheckConstraint(
            "from_account_id <> to_account_id", name="ck_transfer_distinct_accounts"
        ),
    )
    op.create_index("ix_transfers_user_id", "transfers", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_transfers_user_id", table_name="transfers")
    op.drop_table("transfers")
    op.drop_index("ix_goals_user_id", table_name="goals")
    op.drop_table("goals")
    op.drop_index("ix_notifications_user_created", table_name="notifications")
    op.drop_table("notifications")
    op.drop_table("user_settings")
    op.drop_index("ix_budget_alerts_user_period", table_name="budget_alerts")
    op.drop_table("budget_alerts")
    op.drop_index("ix_budgets_user_id", table_name="budgets")
    op.drop_table("budgets")
    op.drop_table("bill_reminders")
    op.drop_index("ix_recurring_schedules_user_id", table_name="recurring_schedules")
    op.drop_table("recurring_schedules")
    op.drop_index("ix_transactions_user_category_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
    op.drop_index("ix_accounts_user_id", table_name="accounts")
    op.drop_table("accounts")
