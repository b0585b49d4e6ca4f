import datetime as dt
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base

ALL_CATEGORIES = "all"
RECURRING_BUDGET_MONTH = "recurring"
DEFAULT_BILL_REMINDER_DAYS = (1, 3, 7)


def new_id() -> str:
    return uuid4().hex


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class AlertLevel(str, Enum):
    warning = "warning"
    exceeded = "exceeded"


class NotificationType(str, Enum):
    budget_alert = "budget_alert"
    bill_reminder = "bill_reminder"
    goal_milestone = "goal_milestone"
    system = "system"


class AccountType(str, Enum):
    cash = "cash"
    bank = "bank"
    ewallet = "ewallet"
    credit = "credit"
    other = "other"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType), nullable=False, default=AccountType.cash
    )
    starting_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    color: Mapped[Optional[str]] = mapped_column(String(9))


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    sub_categories: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    __table_args__ = (
        UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
    )


class Transaction(Base, TimestampMixin):
    """Ledger entry. Entries derived from a schedule use a deterministic id."""

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(160), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    # Plain references: pseudo categories like "Transfer Out" have no row.
    category_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_id: Mapped[Optional[str]] = mapped_column(String(64))
    note: Mapped[Optional[str]] = mapped_column(Text)
    sub_category: Mapped[Optional[str]] = mapped_column(String(100))
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    origin_schedule_id: Mapped[Optional[str]] = mapped_column(String(64))
    occurrence_date: Mapped[Optional[dt.date]] = mapped_column(Date)

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "origin_schedule_id",
            "occurrence_date",
            name="uq_txn_origin_occurrence",
        ),
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_category_date", "user_id", "category_id", "date"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )


class RecurringSchedule(Base, TimestampMixin):
    __tablename__ = "recurring_schedules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[str] = mapped_column(String(64), nullable=False)
    frequency: Mapped[Frequency] = mapped_column(SAEnum(Frequency), nullable=False)
    start_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    next_due_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    note: Mapped[Optional[str]] = mapped_column(Text)
    sub_category: Mapped[Optional[str]] = mapped_column(String(100))
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    account_id: Mapped[Optional[str]] = mapped_column(String(64))

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_schedule_amount_positive"),
        CheckConstraint(
            "next_due_date >= start_date", name="ck_schedule_next_after_start"
        ),
    )


class BillReminder(Base):
    __tablename__ = "bill_reminders"

    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    schedule_id: Mapped[str] = mapped_column(String(64), nullable=False)
    due_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    days_before_due: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "schedule_id",
            "due_date",
            "days_before_due",
            name="uq_bill_reminder_occurrence_lead",
        ),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    category_id: Mapped[str] = mapped_column(
        String(64), nullable=False, default=ALL_CATEGORIES
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    # "recurring" or a YYYY-MM period key
    month: Mapped[str] = mapped_column(
        String(9), nullable=False, default=RECURRING_BUDGET_MONTH
    )

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
    )


class BudgetAlert(Base):
    __tablename__ = "budget_alerts"

    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    budget_id: Mapped[str] = mapped_column(String(64), nullable=False)
    category_id: Mapped[str] = mapped_column(String(64), nullable=False)
    alert_level: Mapped[AlertLevel] = mapped_column(SAEnum(AlertLevel), nullable=False)
    period_key: Mapped[str] = mapped_column(String(7), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "budget_id",
            "alert_level",
            "period_key",
            name="uq_budget_alert_level_period",
        ),
        Index("ix_budget_alerts_user_period", "user_id", "period_key"),
    )


class UserSettings(Base, TimestampMixin):
    __tablename__ = "user_settings"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="PHP")
    bill_reminder_days: Mapped[list] = mapped_column(
        JSON, nullable=False, default=lambda: list(DEFAULT_BILL_REMINDER_DAYS)
    )


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    type: Mapped[NotificationType] = mapped_column(
        SAEnum(NotificationType), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_notifications_user_created", "user_id", "created_at"),
    )


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    target_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    deadline: Mapped[Optional[dt.date]] = mapped_column(Date)
    account_id: Mapped[Optional[str]] = mapped_column(String(64))

    __table_args__ = (
        CheckConstraint("target_amount_cents > 0", name="ck_goal_target_positive"),
    )


class Transfer(Base, TimestampMixin):
    __tablename__ = "transfers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    from_account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    to_account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)
    from_transaction_id: Mapped[Optional[str]] = mapped_column(String(160))
    to_transaction_id: Mapped[Optional[str]] = mapped_column(String(160))

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_transfer_amount_positive"),
        CheckConstraint(
            "from_account_id <> to_account_id", name="ck_transfer_distinct_accounts"
        ),
    )
