import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, model_validator

from models import (
    ALL_CATEGORIES,
    RECURRING_BUDGET_MONTH,
    AccountType,
    Frequency,
    TransactionType,
)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    sub_categories: list[str] = Field(default_factory=list)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = AccountType.cash
    starting_balance_cents: int = 0
    is_default: bool = False
    color: Optional[str] = Field(default=None, max_length=9)


class TransactionIn(BaseModel):
    date: dt.date
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    category_id: str = Field(..., min_length=1, max_length=64)
    account_id: Optional[str] = None
    note: Optional[str] = Field(default=None, max_length=200)
    sub_category: Optional[str] = Field(default=None, max_length=100)
    tags: list[str] = Field(default_factory=list)


class RecurringScheduleIn(BaseModel):
    # next_due_date is owned by the materializer and cannot be supplied.
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=120)
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    category_id: str = Field(..., min_length=1, max_length=64)
    frequency: Frequency
    start_date: dt.date
    is_active: bool = True
    note: Optional[str] = Field(default=None, max_length=200)
    sub_category: Optional[str] = Field(default=None, max_length=100)
    tags: list[str] = Field(default_factory=list)
    account_id: Optional[str] = None


REQUIRED_SCHEDULE_FIELDS = frozenset(
    {
        "name",
        "type",
        "amount_cents",
        "category_id",
        "frequency",
        "start_date",
        "is_active",
        "tags",
    }
)


class RecurringScheduleUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    type: Optional[TransactionType] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    category_id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    frequency: Optional[Frequency] = None
    start_date: Optional[dt.date] = None
    is_active: Optional[bool] = None
    note: Optional[str] = Field(default=None, max_length=200)
    sub_category: Optional[str] = Field(default=None, max_length=100)
    tags: Optional[list[str]] = None
    account_id: Optional[str] = None

    @model_validator(mode="after")
    def _no_null_required_fields(self) -> "RecurringScheduleUpdate":
        # Omitted fields are left alone; explicit nulls only clear optional ones.
        for name in self.model_fields_set & REQUIRED_SCHEDULE_FIELDS:
            if getattr(self, name) is None:
                raise ValueError(f"{name} cannot be empty")
        return self


class BudgetIn(BaseModel):
    category_id: str = Field(default=ALL_CATEGORIES, min_length=1, max_length=64)
    amount_cents: int = Field(..., ge=0)
    month: str = Field(
        default=RECURRING_BUDGET_MONTH, pattern=r"^(recurring|\d{4}-(0[1-9]|1[0-2]))$"
    )


class BillReminderDaysIn(BaseModel):
    days: list[PositiveInt]


class SettingsIn(BaseModel):
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    bill_reminder_days: Optional[list[PositiveInt]] = None


class AlertCheckIn(BaseModel):
    category_names: dict[str, str] = Field(default_factory=dict)


class GoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    target_amount_cents: int = Field(..., gt=0)
    deadline: Optional[dt.date] = None
    account_id: Optional[str] = None


class GoalFundIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    account_id: Optional[str] = None
    date: Optional[dt.date] = None


class TransferIn(BaseModel):
    from_account_id: str = Field(..., min_length=1)
    to_account_id: str = Field(..., min_length=1)
    amount_cents: int = Field(..., gt=0)
    date: dt.date
    note: Optional[str] = Field(default=None, max_length=200)

    @model_validator(mode="after")
    def _distinct_accounts(self) -> "TransferIn":
        if self.from_account_id == self.to_account_id:
            raise ValueError("Cannot transfer to the same account")
        return self
