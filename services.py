from __future__ import annotations

import logging
from datetime import date
from typing import Any, Optional

from sqlalchemy import case, func, select, union, update
from sqlalchemy.orm import Session

from config import get_settings
from models import (
    Account,
    Budget,
    Category,
    Goal,
    Notification,
    NotificationType,
    RecurringSchedule,
    Transaction,
    TransactionType,
    Transfer,
    UserSettings,
)
from periods import Period
from recurrence import MaterializeResult, RecurrenceMaterializer, local_today
from schemas import (
    AccountIn,
    BudgetIn,
    CategoryIn,
    GoalFundIn,
    GoalIn,
    RecurringScheduleIn,
    RecurringScheduleUpdate,
    SettingsIn,
    TransactionIn,
    TransferIn,
)

logger = logging.getLogger(__name__)

TRANSFER_OUT_CATEGORY = "Transfer Out"
TRANSFER_IN_CATEGORY = "Transfer In"
GOAL_FUNDING_CATEGORY = "Goal Funding"


def get_current_user_id() -> str:
    return get_settings().default_user_id


def format_amount(cents: int, currency: str = "PHP") -> str:
    return f"{currency} {cents / 100:,.2f}"


def known_user_ids(session: Session) -> list[str]:
    """Users that own anything the background jobs act on."""
    stmt = union(
        select(RecurringSchedule.user_id),
        select(Budget.user_id),
    )
    return sorted(row[0] for row in session.execute(stmt))


class AccountService:
    def __init__(self, session: Session, user_id: Optional[str] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.is_default.desc(), Account.name, Account.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: str) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise ValueError("Account not found")
        return account

    def _clear_default(self) -> None:
        self.session.execute(
            update(Account)
            .where(Account.user_id == self.user_id, Account.is_default.is_(True))
            .values(is_default=False)
        )

    def create(self, data: AccountIn) -> Account:
        has_any = self.session.scalar(
            select(func.count(Account.id)).where(Account.user_id == self.user_id)
        )
        is_default = data.is_default or not has_any
        if is_default:
            self._clear_default()
        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            starting_balance_cents=data.starting_balance_cents,
            is_default=is_default,
            color=data.color,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: str, data: AccountIn) -> Account:
        account = self.get(account_id)
        account.name = data.name.strip()
        account.type = data.type
        account.starting_balance_cents = data.starting_balance_cents
        account.color = data.color
        if data.is_default and not account.is_default:
            self._clear_default()
            account.is_default = True
        self.session.commit()
        self.session.refresh(account)
        return account

    def set_default(self, account_id: str) -> Account:
        account = self.get(account_id)
        self._clear_default()
        account.is_default = True
        self.session.commit()
        self.session.refresh(account)
        return account

    def delete(self, account_id: str) -> None:
        account = self.get(account_id)
        was_default = account.is_default
        self.session.delete(account)
        self.session.flush()
        if was_default:
            replacement = self.session.scalar(
                select(Account)
                .where(Account.user_id == self.user_id)
                .order_by(Account.created_at, Account.id)
                .limit(1)
            )
            if replacement is not None:
                replacement.is_default = True
        self.session.commit()

    def balances(self) -> dict[str, int]:
        signed = func.sum(
            case(
                (Transaction.type == TransactionType.income, Transaction.amount_cents),
                else_=-Transaction.amount_cents,
            )
        )
        rows = self.session.execute(
            select(Transaction.account_id, signed)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.account_id.isnot(None),
            )
            .group_by(Transaction.account_id)
        ).all()
        movements = {row[0]: int(row[1] or 0) for row in rows}
        return {
            account.id: account.starting_balance_cents + movements.get(account.id, 0)
            for account in self.list()
        }


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[str] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, type: Optional[TransactionType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        if type:
            stmt = stmt.where(Category.type == type)
        return self.session.scalars(stmt).all()

    def names(self) -> dict[str, str]:
        return {category.id: category.name for category in self.list_all()}

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.type == data.type,
                func.lower(Category.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise ValueError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            sub_categories=list(data.sub_categories),
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: str) -> None:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        self.session.delete(category)
        self.session.commit()


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[str] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _check_account(self, account_id: Optional[str]) -> None:
        if account_id is None:
            return
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise ValueError("Account not found")

    def create(self, data: TransactionIn) -> Transaction:
        self._check_account(data.account_id)
        txn = Transaction(
            user_id=self.user_id,
            date=data.date,
            type=data.type,
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            account_id=data.account_id,
            note=data.note,
            sub_category=data.sub_category,
            tags=list(data.tags),
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: str) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise ValueError("Transaction not found")
        return txn

    def update(self, transaction_id: str, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        self._check_account(data.account_id)
        txn.date = data.date
        txn.type = data.type
        txn.amount_cents = data.amount_cents
        txn.category_id = data.category_id
        txn.account_id = data.account_id
        txn.note = data.note
        txn.sub_category = data.sub_category
        txn.tags = list(data.tags)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: str) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()

    def list(
        self,
        period: Period,
        type: Optional[TransactionType] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        if type:
            stmt = stmt.where(Transaction.type == type)
        return self.session.scalars(stmt).all()

    def expenses_by_category(self, period: Period) -> dict[str, int]:
        rows = self.session.execute(
            select(Transaction.category_id, func.sum(Transaction.amount_cents))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Transaction.category_id)
        ).all()
        return {row[0]: int(row[1] or 0) for row in rows}


class RecurringScheduleService:
    def __init__(self, session: Session, user_id: Optional[str] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, schedule_id: str) -> RecurringSchedule:
        schedule = self.session.get(RecurringSchedule, schedule_id)
        if not schedule or schedule.user_id != self.user_id:
            raise ValueError("Schedule not found")
        return schedule

    def list(self) -> list[RecurringSchedule]:
        stmt = (
            select(RecurringSchedule)
            .where(RecurringSchedule.user_id == self.user_id)
            .order_by(RecurringSchedule.next_due_date, RecurringSchedule.id)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: RecurringScheduleIn) -> RecurringSchedule:
        schedule = RecurringSchedule(
            user_id=self.user_id,
            next_due_date=data.start_date,
            **data.model_dump(),
        )
        self.session.add(schedule)
        self.session.commit()
        self.session.refresh(schedule)
        logger.info(
            f"schedule_created: user={self.user_id} schedule={schedule.id} "
            f"start={schedule.start_date.isoformat()} frequency={schedule.frequency.value}"
        )
        return schedule

    def update(
        self, schedule_id: str, data: RecurringScheduleUpdate
    ) -> RecurringSchedule:
        schedule = self.get(schedule_id)
        for field, value in data.model_dump(exclude_unset=True).items():
            setattr(schedule, field, value)
        # The anchor only moves forward and never precedes the start date.
        if schedule.start_date > schedule.next_due_date:
            schedule.next_due_date = schedule.start_date
        self.session.commit()
        self.session.refresh(schedule)
        return schedule

    def set_active(self, schedule_id: str, is_active: bool) -> RecurringSchedule:
        schedule = self.get(schedule_id)
        schedule.is_active = is_active
        self.session.commit()
        return schedule

    def delete(self, schedule_id: str) -> None:
        # Entries already materialized from the schedule are kept.
        schedule = self.get(schedule_id)
        self.session.delete(schedule)
        self.session.commit()

    def materialize_due(self, today: Optional[date] = None) -> MaterializeResult:
        return RecurrenceMaterializer(self.session).materialize_due(
            self.list(), today or local_today()
        )


class SettingsService:
    def __init__(self, session: Session, user_id: Optional[str] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self) -> UserSettings:
        """Stored settings, or unsaved defaults when the user has none."""
        stored = self.session.get(UserSettings, self.user_id)
        if stored is not None:
            return stored
        return UserSettings(
            user_id=self.user_id,
            currency="PHP",
            bill_reminder_days=list(get_settings().bill_reminder_days),
        )

    def bill_reminder_days(self) -> list[int]:
        return sorted({int(day) for day in self.get().bill_reminder_days or []})

    @staticmethod
    def _normalize_days(days: list[int]) -> list[int]:
        if any(day <= 0 for day in days):
            raise ValueError("Reminder days must be positive")
        return sorted(set(days))

    def _stored(self) -> UserSettings:
        stored = self.session.get(UserSettings, self.user_id)
        if stored is None:
            stored = self.get()
            self.session.add(stored)
        return stored

    def update(self, data: SettingsIn) -> UserSettings:
        stored = self._stored()
        if data.currency is not None:
            stored.currency = data.currency.upper()
        if data.bill_reminder_days is not None:
            stored.bill_reminder_days = self._normalize_days(data.bill_reminder_days)
        self.session.commit()
        self.session.refresh(stored)
        return stored

    def set_bill_reminder_days(self, days: list[int]) -> list[int]:
        stored = self._stored()
        stored.bill_reminder_days = self._normalize_days(days)
        self.session.commit()
        return list(stored.bill_reminder_days)


class NotificationService:
    def __init__(self, session: Session, user_id: Optional[str] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def add(
        self,
        type: NotificationType,
        *,
        title: str,
        message: str,
        data: Optional[dict[str, Any]] = None,
        commit: bool = True,
    ) -> Notification:
        notification = Notification(
            user_id=self.user_id,
            type=type,
            title=title,
            message=message,
            data=dict(data or {}),
        )
        self.session.add(notification)
        if commit:
            self.session.commit()
            self.session.refresh(notification)
        else:
            self.session.flush()
        return notification

    def _get(self, notification_id: str) -> Notification:
        notification = self.session.get(Notification, notification_id)
        if not notification or notification.user_id != self.user_id:
            raise ValueError("Notification not found")
        return notification

    def list(self, *, unread_only: bool = False, limit: int = 50) -> list[Notification]:
        stmt = (
            select(Notification)
            .where(Notification.user_id == self.user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
        )
        if unread_only:
            stmt = stmt.where(Notification.read.is_(False))
        return self.session.scalars(stmt).all()

    def unread_count(self) -> int:
        return int(
            self.session.scalar(
                select(func.count(Notification.id)).where(
                    Notification.user_id == self.user_id,
                    Notification.read.is_(False),
                )
            )
            or 0
        )

    def mark_read(self, notification_id: str) -> Notification:
        notification = self._get(notification_id)
        notification.read = True
        self.session.commit()
        return notification

    def mark_all_read(self) -> int:
        result = self.session.execute(
            update(Notification)
            .where(
                Notification.user_id == self.user_id,
                Notification.read.is_(False),
            )
            .values(read=True)
        )
        self.session.commit()
        return result.rowcount or 0

    def delete(self, notification_id: str) -> None:
        self.session.delete(self._get(notification_id))
        self.session.commit()


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[str] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.month, Budget.category_id, Budget.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, budget_id: str) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise ValueError("Budget not found")
        return budget

    def upsert(self, data: BudgetIn) -> Budget:
        existing = self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.category_id == data.category_id,
                Budget.month == data.month,
            )
        )
        if existing:
            existing.amount_cents = data.amount_cents
            self.session.commit()
            self.session.refresh(existing)
            return existing
        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            amount_cents=data.amount_cents,
            month=data.month,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: str, data: BudgetIn) -> Budget:
        budget = self.get(budget_id)
        budget.category_id = data.category_id
        budget.amount_cents = data.amount_cents
        budget.month = data.month
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: str) -> None:
        self.session.delete(self.get(budget_id))
        self.session.commit()


class GoalService:
    def __init__(self, session: Session, user_id: Optional[str] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list(self) -> list[Goal]:
        stmt = (
            select(Goal)
            .where(Goal.user_id == self.user_id)
            .order_by(Goal.deadline.is_(None), Goal.deadline, Goal.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, goal_id: str) -> Goal:
        goal = self.session.get(Goal, goal_id)
        if not goal or goal.user_id != self.user_id:
            raise ValueError("Goal not found")
        return goal

    def create(self, data: GoalIn) -> Goal:
        goal = Goal(user_id=self.user_id, **data.model_dump())
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def update(self, goal_id: str, data: GoalIn) -> Goal:
        goal = self.get(goal_id)
        for field, value in data.model_dump().items():
            setattr(goal, field, value)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def delete(self, goal_id: str) -> None:
        self.session.delete(self.get(goal_id))
        self.session.commit()

    def fund(self, goal_id: str, data: GoalFundIn) -> Goal:
        """Move money into a goal: one expense entry plus the new goal total."""
        goal = self.get(goal_id)
        account_id = data.account_id or goal.account_id
        if account_id is not None:
            AccountService(self.session, self.user_id).get(account_id)
        reached_before = goal.current_amount_cents >= goal.target_amount_cents
        try:
            self.session.add(
                Transaction(
                    user_id=self.user_id,
                    date=data.date or local_today(),
                    type=TransactionType.expense,
                    amount_cents=data.amount_cents,
                    category_id=GOAL_FUNDING_CATEGORY,
                    account_id=account_id,
                    note=f"Goal: {goal.name}",
                )
            )
            goal.current_amount_cents += data.amount_cents
            if not reached_before and goal.current_amount_cents >= goal.target_amount_cents:
                NotificationService(self.session, self.user_id).add(
                    NotificationType.goal_milestone,
                    title=f"Goal Reached: {goal.name}",
                    message=(
                        f'You reached your "{goal.name}" goal of '
                        f"{format_amount(goal.target_amount_cents)}."
                    ),
                    data={"goal_id": goal.id},
                    commit=False,
                )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(goal)
        return goal


class TransferService:
    def __init__(self, session: Session, user_id: Optional[str] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list(self) -> list[Transfer]:
        stmt = (
            select(Transfer)
            .where(Transfer.user_id == self.user_id)
            .order_by(Transfer.date.desc(), Transfer.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, transfer_id: str) -> Transfer:
        transfer = self.session.get(Transfer, transfer_id)
        if not transfer or transfer.user_id != self.user_id:
            raise ValueError("Transfer not found")
        return transfer

    def create(self, data: TransferIn) -> Transfer:
        """Both ledger entries and the transfer record commit together."""
        accounts = AccountService(self.session, self.user_id)
        source = accounts.get(data.from_account_id)
        target = accounts.get(data.to_account_id)
        try:
            outgoing = Transaction(
                user_id=self.user_id,
                date=data.date,
                type=TransactionType.expense,
                amount_cents=data.amount_cents,
                category_id=TRANSFER_OUT_CATEGORY,
                account_id=source.id,
                note=data.note or f"Transfer to {target.name}",
            )
            incoming = Transaction(
                user_id=self.user_id,
                date=data.date,
                type=TransactionType.income,
                amount_cents=data.amount_cents,
                category_id=TRANSFER_IN_CATEGORY,
                account_id=target.id,
                note=data.note or f"Transfer from {source.name}",
            )
            self.session.add_all([outgoing, incoming])
            self.session.flush()
            transfer = Transfer(
                user_id=self.user_id,
                from_account_id=source.id,
                to_account_id=target.id,
                amount_cents=data.amount_cents,
                date=data.date,
                note=data.note,
                from_transaction_id=outgoing.id,
                to_transaction_id=incoming.id,
            )
            self.session.add(transfer)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(transfer)
        logger.info(
            f"transfer_created: user={self.user_id} transfer={transfer.id} "
            f"from={source.id} to={target.id} amount={data.amount_cents}"
        )
        return transfer

    def delete(self, transfer_id: str) -> None:
        transfer = self.get(transfer_id)
        try:
            for txn_id in (transfer.from_transaction_id, transfer.to_transaction_id):
                if txn_id is None:
                    continue
                txn = self.session.get(Transaction, txn_id)
                if txn is not None:
                    self.session.delete(txn)
            self.session.delete(transfer)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
