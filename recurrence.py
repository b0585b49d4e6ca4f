import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import update
from sqlalchemy.orm import Session

from config import get_settings
from models import Frequency, RecurringSchedule, Transaction, TransactionType

logger = logging.getLogger(__name__)


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(base.day, days_in_month(year, month)))


def next_occurrence(from_date: date, frequency: Frequency) -> date:
    """Next due date after ``from_date``.

    Month and year steps keep the day of month, clamped to the last day of
    the target month (Jan 31 -> Feb 29/28, Feb 29 -> Feb 28).
    """
    if frequency == Frequency.daily:
        return from_date + timedelta(days=1)
    if frequency == Frequency.weekly:
        return from_date + timedelta(weeks=1)
    if frequency == Frequency.monthly:
        return _add_months(from_date, 1)
    return _add_months(from_date, 12)


def recurring_transaction_id(schedule_id: str, due_date: date) -> str:
    return f"recurring_{schedule_id}_{due_date.isoformat()}"


def recurring_note(name: str, note: Optional[str]) -> str:
    text = f"Recurring: {name}"
    if note:
        text += f" - {note}"
    return text


@dataclass(frozen=True)
class LedgerEntryDraft:
    id: str
    user_id: str
    schedule_id: str
    date: date
    type: TransactionType
    amount_cents: int
    category_id: str
    account_id: Optional[str]
    note: str
    sub_category: Optional[str]
    tags: list[str] = field(default_factory=list)

    def to_transaction(self) -> Transaction:
        return Transaction(
            id=self.id,
            user_id=self.user_id,
            date=self.date,
            type=self.type,
            amount_cents=self.amount_cents,
            category_id=self.category_id,
            account_id=self.account_id,
            note=self.note,
            sub_category=self.sub_category,
            tags=list(self.tags),
            origin_schedule_id=self.schedule_id,
            occurrence_date=self.date,
        )


@dataclass(frozen=True)
class Transition:
    next_due_date: date
    entry: Optional[LedgerEntryDraft] = None


def advance(schedule: RecurringSchedule, today: date) -> Transition:
    """Pure state transition for one schedule as of ``today``.

    Returns the drafted entry for the current anchor and the advanced anchor
    when the schedule is active and due, otherwise the unchanged anchor.
    """
    due = schedule.next_due_date
    if not schedule.is_active or due > today:
        return Transition(next_due_date=due)
    entry = LedgerEntryDraft(
        id=recurring_transaction_id(schedule.id, due),
        user_id=schedule.user_id,
        schedule_id=schedule.id,
        date=due,
        type=schedule.type,
        amount_cents=schedule.amount_cents,
        category_id=schedule.category_id,
        account_id=schedule.account_id,
        note=recurring_note(schedule.name, schedule.note),
        sub_category=schedule.sub_category,
        tags=list(schedule.tags or []),
    )
    return Transition(
        next_due_date=next_occurrence(due, schedule.frequency), entry=entry
    )


@dataclass
class MaterializeResult:
    posted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class RecurrenceMaterializer:
    def __init__(
        self,
        session: Session,
        *,
        catch_up_all: Optional[bool] = None,
        max_catch_up: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.session = session
        self.catch_up_all = (
            settings.catch_up_mode == "all" if catch_up_all is None else catch_up_all
        )
        self.max_catch_up = max_catch_up or settings.max_catch_up

    def materialize_due(
        self, schedules: Iterable[RecurringSchedule], today: Optional[date] = None
    ) -> MaterializeResult:
        today = today or local_today()
        result = MaterializeResult()
        for schedule in schedules:
            if not schedule.is_active or schedule.next_due_date > today:
                continue
            schedule_id, due = schedule.id, schedule.next_due_date
            try:
                result.posted.extend(self._materialize_schedule(schedule_id, today))
            except Exception:
                self.session.rollback()
                logger.exception(
                    f"materialize_failed: schedule={schedule_id} due={due.isoformat()}"
                )
                result.failed.append(schedule_id)
        return result

    def _materialize_schedule(self, schedule_id: str, today: date) -> list[str]:
        # Callers may hand in detached or stale objects; always reload the row.
        schedule = self.session.get(
            RecurringSchedule, schedule_id, populate_existing=True
        )
        posted: list[str] = []
        if schedule is None:
            return posted
        iterations = 0
        while iterations < self.max_catch_up:
            transition = advance(schedule, today)
            if transition.entry is None:
                break
            due = schedule.next_due_date
            self._write_entry(transition.entry)
            moved = self._advance_anchor(schedule.id, due, transition.next_due_date)
            self.session.refresh(schedule)
            if not moved:
                logger.info(
                    f"materialize_skipped: user={schedule.user_id} "
                    f"schedule={schedule.id} due={due.isoformat()}"
                )
                break
            logger.info(
                f"materialize: user={schedule.user_id} schedule={schedule.id} "
                f"due={transition.entry.date.isoformat()} "
                f"next={transition.next_due_date.isoformat()}"
            )
            posted.append(transition.entry.id)
            iterations += 1
            if not self.catch_up_all:
                break
        return posted

    def _write_entry(self, entry: LedgerEntryDraft) -> None:
        # Upsert by deterministic id; committed before the anchor moves.
        self.session.merge(entry.to_transaction())
        self.session.commit()

    def _advance_anchor(self, schedule_id: str, due: date, next_due: date) -> bool:
        # Compare-and-set: a run that already moved the anchor wins.
        moved = self.session.execute(
            update(RecurringSchedule)
            .where(
                RecurringSchedule.id == schedule_id,
                RecurringSchedule.next_due_date == due,
            )
            .values(next_due_date=next_due)
            .execution_options(synchronize_session=False)
        ).rowcount
        self.session.commit()
        return moved == 1
