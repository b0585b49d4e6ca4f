import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Callable, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import BillReminder, NotificationType, RecurringSchedule
from recurrence import local_today
from services import (
    NotificationService,
    SettingsService,
    format_amount,
    get_current_user_id,
)

logger = logging.getLogger(__name__)

HasSent = Callable[[str, date, int], bool]


class ReminderStatus(str, Enum):
    pending = "pending"
    reminded = "reminded"


@dataclass(frozen=True)
class UpcomingBill:
    schedule_id: str
    name: str
    amount_cents: int
    due_date: date
    days_until_due: int
    status: ReminderStatus


def days_until(due_date: date, today: date) -> int:
    return (due_date - today).days


def due_phrase(days: int) -> str:
    if days == 0:
        return "today"
    if days == 1:
        return "tomorrow"
    return f"in {days} days"


def upcoming_bills(
    schedules: Iterable[RecurringSchedule],
    lead_days: Iterable[int],
    today: date,
    has_sent: HasSent,
) -> list[UpcomingBill]:
    """Active occurrences due within the widest configured lead window."""
    leads = sorted(set(lead_days))
    if not leads:
        return []
    max_lead = leads[-1]
    bills: list[UpcomingBill] = []
    for schedule in schedules:
        if not schedule.is_active:
            continue
        days = days_until(schedule.next_due_date, today)
        if days < 0 or days > max_lead:
            continue
        reminded = any(
            has_sent(schedule.id, schedule.next_due_date, lead) for lead in leads
        )
        bills.append(
            UpcomingBill(
                schedule_id=schedule.id,
                name=schedule.name,
                amount_cents=schedule.amount_cents,
                due_date=schedule.next_due_date,
                days_until_due=days,
                status=ReminderStatus.reminded if reminded else ReminderStatus.pending,
            )
        )
    bills.sort(key=lambda bill: (bill.days_until_due, bill.schedule_id))
    return bills


def reminders_due(
    schedules: Iterable[RecurringSchedule], lead_days: Iterable[int], today: date
) -> list[tuple[RecurringSchedule, int]]:
    """(schedule, lead) pairs whose lead matches the days left exactly."""
    leads = sorted(set(lead_days))
    due: list[tuple[RecurringSchedule, int]] = []
    for schedule in schedules:
        if not schedule.is_active:
            continue
        days = days_until(schedule.next_due_date, today)
        if days in leads:
            due.append((schedule, days))
    return due


class ReminderDeduplicator:
    def __init__(self, session: Session, user_id: Optional[str] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    @staticmethod
    def reminder_id(schedule_id: str, due_date: date, lead_days: int) -> str:
        return f"{schedule_id}_{due_date.isoformat()}_{lead_days}"

    def has_sent(self, schedule_id: str, due_date: date, lead_days: int) -> bool:
        stmt = select(BillReminder.id).where(
            BillReminder.user_id == self.user_id,
            BillReminder.schedule_id == schedule_id,
            BillReminder.due_date == due_date,
            BillReminder.days_before_due == lead_days,
        )
        return self.session.scalar(stmt.limit(1)) is not None

    def record_sent(self, schedule_id: str, due_date: date, lead_days: int) -> None:
        """Idempotent: the same triple always maps to the same record."""
        self.session.merge(
            BillReminder(
                id=self.reminder_id(schedule_id, due_date, lead_days),
                user_id=self.user_id,
                schedule_id=schedule_id,
                due_date=due_date,
                days_before_due=lead_days,
            )
        )
        self.session.flush()

    def sent_keys(self) -> set[tuple[str, date, int]]:
        rows = self.session.execute(
            select(
                BillReminder.schedule_id,
                BillReminder.due_date,
                BillReminder.days_before_due,
            ).where(BillReminder.user_id == self.user_id)
        )
        return {(row.schedule_id, row.due_date, row.days_before_due) for row in rows}


class BillReminderService:
    def __init__(self, session: Session, user_id: Optional[str] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.dedup = ReminderDeduplicator(session, self.user_id)
        self.notifications = NotificationService(session, self.user_id)

    def _active_schedules(self) -> list[RecurringSchedule]:
        stmt = (
            select(RecurringSchedule)
            .where(
                RecurringSchedule.user_id == self.user_id,
                RecurringSchedule.is_active.is_(True),
            )
            .order_by(RecurringSchedule.next_due_date, RecurringSchedule.id)
        )
        return self.session.scalars(stmt).all()

    def lead_days(self) -> list[int]:
        return SettingsService(self.session, self.user_id).bill_reminder_days()

    def upcoming(self, today: Optional[date] = None) -> list[UpcomingBill]:
        today = today or local_today()
        sent = self.dedup.sent_keys()
        return upcoming_bills(
            self._active_schedules(),
            self.lead_days(),
            today,
            lambda schedule_id, due, lead: (schedule_id, due, lead) in sent,
        )

    def pending(self, today: Optional[date] = None) -> list[UpcomingBill]:
        return [
            bill for bill in self.upcoming(today) if bill.status == ReminderStatus.pending
        ]

    def check_and_send_reminders(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        sent = 0
        for schedule, lead in reminders_due(
            self._active_schedules(), self.lead_days(), today
        ):
            schedule_id, due, name = schedule.id, schedule.next_due_date, schedule.name
            if self.dedup.has_sent(schedule_id, due, lead):
                continue
            try:
                self.dedup.record_sent(schedule_id, due, lead)
                self.notifications.add(
                    NotificationType.bill_reminder,
                    title=f"Bill Due: {name}",
                    message=(
                        f'Your "{name}" payment of '
                        f"{format_amount(schedule.amount_cents)} is due {due_phrase(lead)}."
                    ),
                    data={
                        "schedule_id": schedule_id,
                        "due_date": due.isoformat(),
                        "amount_cents": schedule.amount_cents,
                        "days_until_due": lead,
                    },
                    commit=False,
                )
                self.session.commit()
            except Exception:
                self.session.rollback()
                logger.exception(
                    f"bill_reminder_failed: user={self.user_id} "
                    f"schedule={schedule_id} due={due.isoformat()} lead={lead}"
                )
                continue
            logger.info(
                f"bill_reminder_sent: user={self.user_id} schedule={schedule_id} "
                f"due={due.isoformat()} lead={lead}"
            )
            sent += 1
        return sent
