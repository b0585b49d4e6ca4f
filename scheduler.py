import logging
from datetime import date
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from budget_alerts import BudgetAlertService
from config import get_settings
from database import SessionLocal, session_scope
from recurrence import local_today
from reminders import BillReminderService
from services import RecurringScheduleService, known_user_ids


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        settings = get_settings()
        self.session_factory = session_factory
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _users(self) -> list[str]:
        with session_scope(self.session_factory) as session:
            users = known_user_ids(session)
        default_user = get_settings().default_user_id
        if default_user not in users:
            users.append(default_user)
        return users

    def run_for_user(self, user_id: str, today: date) -> dict[str, int]:
        counts = {"posted": 0, "reminders": 0, "alerts": 0}
        with session_scope(self.session_factory) as session:
            result = RecurringScheduleService(session, user_id).materialize_due(today)
            counts["posted"] = len(result.posted)
        with session_scope(self.session_factory) as session:
            counts["reminders"] = BillReminderService(
                session, user_id
            ).check_and_send_reminders(today)
        with session_scope(self.session_factory) as session:
            counts["alerts"] = BudgetAlertService(session, user_id).check_and_send_alerts(
                today=today
            )
        return counts

    def _run_job(self, source: str = "manual", today: Optional[date] = None) -> None:
        today = today or local_today()
        logger.info(f"scheduler_run: source={source} today={today.isoformat()}")
        for user_id in self._users():
            try:
                counts = self.run_for_user(user_id, today)
            except Exception:
                logger.exception(f"scheduler_run_failed: source={source} user={user_id}")
                continue
            logger.info(
                f"scheduler_run: source={source} user={user_id} "
                f"occurrences_posted={counts['posted']} "
                f"reminders_sent={counts['reminders']} alerts_sent={counts['alerts']}"
            )

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_03:15"],
            id="finance_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="finance_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 03:15 and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
