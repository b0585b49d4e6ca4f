import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from models import (
    ALL_CATEGORIES,
    RECURRING_BUDGET_MONTH,
    AlertLevel,
    Budget,
    BudgetAlert,
    NotificationType,
)
from periods import month_period, period_key
from recurrence import local_today
from services import (
    BudgetService,
    CategoryService,
    NotificationService,
    TransactionService,
    get_current_user_id,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BudgetStatus:
    budget_id: str
    category_id: str
    budget_amount_cents: int
    spent_cents: int
    percentage: float
    alert_level: Optional[AlertLevel]
    category_name: Optional[str] = None


def alert_level_for(
    percentage: float, *, warning_pct: float = 80.0, exceeded_pct: float = 100.0
) -> Optional[AlertLevel]:
    if percentage >= exceeded_pct:
        return AlertLevel.exceeded
    if percentage >= warning_pct:
        return AlertLevel.warning
    return None


def budget_applies(budget: Budget, key: str) -> bool:
    return not budget.month or budget.month in (RECURRING_BUDGET_MONTH, key)


def evaluate(
    budgets: Iterable[Budget],
    expenses_by_category: Mapping[str, int],
    period: str,
    *,
    warning_pct: float = 80.0,
    exceeded_pct: float = 100.0,
) -> list[BudgetStatus]:
    """Spending ratio and alert level of every budget that applies to ``period``."""
    total = sum(expenses_by_category.values())
    statuses: list[BudgetStatus] = []
    for budget in budgets:
        if not budget_applies(budget, period):
            continue
        if budget.category_id == ALL_CATEGORIES:
            spent = total
        else:
            spent = expenses_by_category.get(budget.category_id, 0)
        percentage = (
            spent / budget.amount_cents * 100 if budget.amount_cents > 0 else 0.0
        )
        statuses.append(
            BudgetStatus(
                budget_id=budget.id,
                category_id=budget.category_id,
                budget_amount_cents=budget.amount_cents,
                spent_cents=spent,
                percentage=percentage,
                alert_level=alert_level_for(
                    percentage, warning_pct=warning_pct, exceeded_pct=exceeded_pct
                ),
            )
        )
    return statuses


def alert_to_send(
    status: BudgetStatus, already_sent: set[AlertLevel]
) -> Optional[AlertLevel]:
    """Severity only ever escalates within a period."""
    if status.alert_level == AlertLevel.exceeded:
        if AlertLevel.exceeded not in already_sent:
            return AlertLevel.exceeded
        return None
    if status.alert_level == AlertLevel.warning:
        if not already_sent & {AlertLevel.warning, AlertLevel.exceeded}:
            return AlertLevel.warning
    return None


class BudgetAlertService:
    def __init__(self, session: Session, user_id: Optional[str] = None) -> None:
        settings = get_settings()
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.warning_pct = settings.budget_warning_pct
        self.exceeded_pct = settings.budget_exceeded_pct

    @staticmethod
    def alert_id(budget_id: str, level: AlertLevel, key: str) -> str:
        return f"{budget_id}_{level.value}_{key}"

    def statuses(self, today: Optional[date] = None) -> list[BudgetStatus]:
        today = today or local_today()
        key = period_key(today)
        expenses = TransactionService(self.session, self.user_id).expenses_by_category(
            month_period(today)
        )
        return evaluate(
            BudgetService(self.session, self.user_id).list(),
            expenses,
            key,
            warning_pct=self.warning_pct,
            exceeded_pct=self.exceeded_pct,
        )

    def alerting_budgets(self, today: Optional[date] = None) -> list[BudgetStatus]:
        return [s for s in self.statuses(today) if s.alert_level is not None]

    def sent_levels(self, key: str) -> dict[str, set[AlertLevel]]:
        rows = self.session.execute(
            select(BudgetAlert.budget_id, BudgetAlert.alert_level).where(
                BudgetAlert.user_id == self.user_id,
                BudgetAlert.period_key == key,
            )
        )
        sent: dict[str, set[AlertLevel]] = {}
        for row in rows:
            sent.setdefault(row.budget_id, set()).add(row.alert_level)
        return sent

    def record_alert(self, status: BudgetStatus, level: AlertLevel, key: str) -> None:
        self.session.merge(
            BudgetAlert(
                id=self.alert_id(status.budget_id, level, key),
                user_id=self.user_id,
                budget_id=status.budget_id,
                category_id=status.category_id,
                alert_level=level,
                period_key=key,
            )
        )
        self.session.flush()

    def _category_label(self, category_id: str, names: Mapping[str, str]) -> str:
        if category_id == ALL_CATEGORIES:
            return "Overall Budget"
        return names.get(category_id, "Category")

    def check_and_send_alerts(
        self,
        category_names: Optional[Mapping[str, str]] = None,
        today: Optional[date] = None,
    ) -> int:
        today = today or local_today()
        key = period_key(today)
        names = dict(CategoryService(self.session, self.user_id).names())
        names.update(category_names or {})
        sent_by_budget = self.sent_levels(key)
        notifications = NotificationService(self.session, self.user_id)
        sent = 0
        for status in self.statuses(today):
            level = alert_to_send(status, sent_by_budget.get(status.budget_id, set()))
            if level is None:
                continue
            label = self._category_label(status.category_id, names)
            if level == AlertLevel.exceeded:
                title = f"Budget Exceeded: {label}"
                message = (
                    f"You've exceeded your {label.lower()} budget. "
                    f"Spent {status.percentage:.0f}% of your budget."
                )
            else:
                title = f"Budget Warning: {label}"
                message = (
                    f"You've used {status.percentage:.0f}% of your {label.lower()} budget."
                )
            try:
                self.record_alert(status, level, key)
                notifications.add(
                    NotificationType.budget_alert,
                    title=title,
                    message=message,
                    data={
                        "budget_id": status.budget_id,
                        "category_id": status.category_id,
                        "alert_level": level.value,
                        "percentage": status.percentage,
                        "period": key,
                    },
                    commit=False,
                )
                self.session.commit()
            except Exception:
                self.session.rollback()
                logger.exception(
                    f"budget_alert_failed: user={self.user_id} "
                    f"budget={status.budget_id} level={level.value} period={key}"
                )
                continue
            logger.info(
                f"budget_alert_sent: user={self.user_id} budget={status.budget_id} "
                f"level={level.value} period={key}"
            )
            sent += 1
        return sent
