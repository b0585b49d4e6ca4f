import logging
from datetime import date
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from sqlalchemy.orm import Session

from budget_alerts import BudgetAlertService, BudgetStatus
from config import get_settings
from database import SessionLocal, session_scope
from models import TransactionType
from periods import Period, resolve_period
from recurrence import local_today
from reminders import BillReminderService, UpcomingBill
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AlertCheckIn,
    BillReminderDaysIn,
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
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    GoalService,
    NotificationService,
    RecurringScheduleService,
    SettingsService,
    TransactionService,
    TransferService,
    get_current_user_id,
    known_user_ids,
)
from sync import SyncCoordinator, SyncHub

logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Tracker")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    return x_user_id or get_current_user_id()


sync_hub = SyncHub(SessionLocal)
sync_coordinator = SyncCoordinator(sync_hub)
scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    sync_hub.attach()
    with session_scope() as session:
        users = known_user_ids(session)
    for user_id in set(users) | {get_current_user_id()}:
        sync_coordinator.watch(user_id)
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()
    sync_coordinator.stop()
    sync_hub.detach()


def _http_error(exc: ValueError) -> HTTPException:
    status = 404 if "not found" in str(exc).lower() else 400
    return HTTPException(status_code=status, detail=str(exc))


def _row(obj: Any) -> dict[str, Any]:
    return {column.key: getattr(obj, column.key) for column in obj.__table__.columns}


def _bill(bill: UpcomingBill) -> dict[str, Any]:
    return {
        "schedule_id": bill.schedule_id,
        "name": bill.name,
        "amount_cents": bill.amount_cents,
        "due_date": bill.due_date.isoformat(),
        "days_until_due": bill.days_until_due,
        "status": bill.status.value,
    }


def _budget_status(status: BudgetStatus) -> dict[str, Any]:
    return {
        "budget_id": status.budget_id,
        "category_id": status.category_id,
        "budget_amount_cents": status.budget_amount_cents,
        "spent_cents": status.spent_cents,
        "percentage": status.percentage,
        "alert_level": status.alert_level.value if status.alert_level else None,
    }


def period_from_request(request: Request) -> Period:
    try:
        return resolve_period(
            request.query_params.get("period"),
            request.query_params.get("start"),
            request.query_params.get("end"),
            today=local_today(),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _today(on: Optional[date]) -> date:
    return on or local_today()


@app.get("/api/health")
def health():
    return {"status": "ok"}


# Bills and reminders


@app.get("/api/bills/upcoming")
def upcoming_bills(
    on: Optional[date] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    bills = BillReminderService(db, user_id).upcoming(_today(on))
    return {"items": [_bill(bill) for bill in bills]}


@app.get("/api/bills/pending")
def pending_reminders(
    on: Optional[date] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    bills = BillReminderService(db, user_id).pending(_today(on))
    return {"items": [_bill(bill) for bill in bills]}


@app.post("/api/bills/check-reminders")
def check_reminders(
    on: Optional[date] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    sent = BillReminderService(db, user_id).check_and_send_reminders(_today(on))
    return {"sent": sent}


# Budgets


@app.get("/api/budgets")
def list_budgets(db: Session = Depends(get_db), user_id: str = Depends(current_user)):
    return {"items": [_row(b) for b in BudgetService(db, user_id).list()]}


@app.post("/api/budgets", status_code=201)
def upsert_budget(
    data: BudgetIn, db: Session = Depends(get_db), user_id: str = Depends(current_user)
):
    try:
        budget = BudgetService(db, user_id).upsert(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _row(budget)


@app.put("/api/budgets/{budget_id}")
def update_budget(
    budget_id: str,
    data: BudgetIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    try:
        budget = BudgetService(db, user_id).update(budget_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _row(budget)


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: str, db: Session = Depends(get_db), user_id: str = Depends(current_user)
):
    try:
        BudgetService(db, user_id).delete(budget_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/budgets/alerts")
def alerting_budgets(
    on: Optional[date] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    statuses = BudgetAlertService(db, user_id).alerting_budgets(_today(on))
    return {"items": [_budget_status(s) for s in statuses]}


@app.post("/api/budgets/check-alerts")
def check_alerts(
    data: Optional[AlertCheckIn] = None,
    on: Optional[date] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    names = data.category_names if data else {}
    sent = BudgetAlertService(db, user_id).check_and_send_alerts(names, _today(on))
    return {"sent": sent}


# Recurring schedules


@app.get("/api/recurring")
def list_schedules(db: Session = Depends(get_db), user_id: str = Depends(current_user)):
    schedules = RecurringScheduleService(db, user_id).list()
    return {"items": [_row(s) for s in schedules]}


@app.post("/api/recurring", status_code=201)
def create_schedule(
    data: RecurringScheduleIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    try:
        schedule = RecurringScheduleService(db, user_id).create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    if sync_hub.attached:
        sync_coordinator.watch(user_id)
    return _row(schedule)


@app.get("/api/recurring/{schedule_id}")
def get_schedule(
    schedule_id: str, db: Session = Depends(get_db), user_id: str = Depends(current_user)
):
    try:
        schedule = RecurringScheduleService(db, user_id).get(schedule_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _row(schedule)


@app.patch("/api/recurring/{schedule_id}")
def update_schedule(
    schedule_id: str,
    data: RecurringScheduleUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    try:
        schedule = RecurringScheduleService(db, user_id).update(schedule_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _row(schedule)


@app.delete("/api/recurring/{schedule_id}", status_code=204)
def delete_schedule(
    schedule_id: str, db: Session = Depends(get_db), user_id: str = Depends(current_user)
):
    try:
        RecurringScheduleService(db, user_id).delete(schedule_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/recurring/materialize")
def materialize_due(
    on: Optional[date] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    result = RecurringScheduleService(db, user_id).materialize_due(_today(on))
    return {"posted": result.posted, "failed": result.failed}


# Transactions


@app.get("/api/transactions")
def list_transactions(
    request: Request,
    type: Optional[TransactionType] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    period = period_from_request(request)
    limit = min(max(limit, 1), 200)
    items = TransactionService(db, user_id).list(
        period, type, limit=limit, offset=max(offset, 0)
    )
    return {"items": [_row(txn) for txn in items], "limit": limit}


@app.post("/api/transactions", status_code=201)
def create_transaction(
    data: TransactionIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    try:
        txn = TransactionService(db, user_id).create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _row(txn)


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: str,
    data: TransactionIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    try:
        txn = TransactionService(db, user_id).update(transaction_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _row(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    try:
        TransactionService(db, user_id).delete(transaction_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


# Settings


@app.get("/api/settings")
def get_user_settings(
    db: Session = Depends(get_db), user_id: str = Depends(current_user)
):
    service = SettingsService(db, user_id)
    stored = service.get()
    return {
        "user_id": user_id,
        "currency": stored.currency,
        "bill_reminder_days": service.bill_reminder_days(),
    }


@app.put("/api/settings")
def update_user_settings(
    data: SettingsIn, db: Session = Depends(get_db), user_id: str = Depends(current_user)
):
    try:
        stored = SettingsService(db, user_id).update(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        "user_id": user_id,
        "currency": stored.currency,
        "bill_reminder_days": list(stored.bill_reminder_days),
    }


@app.put("/api/settings/bill-reminder-days")
def set_bill_reminder_days(
    data: BillReminderDaysIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    try:
        days = SettingsService(db, user_id).set_bill_reminder_days(data.days)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {"bill_reminder_days": days}


# Notifications


@app.get("/api/notifications")
def list_notifications(
    unread: bool = False,
    limit: int = 50,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    service = NotificationService(db, user_id)
    items = service.list(unread_only=unread, limit=min(max(limit, 1), 200))
    return {
        "items": [_row(n) for n in items],
        "unread_count": service.unread_count(),
    }


@app.post("/api/notifications/read-all")
def mark_all_notifications_read(
    db: Session = Depends(get_db), user_id: str = Depends(current_user)
):
    return {"updated": NotificationService(db, user_id).mark_all_read()}


@app.post("/api/notifications/{notification_id}/read")
def mark_notification_read(
    notification_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    try:
        notification = NotificationService(db, user_id).mark_read(notification_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _row(notification)


@app.delete("/api/notifications/{notification_id}", status_code=204)
def delete_notification(
    notification_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    try:
        NotificationService(db, user_id).delete(notification_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


# Accounts and transfers


@app.get("/api/accounts")
def list_accounts(db: Session = Depends(get_db), user_id: str = Depends(current_user)):
    service = AccountService(db, user_id)
    balances = service.balances()
    return {
        "items": [
            {**_row(account), "balance_cents": balances.get(account.id, 0)}
            for account in service.list()
        ]
    }


@app.post("/api/accounts", status_code=201)
def create_account(
    data: AccountIn, db: Session = Depends(get_db), user_id: str = Depends(current_user)
):
    try:
        account = AccountService(db, user_id).create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _row(account)


@app.put("/api/accounts/{account_id}")
def update_account(
    account_id: str,
    data: AccountIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    try:
        account = AccountService(db, user_id).update(account_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _row(account)


@app.post("/api/accounts/{account_id}/default")
def set_default_account(
    account_id: str, db: Session = Depends(get_db), user_id: str = Depends(current_user)
):
    try:
        account = AccountService(db, user_id).set_default(account_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _row(account)


@app.delete("/api/accounts/{account_id}", status_code=204)
def delete_account(
    account_id: str, db: Session = Depends(get_db), user_id: str = Depends(current_user)
):
    try:
        AccountService(db, user_id).delete(account_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/transfers")
def list_transfers(db: Session = Depends(get_db), user_id: str = Depends(current_user)):
    return {"items": [_row(t) for t in TransferService(db, user_id).list()]}


@app.post("/api/transfers", status_code=201)
def create_transfer(
    data: TransferIn, db: Session = Depends(get_db), user_id: str = Depends(current_user)
):
    try:
        transfer = TransferService(db, user_id).create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _row(transfer)


@app.delete("/api/transfers/{transfer_id}", status_code=204)
def delete_transfer(
    transfer_id: str, db: Session = Depends(get_db), user_id: str = Depends(current_user)
):
    try:
        TransferService(db, user_id).delete(transfer_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


# Goals


@app.get("/api/goals")
def list_goals(db: Session = Depends(get_db), user_id: str = Depends(current_user)):
    return {"items": [_row(g) for g in GoalService(db, user_id).list()]}


@app.post("/api/goals", status_code=201)
def create_goal(
    data: GoalIn, db: Session = Depends(get_db), user_id: str = Depends(current_user)
):
    return _row(GoalService(db, user_id).create(data))


@app.put("/api/goals/{goal_id}")
def update_goal(
    goal_id: str,
    data: GoalIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    try:
        goal = GoalService(db, user_id).update(goal_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _row(goal)


@app.post("/api/goals/{goal_id}/fund")
def fund_goal(
    goal_id: str,
    data: GoalFundIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    try:
        goal = GoalService(db, user_id).fund(goal_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _row(goal)


@app.delete("/api/goals/{goal_id}", status_code=204)
def delete_goal(
    goal_id: str, db: Session = Depends(get_db), user_id: str = Depends(current_user)
):
    try:
        GoalService(db, user_id).delete(goal_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


# Categories


@app.get("/api/categories")
def list_categories(
    type: Optional[TransactionType] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return {"items": [_row(c) for c in CategoryService(db, user_id).list_all(type)]}


@app.post("/api/categories", status_code=201)
def create_category(
    data: CategoryIn, db: Session = Depends(get_db), user_id: str = Depends(current_user)
):
    try:
        category = CategoryService(db, user_id).create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _row(category)


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(
    category_id: str, db: Session = Depends(get_db), user_id: str = Depends(current_user)
):
    try:
        CategoryService(db, user_id).delete(category_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
