from datetime import date

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

import services
from database import Base
from models import (
    Frequency,
    Goal,
    Notification,
    NotificationType,
    RecurringSchedule,
    Transaction,
    TransactionType,
    Transfer,
)
from schemas import (
    AccountIn,
    GoalFundIn,
    GoalIn,
    RecurringScheduleIn,
    RecurringScheduleUpdate,
    TransactionIn,
    TransferIn,
)
from services import (
    AccountService,
    GoalService,
    NotificationService,
    RecurringScheduleService,
    TransactionService,
    TransferService,
    known_user_ids,
)


def _engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def _count(session: Session, model) -> int:
    return session.scalar(select(func.count()).select_from(model))


def _schedule_in(**overrides) -> RecurringScheduleIn:
    data = {
        "name": "Gym",
        "type": TransactionType.expense,
        "amount_cents": 2500,
        "category_id": "health",
        "frequency": Frequency.monthly,
        "start_date": date(2024, 5, 10),
    }
    data.update(overrides)
    return RecurringScheduleIn(**data)


def test_first_account_becomes_default_and_default_is_exclusive():
    engine = _engine()
    with Session(engine) as session:
        accounts = AccountService(session, "u1")
        cash = accounts.create(AccountIn(name="Cash"))
        bank = accounts.create(AccountIn(name="Bank"))
        assert cash.is_default
        assert not bank.is_default

        accounts.set_default(bank.id)
        session.expire_all()
        assert [a.name for a in accounts.list() if a.is_default] == ["Bank"]

        accounts.delete(bank.id)
        assert [a.name for a in accounts.list() if a.is_default] == ["Cash"]


def test_balances_follow_ledger_entries():
    engine = _engine()
    with Session(engine) as session:
        accounts = AccountService(session, "u1")
        cash = accounts.create(AccountIn(name="Cash", starting_balance_cents=10000))
        txns = TransactionService(session, "u1")
        txns.create(
            TransactionIn(
                date=date(2024, 5, 1),
                type=TransactionType.income,
                amount_cents=5000,
                category_id="salary",
                account_id=cash.id,
            )
        )
        txns.create(
            TransactionIn(
                date=date(2024, 5, 2),
                type=TransactionType.expense,
                amount_cents=1200,
                category_id="food",
                account_id=cash.id,
            )
        )
        assert accounts.balances() == {cash.id: 13800}


def test_transaction_rejects_unknown_account():
    engine = _engine()
    with Session(engine) as session:
        with pytest.raises(ValueError, match="Account not found"):
            TransactionService(session, "u1").create(
                TransactionIn(
                    date=date(2024, 5, 1),
                    type=TransactionType.expense,
                    amount_cents=100,
                    category_id="food",
                    account_id="missing",
                )
            )


def test_schedule_starts_with_anchor_on_start_date():
    engine = _engine()
    with Session(engine) as session:
        schedule = RecurringScheduleService(session, "u1").create(_schedule_in())
        assert schedule.next_due_date == date(2024, 5, 10)
        assert schedule.is_active


def test_schedule_input_cannot_set_next_due_date():
    with pytest.raises(ValidationError):
        RecurringScheduleIn(
            name="Gym",
            type=TransactionType.expense,
            amount_cents=2500,
            category_id="health",
            frequency=Frequency.monthly,
            start_date=date(2024, 5, 10),
            next_due_date=date(2024, 1, 1),
        )
    with pytest.raises(ValidationError):
        RecurringScheduleUpdate(next_due_date=date(2024, 1, 1))
    with pytest.raises(ValidationError):
        _schedule_in(amount_cents=0)


def test_schedule_update_rejects_explicit_null_for_required_fields():
    for field in ("start_date", "is_active", "category_id", "tags"):
        with pytest.raises(ValidationError, match="cannot be empty"):
            RecurringScheduleUpdate(**{field: None})
    assert RecurringScheduleUpdate(note=None).model_dump(exclude_unset=True) == {
        "note": None
    }


def test_schedule_update_keeps_anchor_unless_start_moves_past_it():
    engine = _engine()
    with Session(engine) as session:
        service = RecurringScheduleService(session, "u1")
        schedule = service.create(_schedule_in())
        service.materialize_due(date(2024, 5, 10))
        assert service.get(schedule.id).next_due_date == date(2024, 6, 10)

        updated = service.update(
            schedule.id, RecurringScheduleUpdate(amount_cents=3000, name="Gym+")
        )
        assert updated.amount_cents == 3000
        assert updated.next_due_date == date(2024, 6, 10)

        updated = service.update(
            schedule.id, RecurringScheduleUpdate(start_date=date(2024, 8, 1))
        )
        assert updated.next_due_date == date(2024, 8, 1)


def test_deleting_schedule_keeps_materialized_entries():
    engine = _engine()
    with Session(engine) as session:
        service = RecurringScheduleService(session, "u1")
        schedule = service.create(_schedule_in())
        result = service.materialize_due(date(2024, 5, 11))
        assert result.posted == [f"recurring_{schedule.id}_2024-05-10"]

        service.delete(schedule.id)
        assert _count(session, RecurringSchedule) == 0
        assert _count(session, Transaction) == 1


def test_paused_schedule_is_not_materialized():
    engine = _engine()
    with Session(engine) as session:
        service = RecurringScheduleService(session, "u1")
        schedule = service.create(_schedule_in(is_active=False))
        assert service.materialize_due(date(2024, 9, 1)).posted == []
        service.set_active(schedule.id, True)
        assert len(service.materialize_due(date(2024, 9, 1)).posted) == 1


def test_transfer_creates_paired_entries_and_delete_removes_them():
    engine = _engine()
    with Session(engine) as session:
        accounts = AccountService(session, "u1")
        cash = accounts.create(AccountIn(name="Cash", starting_balance_cents=5000))
        bank = accounts.create(AccountIn(name="Bank"))
        transfers = TransferService(session, "u1")

        transfer = transfers.create(
            TransferIn(
                from_account_id=cash.id,
                to_account_id=bank.id,
                amount_cents=2000,
                date=date(2024, 5, 3),
            )
        )
        out_txn = session.get(Transaction, transfer.from_transaction_id)
        in_txn = session.get(Transaction, transfer.to_transaction_id)
        assert out_txn.category_id == "Transfer Out"
        assert out_txn.type == TransactionType.expense
        assert in_txn.category_id == "Transfer In"
        assert in_txn.type == TransactionType.income
        assert accounts.balances() == {cash.id: 3000, bank.id: 2000}

        transfers.delete(transfer.id)
        assert _count(session, Transfer) == 0
        assert _count(session, Transaction) == 0


def test_failed_transfer_leaves_no_partial_entries(monkeypatch):
    engine = _engine()
    with Session(engine) as session:
        accounts = AccountService(session, "u1")
        cash = accounts.create(AccountIn(name="Cash"))
        bank = accounts.create(AccountIn(name="Bank"))

        def broken_transfer(**_kwargs):
            raise RuntimeError("storage unavailable")

        monkeypatch.setattr(services, "Transfer", broken_transfer)
        with pytest.raises(RuntimeError):
            TransferService(session, "u1").create(
                TransferIn(
                    from_account_id=cash.id,
                    to_account_id=bank.id,
                    amount_cents=2000,
                    date=date(2024, 5, 3),
                )
            )
        assert _count(session, Transaction) == 0


def test_transfer_requires_distinct_accounts():
    with pytest.raises(ValidationError):
        TransferIn(
            from_account_id="a", to_account_id="a", amount_cents=1, date=date(2024, 1, 1)
        )


def test_goal_funding_records_entry_and_milestone_once():
    engine = _engine()
    with Session(engine) as session:
        goals = GoalService(session, "u1")
        goal = goals.create(GoalIn(name="Laptop", target_amount_cents=10000))

        goals.fund(goal.id, GoalFundIn(amount_cents=6000, date=date(2024, 5, 1)))
        assert session.get(Goal, goal.id).current_amount_cents == 6000
        assert _count(session, Notification) == 0

        goals.fund(goal.id, GoalFundIn(amount_cents=5000, date=date(2024, 5, 2)))
        goals.fund(goal.id, GoalFundIn(amount_cents=1000, date=date(2024, 5, 3)))
        assert session.get(Goal, goal.id).current_amount_cents == 12000

        entries = session.scalars(select(Transaction)).all()
        assert len(entries) == 3
        assert {e.category_id for e in entries} == {"Goal Funding"}
        milestones = session.scalars(
            select(Notification).where(
                Notification.type == NotificationType.goal_milestone
            )
        ).all()
        assert [n.title for n in milestones] == ["Goal Reached: Laptop"]


def test_notifications_read_state():
    engine = _engine()
    with Session(engine) as session:
        notifications = NotificationService(session, "u1")
        first = notifications.add(NotificationType.system, title="a", message="one")
        notifications.add(NotificationType.system, title="b", message="two")
        assert notifications.unread_count() == 2

        notifications.mark_read(first.id)
        assert notifications.unread_count() == 1
        assert notifications.mark_all_read() == 1
        assert notifications.unread_count() == 0

        with pytest.raises(ValueError, match="not found"):
            NotificationService(session, "u2").mark_read(first.id)


def test_known_user_ids_collects_schedule_and_budget_owners():
    engine = _engine()
    with Session(engine) as session:
        RecurringScheduleService(session, "alice").create(_schedule_in())
        RecurringScheduleService(session, "bob").create(_schedule_in())
        assert known_user_ids(session) == ["alice", "bob"]
