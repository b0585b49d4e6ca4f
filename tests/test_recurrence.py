from datetime import date
from typing import Optional

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from models import Frequency, RecurringSchedule, Transaction, TransactionType
from recurrence import (
    RecurrenceMaterializer,
    advance,
    next_occurrence,
    recurring_note,
    recurring_transaction_id,
)


def _schedule(
    start: date,
    frequency: Frequency = Frequency.monthly,
    *,
    schedule_id: str = "rent",
    is_active: bool = True,
    note: Optional[str] = None,
) -> RecurringSchedule:
    return RecurringSchedule(
        id=schedule_id,
        user_id="u1",
        name="Rent",
        type=TransactionType.expense,
        amount_cents=150000,
        category_id="housing",
        frequency=frequency,
        start_date=start,
        next_due_date=start,
        is_active=is_active,
        note=note,
        tags=["home"],
    )


def _engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def _file_engine(tmp_path):
    # Separate connections per session, like the app's request and scheduler threads.
    engine = create_engine(f"sqlite:///{tmp_path / 'finance.db'}")
    Base.metadata.create_all(engine)
    return engine


def _txn_count(session: Session) -> int:
    return session.scalar(select(func.count(Transaction.id)))


@pytest.mark.parametrize(
    "start,frequency,expected",
    [
        (date(2024, 3, 10), Frequency.daily, date(2024, 3, 11)),
        (date(2024, 12, 31), Frequency.daily, date(2025, 1, 1)),
        (date(2024, 3, 10), Frequency.weekly, date(2024, 3, 17)),
        (date(2024, 1, 31), Frequency.monthly, date(2024, 2, 29)),
        (date(2023, 1, 31), Frequency.monthly, date(2023, 2, 28)),
        (date(2024, 12, 15), Frequency.monthly, date(2025, 1, 15)),
        (date(2024, 2, 29), Frequency.yearly, date(2025, 2, 28)),
        (date(2023, 6, 1), Frequency.yearly, date(2024, 6, 1)),
    ],
)
def test_next_occurrence(start, frequency, expected):
    assert next_occurrence(start, frequency) == expected


def test_next_occurrence_weekly_keeps_weekday():
    start = date(2024, 5, 3)
    assert next_occurrence(start, Frequency.weekly).weekday() == start.weekday()


def test_next_occurrence_composes_and_always_moves_forward():
    current = date(2024, 1, 31)
    seen = []
    for _ in range(24):
        following = next_occurrence(current, Frequency.monthly)
        assert following > current
        seen.append(following)
        current = following
    # Clamping carries forward: once pinned to the 29th it stays there.
    assert seen[0] == date(2024, 2, 29)
    assert seen[1] == date(2024, 3, 29)
    assert seen[-1] == date(2026, 1, 29)


def test_recurring_ids_and_notes():
    assert recurring_transaction_id("abc", date(2024, 2, 9)) == "recurring_abc_2024-02-09"
    assert recurring_note("Rent", None) == "Recurring: Rent"
    assert recurring_note("Rent", "unit 4") == "Recurring: Rent - unit 4"


def test_advance_is_a_noop_for_inactive_or_future_schedules():
    inactive = _schedule(date(2024, 1, 1), is_active=False)
    transition = advance(inactive, date(2024, 6, 1))
    assert transition.entry is None
    assert transition.next_due_date == date(2024, 1, 1)

    future = _schedule(date(2024, 7, 1))
    transition = advance(future, date(2024, 6, 1))
    assert transition.entry is None
    assert transition.next_due_date == date(2024, 7, 1)


def test_advance_drafts_entry_for_current_anchor():
    schedule = _schedule(date(2024, 1, 31), note="unit 4")
    transition = advance(schedule, date(2024, 2, 1))
    assert transition.next_due_date == date(2024, 2, 29)
    entry = transition.entry
    assert entry.id == "recurring_rent_2024-01-31"
    assert entry.date == date(2024, 1, 31)
    assert entry.amount_cents == 150000
    assert entry.note == "Recurring: Rent - unit 4"
    txn = entry.to_transaction()
    assert txn.origin_schedule_id == "rent"
    assert txn.occurrence_date == date(2024, 1, 31)
    assert txn.tags == ["home"]
    # Pure: the schedule itself is untouched.
    assert schedule.next_due_date == date(2024, 1, 31)


def test_materialize_leap_year_scenario():
    engine = _engine()
    with Session(engine) as session:
        session.add(_schedule(date(2024, 1, 31)))
        session.commit()

        materializer = RecurrenceMaterializer(session, catch_up_all=False)
        result = materializer.materialize_due(
            session.scalars(select(RecurringSchedule)).all(), date(2024, 2, 1)
        )

        assert result.posted == ["recurring_rent_2024-01-31"]
        schedule = session.get(RecurringSchedule, "rent")
        assert schedule.next_due_date == date(2024, 2, 29)
        txn = session.get(Transaction, "recurring_rent_2024-01-31")
        assert txn.date == date(2024, 1, 31)
        assert txn.note == "Recurring: Rent"


def test_materialize_is_idempotent_on_repeat_runs():
    engine = _engine()
    with Session(engine) as session:
        session.add(_schedule(date(2024, 3, 1)))
        session.commit()
        materializer = RecurrenceMaterializer(session, catch_up_all=False)

        for _ in range(3):
            materializer.materialize_due(
                session.scalars(select(RecurringSchedule)).all(), date(2024, 3, 1)
            )

        assert _txn_count(session) == 1
        assert session.get(RecurringSchedule, "rent").next_due_date == date(2024, 4, 1)


def test_stale_snapshot_does_not_replay_an_advanced_anchor():
    engine = _engine()
    with Session(engine) as session:
        schedule = _schedule(date(2024, 3, 1))
        session.add(schedule)
        session.commit()
        materializer = RecurrenceMaterializer(session, catch_up_all=False)
        materializer.materialize_due([schedule], date(2024, 3, 5))

    with Session(engine) as session:
        stale = _schedule(date(2024, 3, 1))
        fresh = RecurrenceMaterializer(session, catch_up_all=False)
        fresh.materialize_due([stale], date(2024, 3, 5))
        assert _txn_count(session) == 1
        assert session.get(RecurringSchedule, "rent").next_due_date == date(2024, 4, 1)


def test_stale_object_held_by_the_session_does_not_rewind_anchor(tmp_path):
    engine = _file_engine(tmp_path)
    with Session(engine) as session:
        session.add(_schedule(date(2024, 1, 15)))
        session.commit()

    with Session(engine) as session:
        stale = session.get(RecurringSchedule, "rent")
        assert stale.next_due_date == date(2024, 1, 15)

        with Session(engine) as other:
            RecurrenceMaterializer(other, catch_up_all=True).materialize_due(
                other.scalars(select(RecurringSchedule)).all(), date(2024, 3, 20)
            )

        result = RecurrenceMaterializer(session, catch_up_all=False).materialize_due(
            [stale], date(2024, 3, 20)
        )
        assert result.posted == []
        assert result.failed == []

    with Session(engine) as session:
        assert session.get(RecurringSchedule, "rent").next_due_date == date(2024, 4, 15)
        assert _txn_count(session) == 3


def test_anchor_moved_by_a_concurrent_run_is_kept(tmp_path, monkeypatch):
    engine = _file_engine(tmp_path)
    with Session(engine) as session:
        session.add(_schedule(date(2024, 1, 15)))
        session.commit()
        materializer = RecurrenceMaterializer(session, catch_up_all=True)
        original_write = materializer._write_entry

        def write_while_another_run_advances(entry):
            original_write(entry)
            with Session(engine) as other:
                other.get(RecurringSchedule, "rent").next_due_date = date(2024, 4, 15)
                other.commit()

        monkeypatch.setattr(materializer, "_write_entry", write_while_another_run_advances)
        result = materializer.materialize_due(
            session.scalars(select(RecurringSchedule)).all(), date(2024, 3, 20)
        )
        assert result.posted == []
        assert result.failed == []
        assert session.get(RecurringSchedule, "rent").next_due_date == date(2024, 4, 15)

    with Session(engine) as session:
        assert session.get(RecurringSchedule, "rent").next_due_date == date(2024, 4, 15)


def test_inactive_schedule_is_skipped_and_not_advanced():
    engine = _engine()
    with Session(engine) as session:
        session.add(_schedule(date(2024, 1, 1), is_active=False))
        session.commit()
        result = RecurrenceMaterializer(session).materialize_due(
            session.scalars(select(RecurringSchedule)).all(), date(2024, 6, 1)
        )
        assert result.posted == []
        assert _txn_count(session) == 0
        assert session.get(RecurringSchedule, "rent").next_due_date == date(2024, 1, 1)


def test_single_step_catch_up_posts_oldest_missed_occurrence_per_run():
    engine = _engine()
    with Session(engine) as session:
        session.add(_schedule(date(2024, 1, 15)))
        session.commit()
        materializer = RecurrenceMaterializer(session, catch_up_all=False)
        today = date(2024, 3, 20)

        first = materializer.materialize_due(
            session.scalars(select(RecurringSchedule)).all(), today
        )
        assert first.posted == ["recurring_rent_2024-01-15"]
        assert session.get(RecurringSchedule, "rent").next_due_date == date(2024, 2, 15)

        materializer.materialize_due(
            session.scalars(select(RecurringSchedule)).all(), today
        )
        materializer.materialize_due(
            session.scalars(select(RecurringSchedule)).all(), today
        )
        # Nothing left to post once the anchor passes today.
        last = materializer.materialize_due(
            session.scalars(select(RecurringSchedule)).all(), today
        )
        assert last.posted == []
        assert _txn_count(session) == 3
        assert session.get(RecurringSchedule, "rent").next_due_date == date(2024, 4, 15)


def test_catch_up_all_posts_every_missed_occurrence():
    engine = _engine()
    with Session(engine) as session:
        session.add(_schedule(date(2024, 1, 15)))
        session.commit()
        result = RecurrenceMaterializer(session, catch_up_all=True).materialize_due(
            session.scalars(select(RecurringSchedule)).all(), date(2024, 3, 20)
        )
        assert result.posted == [
            "recurring_rent_2024-01-15",
            "recurring_rent_2024-02-15",
            "recurring_rent_2024-03-15",
        ]
        assert session.get(RecurringSchedule, "rent").next_due_date == date(2024, 4, 15)


def test_catch_up_all_respects_iteration_bound():
    engine = _engine()
    with Session(engine) as session:
        session.add(_schedule(date(2024, 1, 1), Frequency.daily))
        session.commit()
        result = RecurrenceMaterializer(
            session, catch_up_all=True, max_catch_up=5
        ).materialize_due(
            session.scalars(select(RecurringSchedule)).all(), date(2024, 12, 31)
        )
        assert len(result.posted) == 5
        assert session.get(RecurringSchedule, "rent").next_due_date == date(2024, 1, 6)


def test_crash_between_write_and_advance_self_heals(monkeypatch):
    engine = _engine()
    with Session(engine) as session:
        session.add(_schedule(date(2024, 5, 1)))
        session.commit()
        materializer = RecurrenceMaterializer(session, catch_up_all=False)
        original_write = materializer._write_entry

        def write_then_crash(entry):
            original_write(entry)
            raise RuntimeError("process died after writing the entry")

        monkeypatch.setattr(materializer, "_write_entry", write_then_crash)
        result = materializer.materialize_due(
            session.scalars(select(RecurringSchedule)).all(), date(2024, 5, 2)
        )
        assert result.failed == ["rent"]
        assert _txn_count(session) == 1
        assert session.get(RecurringSchedule, "rent").next_due_date == date(2024, 5, 1)

        monkeypatch.setattr(materializer, "_write_entry", original_write)
        result = materializer.materialize_due(
            session.scalars(select(RecurringSchedule)).all(), date(2024, 5, 2)
        )
        assert result.posted == ["recurring_rent_2024-05-01"]
        assert _txn_count(session) == 1
        assert session.get(RecurringSchedule, "rent").next_due_date == date(2024, 6, 1)


def test_failure_in_one_schedule_does_not_block_others(monkeypatch):
    engine = _engine()
    with Session(engine) as session:
        session.add(_schedule(date(2024, 5, 1), schedule_id="broken"))
        session.add(_schedule(date(2024, 5, 1), schedule_id="healthy"))
        session.commit()
        materializer = RecurrenceMaterializer(session, catch_up_all=False)
        original_write = materializer._write_entry

        def failing_write(entry):
            if entry.schedule_id == "broken":
                raise RuntimeError("write rejected")
            original_write(entry)

        monkeypatch.setattr(materializer, "_write_entry", failing_write)
        result = materializer.materialize_due(
            session.scalars(
                select(RecurringSchedule).order_by(RecurringSchedule.id)
            ).all(),
            date(2024, 5, 1),
        )
        assert result.failed == ["broken"]
        assert result.posted == ["recurring_healthy_2024-05-01"]
        assert session.get(RecurringSchedule, "broken").next_due_date == date(2024, 5, 1)
        assert session.get(RecurringSchedule, "healthy").next_due_date == date(2024, 6, 1)
