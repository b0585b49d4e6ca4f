import logging
import threading
from collections import deque
from datetime import date
from typing import Any, Callable, Optional

from sqlalchemy import event, select
from sqlalchemy.orm import ORMExecuteState, Session, sessionmaker

from database import SessionLocal, session_scope
from models import RecurringSchedule
from recurrence import RecurrenceMaterializer, local_today

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[list[Any]], None]

_CHANGES_KEY = "sync_changes"


class Subscription:
    """Live view of one user's rows in one table."""

    def __init__(
        self, hub: "SyncHub", user_id: str, model: type, callback: SnapshotCallback
    ) -> None:
        self.hub = hub
        self.user_id = user_id
        self.model = model
        self.table = model.__tablename__
        self.callback = callback
        self.active = True

    def matches(self, user_id: Optional[str], table: str) -> bool:
        return (
            self.active
            and self.table == table
            and (user_id is None or user_id == self.user_id)
        )

    def snapshot(self) -> list[Any]:
        with self.hub.session_factory() as session:
            stmt = select(self.model).where(self.model.user_id == self.user_id)
            return list(session.scalars(stmt).all())

    def deliver(self) -> None:
        if not self.active:
            return
        try:
            self.callback(self.snapshot())
        except Exception:
            logger.exception(
                f"sync_callback_failed: user={self.user_id} table={self.table}"
            )

    def unsubscribe(self) -> None:
        self.active = False
        self.hub._remove(self)


class SyncHub:
    """Publishes committed changes to per-user, per-table subscribers.

    Changes are collected per session during flush and published only after
    the commit succeeds. Deliveries are drained from a queue, so a callback
    that writes queues further deliveries instead of recursing.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self.session_factory = session_factory
        self._subscriptions: list[Subscription] = []
        self._queue: deque[Subscription] = deque()
        self._lock = threading.Lock()
        self._draining = False
        self._targets: list[Any] = []

    @property
    def attached(self) -> bool:
        return bool(self._targets)

    def attach(self, target: Any = None) -> None:
        target = target if target is not None else self.session_factory
        event.listen(target, "after_flush", self._after_flush)
        event.listen(target, "do_orm_execute", self._on_orm_execute)
        event.listen(target, "after_commit", self._after_commit)
        event.listen(target, "after_rollback", self._after_rollback)
        self._targets.append(target)

    def detach(self) -> None:
        for target in self._targets:
            event.remove(target, "after_flush", self._after_flush)
            event.remove(target, "do_orm_execute", self._on_orm_execute)
            event.remove(target, "after_commit", self._after_commit)
            event.remove(target, "after_rollback", self._after_rollback)
        self._targets.clear()

    def subscribe(
        self,
        user_id: str,
        model: type,
        callback: SnapshotCallback,
        *,
        initial: bool = True,
    ) -> Subscription:
        subscription = Subscription(self, user_id, model, callback)
        with self._lock:
            self._subscriptions.append(subscription)
        if initial:
            self._enqueue(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    @staticmethod
    def _changes(session: Session) -> set[tuple[Optional[str], str]]:
        return session.info.setdefault(_CHANGES_KEY, set())

    def _after_flush(self, session: Session, _flush_context: Any) -> None:
        changes = self._changes(session)
        for obj in list(session.new) + list(session.dirty) + list(session.deleted):
            table = getattr(obj, "__tablename__", None)
            if table:
                changes.add((getattr(obj, "user_id", None), table))

    def _on_orm_execute(self, state: ORMExecuteState) -> None:
        # Bulk statements carry no per-row user; every subscriber of the table refreshes.
        if not (state.is_update or state.is_delete):
            return
        mapper = state.bind_mapper
        if mapper is not None:
            self._changes(state.session).add((None, mapper.local_table.name))

    def _after_rollback(self, session: Session) -> None:
        session.info.pop(_CHANGES_KEY, None)

    def _after_commit(self, session: Session) -> None:
        changes = session.info.pop(_CHANGES_KEY, None)
        if changes:
            self.publish(sorted(changes, key=lambda c: (c[1], c[0] or "")))

    def publish(self, changes: list[tuple[Optional[str], str]]) -> None:
        with self._lock:
            for user_id, table in changes:
                for subscription in self._subscriptions:
                    if (
                        subscription.matches(user_id, table)
                        and subscription not in self._queue
                    ):
                        self._queue.append(subscription)
        self._drain()

    def _enqueue(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription not in self._queue:
                self._queue.append(subscription)
        self._drain()

    def _drain(self) -> None:
        with self._lock:
            if self._draining:
                return
            self._draining = True
        try:
            while True:
                with self._lock:
                    if not self._queue:
                        self._draining = False
                        return
                    subscription = self._queue.popleft()
                subscription.deliver()
        except BaseException:
            with self._lock:
                self._draining = False
            raise


class SyncCoordinator:
    """Re-runs the materializer whenever a user's schedules change.

    Each materialization commits an advanced anchor, which publishes a new
    snapshot, so a schedule that is several periods behind catches up one
    occurrence per delivery until nothing is due.
    """

    def __init__(
        self,
        hub: SyncHub,
        *,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self.hub = hub
        self.today = today or local_today
        self._subscriptions: dict[str, Subscription] = {}

    def watch(self, user_id: str) -> Subscription:
        if user_id in self._subscriptions:
            return self._subscriptions[user_id]
        logger.info(f"sync_watch: user={user_id}")
        subscription = self.hub.subscribe(
            user_id,
            RecurringSchedule,
            lambda schedules: self._on_schedules(user_id, schedules),
        )
        self._subscriptions[user_id] = subscription
        return subscription

    def _on_schedules(self, user_id: str, schedules: list[RecurringSchedule]) -> None:
        today = self.today()
        if not any(s.is_active and s.next_due_date <= today for s in schedules):
            return
        # The snapshot rows are detached; the materializer reloads each by id
        # and only advances an anchor that still matches the stored one.
        with session_scope(self.hub.session_factory) as session:
            result = RecurrenceMaterializer(session).materialize_due(schedules, today)
        if result.posted or result.failed:
            logger.info(
                f"sync_materialize: user={user_id} posted={len(result.posted)} "
                f"failed={len(result.failed)}"
            )

    def stop(self) -> None:
        for subscription in self._subscriptions.values():
            subscription.unsubscribe()
        self._subscriptions.clear()
