from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings

# Request sessions, the scheduler thread and sync callbacks each open their own
# connection; WAL plus a busy timeout lets readers proceed while one commits.
SQLITE_BUSY_TIMEOUT_MS = 5000


def _create_engine(database_url: str) -> Engine:
    is_sqlite = database_url.startswith("sqlite")
    connect_args: dict[str, object] = {}
    if is_sqlite:
        connect_args["check_same_thread"] = False
    eng = create_engine(database_url, connect_args=connect_args)
    if is_sqlite:
        event.listen(eng, "connect", _configure_sqlite)
    return eng


def _configure_sqlite(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS};")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def make_session_factory(bind: Engine) -> sessionmaker:
    # Objects stay readable after commit so sync snapshots can be handed to
    # callbacks once their session has closed.
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


engine = _create_engine(get_settings().database_url)
SessionLocal = make_session_factory(engine)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope(factory: sessionmaker = SessionLocal) -> Iterator[Session]:
    """Commit on success, roll back on error, always close."""
    session: Session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
