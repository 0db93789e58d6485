"""Engine, session factory and the transactional unit of work."""

from __future__ import annotations

import time
from typing import Callable, TypeVar

import structlog
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from .models import Base

log = structlog.get_logger()

T = TypeVar("T")

AFTER_COMMIT_HOOKS = "after_commit_hooks"

# Substrings of driver messages for errors worth re-running the whole transaction
_TRANSIENT_MARKERS = (
    "deadlock",
    "lock wait timeout",
    "database is locked",
    "could not serialize",
    "serialization failure",
)


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """
    Create an engine for ``url``.

    SQLite engines hand transaction control to SQLAlchemy so that
    SAVEPOINT (used by identity resolution) behaves like other backends.
    """
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=echo,
            future=True,
            connect_args={"check_same_thread": False, "timeout": 15},
        )

        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN")

        return engine

    return create_engine(url, echo=echo, future=True, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


def init_schema(engine: Engine) -> None:
    """Create missing tables."""
    Base.metadata.create_all(engine)


def ping(session_factory: sessionmaker) -> bool:
    with session_factory() as session:
        session.execute(text("SELECT 1"))
    return True


def add_after_commit(session: Session, hook: Callable[[], None]) -> None:
    """Run ``hook`` once the surrounding transaction has committed."""
    session.info.setdefault(AFTER_COMMIT_HOOKS, []).append(hook)


def is_transient(exc: DBAPIError) -> bool:
    if exc.connection_invalidated:
        return True
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def run_in_transaction(
    session_factory: sessionmaker,
    work: Callable[[Session], T],
    retries: int = 3,
    backoff: float = 0.1,
) -> T:
    """
    Run ``work`` in its own transaction and commit.

    Deadlocks and lock timeouts roll the transaction back and re-run ``work``
    from scratch, up to ``retries`` attempts in total. Any other error is
    raised after rollback. Hooks registered with :func:`add_after_commit`
    run only after a successful commit.
    """
    attempt = 0
    while True:
        attempt += 1
        session = session_factory()
        try:
            result = work(session)
            session.commit()
            hooks = session.info.pop(AFTER_COMMIT_HOOKS, [])
        except DBAPIError as e:
            session.rollback()
            if attempt < retries and is_transient(e):
                log.warning(
                    "db.transaction_retry",
                    attempt=attempt,
                    max_attempts=retries,
                    error=str(e.orig),
                )
                time.sleep(backoff * attempt)
                continue
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        for hook in hooks:
            try:
                hook()
            except Exception as e:
                log.error("db.after_commit_hook_failed", error=str(e), exc_info=True)
        return result
