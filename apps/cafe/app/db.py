from __future__ import annotations

import os
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Session
from sqlalchemy.orm.exc import StaleDataError

from .errors import CafeError, RequestTimeout, StoreUnavailable


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


DB_URL = _env_or("CAFE_DB_URL", _env_or("DB_URL", "sqlite+pysqlite:////tmp/cafe.db"))
DB_SCHEMA = os.getenv("DB_SCHEMA") if not DB_URL.startswith("sqlite") else None
REQUEST_TIMEOUT_SECS = float(_env_or("CAFE_REQUEST_TIMEOUT_SECS", "10"))
# A writer never waits on the SQLite lock longer than a whole request may take.
SQLITE_BUSY_TIMEOUT_SECS = min(
    float(_env_or("CAFE_SQLITE_BUSY_TIMEOUT_SECS", "5")),
    REQUEST_TIMEOUT_SECS if REQUEST_TIMEOUT_SECS > 0 else float("inf"),
)

# Lock wait (seconds) of the unit of work opening its transaction; None for reads.
_write_lock_wait: ContextVar[Optional[float]] = ContextVar("cafe_write_lock_wait", default=None)


class Base(DeclarativeBase):
    pass


def make_engine(url: str) -> Engine:
    """
    Engine for the authoritative store.

    SQLite has no row locks: write transactions open with BEGIN IMMEDIATE so
    writers queue on the database lock (up to the busy timeout) instead of
    failing on lock upgrade halfway through an order. File databases run in
    WAL mode so pollers never block writers.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, future=True, pool_pre_ping=True)
    eng = create_engine(
        url,
        future=True,
        connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECS},
    )
    in_memory = ":memory:" in url or url.rstrip("/").endswith(":")

    @event.listens_for(eng, "connect")
    def _sqlite_connect(dbapi_conn, _record):
        # SQLAlchemy, not pysqlite, decides when a transaction begins.
        dbapi_conn.isolation_level = None
        dbapi_conn.execute("PRAGMA foreign_keys=ON")
        if not in_memory:
            dbapi_conn.execute("PRAGMA journal_mode=WAL")

    @event.listens_for(eng, "begin")
    def _sqlite_begin(conn):
        wait = _write_lock_wait.get()
        if wait is None:
            conn.exec_driver_sql("BEGIN")
            return
        conn.exec_driver_sql(f"PRAGMA busy_timeout = {int(wait * 1000)}")
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return eng


engine = make_engine(DB_URL)


def get_session() -> Iterator[Session]:
    with Session(engine) as s:
        yield s


def locked(s: Session, stmt):
    """SELECT ... FOR UPDATE where the dialect has row locks."""
    if s.get_bind().dialect.name == "sqlite":
        return stmt
    return stmt.with_for_update()


def deadline_after(seconds: Optional[float]) -> Optional[float]:
    if seconds is None or seconds <= 0:
        return None
    return time.monotonic() + seconds


def _expired(deadline: Optional[float]) -> bool:
    return deadline is not None and time.monotonic() >= deadline


def _begin_write(s: Session, deadline: Optional[float] = None) -> None:
    if s.in_transaction():
        # end the read snapshot left open by earlier queries
        s.commit()
    wait = SQLITE_BUSY_TIMEOUT_SECS
    if deadline is not None:
        wait = max(0.0, min(wait, deadline - time.monotonic()))
    token = _write_lock_wait.set(wait)
    try:
        s.connection()
    finally:
        _write_lock_wait.reset(token)


@contextmanager
def unit_of_work(s: Session, deadline: Optional[float] = None) -> Iterator[Session]:
    """
    All-or-nothing block against the store: commits when the block finishes,
    rolls back on any error. Store failures are translated into the error
    taxonomy here; IntegrityError is re-raised untouched for the caller to
    classify (duplicate request token vs. duplicate order number).
    """
    try:
        if _expired(deadline):
            raise RequestTimeout("request deadline exceeded, nothing was applied")
        _begin_write(s, deadline)
        yield s
        if _expired(deadline):
            raise RequestTimeout("request deadline exceeded, nothing was applied")
        s.commit()
    except (CafeError, IntegrityError):
        s.rollback()
        raise
    except StaleDataError as e:
        s.rollback()
        raise StoreUnavailable("order was modified concurrently") from e
    except OperationalError as e:
        s.rollback()
        if _expired(deadline):
            raise RequestTimeout("request deadline exceeded waiting for the store, nothing was applied") from e
        raise StoreUnavailable("store is busy or unreachable") from e
    except DBAPIError as e:
        s.rollback()
        if e.connection_invalidated:
            raise StoreUnavailable("lost connection to the store") from e
        raise
    except BaseException:
        s.rollback()
        raise
