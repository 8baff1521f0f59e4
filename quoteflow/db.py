# quoteflow/db.py
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from .config import settings
from .errors import ConcurrentModificationError

log = logging.getLogger("quoteflow.db")

T = TypeVar("T")


class Base(DeclarativeBase):
    pass


def _engine_kwargs() -> dict:
    kw: dict = {"pool_pre_ping": True, "future": True}
    if settings.db_isolation_level:
        kw["isolation_level"] = settings.db_isolation_level
    if settings.database_url.startswith("sqlite"):
        kw["connect_args"] = {"check_same_thread": False}
    return kw


engine = create_engine(settings.database_url, **_engine_kwargs())

if engine.dialect.name == "sqlite":
    # pysqlite defers BEGIN until the first DML, which breaks SAVEPOINT scoping.
    # Emit BEGIN ourselves so nested transactions stay inside the outer one.
    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        # readers must not block the post-response notification writer
        if ":memory:" not in settings.database_url:
            dbapi_connection.execute("PRAGMA journal_mode=WAL")

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN")

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)


def get_db():
    """
    IMPORTANT (Postgres):
    If any SQL statement fails, the transaction is aborted and the session
    cannot run further statements until a rollback happens.

    This dependency guarantees rollback on exceptions so errors don't cascade
    into "InFailedSqlTransaction" on later queries in the same request.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def unit_of_work(db: Session, *, entity: str = "record", entity_id: object = None) -> Iterator[Session]:
    """
    One core operation == one transaction.

    - commits when the block finishes
    - rolls back on any exception (no partial apply)
    - optimistic version conflicts and uniqueness races surface as
      ConcurrentModificationError, which callers may retry as a whole
    """
    try:
        yield db
        db.commit()
    except StaleDataError as e:
        db.rollback()
        log.warning("stale_write_rejected", extra={"event": "stale_write", "entity": entity})
        raise ConcurrentModificationError(entity, entity_id) from e
    except IntegrityError as e:
        db.rollback()
        raise ConcurrentModificationError(entity, entity_id) from e
    except Exception:
        db.rollback()
        raise


def run_with_retry(fn: Callable[[], T], *, attempts: int = 3) -> T:
    """Re-run a whole operation when it lost an optimistic-concurrency race."""
    last: ConcurrentModificationError | None = None
    for attempt in range(1, max(1, attempts) + 1):
        try:
            return fn()
        except ConcurrentModificationError as e:
            last = e
            log.info("retrying_after_conflict", extra={"event": "retry", "attempt": attempt})
    assert last is not None
    raise last


def init_db() -> None:
    """Create missing tables. Schema changes beyond additive ones are out of scope."""
    from . import models  # noqa: F401  registers mappers on Base
    from .domain import audit  # noqa: F401  immutability listeners

    Base.metadata.create_all(bind=engine)
