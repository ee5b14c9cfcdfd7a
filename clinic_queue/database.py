"""Database engine and transaction management.

Pattern: one Database per process, sessions per operation.
- transaction(): commit on success, rollback + re-raise on any error
- session(): read-only snapshot

SQLite allows a single writer, so writes are serialized in-process. An
in-memory SQLite database lives on one shared connection (StaticPool), so
reads are serialized with writes as well.
"""
import threading
from contextlib import contextmanager, nullcontext
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, Session as SQLSession
from sqlalchemy.pool import StaticPool

from clinic_queue.api.database_models import Base
from clinic_queue.logging_config import get_logger

logger = get_logger(__name__)


class Database:
    """Thin wrapper around a SQLAlchemy engine and session factory."""

    def __init__(self, database_url: str):
        """
        Create engine and tables.

        Args:
            database_url: SQLAlchemy connection string
        """
        url = make_url(database_url)
        is_sqlite = url.get_backend_name() == "sqlite"
        in_memory = is_sqlite and url.database in (None, "", ":memory:")

        engine_kwargs = {"pool_pre_ping": True}
        if is_sqlite:
            engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if in_memory:
            engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(database_url, **engine_kwargs)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

        self._write_lock: Optional[threading.RLock] = threading.RLock() if is_sqlite else None
        self._read_lock = self._write_lock if in_memory else None

        logger.info(
            "database_ready",
            backend=url.get_backend_name(),
            in_memory=in_memory,
        )

    @staticmethod
    def _guard(lock):
        return lock if lock is not None else nullcontext()

    @contextmanager
    def transaction(self) -> Iterator[SQLSession]:
        """
        Run one write operation atomically.

        Yields:
            Session; committed when the block exits cleanly, rolled back
            (and the error re-raised) otherwise
        """
        with self._guard(self._write_lock):
            with self.SessionLocal() as db:
                try:
                    yield db
                    db.commit()
                except Exception:
                    db.rollback()
                    raise

    @contextmanager
    def session(self) -> Iterator[SQLSession]:
        """Read-only session; nothing is committed."""
        with self._guard(self._read_lock):
            with self.SessionLocal() as db:
                yield db

    def close(self):
        """Dispose of pooled connections."""
        self.engine.dispose()
        logger.info("database_closed")


def insert_if_missing(db: SQLSession, model, **values):
    """
    INSERT a row unless one with the same primary key already exists.

    Safe when several processes create the same counter row at once: the
    loser of the race sees the winner's row instead of an IntegrityError.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "sqlite":
        db.execute(sqlite_insert(model).values(**values).on_conflict_do_nothing())
        return
    if dialect == "postgresql":
        db.execute(postgresql_insert(model).values(**values).on_conflict_do_nothing())
        return

    try:
        with db.begin_nested():
            db.add(model(**values))
    except IntegrityError:
        logger.debug("counter_row_exists", table=model.__tablename__)
