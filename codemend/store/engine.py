from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import structlog
from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from codemend.errors import DataStoreFailure
from codemend.store.models import Base

logger = structlog.get_logger()


def default_db_url(root: str | Path) -> str:
    db_dir = Path(root) / ".codemend"
    db_dir.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_dir / 'codemend.db'}"


class StorageEngine:
    """
    Owns the SQLAlchemy engine and hands out sessions.

    Writes go through ``transaction()``. SQLite only supports one writer, so
    for SQLite URLs writes are additionally serialised with a process-wide
    lock; other backends rely on the database's own row locking.
    """

    def __init__(self, db_url: str = "sqlite:///codemend.db"):
        self.db_url = db_url
        self.is_sqlite = db_url.startswith("sqlite")
        kwargs = {}
        if self.is_sqlite:
            kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
            if ":memory:" in db_url or db_url.rstrip("/") == "sqlite:":
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(db_url, **kwargs)
        if self.is_sqlite:
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine)
        self._write_lock = threading.RLock()

    def get_session(self) -> Session:
        return self.SessionLocal()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Read-only session; closed on exit."""
        session = self.get_session()
        try:
            yield session
        except SQLAlchemyError as e:
            logger.error("store_read_failed", error=str(e))
            raise DataStoreFailure(str(e)) from e
        finally:
            session.close()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session committed on success, rolled back on any error."""
        lock: Optional[threading.RLock] = self._write_lock if self.is_sqlite else None
        if lock:
            lock.acquire()
        session = self.get_session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("store_write_failed", error=str(e))
            raise DataStoreFailure(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
            if lock:
                lock.release()

    def dispose(self) -> None:
        self.engine.dispose()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
