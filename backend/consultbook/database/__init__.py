"""
Database lifecycle.

A :class:`Database` owns one engine and its session factory. It is built
explicitly at process start (FastAPI lifespan, Celery ``worker_process_init``)
and disposed at shutdown; request handlers receive sessions through
dependency injection instead of importing a module-level engine.
"""

from __future__ import annotations

from contextlib import contextmanager
import logging
from typing import Any, Generator, Optional

from fastapi import Request
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .base import Base

logger = logging.getLogger(__name__)

__all__ = ["Base", "Database", "get_db"]


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _enable_sqlite_pragmas(dbapi_connection: Any, _record: Any) -> None:
    # SQLAlchemy emits BEGIN itself (see _begin_immediate) so SAVEPOINT nests correctly.
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


def _begin_immediate(conn: Any) -> None:
    # Take the write lock up front; concurrent writers then queue on busy_timeout
    # instead of failing a lock upgrade halfway through a transaction.
    conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """Engine + session factory with an explicit start/stop lifecycle."""

    def __init__(
        self,
        url: str,
        *,
        echo: bool = False,
        pool_size: int = 5,
        max_overflow: int = 10,
    ) -> None:
        self.url = url
        self._echo = echo
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database is not connected; call connect() at startup")
        return self._engine

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    def connect(self) -> "Database":
        if self._engine is not None:
            return self
        kwargs: dict[str, Any] = {"echo": self._echo, "future": True}
        if _is_sqlite(self.url):
            kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
            if ":memory:" in self.url:
                kwargs["poolclass"] = StaticPool
        else:
            kwargs.update(
                pool_size=self._pool_size,
                max_overflow=self._max_overflow,
                pool_pre_ping=True,
                pool_recycle=300,
            )
        engine = create_engine(self.url, **kwargs)
        if _is_sqlite(self.url):
            event.listen(engine, "connect", _enable_sqlite_pragmas)
            event.listen(engine, "begin", _begin_immediate)
        self._engine = engine
        self._session_factory = sessionmaker(
            bind=engine, autocommit=False, autoflush=False, expire_on_commit=False
        )
        logger.info("Database engine created", extra={"dialect": engine.dialect.name})
        return self

    def dispose(self) -> None:
        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None
        self._session_factory = None
        logger.info("Database engine disposed")

    def create_all(self) -> None:
        """Create tables directly; local/dev and tests only, migrations elsewhere."""
        Base.metadata.create_all(bind=self.engine)

    def new_session(self) -> Session:
        if self._session_factory is None:
            raise RuntimeError("Database is not connected; call connect() at startup")
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Session that commits on success and rolls back on error."""
        session = self.new_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def get_db(request: Request) -> Generator[Session, None, None]:
    """FastAPI dependency yielding a session from the app-scoped Database."""
    database: Database = request.app.state.database
    db = database.new_session()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
