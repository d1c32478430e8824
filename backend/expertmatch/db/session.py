# backend/expertmatch/db/session.py
"""
SQLAlchemy session/engine bootstrap.
- Reads DATABASE_URL from core.config (defaults to a local SQLite file)
- Exposes: Base, make_engine(), make_session_factory(), default_session_factory(),
  session_scope(), ensure_tables()
- Nothing connects at import time; the default engine is built on first use
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..core.config import DATABASE_URL, DB_ECHO

# --- SQLAlchemy base ---------------------------------------------------------

class Base(DeclarativeBase):
    pass

# --- engine & session --------------------------------------------------------

def _install_sqlite_hooks(engine: Engine) -> None:
    """
    pysqlite defers BEGIN on its own, which breaks SAVEPOINT and makes
    compare-and-set updates run outside a transaction. Take over BEGIN and
    turn foreign keys on.
    """

    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):  # noqa: ARG001
        dbapi_connection.isolation_level = None
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def make_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    url = (url or DATABASE_URL).strip()
    echo = DB_ECHO if echo is None else echo
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        else:
            db_path = url.split("///", 1)[-1]
            if db_path:
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(url, echo=echo, future=True, **kwargs)
        _install_sqlite_hooks(engine)
        return engine
    return create_engine(url, echo=echo, pool_pre_ping=True, future=True)


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False)


_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker[Session]] = None


def default_session_factory() -> sessionmaker[Session]:
    """Engine + sessionmaker built from DATABASE_URL on first call."""
    global _engine, _SessionLocal
    if _SessionLocal is None:
        _engine = make_engine()
        ensure_tables(_engine)
        _SessionLocal = make_session_factory(_engine)
    return _SessionLocal

# --- helpers ----------------------------------------------------------------

@contextmanager
def session_scope(factory: Optional[sessionmaker[Session]] = None) -> Iterator[Session]:
    """
    Context manager for one unit of work.
    Example:
        with session_scope(factory) as s:
            s.add(obj)
    Commits on clean exit, rolls back on error.
    """
    session = (factory or default_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

def ensure_tables(engine: Engine) -> None:
    """
    Create tables if needed. Import models lazily to avoid circulars.
    """
    # local import to prevent circular import during module import
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=engine)

__all__ = [
    "Base",
    "make_engine",
    "make_session_factory",
    "default_session_factory",
    "session_scope",
    "ensure_tables",
]
