"""Database helpers for OpenBroadcast."""

from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import scoped_session, sessionmaker

from .config import settings


def configure_sqlite_engine(target: Engine) -> Engine:
    """Let SQLAlchemy own BEGIN so per-recipient SAVEPOINTs work on pysqlite."""
    if target.dialect.name != "sqlite":
        return target

    @event.listens_for(target, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(target, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return target


DATABASE_URL = f"sqlite:///{settings.database_path}"
engine = configure_sqlite_engine(
    create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
        future=True,
    )
)
SessionLocal = scoped_session(
    sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )
)


@contextmanager
def get_session():
    """Context manager returning a SQLAlchemy session."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
