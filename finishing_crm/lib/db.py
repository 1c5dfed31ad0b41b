"""
SQLAlchemy 2.x engine, declarative base and session helpers.

Routes get a request-scoped session from `get_db` and commit explicitly;
jobs and cron work use `get_db_context`, which commits on success.
"""
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from finishing_crm.lib.settings import settings


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


def build_engine(url: str, echo: bool = False) -> Engine:
    """Pooled engine for Postgres; single-thread check disabled for SQLite."""
    if url.startswith("sqlite"):
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False})
    # Drop stale pooled connections before use
    return create_engine(url, echo=echo, pool_pre_ping=True, pool_size=5, max_overflow=10)


engine = build_engine(settings.database_url, echo=settings.debug)

SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency; the session is closed, never committed, on exit."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """
    Session for work outside a request.

    Usage:
        with get_db_context() as db:
            ReorderReminderService(db).generate()
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
