"""
Database configuration and session management.

This module sets up a SQLAlchemy engine pointing at an SQLite database by default.
You can switch the database URL via the `DATABASE_URL` environment variable.

Every referral, appointment, finding and invoice lives only in this store; no
entity state is kept in process memory between requests.
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator

from sqlalchemy import Enum as SAEnum, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from ereferral.config import get_settings

# Base class for declarative class definitions.
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


def status_enum(enum_cls) -> SAEnum:
    """Column type storing an Enum by its value (the wire label)."""
    return SAEnum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )


def make_engine(database_url: str) -> Engine:
    # The `check_same_thread` argument is needed for SQLite in multithreaded FastAPI applications.
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args)


engine = make_engine(get_settings().database_url)

# Create a configured "Session" class
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session for FastAPI endpoints.

    Services commit their own units of work; anything left uncommitted when a
    request fails is rolled back here.
    """
    db: Session = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def session_scope(factory: sessionmaker = SessionLocal) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations.

    Example:
        with session_scope() as db:
            # use db session here
    """
    db: Session = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
