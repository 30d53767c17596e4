"""Database helpers for the bulknotify application."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .config import DatabaseConfig
from .exceptions import PersistenceError


def create_engine_from_config(config: DatabaseConfig) -> Engine:
    connect_args = {"check_same_thread": False} if config.url.startswith("sqlite") else {}
    return create_engine(config.url, connect_args=connect_args, echo=config.echo)


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create database tables if they do not exist."""
    from .models import Base  # Local import to avoid circular dependency

    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations.

    Database errors are re-raised as PersistenceError so callers can tell a
    storage outage apart from a bug.
    """
    session: Session = session_factory()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(f"Database operation failed: {exc}", cause=exc) from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = ["create_engine_from_config", "create_session_factory", "init_db", "session_scope"]
