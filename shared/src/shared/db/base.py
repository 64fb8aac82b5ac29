"""Database foundation: declarative base class, engine and session factories."""

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""


def create_db_engine(dsn: str, **kwargs: object) -> Engine:
    """Create a SQLAlchemy engine from a DSN string.

    The worker and intake services pass ``pool_pre_ping=True`` so pooled
    connections survive a PostgreSQL restart.
    """
    return create_engine(dsn, **kwargs)


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Create a sessionmaker bound to the given engine.

    ``expire_on_commit=False`` keeps loaded rows usable after commit, when
    the dispatcher publishes lifecycle events from them outside the
    session.
    """
    return sessionmaker(bind=engine, expire_on_commit=False)
