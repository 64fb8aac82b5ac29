"""Test fixtures for event_intake tests."""

import datetime
import uuid
from collections.abc import Callable, Generator
from typing import Any
from unittest.mock import MagicMock

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from shared.db.base import Base
from shared.metrics import DeliveryMetrics

from event_intake.handler import EventHandler


@pytest.fixture(scope="session")
def db_engine() -> Engine:
    """Create a single in-memory SQLite engine for the test session."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def db_session(db_engine: Engine) -> Generator[Session, None, None]:
    """Transactional session that rolls back after each test."""
    connection = db_engine.connect()
    transaction = connection.begin()
    session = Session(bind=connection)

    yield session

    session.close()
    if transaction.is_active:
        transaction.rollback()
    connection.close()


@pytest.fixture()
def session_factory(db_session: Session) -> sessionmaker[Session]:
    """Session factory that always returns the test session.

    This makes the handler's `with session_factory() as session:` use
    our transactional test session instead of creating a new one.
    """
    factory = MagicMock(spec=sessionmaker)
    ctx = MagicMock()
    ctx.__enter__ = MagicMock(return_value=db_session)
    ctx.__exit__ = MagicMock(return_value=False)
    factory.return_value = ctx
    return factory


@pytest.fixture()
def mock_celery() -> MagicMock:
    return MagicMock()


@pytest.fixture()
def metrics() -> DeliveryMetrics:
    return DeliveryMetrics()


@pytest.fixture()
def handler(
    session_factory: sessionmaker[Session],
    mock_celery: MagicMock,
    metrics: DeliveryMetrics,
) -> EventHandler:
    return EventHandler(
        session_factory=session_factory,
        celery_app=mock_celery,
        metrics=metrics,
    )


@pytest.fixture()
def make_event() -> Callable[..., dict[str, Any]]:
    """Build a raw event envelope as it arrives on the wire."""

    def _make(
        event_type: str,
        payload: dict[str, Any],
        event_id: uuid.UUID | None = None,
        correlation_id: str | None = "corr-1",
    ) -> dict[str, Any]:
        return {
            "metadata": {
                "event_id": str(event_id or uuid.uuid4()),
                "event_type": event_type,
                "occurred_at": datetime.datetime.now(datetime.UTC).isoformat(),
                "correlation_id": correlation_id,
                "version": 1,
            },
            "payload": payload,
        }

    return _make
