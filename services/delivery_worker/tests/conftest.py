"""Test fixtures for delivery_worker tests."""

import datetime
import uuid
from collections.abc import Callable, Generator
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from shared.db.base import Base, create_session_factory
from shared.db.models import DeliveryRecord, Notification, Preference
from shared.enums import (
    Channel,
    DeliveryStatus,
    NotificationStatus,
    NotificationType,
    Priority,
)
from shared.metrics import DeliveryMetrics

from delivery_worker.config import DeliveryConfig
from delivery_worker.dispatcher import Dispatcher
from delivery_worker.preferences import PreferenceGate, PreferenceStore
from delivery_worker.providers import DeliveryOutcome, ProviderRegistry
from delivery_worker.publisher import LifecycleEventPublisher
from delivery_worker.rate_limiter import RateLimiter
from delivery_worker.requeue import CeleryRequeuer
from delivery_worker.retry import RetryPolicy

T0 = datetime.datetime(2026, 1, 15, 12, 0, tzinfo=datetime.UTC)


class FakeClock:
    def __init__(self, now: datetime.datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += datetime.timedelta(**delta)


class ScriptedProvider:
    """Email provider stub that returns queued outcomes in order.

    Exceptions in the queue are raised. An empty queue means success.
    """

    channel = Channel.EMAIL
    name = "smtp"

    def __init__(self) -> None:
        self.outcomes: list[DeliveryOutcome | Exception] = []
        self.status_outcomes: list[DeliveryOutcome] = []
        self.delivered: list[uuid.UUID] = []
        self.status_checked: list[uuid.UUID] = []
        self.available = True
        self.limit = 0

    def can_handle(self, notification: Notification) -> bool:
        return notification.channel == self.channel

    def deliver(self, notification: Notification) -> DeliveryOutcome:
        self.delivered.append(notification.id)
        if not self.outcomes:
            return DeliveryOutcome.success(external_id="ext-1")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def check_status(self, record: DeliveryRecord) -> DeliveryOutcome:
        self.status_checked.append(record.id)
        if not self.status_outcomes:
            return DeliveryOutcome.from_record(record)
        return self.status_outcomes.pop(0)

    def is_available(self) -> bool:
        return self.available

    def rate_limit(self) -> int:
        return self.limit


@pytest.fixture()
def db_engine(tmp_path: Path) -> Generator[Engine, None, None]:
    """File-backed SQLite engine; the code under test opens and commits its own sessions."""
    engine = create_engine(f"sqlite:///{tmp_path / 'delivery.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(db_engine: Engine) -> sessionmaker[Session]:
    return create_session_factory(db_engine)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def metrics() -> DeliveryMetrics:
    return DeliveryMetrics()


@pytest.fixture()
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture()
def registry(provider: ScriptedProvider) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(provider)
    return registry


@pytest.fixture()
def mock_rate_limiter() -> MagicMock:
    """Rate limiter that always allows."""
    limiter = MagicMock(spec=RateLimiter)
    limiter.acquire.return_value = True
    return limiter


@pytest.fixture()
def mock_requeuer() -> MagicMock:
    return MagicMock(spec=CeleryRequeuer)


@pytest.fixture()
def mock_publisher() -> MagicMock:
    publisher = MagicMock(spec=LifecycleEventPublisher)
    publisher.publish.return_value = True
    return publisher


@pytest.fixture()
def delivery_config() -> DeliveryConfig:
    return DeliveryConfig()


@pytest.fixture()
def make_dispatcher(
    session_factory: sessionmaker[Session],
    registry: ProviderRegistry,
    mock_rate_limiter: MagicMock,
    mock_requeuer: MagicMock,
    mock_publisher: MagicMock,
    metrics: DeliveryMetrics,
    delivery_config: DeliveryConfig,
    clock: FakeClock,
) -> Generator[Callable[..., Dispatcher], None, None]:
    created: list[Dispatcher] = []

    def factory(**overrides: object) -> Dispatcher:
        kwargs: dict[str, object] = {
            "session_factory": session_factory,
            "registry": registry,
            "gate": PreferenceGate(session_factory, PreferenceStore()),
            "rate_limiter": mock_rate_limiter,
            "retry_policy": RetryPolicy(),
            "requeuer": mock_requeuer,
            "publisher": mock_publisher,
            "metrics": metrics,
            "config": delivery_config,
            "clock": clock,
        }
        kwargs.update(overrides)
        dispatcher = Dispatcher(**kwargs)
        created.append(dispatcher)
        return dispatcher

    yield factory
    for dispatcher in created:
        dispatcher.close()


@pytest.fixture()
def dispatcher(make_dispatcher: Callable[..., Dispatcher]) -> Dispatcher:
    return make_dispatcher()


@pytest.fixture()
def make_notification(
    session_factory: sessionmaker[Session],
) -> Callable[..., Notification]:
    """Insert and commit a PENDING notification."""

    def factory(**fields: object) -> Notification:
        values: dict[str, object] = {
            "id": uuid.uuid4(),
            "user_id": uuid.uuid4(),
            "type": NotificationType.WELCOME,
            "channel": Channel.EMAIL,
            "priority": Priority.NORMAL,
            "subject": "Welcome!",
            "body": "Hello!",
            "recipient_address": "user@example.com",
            "status": NotificationStatus.PENDING,
            "source_event_id": uuid.uuid4(),
            "source_event_type": "user.registered",
            "correlation_id": "corr-1",
        }
        values.update(fields)
        notification = Notification(**values)
        with session_factory() as session:
            session.add(notification)
            session.commit()
        return notification

    return factory


@pytest.fixture()
def add_preference(
    session_factory: sessionmaker[Session],
) -> Callable[..., Preference]:
    def factory(
        user_id: uuid.UUID,
        channel: str = Channel.EMAIL,
        notification_type: str = NotificationType.WELCOME,
        **fields: object,
    ) -> Preference:
        preference = Preference(
            user_id=user_id, channel=channel, type=notification_type, **fields
        )
        with session_factory() as session:
            session.add(preference)
            session.commit()
        return preference

    return factory


@pytest.fixture()
def add_delivered(
    session_factory: sessionmaker[Session],
    make_notification: Callable[..., Notification],
) -> Callable[..., DeliveryRecord]:
    """Insert a notification with a successful delivery at ``delivered_at``."""

    def factory(
        user_id: uuid.UUID,
        delivered_at: datetime.datetime,
        channel: str = Channel.EMAIL,
        notification_type: str = NotificationType.WELCOME,
    ) -> DeliveryRecord:
        notification = make_notification(
            user_id=user_id,
            channel=channel,
            type=notification_type,
            status=NotificationStatus.DELIVERED,
        )
        record = DeliveryRecord(
            id=uuid.uuid4(),
            notification_id=notification.id,
            user_id=user_id,
            notification_type=notification_type,
            channel=channel,
            recipient_address=notification.recipient_address,
            status=DeliveryStatus.SUCCESS,
            attempt_count=1,
            max_attempts=3,
            attempted_at=delivered_at,
            sent_at=delivered_at,
            delivered_at=delivered_at,
        )
        with session_factory() as session:
            session.add(record)
            session.commit()
        return record

    return factory
