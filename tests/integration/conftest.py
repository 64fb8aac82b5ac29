"""Integration test fixtures using testcontainers.

Session-scoped containers for RabbitMQ, PostgreSQL, Redis.
Function-scoped DB cleanup and service orchestration.
"""

import os
import threading
import time
import uuid
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest
from celery import Celery
from kombu import Connection, Queue
from redis import Redis
from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker
from testcontainers.postgres import PostgresContainer
from testcontainers.rabbitmq import RabbitMqContainer
from testcontainers.redis import RedisContainer

from shared.config import RabbitMQConfig
from shared.db.base import create_db_engine, create_session_factory
from shared.metrics import DeliveryMetrics
from shared.topology import declare_topology, lifecycle_exchange

pytestmark = pytest.mark.integration

CELERY_QUEUES = ("critical", "high", "normal", "low")

# ---------------------------------------------------------------------------
# Containers (session-scoped)
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    with PostgresContainer("postgres:16-alpine", driver="psycopg2") as pg:
        yield pg


@pytest.fixture(scope="session")
def rabbitmq_container() -> Generator[RabbitMqContainer, None, None]:
    with RabbitMqContainer("rabbitmq:3.13-alpine") as rabbit:
        yield rabbit


@pytest.fixture(scope="session")
def redis_container() -> Generator[RedisContainer, None, None]:
    with RedisContainer("redis:7-alpine") as redis_c:
        yield redis_c


# ---------------------------------------------------------------------------
# Derived connection parameters (session-scoped)
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def pg_dsn(postgres_container: PostgresContainer) -> str:
    return postgres_container.get_connection_url()


@pytest.fixture(scope="session")
def amqp_url(rabbitmq_container: RabbitMqContainer) -> str:
    host = rabbitmq_container.get_container_host_ip()
    port = rabbitmq_container.get_exposed_port(5672)
    user = rabbitmq_container.username
    password = rabbitmq_container.password
    return f"amqp://{user}:{password}@{host}:{port}//"


@pytest.fixture(scope="session")
def redis_host_port(redis_container: RedisContainer) -> tuple[str, int]:
    host = redis_container.get_container_host_ip()
    port = int(redis_container.get_exposed_port(6379))
    return host, port


# ---------------------------------------------------------------------------
# Environment variables (session-scoped, autouse)
# Pydantic-settings configs read these automatically.
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session", autouse=True)
def _set_env_vars(
    pg_dsn: str,
    amqp_url: str,
    redis_host_port: tuple[str, int],
) -> Generator[None, None, None]:
    from urllib.parse import urlparse

    parsed = urlparse(pg_dsn)
    overrides = {
        "POSTGRES_HOST": parsed.hostname or "localhost",
        "POSTGRES_PORT": str(parsed.port or 5432),
        "POSTGRES_DATABASE": (parsed.path or "/test").lstrip("/"),
        "POSTGRES_USER": parsed.username or "test",
        "POSTGRES_PASSWORD": parsed.password or "test",
        "RABBITMQ_URL": amqp_url,
        "REDIS_HOST": redis_host_port[0],
        "REDIS_PORT": str(redis_host_port[1]),
        "CELERY_BROKER_URL": amqp_url,
        "EMAIL_MOCK_MODE": "true",
        "SMS_MOCK_MODE": "true",
        "PUSH_MOCK_MODE": "true",
    }

    saved: dict[str, str | None] = {}
    for key, value in overrides.items():
        saved[key] = os.environ.get(key)
        os.environ[key] = value

    yield

    for key, old in saved.items():
        if old is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = old


# ---------------------------------------------------------------------------
# Database (session-scoped)
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def db_engine(pg_dsn: str, _set_env_vars: None):  # noqa: ANN201
    """Create engine and run Alembic migrations against testcontainer PG."""
    from alembic import command
    from alembic.config import Config as AlembicConfig

    engine = create_db_engine(pg_dsn, pool_pre_ping=True)

    shared_dir = Path(__file__).resolve().parents[2] / "shared"
    alembic_cfg = AlembicConfig(str(shared_dir / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(shared_dir / "alembic"))
    command.upgrade(alembic_cfg, "head")

    yield engine
    engine.dispose()


@pytest.fixture(scope="session")
def session_factory(db_engine) -> sessionmaker[Session]:  # noqa: ANN001
    return create_session_factory(db_engine)


@pytest.fixture(scope="session")
def redis_client(redis_host_port: tuple[str, int]) -> Generator[Redis, None, None]:
    client = Redis(host=redis_host_port[0], port=redis_host_port[1])
    yield client
    client.close()


@pytest.fixture(scope="session")
def rabbitmq_config(_set_env_vars: None) -> RabbitMQConfig:
    return RabbitMQConfig()


@pytest.fixture(scope="session")
def amqp_connection(amqp_url: str, rabbitmq_config: RabbitMQConfig) -> Generator[Connection, None, None]:
    """Connection used by tests to publish events and inspect queues."""
    with Connection(amqp_url) as conn:
        declare_topology(conn.default_channel, rabbitmq_config)
        yield conn


@pytest.fixture(autouse=True)
def _cleanup(
    session_factory: sessionmaker[Session],
    redis_client: Redis,
    amqp_connection: Connection,
) -> Generator[None, None, None]:
    """Truncate tables, flush Redis and purge the Celery queues after each test."""
    yield
    with session_factory() as session:
        session.execute(
            text(
                "TRUNCATE notifications, delivery_records, notification_preferences, "
                "notification_cancellations CASCADE"
            )
        )
        session.commit()
    redis_client.flushdb()
    channel = amqp_connection.default_channel
    for name in CELERY_QUEUES:
        Queue(name, routing_key=name).bind(channel).declare()
        channel.queue_purge(name)


# ---------------------------------------------------------------------------
# Delivery worker (session-scoped)
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def worker(_set_env_vars: None, db_engine) -> Generator[Any, None, None]:  # noqa: ANN001
    """Wire the real worker services into delivery_worker.celery.app.conf.

    Tasks are then called directly in tests without running a Celery
    worker process; delayed re-enqueues land on the broker untouched.
    """
    from delivery_worker.celery import app as delivery_app
    from delivery_worker.celery import build_services
    from delivery_worker.config import DeliveryConfig

    metrics = DeliveryMetrics()
    services = build_services(DeliveryConfig(), metrics)
    delivery_app.conf.update(
        _dispatcher=services.dispatcher,
        _preference_service=services.preferences,
        _digest_service=services.digests,
        _reporter=services.reporter,
        _metrics=metrics,
    )

    yield delivery_app.conf

    services.dispatcher.close()


# ---------------------------------------------------------------------------
# Event intake consumer (function-scoped)
# ---------------------------------------------------------------------------


@pytest.fixture()
def intake_consumer(
    session_factory: sessionmaker[Session],
    amqp_url: str,
    rabbitmq_config: RabbitMQConfig,
) -> Generator[DeliveryMetrics, None, None]:
    """Run the event intake consumer in a background thread."""
    from event_intake.consumer import DomainEventConsumer
    from event_intake.handler import EventHandler

    metrics = DeliveryMetrics()
    celery_app = Celery(broker=amqp_url)
    handler = EventHandler(session_factory, celery_app, metrics)
    connection = Connection(amqp_url)
    consumer = DomainEventConsumer(connection, handler, rabbitmq_config, metrics)

    thread = threading.Thread(target=consumer.run, daemon=True)
    thread.start()

    yield metrics

    consumer.should_stop = True
    thread.join(timeout=10)
    connection.release()


# ---------------------------------------------------------------------------
# Lifecycle events (function-scoped)
# ---------------------------------------------------------------------------


@pytest.fixture()
def lifecycle_queue(
    amqp_connection: Connection, rabbitmq_config: RabbitMQConfig
) -> Generator[Callable[..., list[dict[str, Any]]], None, None]:
    """Bind a throwaway queue to the lifecycle exchange and return a drain function."""
    queue = Queue(
        f"test.lifecycle.{uuid.uuid4().hex[:8]}",
        exchange=lifecycle_exchange(rabbitmq_config),
        routing_key=f"{rabbitmq_config.lifecycle_routing_prefix}.event.#",
        auto_delete=True,
    ).bind(amqp_connection.default_channel)
    queue.declare()

    def _drain(expected: int = 1, timeout: float = 5.0) -> list[dict[str, Any]]:
        """Collect lifecycle events until *expected* arrived or the deadline passes."""
        messages: list[dict[str, Any]] = []
        deadline = time.monotonic() + timeout
        while True:
            while (message := queue.get(no_ack=True)) is not None:
                messages.append(message.decode())
            if len(messages) >= expected or time.monotonic() >= deadline:
                return messages
            time.sleep(0.1)

    yield _drain

    queue.delete()
