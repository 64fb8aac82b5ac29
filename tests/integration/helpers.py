"""Publishing and polling utilities for integration tests."""

import datetime
import time
import uuid
from typing import Any

from kombu import Connection, Producer
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from shared.db.models import Notification
from shared.topology import domain_exchange


def make_event(
    event_type: str,
    payload: dict[str, Any],
    event_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    """Build an upstream event envelope."""
    return {
        "metadata": {
            "event_id": str(event_id or uuid.uuid4()),
            "event_type": event_type,
            "occurred_at": datetime.datetime.now(datetime.UTC).isoformat(),
            "correlation_id": f"it-{uuid.uuid4().hex[:8]}",
            "version": 1,
        },
        "payload": payload,
    }


def publish_event(connection: Connection, event: dict[str, Any]) -> str:
    """Publish an event to its domain exchange the way upstream services do.

    Returns the event id.
    """
    event_type = event["metadata"]["event_type"]
    domain = event_type.split(".")[0]
    producer = Producer(connection.default_channel, serializer="json")
    producer.publish(
        event,
        exchange=domain_exchange(domain),
        routing_key=event_type,
        delivery_mode=2,
    )
    return event["metadata"]["event_id"]


def publish_raw(connection: Connection, domain: str, body: bytes, routing_key: str) -> None:
    """Publish an arbitrary body, bypassing serialization."""
    producer = Producer(connection.default_channel)
    producer.publish(
        body,
        exchange=domain_exchange(domain),
        routing_key=routing_key,
        content_type="application/json",
        content_encoding="utf-8",
    )


def poll_notifications(
    session_factory: sessionmaker[Session],
    event_id: str | uuid.UUID,
    expected: int,
    timeout: float = 10.0,
    interval: float = 0.3,
) -> list[Notification]:
    """Poll DB until *expected* notifications appear for *event_id*.

    Returns whatever was found when the deadline is reached (the calling
    test will fail on its own assertion if the count is wrong).
    """
    event_uuid = uuid.UUID(event_id) if isinstance(event_id, str) else event_id
    stmt = select(Notification).where(Notification.source_event_id == event_uuid)
    return _poll(session_factory, stmt, expected, timeout, interval)


def poll_notifications_by_user(
    session_factory: sessionmaker[Session],
    user_id: str | uuid.UUID,
    expected: int,
    timeout: float = 15.0,
    interval: float = 0.3,
) -> list[Notification]:
    """Poll DB until *expected* notifications appear for *user_id*."""
    uid = uuid.UUID(user_id) if isinstance(user_id, str) else user_id
    stmt = select(Notification).where(Notification.user_id == uid)
    return _poll(session_factory, stmt, expected, timeout, interval)


def _poll(
    session_factory: sessionmaker[Session],
    stmt: Any,
    expected: int,
    timeout: float,
    interval: float,
) -> list[Notification]:
    deadline = time.monotonic() + timeout
    while True:
        with session_factory() as session:
            notifications = list(session.scalars(stmt).all())
            for n in notifications:
                session.expunge(n)
        if len(notifications) >= expected or time.monotonic() >= deadline:
            return notifications
        time.sleep(interval)
