"""Event handler: turns inbound domain events into notifications."""

import logging
from typing import Any
from uuid import UUID

from celery import Celery
from jinja2 import TemplateError
from sqlalchemy.orm import Session, sessionmaker

from shared.db.models import DeliveryRecord, Notification
from shared.db.repositories import DeliveryRecordRepository, NotificationRepository
from shared.enums import NotificationStatus
from shared.events.typed import AnyTypedEvent, parse_event
from shared.metrics import DeliveryMetrics

from event_intake.priority import get_priority
from event_intake.renderer import render_template
from event_intake.routing import Route, recipient_for, routes_for

logger = logging.getLogger(__name__)

SEND_NOTIFICATION_TASK = "delivery_worker.tasks.send_notification"

_CONTACT_FIELDS = {"email", "phone", "push_token"}


class EventHandler:
    """Creates notifications for a domain event and enqueues their dispatch."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        celery_app: Celery,
        metrics: DeliveryMetrics,
    ) -> None:
        self._session_factory = session_factory
        self._celery = celery_app
        self._metrics = metrics

    def handle(self, raw_event: dict[str, Any]) -> list[UUID]:
        """Process a single raw event from the broker.

        Notifications for every routed (type, channel) are created in one
        transaction. Dispatch tasks are sent only after the commit, so a
        worker never sees an id that is not yet visible. A redelivered event
        re-enqueues its notifications that are still pending and have no
        delivery record, and never creates duplicates.

        Returns the ids of the notifications enqueued for dispatch.
        Raises ValueError for malformed or unroutable events.
        """
        event = parse_event(raw_event)
        event_id = event.metadata.event_id
        event_type = str(event.metadata.event_type)
        routes = routes_for(event_type)
        default_priority = get_priority(event_type)
        user_id = event.payload.user_id
        context = event.payload.model_dump()

        log_ctx = {
            "event_id": str(event_id),
            "event_type": event_type,
            "user_id": str(user_id),
            "correlation_id": event.metadata.correlation_id,
        }

        to_enqueue: list[tuple[UUID, str]] = []
        created: list[Notification] = []

        with self._session_factory() as session:
            notification_repo = NotificationRepository(session)
            delivery_repo = DeliveryRecordRepository(session)

            existing = {
                (n.type, n.channel): n
                for n in notification_repo.get_by_source_event(event_id)
            }
            if existing:
                logger.info(
                    "Event redelivered, reusing existing notifications",
                    extra={**log_ctx, "existing": len(existing)},
                )

            for route in routes:
                priority = route.priority or default_priority
                for channel in route.channels:
                    recipient = recipient_for(channel, event.payload)
                    if recipient is None:
                        logger.debug(
                            "No recipient address for channel",
                            extra={**log_ctx, "channel": channel},
                        )
                        continue

                    prior = existing.get((route.notification_type, channel))
                    if prior is not None:
                        if self._needs_enqueue(prior, delivery_repo):
                            to_enqueue.append((prior.id, prior.priority))
                        continue

                    content = self._render_content(route, context, log_ctx, channel)
                    if content is None:
                        continue

                    notification = notification_repo.create(
                        Notification(
                            user_id=user_id,
                            type=route.notification_type,
                            channel=channel,
                            priority=priority,
                            subject=content.get("subject"),
                            body=content["body"],
                            recipient_address=recipient,
                            status=NotificationStatus.PENDING,
                            source_event_id=event_id,
                            source_event_type=event_type,
                            correlation_id=event.metadata.correlation_id,
                            data=self._data(event),
                        )
                    )
                    created.append(notification)
                    to_enqueue.append((notification.id, priority))

            session.commit()

        for notification in created:
            self._metrics.record_notification_created(
                notification.channel, notification.type
            )

        for notification_id, priority in to_enqueue:
            self._celery.send_task(
                SEND_NOTIFICATION_TASK,
                kwargs={"notification_id": str(notification_id)},
                queue=str(priority),
            )

        logger.info(
            "Event processed",
            extra={
                **log_ctx,
                "notifications_created": len(created),
                "notifications_enqueued": len(to_enqueue),
                "channels": [n.channel for n in created],
            },
        )
        return [notification_id for notification_id, _ in to_enqueue]

    @staticmethod
    def _needs_enqueue(
        notification: Notification, delivery_repo: DeliveryRecordRepository
    ) -> bool:
        if notification.status != NotificationStatus.PENDING:
            return False
        record: DeliveryRecord | None = delivery_repo.get_for_notification(
            notification.id, notification.channel
        )
        return record is None

    @staticmethod
    def _data(event: AnyTypedEvent) -> dict[str, Any]:
        return event.payload.model_dump(mode="json", exclude=_CONTACT_FIELDS)

    @staticmethod
    def _render_content(
        route: Route,
        context: dict[str, Any],
        log_ctx: dict[str, Any],
        channel: str,
    ) -> dict[str, str] | None:
        """Render subject and body for a route, or None if a template fails."""
        try:
            return {
                "subject": render_template(route.subject, context),
                "body": render_template(route.body, context),
            }
        except TemplateError:
            logger.exception(
                "Template rendering failed, skipping channel",
                extra={
                    **log_ctx,
                    "channel": channel,
                    "notification_type": str(route.notification_type),
                },
            )
            return None
