"""In-app delivery over Redis pub/sub."""

import json
import logging
import time

from redis import Redis
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError

from shared.db.models import DeliveryRecord, Notification
from shared.enums import Channel, FailureClass

from delivery_worker.config import InAppConfig
from delivery_worker.providers.base import DeliveryOutcome, truncate

logger = logging.getLogger(__name__)


class InAppProvider:
    """Publishes to ``<prefix>:<user_id>`` and keeps a capped inbox list.

    Connected clients receive the publish; the inbox lets clients that were
    offline catch up, so zero subscribers still counts as delivered.
    """

    channel = Channel.IN_APP
    name = "redis_pubsub"

    def __init__(self, redis_client: Redis, config: InAppConfig | None = None) -> None:
        self._redis = redis_client
        self._config = config if config is not None else InAppConfig()

    def is_available(self) -> bool:
        return True

    def rate_limit(self) -> int:
        return self._config.rate_limit

    def can_handle(self, notification: Notification) -> bool:
        return notification.channel == self.channel and bool(
            notification.recipient_address
        )

    def deliver(self, notification: Notification) -> DeliveryOutcome:
        cfg = self._config
        channel_name = f"{cfg.channel_prefix}:{notification.recipient_address}"
        payload = json.dumps(
            {
                "notification_id": str(notification.id),
                "type": notification.type,
                "priority": notification.priority,
                "subject": notification.subject,
                "body": truncate(notification.body, cfg.max_content_length),
                "created_at": notification.created_at.isoformat()
                if notification.created_at
                else None,
            }
        )

        started = time.monotonic()
        try:
            pipe = self._redis.pipeline()
            pipe.lpush(f"{channel_name}:inbox", payload)
            pipe.ltrim(f"{channel_name}:inbox", 0, cfg.inbox_size - 1)
            pipe.publish(channel_name, payload)
            *_, receivers = pipe.execute()
        except RedisTimeoutError as exc:
            return DeliveryOutcome.failure(
                FailureClass.TIMEOUT, f"Redis timeout: {exc}", latency_ms=_elapsed(started)
            )
        except RedisError as exc:
            return DeliveryOutcome.failure(
                FailureClass.PROVIDER_ERROR, f"Redis error: {exc}", latency_ms=_elapsed(started)
            )

        logger.debug(
            "In-app notification published",
            extra={"notification_id": str(notification.id), "receivers": receivers},
        )
        return DeliveryOutcome.success(
            external_id=str(notification.id), latency_ms=_elapsed(started)
        )

    def check_status(self, record: DeliveryRecord) -> DeliveryOutcome:
        return DeliveryOutcome.from_record(record)


def _elapsed(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
