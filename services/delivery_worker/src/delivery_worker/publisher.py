"""Lifecycle event publisher (AMQP topic exchange)."""

import logging

from kombu import Connection, Producer
from kombu.exceptions import KombuError

from shared.config import RabbitMQConfig
from shared.events.lifecycle import LifecycleEvent
from shared.metrics import DeliveryMetrics
from shared.topology import lifecycle_exchange

logger = logging.getLogger(__name__)


class LifecycleEventPublisher:
    """Publishes lifecycle events as persistent JSON messages.

    Routing key is ``<prefix>.event.<type>.<channel>``. Publishing happens
    after the delivery state is committed and is best effort: failures are
    logged and counted, never raised into the dispatch path.
    """

    def __init__(
        self,
        connection: Connection,
        config: RabbitMQConfig,
        metrics: DeliveryMetrics,
    ) -> None:
        self._connection = connection
        self._config = config
        self._metrics = metrics
        self._exchange = lifecycle_exchange(config)

    def publish(self, event: LifecycleEvent) -> bool:
        routing_key = event.publish_routing_key(self._config.lifecycle_routing_prefix)
        log_ctx = {
            "notification_id": str(event.notification_id),
            "event_type": str(event.event_type),
            "routing_key": routing_key,
        }
        errors = (
            self._connection.connection_errors
            + self._connection.channel_errors
            + (KombuError, OSError)
        )
        try:
            producer = Producer(self._connection, exchange=self._exchange, serializer="json")
            producer.publish(
                event.model_dump(mode="json"),
                routing_key=routing_key,
                declare=[self._exchange],
                delivery_mode=2,
                headers={"event_type": str(event.event_type)},
                correlation_id=event.correlation_id,
                retry=True,
                retry_policy={"max_retries": 3, "interval_start": 0.2, "interval_step": 0.5},
            )
        except errors as exc:
            self._metrics.record_lifecycle_event(event.event_type, "error")
            logger.error(
                "Failed to publish lifecycle event",
                extra={**log_ctx, "error": str(exc)},
            )
            return False

        self._metrics.record_lifecycle_event(event.event_type, "published")
        logger.info("Lifecycle event published", extra=log_ctx)
        return True

    def close(self) -> None:
        self._connection.release()
