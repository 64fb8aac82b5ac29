"""AMQP consumer for the per-domain inbound event queues."""

import functools
import logging

from kombu import Connection
from kombu.exceptions import ContentDisallowed, DecodeError
from kombu.message import Message
from kombu.mixins import ConsumerMixin

from shared.config import RabbitMQConfig
from shared.metrics import DeliveryMetrics
from shared.topology import declare_topology

from event_intake.handler import EventHandler

logger = logging.getLogger(__name__)


class DomainEventConsumer(ConsumerMixin):
    """Consumes domain events with manual acknowledgement.

    A message is acked only after the handler has committed its
    notifications and enqueued their dispatch. Undecodable or invalid events
    are rejected without requeue and land in the dead-letter queue at once;
    any other failure requeues the message and the broker dead-letters it
    after ``x-delivery-limit`` redeliveries.
    """

    def __init__(
        self,
        connection: Connection,
        handler: EventHandler,
        config: RabbitMQConfig,
        metrics: DeliveryMetrics,
    ) -> None:
        self.connection = connection
        self._handler = handler
        self._config = config
        self._metrics = metrics

    def get_consumers(self, Consumer, channel):  # noqa: N803
        topology = declare_topology(channel, self._config)
        consumers = []
        for domain in topology:
            consumers.append(
                Consumer(
                    queues=[domain.queue],
                    on_message=functools.partial(self.on_message, domain.queue.name),
                    accept=["json"],
                    prefetch_count=self._config.prefetch_count,
                )
            )
            logger.info(
                "Consuming domain events",
                extra={"queue": domain.queue.name, "domain": domain.domain},
            )
        return consumers

    def on_message(self, queue: str, message: Message) -> None:
        log_ctx = {
            "queue": queue,
            "delivery_tag": message.delivery_tag,
            "redelivered": bool(message.delivery_info.get("redelivered")),
        }

        try:
            raw_event = message.decode()
        except (ContentDisallowed, DecodeError):
            logger.error("Malformed message, dead-lettering", extra=log_ctx)
            self._dead_letter(queue, message)
            return

        try:
            self._handler.handle(raw_event)
        except ValueError:
            logger.exception(
                "Invalid event, dead-lettering",
                extra={**log_ctx, "raw_event": raw_event},
            )
            self._dead_letter(queue, message)
            return
        except Exception:
            logger.exception(
                "Failed to process event, requeueing",
                extra={**log_ctx, "raw_event": raw_event},
            )
            message.requeue()
            return

        message.ack()

    def _dead_letter(self, queue: str, message: Message) -> None:
        self._metrics.record_poison_message(queue)
        message.reject(requeue=False)
