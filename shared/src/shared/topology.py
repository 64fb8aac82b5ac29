"""AMQP topology shared by the intake consumer and the lifecycle publisher.

Each upstream domain publishes to its own topic exchange. The service binds
one durable quorum queue per domain with a wildcard pattern; rejected or
expired messages go to the shared dead-letter exchange and land in a
per-domain dead-letter queue.
"""

from dataclasses import dataclass

from kombu import Exchange, Queue

from shared.config import RabbitMQConfig

DOMAINS: tuple[str, ...] = ("order", "payment", "user")


@dataclass(frozen=True, slots=True)
class DomainTopology:
    domain: str
    exchange: Exchange
    queue: Queue
    dead_letter_queue: Queue


def domain_exchange(domain: str) -> Exchange:
    return Exchange(f"{domain}.events", type="topic", durable=True)


def dead_letter_exchange(config: RabbitMQConfig) -> Exchange:
    return Exchange(config.dead_letter_exchange, type="topic", durable=True)


def lifecycle_exchange(config: RabbitMQConfig) -> Exchange:
    return Exchange(config.lifecycle_exchange, type="topic", durable=True)


def build_domain_topology(domain: str, config: RabbitMQConfig) -> DomainTopology:
    exchange = domain_exchange(domain)
    dlx = dead_letter_exchange(config)
    dlq_routing_key = f"{domain}.events.dlq"

    queue = Queue(
        f"notification.{domain}.events",
        exchange=exchange,
        routing_key=f"{domain}.#",
        durable=True,
        queue_arguments={
            "x-queue-type": "quorum",
            "x-message-ttl": config.message_ttl_ms,
            "x-dead-letter-exchange": dlx.name,
            "x-dead-letter-routing-key": dlq_routing_key,
            "x-delivery-limit": config.delivery_limit,
        },
    )
    dead_letter_queue = Queue(
        f"notification.{domain}.events.dlq",
        exchange=dlx,
        routing_key=dlq_routing_key,
        durable=True,
    )
    return DomainTopology(
        domain=domain,
        exchange=exchange,
        queue=queue,
        dead_letter_queue=dead_letter_queue,
    )


def build_topology(config: RabbitMQConfig) -> list[DomainTopology]:
    return [build_domain_topology(domain, config) for domain in DOMAINS]


def declare_topology(channel, config: RabbitMQConfig) -> list[DomainTopology]:
    """Declare exchanges and queues on an open channel; idempotent on the broker."""
    topology = build_topology(config)
    lifecycle_exchange(config).maybe_bind(channel).declare()
    for domain in topology:
        domain.exchange.maybe_bind(channel).declare()
        domain.dead_letter_queue.maybe_bind(channel).declare()
        domain.queue.maybe_bind(channel).declare()
    return topology
