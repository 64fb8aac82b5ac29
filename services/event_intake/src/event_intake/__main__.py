"""Entry point for the Event Intake service.

Consumes domain events from the per-domain AMQP queues, creates
notifications and enqueues their dispatch on the delivery worker via Celery.
"""

import logging
import signal

from celery import Celery
from kombu import Connection
from prometheus_client import start_http_server

from shared.config import PostgresConfig, RabbitMQConfig
from shared.db.base import create_db_engine, create_session_factory
from shared.metrics import DeliveryMetrics

from event_intake.config import CeleryConfig, IntakeConfig
from event_intake.consumer import DomainEventConsumer
from event_intake.handler import EventHandler
from event_intake.log import setup_logging

logger = logging.getLogger(__name__)


def main() -> None:
    intake_config = IntakeConfig()
    setup_logging(intake_config.log_level)

    rabbitmq_config = RabbitMQConfig()
    postgres_config = PostgresConfig()
    celery_config = CeleryConfig()

    # Database
    engine = create_db_engine(postgres_config.dsn, pool_pre_ping=True)
    session_factory = create_session_factory(engine)

    # Celery (used only for send_task, no worker here)
    celery_app = Celery(broker=celery_config.broker_url)

    metrics = DeliveryMetrics()
    if intake_config.metrics_port is not None:
        start_http_server(intake_config.metrics_port, registry=metrics.registry)

    handler = EventHandler(session_factory, celery_app, metrics)
    connection = Connection(rabbitmq_config.url)
    consumer = DomainEventConsumer(connection, handler, rabbitmq_config, metrics)

    def _shutdown(signum: int, _frame: object) -> None:
        sig_name = signal.Signals(signum).name
        logger.info("Received %s, shutting down...", sig_name)
        consumer.should_stop = True

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    logger.info("Event Intake started")

    try:
        consumer.run()
    finally:
        connection.release()
        engine.dispose()
        logger.info("Event Intake stopped")


if __name__ == "__main__":
    main()
