"""Celery application setup and worker initialization."""

import logging
from dataclasses import dataclass

from celery import Celery, signals
from celery.schedules import crontab
from kombu import Connection, Queue
from prometheus_client import start_http_server
from redis import Redis

from shared.config import PostgresConfig, RabbitMQConfig, RedisConfig
from shared.db.base import create_db_engine, create_session_factory
from shared.enums import DigestFrequency
from shared.metrics import DeliveryMetrics

from delivery_worker.config import (
    CeleryConfig,
    DeliveryConfig,
    DigestConfig,
    PreferenceConfig,
    RetryConfig,
)
from delivery_worker.digest import DigestService
from delivery_worker.dispatcher import Dispatcher
from delivery_worker.log import setup_logging
from delivery_worker.preferences import (
    PreferenceGate,
    PreferenceService,
    PreferenceStore,
    RedisPreferenceCache,
)
from delivery_worker.providers import create_default_registry
from delivery_worker.publisher import LifecycleEventPublisher
from delivery_worker.rate_limiter import RateLimiter
from delivery_worker.reporting import DeliveryReporter
from delivery_worker.requeue import CeleryRequeuer
from delivery_worker.retry import RetryPolicy

logger = logging.getLogger(__name__)

celery_config = CeleryConfig()
digest_config = DigestConfig()

app = Celery("delivery_worker", broker=celery_config.broker_url)

app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    timezone="UTC",
    task_queues=[
        Queue("critical"),
        Queue("high"),
        Queue("normal"),
        Queue("low"),
    ],
    task_default_queue="normal",
    beat_schedule={
        "requeue-overdue-retries": {
            "task": "delivery_worker.tasks.requeue_overdue_retries",
            "schedule": float(celery_config.sweep_interval_seconds),
            "options": {"queue": "low"},
        },
        "compile-daily-digests": {
            "task": "delivery_worker.tasks.compile_digests",
            "schedule": crontab(minute=0, hour=digest_config.send_hour),
            "kwargs": {"frequency": DigestFrequency.DAILY.value},
            "options": {"queue": "low"},
        },
        "compile-weekly-digests": {
            "task": "delivery_worker.tasks.compile_digests",
            "schedule": crontab(minute=0, hour=digest_config.send_hour, day_of_week="mon"),
            "kwargs": {"frequency": DigestFrequency.WEEKLY.value},
            "options": {"queue": "low"},
        },
    },
)

app.autodiscover_tasks(["delivery_worker"])


@dataclass(frozen=True, slots=True)
class WorkerServices:
    dispatcher: Dispatcher
    preferences: PreferenceService
    digests: DigestService
    reporter: DeliveryReporter


def build_services(
    delivery_config: DeliveryConfig,
    metrics: DeliveryMetrics,
) -> WorkerServices:
    """Wire the dispatcher and the services around it from environment config."""
    engine = create_db_engine(PostgresConfig().dsn, pool_pre_ping=True)
    session_factory = create_session_factory(engine)

    redis_config = RedisConfig()
    redis_client = Redis(
        host=redis_config.host,
        port=redis_config.port,
        db=redis_config.db,
    )

    preference_config = PreferenceConfig()
    cache = RedisPreferenceCache(
        redis_client,
        ttl_seconds=preference_config.cache_ttl_seconds,
        prefix=preference_config.cache_key_prefix,
        invalidation_seconds=preference_config.cache_invalidation_seconds,
    )

    rabbitmq_config = RabbitMQConfig()
    publisher = LifecycleEventPublisher(
        Connection(rabbitmq_config.url), rabbitmq_config, metrics
    )
    requeuer = CeleryRequeuer(app)

    dispatcher = Dispatcher(
        session_factory=session_factory,
        registry=create_default_registry(redis_client),
        gate=PreferenceGate(session_factory, PreferenceStore(cache)),
        rate_limiter=RateLimiter(
            redis_client, window_seconds=delivery_config.rate_limit_window_seconds
        ),
        retry_policy=RetryPolicy(RetryConfig()),
        requeuer=requeuer,
        publisher=publisher,
        metrics=metrics,
        config=delivery_config,
    )
    return WorkerServices(
        dispatcher=dispatcher,
        preferences=PreferenceService(session_factory, cache),
        digests=DigestService(session_factory, requeuer, digest_config),
        reporter=DeliveryReporter(session_factory),
    )


@signals.worker_init.connect
def _init_worker(**_kwargs: object) -> None:
    """Initialize shared resources once per worker process."""
    delivery_config = DeliveryConfig()
    setup_logging(delivery_config.log_level)

    metrics = DeliveryMetrics()
    if delivery_config.metrics_port:
        start_http_server(delivery_config.metrics_port, registry=metrics.registry)

    services = build_services(delivery_config, metrics)

    app.conf.update(
        _dispatcher=services.dispatcher,
        _preference_service=services.preferences,
        _digest_service=services.digests,
        _reporter=services.reporter,
        _metrics=metrics,
        _delivery_config=delivery_config,
    )
    logger.info("Worker initialized")


@signals.worker_shutdown.connect
def _shutdown_worker(**_kwargs: object) -> None:
    """Clean up resources on worker shutdown."""
    dispatcher: Dispatcher | None = getattr(app.conf, "_dispatcher", None)
    if dispatcher is not None:
        dispatcher.close()
    logger.info("Worker shut down")
