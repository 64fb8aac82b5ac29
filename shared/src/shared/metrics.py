"""Prometheus metrics sink shared by the worker and intake services.

Each ``DeliveryMetrics`` owns its own ``CollectorRegistry`` and is passed
explicitly to the components that record into it. Prometheus collectors are
thread-safe, so one instance serves every task thread in a worker process.
"""

from prometheus_client import CollectorRegistry, Counter, Histogram

_LATENCY_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


class DeliveryMetrics:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        self.dispatch_outcomes = Counter(
            "notification_dispatch_outcomes_total",
            "Dispatch results by channel and outcome",
            ["channel", "outcome"],
            registry=self.registry,
        )
        self.gate_denials = Counter(
            "notification_gate_denials_total",
            "Preference gate denials by channel and reason",
            ["channel", "reason"],
            registry=self.registry,
        )
        self.retries_scheduled = Counter(
            "notification_retries_scheduled_total",
            "Delayed re-enqueues after retryable failures",
            ["channel", "failure_class"],
            registry=self.registry,
        )
        self.provider_latency = Histogram(
            "notification_provider_latency_seconds",
            "Wall-clock duration of provider calls",
            ["provider"],
            buckets=_LATENCY_BUCKETS,
            registry=self.registry,
        )
        self.lifecycle_events = Counter(
            "notification_lifecycle_events_total",
            "Lifecycle events by type and publish result",
            ["event_type", "result"],
            registry=self.registry,
        )
        self.poison_messages = Counter(
            "notification_poison_messages_total",
            "Inbound messages rejected to the dead-letter exchange",
            ["queue"],
            registry=self.registry,
        )
        self.configuration_errors = Counter(
            "notification_configuration_errors_total",
            "Dispatches refused because a provider is not configured",
            ["provider"],
            registry=self.registry,
        )
        self.notifications_created = Counter(
            "notification_created_total",
            "Notifications created from inbound events",
            ["channel", "notification_type"],
            registry=self.registry,
        )

    def record_dispatch(self, channel: str, outcome: str) -> None:
        self.dispatch_outcomes.labels(channel=channel, outcome=outcome).inc()

    def record_gate_denial(self, channel: str, reason: str) -> None:
        self.gate_denials.labels(channel=channel, reason=reason).inc()

    def record_retry(self, channel: str, failure_class: str) -> None:
        self.retries_scheduled.labels(channel=channel, failure_class=failure_class).inc()

    def observe_provider_latency(self, provider: str, seconds: float) -> None:
        self.provider_latency.labels(provider=provider).observe(seconds)

    def record_lifecycle_event(self, event_type: str, result: str) -> None:
        self.lifecycle_events.labels(event_type=event_type, result=result).inc()

    def record_poison_message(self, queue: str) -> None:
        self.poison_messages.labels(queue=queue).inc()

    def record_configuration_error(self, provider: str) -> None:
        self.configuration_errors.labels(provider=provider).inc()

    def record_notification_created(self, channel: str, notification_type: str) -> None:
        self.notifications_created.labels(
            channel=channel, notification_type=notification_type
        ).inc()

    def sample(self, name: str, labels: dict[str, str]) -> float:
        """Current value of one sample, 0.0 if it was never recorded."""
        value = self.registry.get_sample_value(name, labels)
        return value if value is not None else 0.0
