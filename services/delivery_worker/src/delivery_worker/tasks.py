"""Celery tasks for notification delivery."""

import datetime
import logging
from uuid import UUID

from delivery_worker.celery import app
from delivery_worker.digest import DigestService
from delivery_worker.dispatcher import Dispatcher
from delivery_worker.preferences import PreferenceService
from delivery_worker.reporting import DeliveryReporter

logger = logging.getLogger(__name__)


def _dispatcher() -> Dispatcher:
    return app.conf._dispatcher


@app.task(name="delivery_worker.tasks.send_notification")
def send_notification(notification_id: str, delivery_id: str | None = None) -> str:
    """Deliver a single notification.

    Enqueued by event intake with just a ``notification_id``; retries
    re-enqueue it with the ``delivery_id`` of the record being resumed.
    Redelivery of the same message is harmless.
    """
    result = _dispatcher().dispatch(
        UUID(notification_id),
        UUID(delivery_id) if delivery_id else None,
    )
    return str(result)


@app.task(name="delivery_worker.tasks.check_delivery_status")
def check_delivery_status(delivery_id: str) -> str:
    """Poll the carrier for a delivery awaiting asynchronous confirmation."""
    return str(_dispatcher().check_status(UUID(delivery_id)))


@app.task(name="delivery_worker.tasks.cancel_notification")
def cancel_notification(notification_id: str, reason: str | None = None) -> str:
    return str(_dispatcher().cancel(UUID(notification_id), reason))


@app.task(name="delivery_worker.tasks.requeue_overdue_retries")
def requeue_overdue_retries() -> int:
    return _dispatcher().requeue_overdue()


# -- preferences ---------------------------------------------------------------
#
# Each returns the number of preference rows written. Omitting ``channel`` or
# ``notification_type`` applies the change to every combination for the user.


def _preferences() -> PreferenceService:
    return app.conf._preference_service


@app.task(name="delivery_worker.tasks.opt_out")
def opt_out(
    user_id: str,
    channel: str | None = None,
    notification_type: str | None = None,
    reason: str | None = None,
) -> int:
    return len(_preferences().opt_out(UUID(user_id), channel, notification_type, reason))


@app.task(name="delivery_worker.tasks.opt_in")
def opt_in(
    user_id: str, channel: str | None = None, notification_type: str | None = None
) -> int:
    return len(_preferences().opt_in(UUID(user_id), channel, notification_type))


@app.task(name="delivery_worker.tasks.set_global_opt_out")
def set_global_opt_out(user_id: str, opted_out: bool, reason: str | None = None) -> int:
    return len(_preferences().set_global_opt_out(UUID(user_id), opted_out, reason))


@app.task(name="delivery_worker.tasks.set_quiet_hours")
def set_quiet_hours(
    user_id: str,
    start: str,
    end: str,
    timezone: str = "UTC",
    channel: str | None = None,
    notification_type: str | None = None,
) -> int:
    """Enable quiet hours; ``start`` and ``end`` are local ``HH:MM`` times."""
    return len(
        _preferences().set_quiet_hours(
            UUID(user_id),
            datetime.time.fromisoformat(start),
            datetime.time.fromisoformat(end),
            timezone,
            channel,
            notification_type,
        )
    )


@app.task(name="delivery_worker.tasks.disable_quiet_hours")
def disable_quiet_hours(
    user_id: str, channel: str | None = None, notification_type: str | None = None
) -> int:
    return len(_preferences().disable_quiet_hours(UUID(user_id), channel, notification_type))


@app.task(name="delivery_worker.tasks.update_preferences")
def update_preferences(
    user_id: str,
    changes: dict[str, object],
    channel: str | None = None,
    notification_type: str | None = None,
) -> int:
    return len(_preferences().update(UUID(user_id), channel, notification_type, **changes))


@app.task(name="delivery_worker.tasks.set_digest")
def set_digest(
    user_id: str,
    frequency: str | None,
    channel: str | None = None,
    notification_type: str | None = None,
) -> int:
    return len(_preferences().set_digest(UUID(user_id), frequency, channel, notification_type))


# -- digests and reporting -------------------------------------------------------


@app.task(name="delivery_worker.tasks.compile_digests")
def compile_digests(frequency: str) -> int:
    digests: DigestService = app.conf._digest_service
    return digests.compile(frequency)


@app.task(name="delivery_worker.tasks.delivery_statistics")
def delivery_statistics(start: str, end: str) -> dict:
    """Statistics for records first attempted in ``[start, end)``, ISO-8601 bounds."""
    reporter: DeliveryReporter = app.conf._reporter
    stats = reporter.statistics(
        datetime.datetime.fromisoformat(start), datetime.datetime.fromisoformat(end)
    )
    return stats.model_dump(mode="json")


@app.task(name="delivery_worker.tasks.high_attempt_deliveries")
def high_attempt_deliveries(min_attempts: int = 3, limit: int = 100) -> list[dict]:
    reporter: DeliveryReporter = app.conf._reporter
    return [
        row.model_dump(mode="json")
        for row in reporter.high_attempt_deliveries(min_attempts, limit)
    ]
