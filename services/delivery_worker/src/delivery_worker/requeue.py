"""Delayed re-enqueue of dispatch and status-check tasks through Celery."""

import datetime
import logging

from celery import Celery

from shared.enums import Priority

logger = logging.getLogger(__name__)

SEND_NOTIFICATION_TASK = "delivery_worker.tasks.send_notification"
CHECK_STATUS_TASK = "delivery_worker.tasks.check_delivery_status"


def queue_for_priority(priority: str) -> str:
    """Celery queue name for a notification priority; unknown values map to normal."""
    try:
        return Priority(priority).value
    except ValueError:
        return Priority.NORMAL.value


class CeleryRequeuer:
    """Places work back on the broker so it becomes visible only when due.

    Workers never poll for due retries; the broker holds the message until
    its countdown or ETA passes.
    """

    def __init__(self, app: Celery) -> None:
        self._app = app

    def schedule_dispatch(
        self,
        notification_id: str,
        *,
        delivery_id: str | None = None,
        priority: str = Priority.NORMAL,
        countdown: float | None = None,
        eta: datetime.datetime | None = None,
    ) -> None:
        kwargs: dict[str, str] = {"notification_id": notification_id}
        if delivery_id is not None:
            kwargs["delivery_id"] = delivery_id
        self._app.send_task(
            SEND_NOTIFICATION_TASK,
            kwargs=kwargs,
            queue=queue_for_priority(priority),
            countdown=countdown,
            eta=eta,
        )
        logger.debug(
            "Dispatch scheduled",
            extra={
                "notification_id": notification_id,
                "delivery_id": delivery_id,
                "countdown": countdown,
                "eta": eta.isoformat() if eta else None,
            },
        )

    def schedule_status_check(
        self,
        delivery_id: str,
        *,
        priority: str = Priority.NORMAL,
        countdown: float,
    ) -> None:
        self._app.send_task(
            CHECK_STATUS_TASK,
            kwargs={"delivery_id": delivery_id},
            queue=queue_for_priority(priority),
            countdown=countdown,
        )
