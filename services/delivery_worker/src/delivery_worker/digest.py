"""Periodic digests: fold held notifications into one message per user and channel."""

import datetime
import logging
import uuid
from collections import defaultdict
from collections.abc import Callable

from jinja2 import Environment, StrictUndefined
from sqlalchemy.orm import Session, sessionmaker

from shared.db.models import Notification
from shared.db.repositories import NotificationRepository
from shared.enums import DigestFrequency, NotificationStatus, NotificationType, Priority

from delivery_worker.config import DigestConfig
from delivery_worker.requeue import CeleryRequeuer

logger = logging.getLogger(__name__)

_PERIOD = {
    DigestFrequency.DAILY: datetime.timedelta(days=1),
    DigestFrequency.WEEKLY: datetime.timedelta(weeks=1),
}

# Plain text for every channel, so no HTML escaping.
_env = Environment(autoescape=False, undefined=StrictUndefined, trim_blocks=True)

_BODY = _env.from_string(
    """\
{{ total }} notifications since {{ since }}.
{% for type, items in groups %}

{{ type }} ({{ items | length }})
{% for item in items %}
- {{ item.subject or item.excerpt }}
{% endfor %}
{% endfor %}"""
)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def _excerpt(text: str, length: int) -> str:
    if len(text) <= length:
        return text
    return text[:length] + "..."


class DigestService:
    """Compiles held notifications into digest notifications.

    Every notification held up to the run time is included, however old,
    so a missed run never strands anything. The originals are linked to
    their digest and marked DIGESTED in the same commit that creates it;
    the digest is enqueued for dispatch only after that commit.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        requeuer: CeleryRequeuer,
        config: DigestConfig | None = None,
        clock: Callable[[], datetime.datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._requeuer = requeuer
        self._config = config if config is not None else DigestConfig()
        self._clock = clock

    def compile(self, frequency: str, now: datetime.datetime | None = None) -> int:
        """Create and enqueue the digests due for ``frequency``; returns how many."""
        frequency = DigestFrequency(frequency)
        now = now or self._clock()

        with self._session_factory() as session:
            repo = NotificationRepository(session)
            pending = repo.get_digest_pending(frequency, now, limit=self._config.batch_size)

            groups: dict[tuple[uuid.UUID, str], list[Notification]] = defaultdict(list)
            for notification in pending:
                groups[(notification.user_id, notification.channel)].append(notification)

            digests = []
            for (user_id, channel), items in groups.items():
                digest = repo.create(self._build(frequency, user_id, channel, items, now))
                repo.link_to_digest(items, digest.id)
                digests.append(digest)
            session.commit()

        for digest in digests:
            self._requeuer.schedule_dispatch(str(digest.id), priority=digest.priority)

        if digests:
            logger.info(
                "Digests compiled",
                extra={
                    "frequency": frequency,
                    "digests": len(digests),
                    "notifications": len(pending),
                },
            )
        return len(digests)

    def _build(
        self,
        frequency: DigestFrequency,
        user_id: uuid.UUID,
        channel: str,
        items: list[Notification],
        now: datetime.datetime,
    ) -> Notification:
        by_type: dict[str, list[dict[str, str]]] = defaultdict(list)
        for item in items:
            by_type[item.type].append(
                {
                    "subject": item.subject or "",
                    "excerpt": _excerpt(item.body, self._config.excerpt_length),
                }
            )
        since = min(item.created_at for item in items)
        since = min(since, now - _PERIOD[frequency])

        return Notification(
            id=uuid.uuid4(),
            user_id=user_id,
            type=NotificationType.DIGEST,
            channel=channel,
            priority=Priority.NORMAL,
            subject=f"Your {frequency} digest: {len(items)} notifications",
            body=_BODY.render(
                total=len(items),
                since=since.date().isoformat(),
                groups=sorted(
                    (t.replace("_", " ").capitalize(), entries)
                    for t, entries in by_type.items()
                ),
            ),
            # The latest address wins if the user changed it meanwhile.
            recipient_address=items[-1].recipient_address,
            status=NotificationStatus.PENDING,
            source_event_id=uuid.uuid4(),
            source_event_type=f"digest.{frequency}",
            correlation_id=f"digest-{frequency}-{user_id}-{now:%Y%m%d}",
            data={
                "frequency": str(frequency),
                "notification_ids": [str(item.id) for item in items],
            },
        )
