"""Data access repositories with constructor-injected sessions."""

import datetime
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from shared.db.models import (
    DeliveryRecord,
    Notification,
    NotificationCancellation,
    Preference,
)
from shared.enums import DeliveryStatus, NotificationStatus

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}

_NOT_SENT = (DeliveryStatus.FAILED, DeliveryStatus.BOUNCED, DeliveryStatus.CANCELLED)


@dataclass(frozen=True, slots=True)
class DeliveryStatistic:
    channel: str
    status: str
    count: int
    avg_latency_ms: float | None


class NotificationRepository:
    """Data access for the notifications table."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, notification: Notification) -> Notification:
        """Add a new notification and flush to populate defaults."""
        self._session.add(notification)
        self._session.flush()
        return notification

    def get_by_id(self, notification_id: UUID) -> Notification | None:
        return self._session.get(Notification, notification_id)

    def get_by_source_event(self, source_event_id: UUID) -> list[Notification]:
        """All notifications created from one inbound event.

        Used for idempotency: one query instead of a lookup per route.
        """
        stmt = select(Notification).where(
            Notification.source_event_id == source_event_id,
        )
        return list(self._session.scalars(stmt).all())

    def update_status(
        self,
        notification: Notification,
        status: str,
        *,
        skip_reason: str | None = None,
    ) -> Notification:
        notification.status = status
        if skip_reason is not None:
            notification.skip_reason = skip_reason
        self._session.flush()
        return notification

    def get_digest_pending(
        self, frequency: str, until: datetime.datetime, limit: int = 1000
    ) -> list[Notification]:
        """Notifications held for a digest whose preference asks for ``frequency``.

        Oldest first. Rows locked by a concurrent digest run are skipped on
        PostgreSQL.
        """
        stmt = (
            select(Notification)
            .join(
                Preference,
                (Preference.user_id == Notification.user_id)
                & (Preference.channel == Notification.channel)
                & (Preference.type == Notification.type),
            )
            .where(
                Notification.status == NotificationStatus.DIGEST_PENDING,
                Notification.created_at <= until,
                Preference.digest_frequency == frequency,
            )
            .order_by(Notification.created_at.asc())
            .limit(limit)
            .with_for_update(of=Notification, skip_locked=True)
        )
        return list(self._session.scalars(stmt).all())

    def link_to_digest(self, notifications: list[Notification], digest_id: UUID) -> None:
        for notification in notifications:
            notification.digest_id = digest_id
            notification.status = NotificationStatus.DIGESTED
        self._session.flush()


class DeliveryRecordRepository:
    """Data access for delivery records."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, record: DeliveryRecord) -> DeliveryRecord:
        self._session.add(record)
        self._session.flush()
        return record

    def get_by_id(self, delivery_id: UUID) -> DeliveryRecord | None:
        return self._session.get(DeliveryRecord, delivery_id)

    def get_for_notification(
        self, notification_id: UUID, channel: str
    ) -> DeliveryRecord | None:
        stmt = select(DeliveryRecord).where(
            DeliveryRecord.notification_id == notification_id,
            DeliveryRecord.channel == channel,
        )
        return self._session.scalars(stmt).first()

    def count_sent_since(
        self,
        user_id: UUID,
        channel: str,
        notification_type: str,
        since: datetime.datetime,
    ) -> int:
        """Count sends for (user, channel, type) handed to a provider at or after ``since``.

        Carrier-accepted attempts still waiting for confirmation count;
        failed, bounced and cancelled ones do not. Served by the
        frequency-window index.
        """
        stmt = select(func.count()).select_from(DeliveryRecord).where(
            DeliveryRecord.user_id == user_id,
            DeliveryRecord.channel == channel,
            DeliveryRecord.notification_type == notification_type,
            DeliveryRecord.sent_at >= since,
            DeliveryRecord.status.not_in(_NOT_SENT),
        )
        return self._session.scalar(stmt) or 0

    def get_statistics(
        self, start: datetime.datetime, end: datetime.datetime
    ) -> list[DeliveryStatistic]:
        """Record counts and mean provider latency per (channel, status).

        Covers records first attempted in ``[start, end)``.
        """
        stmt = (
            select(
                DeliveryRecord.channel,
                DeliveryRecord.status,
                func.count(),
                func.avg(DeliveryRecord.latency_ms),
            )
            .where(
                DeliveryRecord.attempted_at >= start,
                DeliveryRecord.attempted_at < end,
            )
            .group_by(DeliveryRecord.channel, DeliveryRecord.status)
            .order_by(DeliveryRecord.channel, DeliveryRecord.status)
        )
        return [
            DeliveryStatistic(
                channel=channel,
                status=status,
                count=count,
                avg_latency_ms=float(avg) if avg is not None else None,
            )
            for channel, status, count, avg in self._session.execute(stmt)
        ]

    def average_latency_ms(
        self, channel: str, start: datetime.datetime, end: datetime.datetime
    ) -> float | None:
        stmt = select(func.avg(DeliveryRecord.latency_ms)).where(
            DeliveryRecord.channel == channel,
            DeliveryRecord.latency_ms.is_not(None),
            DeliveryRecord.attempted_at >= start,
            DeliveryRecord.attempted_at < end,
        )
        avg = self._session.scalar(stmt)
        return float(avg) if avg is not None else None

    def get_high_attempt(self, min_attempts: int, limit: int = 100) -> list[DeliveryRecord]:
        """Records that needed at least ``min_attempts`` attempts, most attempts first."""
        stmt = (
            select(DeliveryRecord)
            .where(DeliveryRecord.attempt_count >= min_attempts)
            .order_by(DeliveryRecord.attempt_count.desc(), DeliveryRecord.created_at.desc())
            .limit(limit)
        )
        return list(self._session.scalars(stmt).all())

    def get_overdue_retries(
        self, cutoff: datetime.datetime, limit: int = 100
    ) -> list[DeliveryRecord]:
        """Records waiting for a retry whose next attempt is at or before ``cutoff``.

        Ordered oldest-first, capped by limit. Served by the due-retries index.
        """
        stmt = (
            select(DeliveryRecord)
            .where(
                DeliveryRecord.status == DeliveryStatus.IN_PROGRESS,
                DeliveryRecord.next_attempt_at <= cutoff,
            )
            .order_by(DeliveryRecord.next_attempt_at.asc())
            .limit(limit)
        )
        return list(self._session.scalars(stmt).all())


class PreferenceRepository:
    """Data access for per (user, channel, type) preferences."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get(
        self, user_id: UUID, channel: str, notification_type: str
    ) -> Preference | None:
        stmt = select(Preference).where(
            Preference.user_id == user_id,
            Preference.channel == channel,
            Preference.type == notification_type,
        )
        return self._session.scalars(stmt).first()

    def get_or_create_default(
        self, user_id: UUID, channel: str, notification_type: str
    ) -> tuple[Preference, bool]:
        """Fetch the preference, inserting permissive defaults when absent.

        The insert is ``ON CONFLICT DO NOTHING`` on the natural key, so two
        concurrent first evaluations converge on the same row. Returns the
        row and whether this call created it.
        """
        existing = self.get(user_id, channel, notification_type)
        if existing is not None:
            return existing, False

        dialect = self._session.get_bind().dialect.name
        insert = _UPSERT_INSERTS.get(dialect)
        if insert is None:
            raise NotImplementedError(f"Preference upsert not supported on {dialect!r}")

        stmt = (
            insert(Preference)
            .values(user_id=user_id, channel=channel, type=notification_type)
            .on_conflict_do_nothing(index_elements=["user_id", "channel", "type"])
        )
        result = self._session.execute(stmt)
        created = result.rowcount == 1

        preference = self.get(user_id, channel, notification_type)
        if preference is None:
            raise RuntimeError("Preference row missing after upsert")
        return preference, created

    def list_for_user(self, user_id: UUID) -> list[Preference]:
        stmt = (
            select(Preference)
            .where(Preference.user_id == user_id)
            .order_by(Preference.channel, Preference.type)
        )
        return list(self._session.scalars(stmt).all())


class CancellationRepository:
    """Data access for cancellation sentinels."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, notification_id: UUID) -> NotificationCancellation | None:
        return self._session.get(NotificationCancellation, notification_id)

    def request(
        self,
        notification_id: UUID,
        reason: str | None,
        requested_at: datetime.datetime,
    ) -> NotificationCancellation:
        """Record a cancellation; an existing sentinel is kept as-is."""
        sentinel = self.get(notification_id)
        if sentinel is not None:
            return sentinel
        sentinel = NotificationCancellation(
            notification_id=notification_id,
            reason=reason,
            requested_at=requested_at,
        )
        self._session.add(sentinel)
        self._session.flush()
        return sentinel
