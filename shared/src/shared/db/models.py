"""SQLAlchemy ORM models for the notification delivery engine."""

import datetime
import uuid

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from shared.db.base import Base
from shared.db.types import JSONBCompatible, UTCDateTime
from shared.enums import DeliveryStatus, NotificationStatus, Priority


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Notification(Base):
    """One user-facing communication intent on one channel.

    Content is fixed at creation; only ``status``, ``skip_reason``,
    ``digest_id`` and ``retired_at`` change afterwards.
    """

    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    priority: Mapped[str] = mapped_column(
        String(16), nullable=False, default=Priority.NORMAL
    )
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    recipient_address: Mapped[str] = mapped_column(String(512), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=NotificationStatus.PENDING, index=True
    )
    skip_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)
    source_event_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    source_event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    digest_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    data: Mapped[dict] = mapped_column(JSONBCompatible, nullable=False, default=dict)
    created_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )
    retired_at: Mapped[datetime.datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )

    __table_args__ = (
        UniqueConstraint(
            "source_event_id",
            "type",
            "channel",
            name="uq_notification_event_type_channel",
        ),
    )


class DeliveryRecord(Base):
    """Durable state of one attempt lineage for a notification on a channel."""

    __tablename__ = "delivery_records"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    notification_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("notifications.id"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    notification_type: Mapped[str] = mapped_column(String(64), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    recipient_address: Mapped[str] = mapped_column(String(512), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=DeliveryStatus.PENDING
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    attempted_at: Mapped[datetime.datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    delivered_at: Mapped[datetime.datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    failed_at: Mapped[datetime.datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    bounced_at: Mapped[datetime.datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    # First moment the provider took the message (accepted or delivered).
    sent_at: Mapped[datetime.datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    next_attempt_at: Mapped[datetime.datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    external_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(
        String(256), nullable=True
    )
    provider_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    response_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    bounce_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status_checks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "notification_id", "channel", name="uq_delivery_notification_channel"
        ),
        Index("ix_delivery_due_retries", "status", "next_attempt_at"),
        Index(
            "ix_delivery_frequency_window",
            "user_id",
            "channel",
            "notification_type",
            "sent_at",
        ),
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_terminal(self) -> bool:
        return DeliveryStatus(self.status).is_terminal

    @property
    def awaiting_confirmation(self) -> bool:
        """Carrier accepted the attempt; the outcome arrives via status polling."""
        return (
            self.status == DeliveryStatus.IN_PROGRESS
            and self.provider_message_id is not None
            and self.next_attempt_at is None
        )


class Preference(Base):
    """Per (user, channel, type) delivery policy."""

    __tablename__ = "notification_preferences"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    global_opt_out: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    quiet_hours_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    quiet_hours_start: Mapped[datetime.time | None] = mapped_column(
        Time, nullable=True
    )
    quiet_hours_end: Mapped[datetime.time | None] = mapped_column(
        Time, nullable=True
    )
    timezone: Mapped[str] = mapped_column(
        String(64), nullable=False, default="UTC"
    )
    frequency_limit_per_hour: Mapped[int | None] = mapped_column(
        Integer, nullable=True
    )
    frequency_limit_per_day: Mapped[int | None] = mapped_column(
        Integer, nullable=True
    )
    minimum_priority: Mapped[str] = mapped_column(
        String(16), nullable=False, default=Priority.LOW
    )
    opt_out_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # None: deliver individually; otherwise a DigestFrequency value.
    digest_frequency: Mapped[str | None] = mapped_column(String(16), nullable=True)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "channel", "type", name="uq_preference_user_channel_type"
        ),
    )


class NotificationCancellation(Base):
    """Cancellation sentinel; its presence stops further delivery work."""

    __tablename__ = "notification_cancellations"

    notification_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("notifications.id"), primary_key=True
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
