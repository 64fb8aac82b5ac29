"""Read-only delivery reporting over the delivery records table."""

import datetime
from collections import defaultdict
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.orm import Session, sessionmaker

from shared.db.repositories import DeliveryRecordRepository
from shared.enums import DeliveryStatus


class ChannelStatistics(BaseModel):
    channel: str
    total: int
    by_status: dict[str, int]
    success_rate: float
    avg_latency_ms: float | None = None


class DeliveryStatistics(BaseModel):
    start: datetime.datetime
    end: datetime.datetime
    total: int
    channels: list[ChannelStatistics]


class HighAttemptDelivery(BaseModel):
    delivery_id: UUID
    notification_id: UUID
    channel: str
    status: str
    attempt_count: int
    error_code: str | None = None
    error_message: str | None = None


class DeliveryReporter:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def statistics(
        self, start: datetime.datetime, end: datetime.datetime
    ) -> DeliveryStatistics:
        """Per-channel counts by status, success rate and mean provider latency.

        Covers records first attempted in ``[start, end)``. The success rate
        is successes over all records in the range, in-flight ones included.
        """
        with self._session_factory() as session:
            records = DeliveryRecordRepository(session)
            counts: dict[str, dict[str, int]] = defaultdict(dict)
            for row in records.get_statistics(start, end):
                counts[row.channel][row.status] = row.count

            channels = []
            for channel in sorted(counts):
                by_status = counts[channel]
                total = sum(by_status.values())
                channels.append(
                    ChannelStatistics(
                        channel=channel,
                        total=total,
                        by_status=by_status,
                        success_rate=by_status.get(DeliveryStatus.SUCCESS, 0) / total,
                        avg_latency_ms=records.average_latency_ms(channel, start, end),
                    )
                )

        return DeliveryStatistics(
            start=start,
            end=end,
            total=sum(c.total for c in channels),
            channels=channels,
        )

    def high_attempt_deliveries(
        self, min_attempts: int, limit: int = 100
    ) -> list[HighAttemptDelivery]:
        with self._session_factory() as session:
            rows = DeliveryRecordRepository(session).get_high_attempt(min_attempts, limit)
            return [
                HighAttemptDelivery(
                    delivery_id=row.id,
                    notification_id=row.notification_id,
                    channel=row.channel,
                    status=row.status,
                    attempt_count=row.attempt_count,
                    error_code=row.error_code,
                    error_message=row.error_message,
                )
                for row in rows
            ]
