"""Delivery provider contract and attempt outcome."""

from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol, Self

from shared.db.models import DeliveryRecord, Notification
from shared.enums import DeliveryStatus, FailureClass


class OutcomeStatus(StrEnum):
    SUCCESS = "success"
    # Carrier took the message; the final state arrives via check_status.
    ACCEPTED = "accepted"
    FAILED = "failed"
    BOUNCED = "bounced"


@dataclass(frozen=True, slots=True)
class DeliveryOutcome:
    """Result of one provider call.

    Failures always carry a ``failure_class``; the retry policy reads that
    and never the message text.
    """

    status: OutcomeStatus
    failure_class: FailureClass | None = None
    external_id: str | None = None
    provider_message_id: str | None = None
    response_code: str | None = None
    latency_ms: int | None = None
    error_message: str | None = None
    bounce_reason: str | None = None

    @classmethod
    def success(cls, **fields) -> Self:
        return cls(status=OutcomeStatus.SUCCESS, **fields)

    @classmethod
    def accepted(cls, **fields) -> Self:
        return cls(status=OutcomeStatus.ACCEPTED, **fields)

    @classmethod
    def failure(
        cls, failure_class: FailureClass, error_message: str | None = None, **fields
    ) -> Self:
        return cls(
            status=OutcomeStatus.FAILED,
            failure_class=failure_class,
            error_message=error_message,
            **fields,
        )

    @classmethod
    def bounced(cls, bounce_reason: str | None = None, **fields) -> Self:
        return cls(status=OutcomeStatus.BOUNCED, bounce_reason=bounce_reason, **fields)

    @classmethod
    def from_record(cls, record: DeliveryRecord) -> Self:
        """The record's last known state, used when a status query fails."""
        common = {
            "external_id": record.external_id,
            "provider_message_id": record.provider_message_id,
            "response_code": record.response_code,
        }
        if record.status == DeliveryStatus.SUCCESS:
            return cls.success(**common)
        if record.status == DeliveryStatus.BOUNCED:
            return cls.bounced(record.bounce_reason, **common)
        if record.status == DeliveryStatus.FAILED and record.error_code:
            return cls.failure(
                FailureClass(record.error_code), record.error_message, **common
            )
        return cls.accepted(**common)

    @property
    def retryable(self) -> bool:
        return self.failure_class is not None and self.failure_class.retryable


class DeliveryProvider(Protocol):
    """Capability interface implemented once per channel.

    ``deliver`` performs exactly one attempt and never retries. Carrier
    errors are returned as classified ``DeliveryOutcome`` values rather
    than raised.
    """

    channel: str
    name: str

    def can_handle(self, notification: Notification) -> bool: ...

    def deliver(self, notification: Notification) -> DeliveryOutcome: ...

    def check_status(self, record: DeliveryRecord) -> DeliveryOutcome: ...

    def is_available(self) -> bool: ...

    def rate_limit(self) -> int: ...


def truncate(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[: limit - 3] + "..."
