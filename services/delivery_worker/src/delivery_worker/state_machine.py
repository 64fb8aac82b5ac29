"""Delivery record state machine.

::

    PENDING -> IN_PROGRESS -> SUCCESS | FAILED | BOUNCED | CANCELLED
                   ^   |
                   +---+  retryable failure while attempts remain

Terminal records never change again; touching one raises
``TerminalRecordError``. All functions mutate the record in place and leave
committing to the caller, whose version check rejects concurrent writers.
"""

import datetime
from collections.abc import Callable
from enum import StrEnum

from shared.db.models import DeliveryRecord
from shared.enums import DeliveryStatus, FailureClass, NotificationStatus

from delivery_worker.providers.base import DeliveryOutcome, OutcomeStatus

Backoff = Callable[[FailureClass, int], datetime.timedelta]


class InvalidTransitionError(RuntimeError):
    """A transition was requested from a state that does not allow it."""


class TerminalRecordError(InvalidTransitionError):
    """A terminal delivery record was asked to change."""

    def __init__(self, record: DeliveryRecord) -> None:
        super().__init__(
            f"Delivery record {record.id} is terminal ({record.status}) and cannot change"
        )
        self.record_id = record.id
        self.status = record.status


class Transition(StrEnum):
    SUCCEEDED = "succeeded"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    BOUNCED = "bounced"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (Transition.RETRY_SCHEDULED, Transition.AWAITING_CONFIRMATION)


def _ensure_mutable(record: DeliveryRecord) -> None:
    if record.is_terminal:
        raise TerminalRecordError(record)


def start(record: DeliveryRecord, now: datetime.datetime, provider_name: str) -> None:
    """PENDING -> IN_PROGRESS for the first attempt."""
    _ensure_mutable(record)
    if record.status != DeliveryStatus.PENDING:
        raise InvalidTransitionError(
            f"Cannot start delivery record {record.id} in status {record.status}"
        )
    record.status = DeliveryStatus.IN_PROGRESS
    record.attempt_count = 1
    record.attempted_at = now
    record.next_attempt_at = None
    record.provider_name = provider_name


def resume(record: DeliveryRecord, now: datetime.datetime) -> None:
    """Claim an IN_PROGRESS record for its next (already counted) attempt."""
    _ensure_mutable(record)
    if record.status != DeliveryStatus.IN_PROGRESS:
        raise InvalidTransitionError(
            f"Cannot resume delivery record {record.id} in status {record.status}"
        )
    record.attempted_at = now
    record.next_attempt_at = None
    record.provider_message_id = None


def apply_outcome(
    record: DeliveryRecord,
    outcome: DeliveryOutcome,
    now: datetime.datetime,
    backoff: Backoff,
    *,
    cancelled: bool = False,
) -> Transition:
    """Apply one provider outcome to an IN_PROGRESS record.

    With ``cancelled`` set, the outcome is still recorded but nothing is
    left pending: retryable failures and carrier acceptances end as
    CANCELLED instead of scheduling more work.
    """
    _ensure_mutable(record)
    if record.status != DeliveryStatus.IN_PROGRESS:
        raise InvalidTransitionError(
            f"Cannot apply an outcome to delivery record {record.id} in status {record.status}"
        )

    if outcome.external_id is not None:
        record.external_id = outcome.external_id
    if outcome.provider_message_id is not None:
        record.provider_message_id = outcome.provider_message_id
    if outcome.response_code is not None:
        record.response_code = outcome.response_code
    if outcome.latency_ms is not None:
        record.latency_ms = outcome.latency_ms

    if outcome.status == OutcomeStatus.SUCCESS:
        record.status = DeliveryStatus.SUCCESS
        record.delivered_at = now
        if record.sent_at is None:
            record.sent_at = now
        record.next_attempt_at = None
        record.error_code = None
        record.error_message = None
        return Transition.SUCCEEDED

    if outcome.status == OutcomeStatus.BOUNCED:
        record.status = DeliveryStatus.BOUNCED
        record.bounced_at = now
        record.bounce_reason = outcome.bounce_reason
        record.next_attempt_at = None
        return Transition.BOUNCED

    if outcome.status == OutcomeStatus.ACCEPTED:
        if record.sent_at is None:
            record.sent_at = now
        if cancelled:
            return _cancel(record, now)
        record.next_attempt_at = None
        return Transition.AWAITING_CONFIRMATION

    failure_class = outcome.failure_class or FailureClass.PROVIDER_ERROR
    record.error_code = failure_class.value
    record.error_message = outcome.error_message

    if failure_class.retryable and cancelled:
        return _cancel(record, now)

    if failure_class.retryable and record.attempt_count < record.max_attempts:
        record.attempt_count += 1
        record.next_attempt_at = now + backoff(failure_class, record.attempt_count)
        return Transition.RETRY_SCHEDULED

    record.status = DeliveryStatus.FAILED
    record.failed_at = now
    record.next_attempt_at = None
    return Transition.FAILED


def cancel(record: DeliveryRecord, now: datetime.datetime) -> Transition:
    """Cancel a non-terminal record (pending, waiting for a retry or confirmation)."""
    _ensure_mutable(record)
    return _cancel(record, now)


def _cancel(record: DeliveryRecord, now: datetime.datetime) -> Transition:
    record.status = DeliveryStatus.CANCELLED
    record.failed_at = now
    record.next_attempt_at = None
    return Transition.CANCELLED


_NOTIFICATION_STATUS: dict[str, NotificationStatus] = {
    DeliveryStatus.PENDING: NotificationStatus.PENDING,
    DeliveryStatus.IN_PROGRESS: NotificationStatus.PROCESSING,
    DeliveryStatus.SUCCESS: NotificationStatus.DELIVERED,
    DeliveryStatus.FAILED: NotificationStatus.FAILED,
    DeliveryStatus.BOUNCED: NotificationStatus.FAILED,
    DeliveryStatus.CANCELLED: NotificationStatus.CANCELLED,
}


def notification_status_for(record: DeliveryRecord) -> NotificationStatus:
    """Aggregate notification status derived from its delivery record."""
    return _NOTIFICATION_STATUS[record.status]
