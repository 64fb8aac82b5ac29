"""Orchestrates one notification from preference check to lifecycle event.

Every state change is a single commit guarded by the delivery record's
version column, so two workers racing on a redelivered message cannot both
advance the same attempt; the loser rolls back and drops the message.
Side effects (re-enqueue, status polling, lifecycle events) run only after
the commit that justifies them.
"""

import datetime
import logging
import uuid
from collections.abc import Callable
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from enum import StrEnum
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from shared.db.models import DeliveryRecord, Notification
from shared.db.repositories import (
    CancellationRepository,
    DeliveryRecordRepository,
    NotificationRepository,
)
from shared.enums import (
    DeliveryStatus,
    DenyReason,
    FailureClass,
    LifecycleEventType,
    NotificationStatus,
)
from shared.events.lifecycle import LifecycleEvent
from shared.metrics import DeliveryMetrics

from delivery_worker import state_machine
from delivery_worker.config import DeliveryConfig
from delivery_worker.preferences import PreferenceGate
from delivery_worker.providers import (
    DeliveryOutcome,
    DeliveryProvider,
    OutcomeStatus,
    ProviderRegistry,
)
from delivery_worker.publisher import LifecycleEventPublisher
from delivery_worker.rate_limiter import RateLimiter
from delivery_worker.requeue import CeleryRequeuer
from delivery_worker.retry import RetryPolicy
from delivery_worker.state_machine import Transition

logger = logging.getLogger(__name__)


class DispatchResult(StrEnum):
    NOT_FOUND = "not_found"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    HELD_FOR_DIGEST = "held_for_digest"
    RATE_LIMITED = "rate_limited"
    NO_PROVIDER = "no_provider"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    ALREADY_TERMINAL = "already_terminal"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    NOT_DUE = "not_due"
    IN_FLIGHT = "in_flight"
    RACE_LOST = "race_lost"
    SUCCEEDED = "succeeded"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    BOUNCED = "bounced"


_LIFECYCLE_FOR: dict[Transition, LifecycleEventType] = {
    Transition.SUCCEEDED: LifecycleEventType.DELIVERED,
    Transition.FAILED: LifecycleEventType.FAILED,
    Transition.BOUNCED: LifecycleEventType.BOUNCED,
    Transition.CANCELLED: LifecycleEventType.CANCELLED,
    Transition.AWAITING_CONFIRMATION: LifecycleEventType.SENT,
}

_DISPATCHABLE = frozenset({NotificationStatus.PENDING, NotificationStatus.PROCESSING})
_CANCELLABLE = _DISPATCHABLE | {NotificationStatus.DIGEST_PENDING}

_RESULT_FOR: dict[Transition, DispatchResult] = {
    Transition.SUCCEEDED: DispatchResult.SUCCEEDED,
    Transition.RETRY_SCHEDULED: DispatchResult.RETRY_SCHEDULED,
    Transition.FAILED: DispatchResult.FAILED,
    Transition.BOUNCED: DispatchResult.BOUNCED,
    Transition.AWAITING_CONFIRMATION: DispatchResult.AWAITING_CONFIRMATION,
    Transition.CANCELLED: DispatchResult.CANCELLED,
}


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class Dispatcher:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        registry: ProviderRegistry,
        gate: PreferenceGate,
        rate_limiter: RateLimiter,
        retry_policy: RetryPolicy,
        requeuer: CeleryRequeuer,
        publisher: LifecycleEventPublisher,
        metrics: DeliveryMetrics,
        config: DeliveryConfig,
        clock: Callable[[], datetime.datetime] = _utcnow,
        executor: Executor | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._gate = gate
        self._rate_limiter = rate_limiter
        self._retry = retry_policy
        self._requeuer = requeuer
        self._publisher = publisher
        self._metrics = metrics
        self._config = config
        self._clock = clock
        self._executor = executor or ThreadPoolExecutor(
            max_workers=config.provider_pool_size, thread_name_prefix="provider"
        )

    # -- dispatch -----------------------------------------------------------

    def dispatch(
        self, notification_id: UUID, delivery_id: UUID | None = None
    ) -> DispatchResult:
        """Run one delivery attempt for a notification, or decide not to.

        Safe to call any number of times for the same message: terminal
        records are never re-sent, and a record waiting for its retry is
        resumed rather than restarted.
        """
        now = self._clock()

        with self._session_factory() as session:
            notification = NotificationRepository(session).get_by_id(notification_id)
            if notification is None:
                logger.warning(
                    "Notification not found, skipping",
                    extra={"notification_id": str(notification_id)},
                )
                return DispatchResult.NOT_FOUND

            records = DeliveryRecordRepository(session)
            record = records.get_for_notification(notification.id, notification.channel)
            log_ctx: dict[str, Any] = {
                "notification_id": str(notification.id),
                "channel": notification.channel,
                "notification_type": notification.type,
            }
            if delivery_id is not None and (record is None or record.id != delivery_id):
                logger.warning(
                    "Delivery id does not match the notification's record",
                    extra={**log_ctx, "delivery_id": str(delivery_id)},
                )

            if CancellationRepository(session).get(notification.id) is not None:
                return self._cancel_in_session(session, notification, record, now, log_ctx)

            if record is None and notification.status not in _DISPATCHABLE:
                logger.info(
                    "Notification already settled, skipping",
                    extra={**log_ctx, "status": notification.status},
                )
                return DispatchResult.ALREADY_TERMINAL

            if record is None:
                prepared = self._prepare_first_attempt(session, notification, now, log_ctx)
            else:
                prepared = self._prepare_next_attempt(notification, record, now, log_ctx)
            if isinstance(prepared, DispatchResult):
                return prepared

            provider, record = prepared
            log_ctx.update(
                delivery_id=str(record.id),
                provider=provider.name,
                attempt=record.attempt_count,
            )
            try:
                session.commit()
            except (IntegrityError, StaleDataError):
                session.rollback()
                logger.info("Lost race claiming delivery attempt, dropping", extra=log_ctx)
                return DispatchResult.RACE_LOST

            outcome = self._call_provider(provider, provider.deliver, notification, log_ctx)

            now = self._clock()
            cancelled = CancellationRepository(session).get(notification.id) is not None
            transition = state_machine.apply_outcome(
                record, outcome, now, self._retry.backoff, cancelled=cancelled
            )
            notification.status = state_machine.notification_status_for(record)
            try:
                session.commit()
            except StaleDataError:
                session.rollback()
                logger.warning(
                    "Delivery record changed during provider call, dropping outcome",
                    extra={**log_ctx, "outcome": outcome.status},
                )
                return DispatchResult.RACE_LOST

        self._after_commit(notification, record, transition, outcome, now, log_ctx)
        return _RESULT_FOR[transition]

    def _prepare_first_attempt(
        self,
        session: Session,
        notification: Notification,
        now: datetime.datetime,
        log_ctx: dict[str, Any],
    ) -> tuple[DeliveryProvider, DeliveryRecord] | DispatchResult:
        provider = self._registry.resolve(notification)
        if provider is None:
            logger.error("No provider can handle notification", extra=log_ctx)
            self._finish_without_record(
                session, notification, NotificationStatus.FAILED, "no_provider"
            )
            return DispatchResult.NO_PROVIDER

        if not provider.is_available():
            logger.error(
                "Provider is not configured, notification not attempted",
                extra={**log_ctx, "provider": provider.name},
            )
            self._metrics.record_configuration_error(provider.name)
            self._finish_without_record(
                session, notification, NotificationStatus.FAILED, "provider_unavailable"
            )
            return DispatchResult.PROVIDER_UNAVAILABLE

        decision = self._gate.may_deliver(
            notification.user_id,
            notification.channel,
            notification.type,
            notification.priority,
            now,
        )
        if not decision.allow:
            self._metrics.record_gate_denial(notification.channel, decision.reason)
            if decision.reason == DenyReason.QUIET_HOURS:
                logger.info(
                    "Dispatch deferred until quiet hours end",
                    extra={
                        **log_ctx,
                        "reason": decision.reason,
                        "retry_at": decision.retry_at.isoformat(),
                    },
                )
                self._requeuer.schedule_dispatch(
                    str(notification.id),
                    priority=notification.priority,
                    eta=decision.retry_at,
                )
                return DispatchResult.DEFERRED

            if decision.reason == DenyReason.DIGEST:
                logger.info("Notification held for digest", extra=log_ctx)
                self._finish_without_record(
                    session, notification, NotificationStatus.DIGEST_PENDING, decision.reason
                )
                return DispatchResult.HELD_FOR_DIGEST

            logger.info("Dispatch skipped", extra={**log_ctx, "reason": decision.reason})
            self._finish_without_record(
                session, notification, NotificationStatus.SKIPPED, decision.reason
            )
            return DispatchResult.SKIPPED

        if not self._rate_limiter.acquire(provider.name, provider.rate_limit()):
            return self._rate_limited(notification, None, log_ctx)

        record = DeliveryRecord(
            id=uuid.uuid4(),
            notification_id=notification.id,
            user_id=notification.user_id,
            notification_type=notification.type,
            channel=notification.channel,
            recipient_address=notification.recipient_address,
            status=DeliveryStatus.PENDING,
            attempt_count=0,
            max_attempts=self._config.max_attempts,
        )
        session.add(record)
        state_machine.start(record, now, provider.name)
        notification.status = NotificationStatus.PROCESSING
        return provider, record

    def _prepare_next_attempt(
        self,
        notification: Notification,
        record: DeliveryRecord,
        now: datetime.datetime,
        log_ctx: dict[str, Any],
    ) -> tuple[DeliveryProvider, DeliveryRecord] | DispatchResult:
        log_ctx.update(delivery_id=str(record.id), attempt=record.attempt_count)

        if record.is_terminal:
            logger.info(
                "Delivery already terminal, skipping",
                extra={**log_ctx, "status": record.status},
            )
            return DispatchResult.ALREADY_TERMINAL

        if record.awaiting_confirmation:
            logger.info("Delivery awaiting carrier confirmation, skipping", extra=log_ctx)
            return DispatchResult.AWAITING_CONFIRMATION

        provider = self._provider_for(notification, record)
        if provider is None:
            logger.error("No provider for in-progress delivery", extra=log_ctx)
            return DispatchResult.NO_PROVIDER

        if record.status == DeliveryStatus.PENDING:
            state_machine.start(record, now, provider.name)
            return provider, record

        if record.next_attempt_at is not None:
            if record.next_attempt_at > now:
                logger.info(
                    "Retry not yet due, re-enqueueing",
                    extra={**log_ctx, "next_attempt_at": record.next_attempt_at.isoformat()},
                )
                self._requeuer.schedule_dispatch(
                    str(notification.id),
                    delivery_id=str(record.id),
                    priority=notification.priority,
                    eta=record.next_attempt_at,
                )
                return DispatchResult.NOT_DUE
            if not self._rate_limiter.acquire(provider.name, provider.rate_limit()):
                return self._rate_limited(notification, record, log_ctx)
            state_machine.resume(record, now)
            return provider, record

        grace = datetime.timedelta(seconds=self._config.in_flight_grace_seconds)
        if record.attempted_at is not None and now - record.attempted_at < grace:
            logger.info("Attempt already in flight, skipping", extra=log_ctx)
            return DispatchResult.IN_FLIGHT

        logger.warning("Resuming stale in-flight attempt", extra=log_ctx)
        state_machine.resume(record, now)
        return provider, record

    def _rate_limited(
        self,
        notification: Notification,
        record: DeliveryRecord | None,
        log_ctx: dict[str, Any],
    ) -> DispatchResult:
        countdown = self._config.rate_limit_retry_seconds
        logger.info(
            "Provider rate limit reached, rescheduling",
            extra={**log_ctx, "countdown": countdown},
        )
        self._requeuer.schedule_dispatch(
            str(notification.id),
            delivery_id=str(record.id) if record is not None else None,
            priority=notification.priority,
            countdown=countdown,
        )
        self._metrics.record_dispatch(notification.channel, DispatchResult.RATE_LIMITED)
        return DispatchResult.RATE_LIMITED

    def _finish_without_record(
        self,
        session: Session,
        notification: Notification,
        status: NotificationStatus,
        reason: str,
    ) -> None:
        NotificationRepository(session).update_status(
            notification, status, skip_reason=reason
        )
        session.commit()
        self._metrics.record_dispatch(notification.channel, status)

    # -- provider calls -----------------------------------------------------

    def _call_provider(
        self,
        provider: DeliveryProvider,
        call: Callable[[Any], DeliveryOutcome],
        target: Any,
        log_ctx: dict[str, Any],
    ) -> DeliveryOutcome:
        """Run one provider call under the per-call timeout.

        A timed-out call keeps running in its pool thread, but its result is
        ignored and the attempt is classified as a retryable timeout.
        """
        timeout = self._config.provider_timeout_seconds
        started = self._clock()
        future = self._executor.submit(call, target)
        try:
            outcome = future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(
                "Provider call timed out",
                extra={**log_ctx, "timeout_seconds": timeout},
            )
            outcome = DeliveryOutcome.failure(
                FailureClass.TIMEOUT, f"Provider call exceeded {timeout}s"
            )
        except Exception as exc:
            logger.exception("Provider raised unexpectedly", extra=log_ctx)
            outcome = DeliveryOutcome.failure(
                FailureClass.PROVIDER_ERROR, f"{type(exc).__name__}: {exc}"
            )
        elapsed = (self._clock() - started).total_seconds()
        self._metrics.observe_provider_latency(provider.name, max(elapsed, 0.0))
        return outcome

    def _provider_for(
        self, notification: Notification, record: DeliveryRecord
    ) -> DeliveryProvider | None:
        if record.provider_name:
            provider = self._registry.by_name(record.provider_name)
            if provider is not None:
                return provider
        return self._registry.resolve(notification)

    # -- post-commit side effects ---------------------------------------------

    def _after_commit(
        self,
        notification: Notification,
        record: DeliveryRecord,
        transition: Transition,
        outcome: DeliveryOutcome,
        now: datetime.datetime,
        log_ctx: dict[str, Any],
    ) -> None:
        log_ctx = {**log_ctx, "attempt": record.attempt_count, "transition": transition}
        self._metrics.record_dispatch(notification.channel, transition)

        if transition == Transition.RETRY_SCHEDULED:
            countdown = (record.next_attempt_at - now).total_seconds()
            logger.warning(
                "Delivery failed, scheduling retry",
                extra={
                    **log_ctx,
                    "failure_class": outcome.failure_class,
                    "backoff_seconds": countdown,
                    "reason": outcome.error_message,
                },
            )
            self._metrics.record_retry(notification.channel, outcome.failure_class)
            self._requeuer.schedule_dispatch(
                str(notification.id),
                delivery_id=str(record.id),
                priority=notification.priority,
                countdown=countdown,
            )
            return

        if transition == Transition.AWAITING_CONFIRMATION:
            logger.info("Delivery accepted by carrier", extra=log_ctx)
            self._requeuer.schedule_status_check(
                str(record.id),
                priority=notification.priority,
                countdown=self._config.status_poll_seconds,
            )
        elif transition == Transition.SUCCEEDED:
            logger.info("Delivery succeeded", extra=log_ctx)
        elif transition == Transition.CANCELLED:
            logger.info("Delivery cancelled", extra=log_ctx)
        else:
            logger.error(
                "Delivery permanently failed",
                extra={
                    **log_ctx,
                    "failure_class": outcome.failure_class,
                    "reason": outcome.error_message or outcome.bounce_reason,
                },
            )

        self._publish(_LIFECYCLE_FOR[transition], notification, record)

    def _publish(
        self,
        event_type: LifecycleEventType,
        notification: Notification,
        record: DeliveryRecord | None,
    ) -> None:
        event = LifecycleEvent(
            event_type=event_type,
            notification_id=notification.id,
            delivery_id=record.id if record is not None else None,
            user_id=notification.user_id,
            notification_type=notification.type,
            channel=notification.channel,
            status=record.status if record is not None else notification.status,
            correlation_id=notification.correlation_id,
            provider_name=record.provider_name if record is not None else None,
            attempt_count=record.attempt_count if record is not None else 0,
            error_code=record.error_code if record is not None else None,
            error_message=record.error_message if record is not None else None,
            occurred_at=self._clock(),
        )
        self._publisher.publish(event)

    # -- status polling -------------------------------------------------------

    def check_status(self, delivery_id: UUID) -> DispatchResult:
        """Poll the carrier for a delivery that is awaiting confirmation.

        Polling stops after ``max_status_checks``; a carrier that accepted
        the message and never reported a failure is then taken as delivered.
        """
        with self._session_factory() as session:
            record = DeliveryRecordRepository(session).get_by_id(delivery_id)
            if record is None:
                logger.warning(
                    "Delivery record not found, skipping",
                    extra={"delivery_id": str(delivery_id)},
                )
                return DispatchResult.NOT_FOUND
            if record.is_terminal:
                return DispatchResult.ALREADY_TERMINAL
            if not record.awaiting_confirmation:
                return DispatchResult.IN_FLIGHT

            notification = NotificationRepository(session).get_by_id(record.notification_id)
            log_ctx: dict[str, Any] = {
                "notification_id": str(record.notification_id),
                "delivery_id": str(record.id),
                "channel": record.channel,
                "status_checks": record.status_checks + 1,
            }
            provider = self._provider_for(notification, record)
            if provider is None:
                logger.error("No provider to poll delivery status", extra=log_ctx)
                return DispatchResult.NO_PROVIDER

            outcome = self._call_provider(provider, provider.check_status, record, log_ctx)
            if outcome.retryable:
                # A failed poll says nothing about the message; keep the prior state.
                outcome = DeliveryOutcome.from_record(record)

            record.status_checks += 1
            now = self._clock()
            exhausted = record.status_checks >= self._config.max_status_checks
            if outcome.status == OutcomeStatus.ACCEPTED and exhausted:
                logger.info("Status polling exhausted, treating as delivered", extra=log_ctx)
                outcome = DeliveryOutcome.success(external_id=record.external_id)

            cancelled = CancellationRepository(session).get(record.notification_id) is not None
            transition = state_machine.apply_outcome(
                record, outcome, now, self._retry.backoff, cancelled=cancelled
            )
            notification.status = state_machine.notification_status_for(record)
            try:
                session.commit()
            except StaleDataError:
                session.rollback()
                logger.info("Lost race on status update, dropping", extra=log_ctx)
                return DispatchResult.RACE_LOST

        if transition == Transition.AWAITING_CONFIRMATION:
            self._requeuer.schedule_status_check(
                str(record.id),
                priority=notification.priority,
                countdown=self._config.status_poll_seconds,
            )
            return DispatchResult.AWAITING_CONFIRMATION

        self._after_commit(notification, record, transition, outcome, now, log_ctx)
        return _RESULT_FOR[transition]

    # -- cancellation ---------------------------------------------------------

    def cancel(self, notification_id: UUID, reason: str | None = None) -> DispatchResult:
        """Record a cancellation and stop any delivery work that has not started.

        An attempt already in flight finishes; its outcome is recorded but
        no retry or further polling follows.
        """
        now = self._clock()
        with self._session_factory() as session:
            notification = NotificationRepository(session).get_by_id(notification_id)
            if notification is None:
                logger.warning(
                    "Notification not found, cannot cancel",
                    extra={"notification_id": str(notification_id)},
                )
                return DispatchResult.NOT_FOUND

            CancellationRepository(session).request(notification.id, reason, now)
            session.commit()
            logger.info(
                "Cancellation recorded",
                extra={"notification_id": str(notification.id), "reason": reason},
            )

            record = DeliveryRecordRepository(session).get_for_notification(
                notification.id, notification.channel
            )
            log_ctx = {"notification_id": str(notification.id), "channel": notification.channel}
            return self._cancel_in_session(session, notification, record, now, log_ctx)

    def _cancel_in_session(
        self,
        session: Session,
        notification: Notification,
        record: DeliveryRecord | None,
        now: datetime.datetime,
        log_ctx: dict[str, Any],
    ) -> DispatchResult:
        if record is None:
            if notification.status == NotificationStatus.CANCELLED:
                return DispatchResult.CANCELLED
            if notification.status not in _CANCELLABLE:
                return DispatchResult.ALREADY_TERMINAL
            notification.status = NotificationStatus.CANCELLED
            session.commit()
            logger.info("Notification cancelled before first attempt", extra=log_ctx)
            self._metrics.record_dispatch(notification.channel, Transition.CANCELLED)
            self._publish(LifecycleEventType.CANCELLED, notification, None)
            return DispatchResult.CANCELLED

        waiting = record.status == DeliveryStatus.PENDING or (
            record.status == DeliveryStatus.IN_PROGRESS and record.next_attempt_at is not None
        )
        if record.is_terminal and record.status != DeliveryStatus.CANCELLED:
            return DispatchResult.ALREADY_TERMINAL
        if record.is_terminal or not waiting:
            # In-flight or awaiting confirmation: the attempt's outcome is
            # recorded when it arrives, with no follow-up work.
            return DispatchResult.CANCELLED

        state_machine.cancel(record, now)
        notification.status = NotificationStatus.CANCELLED
        try:
            session.commit()
        except StaleDataError:
            session.rollback()
            logger.info("Record claimed concurrently; cancellation applies after the attempt", extra=log_ctx)
            return DispatchResult.CANCELLED

        self._after_commit(
            notification, record, Transition.CANCELLED, DeliveryOutcome.from_record(record), now, log_ctx
        )
        return DispatchResult.CANCELLED

    # -- safety sweep ---------------------------------------------------------

    def requeue_overdue(self, now: datetime.datetime | None = None) -> int:
        """Re-enqueue retries whose due time passed more than the grace period ago.

        Covers delayed messages lost by the broker; regular retries never
        depend on it.
        """
        now = now or self._clock()
        cutoff = now - datetime.timedelta(seconds=self._config.sweep_grace_seconds)
        with self._session_factory() as session:
            overdue = DeliveryRecordRepository(session).get_overdue_retries(
                cutoff, limit=self._config.sweep_batch_size
            )
            notifications = NotificationRepository(session)
            jobs = []
            for record in overdue:
                notification = notifications.get_by_id(record.notification_id)
                priority = notification.priority if notification is not None else "normal"
                jobs.append((str(record.notification_id), str(record.id), priority))

        for notification_id, delivery_id, priority in jobs:
            self._requeuer.schedule_dispatch(
                notification_id, delivery_id=delivery_id, priority=priority
            )
        if jobs:
            logger.warning(
                "Re-enqueued overdue retries",
                extra={"count": len(jobs), "cutoff": cutoff.isoformat()},
            )
        return len(jobs)

    def close(self) -> None:
        if isinstance(self._executor, ThreadPoolExecutor):
            self._executor.shutdown(wait=False, cancel_futures=True)
