"""Tests for repository classes."""

import datetime
import uuid

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from shared.db.models import DeliveryRecord, Notification, Preference
from shared.db.repositories import (
    CancellationRepository,
    DeliveryRecordRepository,
    NotificationRepository,
    PreferenceRepository,
)
from shared.enums import Channel, DeliveryStatus, NotificationStatus

NOW = datetime.datetime(2024, 6, 1, 12, 0, tzinfo=datetime.UTC)


def _make_notification(**overrides: object) -> Notification:
    """Helper to build a Notification with sensible defaults."""
    defaults: dict = {
        "user_id": uuid.uuid4(),
        "type": "order_confirmation",
        "channel": Channel.EMAIL,
        "body": "test",
        "recipient_address": "user@example.com",
        "source_event_id": uuid.uuid4(),
        "source_event_type": "order.placed",
    }
    defaults.update(overrides)
    return Notification(**defaults)


def _make_record(
    session: Session, notification: Notification | None = None, **overrides: object
) -> DeliveryRecord:
    if notification is None:
        notification = NotificationRepository(session).create(_make_notification())
    fields: dict = {
        "notification_id": notification.id,
        "user_id": notification.user_id,
        "notification_type": notification.type,
        "channel": notification.channel,
        "recipient_address": notification.recipient_address,
    }
    fields.update(overrides)
    return DeliveryRecordRepository(session).create(DeliveryRecord(**fields))


class TestNotificationRepository:
    def test_create_and_get_by_id(self, db_session: Session) -> None:
        repo = NotificationRepository(db_session)
        created = repo.create(_make_notification())

        fetched = repo.get_by_id(created.id)
        assert fetched is not None
        assert fetched.id == created.id

    def test_get_by_id_not_found(self, db_session: Session) -> None:
        assert NotificationRepository(db_session).get_by_id(uuid.uuid4()) is None

    def test_get_by_source_event(self, db_session: Session) -> None:
        repo = NotificationRepository(db_session)
        event_id = uuid.uuid4()
        repo.create(_make_notification(source_event_id=event_id))
        repo.create(
            _make_notification(
                source_event_id=event_id,
                channel=Channel.SMS,
                recipient_address="+15551234567",
            )
        )
        repo.create(_make_notification())

        found = repo.get_by_source_event(event_id)
        assert {n.channel for n in found} == {Channel.EMAIL, Channel.SMS}

    def test_update_status_with_skip_reason(self, db_session: Session) -> None:
        repo = NotificationRepository(db_session)
        n = repo.create(_make_notification())

        repo.update_status(n, NotificationStatus.SKIPPED, skip_reason="opted_out")
        assert n.status == NotificationStatus.SKIPPED
        assert n.skip_reason == "opted_out"

    def test_get_digest_pending_matches_preference_frequency(
        self, db_session: Session
    ) -> None:
        repo = NotificationRepository(db_session)
        daily_user, weekly_user = uuid.uuid4(), uuid.uuid4()
        for user_id, frequency in ((daily_user, "daily"), (weekly_user, "weekly")):
            db_session.add(
                Preference(
                    user_id=user_id,
                    channel=Channel.EMAIL,
                    type="order_confirmation",
                    digest_frequency=frequency,
                )
            )
        older = repo.create(
            _make_notification(
                user_id=daily_user,
                status=NotificationStatus.DIGEST_PENDING,
                created_at=NOW - datetime.timedelta(hours=3),
            )
        )
        newer = repo.create(
            _make_notification(
                user_id=daily_user,
                status=NotificationStatus.DIGEST_PENDING,
                created_at=NOW - datetime.timedelta(hours=1),
            )
        )
        repo.create(
            _make_notification(
                user_id=daily_user,
                status=NotificationStatus.DIGEST_PENDING,
                created_at=NOW + datetime.timedelta(hours=1),
            )
        )
        repo.create(
            _make_notification(user_id=daily_user, created_at=NOW - datetime.timedelta(hours=2))
        )
        repo.create(
            _make_notification(
                user_id=weekly_user,
                status=NotificationStatus.DIGEST_PENDING,
                created_at=NOW - datetime.timedelta(hours=2),
            )
        )

        pending = repo.get_digest_pending("daily", NOW)

        assert [n.id for n in pending] == [older.id, newer.id]

    def test_link_to_digest(self, db_session: Session) -> None:
        repo = NotificationRepository(db_session)
        held = [
            repo.create(_make_notification(status=NotificationStatus.DIGEST_PENDING))
            for _ in range(2)
        ]
        digest_id = uuid.uuid4()

        repo.link_to_digest(held, digest_id)

        for notification in held:
            assert notification.digest_id == digest_id
            assert notification.status == NotificationStatus.DIGESTED


class TestDeliveryRecordRepository:
    def test_get_for_notification(self, db_session: Session) -> None:
        record = _make_record(db_session)
        repo = DeliveryRecordRepository(db_session)

        assert repo.get_for_notification(record.notification_id, Channel.EMAIL) is record
        assert repo.get_for_notification(record.notification_id, Channel.SMS) is None

    def test_count_sent_since(self, db_session: Session) -> None:
        repo = DeliveryRecordRepository(db_session)
        user_id = uuid.uuid4()

        def sent(sent_at, status=DeliveryStatus.SUCCESS, type_="welcome"):
            n = NotificationRepository(db_session).create(
                _make_notification(user_id=user_id, type=type_)
            )
            _make_record(db_session, n, status=status, sent_at=sent_at)

        sent(NOW - datetime.timedelta(minutes=10))
        sent(NOW - datetime.timedelta(minutes=50))
        sent(NOW - datetime.timedelta(hours=2))
        sent(NOW - datetime.timedelta(minutes=5), status=DeliveryStatus.FAILED)
        sent(NOW - datetime.timedelta(minutes=5), status=DeliveryStatus.BOUNCED)
        sent(NOW - datetime.timedelta(minutes=5), type_="order_shipped")
        sent(None, status=DeliveryStatus.PENDING)

        since = NOW - datetime.timedelta(hours=1)
        assert repo.count_sent_since(user_id, Channel.EMAIL, "welcome", since) == 2
        assert repo.count_sent_since(user_id, Channel.SMS, "welcome", since) == 0

    def test_count_sent_since_includes_carrier_accepted(self, db_session: Session) -> None:
        repo = DeliveryRecordRepository(db_session)
        n = NotificationRepository(db_session).create(_make_notification(type="welcome"))
        _make_record(
            db_session,
            n,
            status=DeliveryStatus.IN_PROGRESS,
            provider_message_id="SM1",
            sent_at=NOW - datetime.timedelta(minutes=1),
        )

        since = NOW - datetime.timedelta(hours=1)
        assert repo.count_sent_since(n.user_id, Channel.EMAIL, "welcome", since) == 1

    def test_get_statistics_groups_by_channel_and_status(self, db_session: Session) -> None:
        repo = DeliveryRecordRepository(db_session)
        inside = NOW - datetime.timedelta(minutes=30)

        def attempt(channel, status, latency_ms, attempted_at=inside):
            address = "+15551234567" if channel == Channel.SMS else "user@example.com"
            n = NotificationRepository(db_session).create(
                _make_notification(channel=channel, recipient_address=address)
            )
            _make_record(
                db_session, n, status=status, latency_ms=latency_ms, attempted_at=attempted_at
            )

        attempt(Channel.EMAIL, DeliveryStatus.SUCCESS, 100)
        attempt(Channel.EMAIL, DeliveryStatus.SUCCESS, 300)
        attempt(Channel.EMAIL, DeliveryStatus.FAILED, None)
        attempt(Channel.SMS, DeliveryStatus.SUCCESS, 50)
        attempt(
            Channel.SMS,
            DeliveryStatus.SUCCESS,
            999,
            attempted_at=NOW - datetime.timedelta(days=2),
        )

        stats = repo.get_statistics(NOW - datetime.timedelta(hours=1), NOW)

        by_key = {(s.channel, s.status): s for s in stats}
        assert set(by_key) == {
            (Channel.EMAIL, DeliveryStatus.FAILED),
            (Channel.EMAIL, DeliveryStatus.SUCCESS),
            (Channel.SMS, DeliveryStatus.SUCCESS),
        }
        assert by_key[(Channel.EMAIL, DeliveryStatus.SUCCESS)].count == 2
        assert by_key[(Channel.EMAIL, DeliveryStatus.SUCCESS)].avg_latency_ms == 200.0
        assert by_key[(Channel.EMAIL, DeliveryStatus.FAILED)].avg_latency_ms is None
        assert by_key[(Channel.SMS, DeliveryStatus.SUCCESS)].count == 1

    def test_average_latency_ms(self, db_session: Session) -> None:
        repo = DeliveryRecordRepository(db_session)
        inside = NOW - datetime.timedelta(minutes=5)
        _make_record(db_session, latency_ms=40, attempted_at=inside)
        _make_record(db_session, latency_ms=60, attempted_at=inside)
        _make_record(db_session, latency_ms=None, attempted_at=inside)
        _make_record(db_session, latency_ms=5000, attempted_at=NOW + datetime.timedelta(hours=1))

        start = NOW - datetime.timedelta(hours=1)
        assert repo.average_latency_ms(Channel.EMAIL, start, NOW) == 50.0
        assert repo.average_latency_ms(Channel.SMS, start, NOW) is None

    def test_get_high_attempt(self, db_session: Session) -> None:
        repo = DeliveryRecordRepository(db_session)
        three = _make_record(db_session, attempt_count=3)
        five = _make_record(db_session, attempt_count=5)
        _make_record(db_session, attempt_count=1)

        assert [r.id for r in repo.get_high_attempt(3)] == [five.id, three.id]
        assert [r.id for r in repo.get_high_attempt(3, limit=1)] == [five.id]

    def test_get_overdue_retries(self, db_session: Session) -> None:
        repo = DeliveryRecordRepository(db_session)
        older = _make_record(
            db_session,
            status=DeliveryStatus.IN_PROGRESS,
            next_attempt_at=NOW - datetime.timedelta(minutes=10),
        )
        newer = _make_record(
            db_session,
            status=DeliveryStatus.IN_PROGRESS,
            next_attempt_at=NOW - datetime.timedelta(minutes=1),
        )
        _make_record(
            db_session,
            status=DeliveryStatus.IN_PROGRESS,
            next_attempt_at=NOW + datetime.timedelta(minutes=5),
        )
        _make_record(db_session, status=DeliveryStatus.SUCCESS)

        results = repo.get_overdue_retries(NOW)
        assert [r.id for r in results] == [older.id, newer.id]

    def test_get_overdue_retries_respects_limit(self, db_session: Session) -> None:
        for _ in range(4):
            _make_record(
                db_session,
                status=DeliveryStatus.IN_PROGRESS,
                next_attempt_at=NOW - datetime.timedelta(minutes=1),
            )
        assert len(DeliveryRecordRepository(db_session).get_overdue_retries(NOW, limit=2)) == 2


class TestPreferenceRepository:
    def test_get_or_create_default_creates_once(self, db_session: Session) -> None:
        repo = PreferenceRepository(db_session)
        user_id = uuid.uuid4()

        first, created_first = repo.get_or_create_default(user_id, Channel.EMAIL, "welcome")
        second, created_second = repo.get_or_create_default(user_id, Channel.EMAIL, "welcome")

        assert created_first is True
        assert created_second is False
        assert first.id == second.id
        assert first.enabled is True
        assert first.timezone == "UTC"

        count = db_session.scalar(
            select(func.count()).select_from(Preference).where(Preference.user_id == user_id)
        )
        assert count == 1

    def test_upsert_tolerates_row_inserted_concurrently(self, db_session: Session) -> None:
        repo = PreferenceRepository(db_session)
        user_id = uuid.uuid4()
        winner = Preference(
            user_id=user_id, channel=Channel.SMS, type="welcome", enabled=False
        )
        db_session.add(winner)
        db_session.flush()

        # A racing evaluator that missed the row still ends up with the winner's.
        original_get = repo.get
        calls = []

        def stale_first_read(*args):
            calls.append(args)
            return None if len(calls) == 1 else original_get(*args)

        repo.get = stale_first_read  # type: ignore[method-assign]
        preference, created = repo.get_or_create_default(user_id, Channel.SMS, "welcome")

        assert created is False
        assert preference.id == winner.id
        assert preference.enabled is False

    def test_list_for_user(self, db_session: Session) -> None:
        repo = PreferenceRepository(db_session)
        user_id = uuid.uuid4()
        repo.get_or_create_default(user_id, Channel.SMS, "welcome")
        repo.get_or_create_default(user_id, Channel.EMAIL, "welcome")

        assert [p.channel for p in repo.list_for_user(user_id)] == [
            Channel.EMAIL,
            Channel.SMS,
        ]


class TestCancellationRepository:
    def test_request_is_idempotent(self, db_session: Session) -> None:
        n = NotificationRepository(db_session).create(_make_notification())
        repo = CancellationRepository(db_session)

        first = repo.request(n.id, "user request", NOW)
        second = repo.request(n.id, "again", NOW + datetime.timedelta(minutes=1))

        assert first is second
        assert second.reason == "user request"
        assert repo.get(n.id) is not None
