"""Preference gate, read-through preference cache and preference writes.

Only preference *snapshots* are cached. Quiet hours are evaluated against
the caller's ``now`` and frequency caps against live delivery counts on
every call, so a cached row can never serve a stale "allow". Every write
commits first and then invalidates the affected cache keys before it
returns.
"""

import datetime
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict
from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy.orm import Session, sessionmaker

from shared.db.models import Preference
from shared.db.repositories import DeliveryRecordRepository, PreferenceRepository
from shared.enums import Channel, DenyReason, DigestFrequency, NotificationType, Priority

from delivery_worker.quiet_hours import quiet_hours_end

logger = logging.getLogger(__name__)

_HOUR = datetime.timedelta(hours=1)
_DAY = datetime.timedelta(days=1)


class PreferenceSnapshot(BaseModel):
    """Immutable copy of a preference row, safe to cache."""

    model_config = ConfigDict(frozen=True)

    user_id: UUID
    channel: str
    type: str
    enabled: bool = True
    global_opt_out: bool = False
    quiet_hours_enabled: bool = False
    quiet_hours_start: datetime.time | None = None
    quiet_hours_end: datetime.time | None = None
    timezone: str = "UTC"
    frequency_limit_per_hour: int | None = None
    frequency_limit_per_day: int | None = None
    minimum_priority: Priority = Priority.LOW
    opt_out_reason: str | None = None
    digest_frequency: DigestFrequency | None = None

    @classmethod
    def from_model(cls, preference: Preference) -> "PreferenceSnapshot":
        return cls(
            user_id=preference.user_id,
            channel=preference.channel,
            type=preference.type,
            enabled=preference.enabled,
            global_opt_out=preference.global_opt_out,
            quiet_hours_enabled=preference.quiet_hours_enabled,
            quiet_hours_start=preference.quiet_hours_start,
            quiet_hours_end=preference.quiet_hours_end,
            timezone=preference.timezone,
            frequency_limit_per_hour=preference.frequency_limit_per_hour,
            frequency_limit_per_day=preference.frequency_limit_per_day,
            minimum_priority=preference.minimum_priority,
            opt_out_reason=preference.opt_out_reason,
            digest_frequency=preference.digest_frequency,
        )


class PreferenceCache(Protocol):
    def get(self, user_id: UUID, channel: str, notification_type: str) -> PreferenceSnapshot | None: ...

    def set(self, snapshot: PreferenceSnapshot) -> None: ...

    def invalidate(self, user_id: UUID, channel: str, notification_type: str) -> None: ...

    def invalidate_user(self, user_id: UUID) -> None: ...


# Populate unless the entry or its user was invalidated in the last few seconds.
_SET_UNLESS_INVALIDATED = """
if redis.call('EXISTS', KEYS[2]) == 1 or redis.call('EXISTS', KEYS[3]) == 1 then
    return 0
end
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[2])
return 1
"""


class RedisPreferenceCache:
    """Short-TTL snapshot cache keyed ``<prefix>:<user>:<channel>:<type>``.

    Invalidation deletes the entry and leaves a marker under
    ``<prefix>-invalidated:...`` for ``invalidation_seconds``. While the
    marker lives, populates are refused, so a reader that loaded the row
    before the write committed cannot put the old snapshot back.

    Read and populate failures degrade to the database. Invalidation
    failures propagate: a write must not be acknowledged while a stale
    entry may still be served.
    """

    def __init__(
        self,
        redis_client: Redis,
        ttl_seconds: int = 60,
        prefix: str = "pref",
        invalidation_seconds: int = 10,
    ) -> None:
        self._redis = redis_client
        self._ttl = ttl_seconds
        self._prefix = prefix
        self._invalidation_ttl = invalidation_seconds
        self._set_script = redis_client.register_script(_SET_UNLESS_INVALIDATED)

    def _key(self, user_id: UUID, channel: str, notification_type: str) -> str:
        return f"{self._prefix}:{user_id}:{channel}:{notification_type}"

    def _marker(self, *parts: object) -> str:
        return ":".join([f"{self._prefix}-invalidated", *map(str, parts)])

    def get(self, user_id: UUID, channel: str, notification_type: str) -> PreferenceSnapshot | None:
        try:
            raw = self._redis.get(self._key(user_id, channel, notification_type))
        except RedisError as exc:
            logger.warning("Preference cache read failed", extra={"error": str(exc)})
            return None
        if raw is None:
            return None
        return PreferenceSnapshot.model_validate_json(raw)

    def set(self, snapshot: PreferenceSnapshot) -> None:
        keys = [
            self._key(snapshot.user_id, snapshot.channel, snapshot.type),
            self._marker(snapshot.user_id, snapshot.channel, snapshot.type),
            self._marker(snapshot.user_id),
        ]
        try:
            self._set_script(keys=keys, args=[snapshot.model_dump_json(), self._ttl])
        except RedisError as exc:
            logger.warning("Preference cache write failed", extra={"error": str(exc)})

    def invalidate(self, user_id: UUID, channel: str, notification_type: str) -> None:
        pipe = self._redis.pipeline()
        pipe.set(self._marker(user_id, channel, notification_type), 1, ex=self._invalidation_ttl)
        pipe.delete(self._key(user_id, channel, notification_type))
        pipe.execute()

    def invalidate_user(self, user_id: UUID) -> None:
        self._redis.set(self._marker(user_id), 1, ex=self._invalidation_ttl)
        keys = list(self._redis.scan_iter(match=f"{self._prefix}:{user_id}:*"))
        if keys:
            self._redis.delete(*keys)


class PreferenceStore:
    """Read-through access to preferences with lazy permissive defaults."""

    def __init__(self, cache: PreferenceCache | None = None) -> None:
        self._cache = cache

    def resolve(
        self, session: Session, user_id: UUID, channel: str, notification_type: str
    ) -> tuple[PreferenceSnapshot, bool]:
        """Return the snapshot and whether this call created the row."""
        if self._cache is not None:
            cached = self._cache.get(user_id, channel, notification_type)
            if cached is not None:
                return cached, False

        preference, created = PreferenceRepository(session).get_or_create_default(
            user_id, channel, notification_type
        )
        snapshot = PreferenceSnapshot.from_model(preference)
        if self._cache is not None:
            self._cache.set(snapshot)
        return snapshot, created


@dataclass(frozen=True, slots=True)
class GateDecision:
    allow: bool
    reason: DenyReason | None = None
    # Only set for QUIET_HOURS: when the window closes (UTC).
    retry_at: datetime.datetime | None = None

    @classmethod
    def allowed(cls) -> "GateDecision":
        return cls(allow=True)

    @classmethod
    def denied(
        cls, reason: DenyReason, retry_at: datetime.datetime | None = None
    ) -> "GateDecision":
        return cls(allow=False, reason=reason, retry_at=retry_at)


class PreferenceGate:
    """Decides whether a send for (user, channel, type) is permitted right now."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        store: PreferenceStore,
    ) -> None:
        self._session_factory = session_factory
        self._store = store

    def may_deliver(
        self,
        user_id: UUID,
        channel: str,
        notification_type: str,
        priority: str,
        now: datetime.datetime,
    ) -> GateDecision:
        with self._session_factory() as session:
            snapshot, created = self._store.resolve(
                session, user_id, channel, notification_type
            )
            if created:
                session.commit()
                return GateDecision.allowed()
            return self._evaluate(session, snapshot, Priority(priority), now)

    def _evaluate(
        self,
        session: Session,
        pref: PreferenceSnapshot,
        priority: Priority,
        now: datetime.datetime,
    ) -> GateDecision:
        if pref.global_opt_out or not pref.enabled:
            return GateDecision.denied(DenyReason.OPTED_OUT)

        if priority.rank < pref.minimum_priority.rank:
            return GateDecision.denied(DenyReason.PRIORITY_TOO_LOW)

        if (
            pref.digest_frequency is not None
            and priority.rank < Priority.HIGH.rank
            and pref.type != NotificationType.DIGEST
        ):
            return GateDecision.denied(DenyReason.DIGEST)

        # Critical notifications are never deferred by quiet hours.
        if pref.quiet_hours_enabled and priority != Priority.CRITICAL:
            window_end = quiet_hours_end(
                now, pref.quiet_hours_start, pref.quiet_hours_end, pref.timezone
            )
            if window_end is not None:
                return GateDecision.denied(DenyReason.QUIET_HOURS, retry_at=window_end)

        caps = (
            (pref.frequency_limit_per_hour, _HOUR),
            (pref.frequency_limit_per_day, _DAY),
        )
        if any(cap is not None for cap, _ in caps):
            records = DeliveryRecordRepository(session)
            for cap, window in caps:
                if cap is None:
                    continue
                sent = records.count_sent_since(
                    pref.user_id, pref.channel, pref.type, now - window
                )
                if sent >= cap:
                    return GateDecision.denied(DenyReason.FREQUENCY_EXCEEDED)

        return GateDecision.allowed()


_UPDATABLE_FIELDS = frozenset({
    "enabled",
    "quiet_hours_enabled",
    "quiet_hours_start",
    "quiet_hours_end",
    "timezone",
    "frequency_limit_per_hour",
    "frequency_limit_per_day",
    "minimum_priority",
    "opt_out_reason",
    "digest_frequency",
})


class PreferenceService:
    """Explicit preference-update operations.

    When ``channel`` or ``notification_type`` is omitted, the change applies
    to every combination for the user, creating rows as needed so later
    lazy evaluation cannot resurrect permissive defaults.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        cache: PreferenceCache | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache

    def get(
        self, user_id: UUID, channel: str, notification_type: str
    ) -> PreferenceSnapshot:
        with self._session_factory() as session:
            preference, created = PreferenceRepository(session).get_or_create_default(
                user_id, channel, notification_type
            )
            if created:
                session.commit()
            return PreferenceSnapshot.from_model(preference)

    def update(
        self,
        user_id: UUID,
        channel: str | None = None,
        notification_type: str | None = None,
        **changes: object,
    ) -> list[PreferenceSnapshot]:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown preference fields: {sorted(unknown)}")
        _validate(changes)
        return self._apply(user_id, channel, notification_type, changes)

    def opt_out(
        self,
        user_id: UUID,
        channel: str | None = None,
        notification_type: str | None = None,
        reason: str | None = None,
    ) -> list[PreferenceSnapshot]:
        return self._apply(
            user_id,
            channel,
            notification_type,
            {"enabled": False, "opt_out_reason": reason},
        )

    def opt_in(
        self,
        user_id: UUID,
        channel: str | None = None,
        notification_type: str | None = None,
    ) -> list[PreferenceSnapshot]:
        return self._apply(
            user_id,
            channel,
            notification_type,
            {"enabled": True, "opt_out_reason": None},
        )

    def set_global_opt_out(
        self, user_id: UUID, opted_out: bool, reason: str | None = None
    ) -> list[PreferenceSnapshot]:
        return self._apply(
            user_id,
            None,
            None,
            {"global_opt_out": opted_out, "opt_out_reason": reason if opted_out else None},
        )

    def set_quiet_hours(
        self,
        user_id: UUID,
        start: datetime.time,
        end: datetime.time,
        timezone: str = "UTC",
        channel: str | None = None,
        notification_type: str | None = None,
    ) -> list[PreferenceSnapshot]:
        changes = {
            "quiet_hours_enabled": True,
            "quiet_hours_start": start,
            "quiet_hours_end": end,
            "timezone": timezone,
        }
        _validate(changes)
        return self._apply(user_id, channel, notification_type, changes)

    def set_digest(
        self,
        user_id: UUID,
        frequency: str | None,
        channel: str | None = None,
        notification_type: str | None = None,
    ) -> list[PreferenceSnapshot]:
        """Hold low and normal priority sends for a digest, or stop doing so."""
        return self._apply(
            user_id,
            channel,
            notification_type,
            {"digest_frequency": DigestFrequency(frequency) if frequency else None},
        )

    def disable_quiet_hours(
        self,
        user_id: UUID,
        channel: str | None = None,
        notification_type: str | None = None,
    ) -> list[PreferenceSnapshot]:
        return self._apply(
            user_id, channel, notification_type, {"quiet_hours_enabled": False}
        )

    def _apply(
        self,
        user_id: UUID,
        channel: str | None,
        notification_type: str | None,
        changes: dict[str, object],
    ) -> list[PreferenceSnapshot]:
        with self._session_factory() as session:
            repo = PreferenceRepository(session)
            rows = [
                repo.get_or_create_default(user_id, ch, nt)[0]
                for ch, nt in _combinations(channel, notification_type)
            ]
            for row in rows:
                for field, value in changes.items():
                    setattr(row, field, value)
            session.commit()
            snapshots = [PreferenceSnapshot.from_model(row) for row in rows]

        self._invalidate(user_id, channel, notification_type)
        logger.info(
            "Preferences updated",
            extra={
                "user_id": str(user_id),
                "channel": channel,
                "notification_type": notification_type,
                "fields": sorted(changes),
                "rows": len(snapshots),
            },
        )
        return snapshots

    def _invalidate(
        self, user_id: UUID, channel: str | None, notification_type: str | None
    ) -> None:
        if self._cache is None:
            return
        if channel is not None and notification_type is not None:
            self._cache.invalidate(user_id, channel, notification_type)
        else:
            self._cache.invalidate_user(user_id)


def _combinations(
    channel: str | None, notification_type: str | None
) -> Iterable[tuple[str, str]]:
    channels = [channel] if channel is not None else [c.value for c in Channel]
    types = (
        [notification_type]
        if notification_type is not None
        else [t.value for t in NotificationType]
    )
    return [(ch, nt) for ch in channels for nt in types]


def _validate(changes: dict[str, object]) -> None:
    for field in ("quiet_hours_start", "quiet_hours_end"):
        if isinstance(changes.get(field), str):
            changes[field] = datetime.time.fromisoformat(changes[field])
    if changes.get("digest_frequency") is not None:
        changes["digest_frequency"] = DigestFrequency(changes["digest_frequency"])
    if "timezone" in changes:
        try:
            ZoneInfo(str(changes["timezone"]))
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {changes['timezone']!r}") from exc
    if "minimum_priority" in changes:
        changes["minimum_priority"] = Priority(changes["minimum_priority"])
    for field in ("frequency_limit_per_hour", "frequency_limit_per_day"):
        value = changes.get(field)
        if value is not None and (not isinstance(value, int) or value < 0):
            raise ValueError(f"{field} must be a non-negative integer or None")
