"""Database layer: models, repositories, engine/session utilities."""

from shared.db.base import Base, create_db_engine, create_session_factory
from shared.db.models import (
    DeliveryRecord,
    Notification,
    NotificationCancellation,
    Preference,
)
from shared.db.repositories import (
    CancellationRepository,
    DeliveryRecordRepository,
    NotificationRepository,
    PreferenceRepository,
)

__all__ = [
    "Base",
    "create_db_engine",
    "create_session_factory",
    "Notification",
    "DeliveryRecord",
    "Preference",
    "NotificationCancellation",
    "NotificationRepository",
    "DeliveryRecordRepository",
    "PreferenceRepository",
    "CancellationRepository",
]
