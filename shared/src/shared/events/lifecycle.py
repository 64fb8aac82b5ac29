"""Outbound lifecycle events describing what happened to a notification."""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from shared.enums import Channel, LifecycleEventType


class LifecycleEvent(BaseModel):
    event_id: UUID = Field(default_factory=uuid4)
    event_type: LifecycleEventType
    notification_id: UUID
    delivery_id: UUID | None = None
    user_id: UUID
    notification_type: str
    channel: Channel
    status: str
    correlation_id: str | None = None
    provider_name: str | None = None
    attempt_count: int = 0
    error_code: str | None = None
    error_message: str | None = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def routing_key(self) -> str:
        return f"event.{self.event_type}.{self.channel}"

    def publish_routing_key(self, prefix: str = "notification") -> str:
        """Routing key on the lifecycle exchange, e.g. ``notification.event.delivered.email``."""
        return f"{prefix}.{self.routing_key}"
