from shared.events.base import Event, EventMetadata
from shared.events.lifecycle import LifecycleEvent
from shared.events.payloads import (
    Contact,
    OrderPayload,
    PaymentPayload,
    UserPayload,
)
from shared.events.typed import (
    AnyTypedEvent,
    OrderEvent,
    PaymentEvent,
    UserEvent,
    parse_event,
)

__all__ = [
    "Event",
    "EventMetadata",
    "LifecycleEvent",
    "Contact",
    "OrderPayload",
    "PaymentPayload",
    "UserPayload",
    "OrderEvent",
    "PaymentEvent",
    "UserEvent",
    "AnyTypedEvent",
    "parse_event",
]
