"""Event type to notification priority mapping."""

from shared.enums import (
    OrderEventType,
    PaymentEventType,
    Priority,
    UserEventType,
)

_PRIORITY_MAP: dict[str, Priority] = {
    OrderEventType.PLACED: Priority.HIGH,
    OrderEventType.SHIPPED: Priority.NORMAL,
    OrderEventType.DELIVERED: Priority.NORMAL,
    OrderEventType.CANCELLED: Priority.HIGH,
    PaymentEventType.SUCCEEDED: Priority.NORMAL,
    PaymentEventType.FAILED: Priority.CRITICAL,
    PaymentEventType.REFUNDED: Priority.NORMAL,
    UserEventType.REGISTERED: Priority.NORMAL,
    UserEventType.PASSWORD_RESET: Priority.CRITICAL,
}


def get_priority(event_type: str) -> Priority:
    """Return the default notification priority for a given event type.

    Raises ValueError for unknown event types.
    """
    priority = _PRIORITY_MAP.get(event_type)
    if priority is None:
        raise ValueError(f"No priority mapping for event type: {event_type!r}")
    return priority
