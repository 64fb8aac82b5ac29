"""Routing table from inbound domain events to notifications.

Each event type maps to one or more routes. A route names the notification
type, the channels it goes out on and the subject/body templates rendered
against the event payload. A channel is used only when the payload carries
a recipient address for it.
"""

from dataclasses import dataclass

from pydantic import BaseModel

from shared.enums import (
    Channel,
    NotificationType,
    OrderEventType,
    PaymentEventType,
    Priority,
    UserEventType,
)


@dataclass(frozen=True, slots=True)
class Route:
    notification_type: NotificationType
    channels: tuple[Channel, ...]
    subject: str
    body: str
    priority: Priority | None = None


_ALL_CHANNELS = (Channel.EMAIL, Channel.SMS, Channel.PUSH, Channel.IN_APP)

ROUTES: dict[str, tuple[Route, ...]] = {
    OrderEventType.PLACED: (
        Route(
            NotificationType.ORDER_CONFIRMATION,
            (Channel.EMAIL, Channel.IN_APP),
            subject="Order {{ order_number }} confirmed",
            body=(
                "Thanks for your order {{ order_number }}. "
                "Total: {{ total_amount }} {{ currency }}."
            ),
        ),
    ),
    OrderEventType.SHIPPED: (
        Route(
            NotificationType.ORDER_SHIPPED,
            _ALL_CHANNELS,
            subject="Order {{ order_number }} has shipped",
            body=(
                "Your order {{ order_number }} is on its way"
                "{% if carrier %} with {{ carrier }}{% endif %}"
                "{% if tracking_number %}. Tracking: {{ tracking_number }}{% endif %}."
            ),
        ),
    ),
    OrderEventType.DELIVERED: (
        Route(
            NotificationType.ORDER_DELIVERED,
            (Channel.PUSH, Channel.IN_APP),
            subject="Order delivered",
            body="Your order {{ order_number }} has been delivered.",
        ),
    ),
    OrderEventType.CANCELLED: (
        Route(
            NotificationType.ORDER_CANCELLED,
            (Channel.EMAIL, Channel.IN_APP),
            subject="Order {{ order_number }} cancelled",
            body=(
                "Your order {{ order_number }} was cancelled"
                "{% if reason %}: {{ reason }}{% endif %}."
            ),
        ),
    ),
    PaymentEventType.SUCCEEDED: (
        Route(
            NotificationType.PAYMENT_SUCCESS,
            (Channel.EMAIL, Channel.IN_APP),
            subject="Payment received",
            body="We received your payment of {{ amount }} {{ currency }}.",
        ),
    ),
    PaymentEventType.FAILED: (
        Route(
            NotificationType.PAYMENT_FAILED,
            (Channel.EMAIL, Channel.SMS, Channel.PUSH),
            subject="Payment failed",
            body=(
                "Your payment of {{ amount }} {{ currency }} failed"
                "{% if reason %}: {{ reason }}{% endif %}. "
                "Please update your payment method."
            ),
        ),
    ),
    PaymentEventType.REFUNDED: (
        Route(
            NotificationType.PAYMENT_REFUND,
            (Channel.EMAIL,),
            subject="Refund issued",
            body="A refund of {{ amount }} {{ currency }} is on its way to you.",
        ),
    ),
    UserEventType.REGISTERED: (
        Route(
            NotificationType.WELCOME,
            (Channel.EMAIL, Channel.IN_APP),
            subject="Welcome{% if name %}, {{ name }}{% endif %}!",
            body="Welcome aboard{% if name %}, {{ name }}{% endif %}. We're glad you're here.",
        ),
    ),
    UserEventType.PASSWORD_RESET: (
        Route(
            NotificationType.PASSWORD_RESET,
            (Channel.EMAIL,),
            subject="Reset your password",
            body="Use this link to reset your password: {{ reset_url }}",
        ),
        Route(
            NotificationType.SECURITY_ALERT,
            (Channel.PUSH,),
            subject="Security alert",
            body="A password reset was requested for your account.",
            priority=Priority.HIGH,
        ),
    ),
}


def routes_for(event_type: str) -> tuple[Route, ...]:
    """Return the routes for an event type.

    Raises ValueError for event types without routes.
    """
    routes = ROUTES.get(event_type)
    if routes is None:
        raise ValueError(f"No routes for event type: {event_type!r}")
    return routes


def recipient_for(channel: Channel, payload: BaseModel) -> str | None:
    """Address on ``channel`` carried by the payload, or None if absent."""
    if channel == Channel.EMAIL:
        return getattr(payload, "email", None) or None
    if channel == Channel.SMS:
        return getattr(payload, "phone", None) or None
    if channel == Channel.PUSH:
        return getattr(payload, "push_token", None) or None
    if channel == Channel.IN_APP:
        user_id = getattr(payload, "user_id", None)
        return str(user_id) if user_id is not None else None
    return None
