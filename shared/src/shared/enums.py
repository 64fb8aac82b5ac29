from enum import StrEnum


class OrderEventType(StrEnum):
    PLACED = "order.placed"
    SHIPPED = "order.shipped"
    DELIVERED = "order.delivered"
    CANCELLED = "order.cancelled"


class PaymentEventType(StrEnum):
    SUCCEEDED = "payment.succeeded"
    FAILED = "payment.failed"
    REFUNDED = "payment.refunded"


class UserEventType(StrEnum):
    REGISTERED = "user.registered"
    PASSWORD_RESET = "user.password_reset"


EventType = OrderEventType | PaymentEventType | UserEventType

ALL_EVENT_TYPES: set[str] = {
    e.value for enum_cls in (OrderEventType, PaymentEventType, UserEventType) for e in enum_cls
}


class Channel(StrEnum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    IN_APP = "in_app"


class Priority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK: dict[str, int] = {
    Priority.LOW: 0,
    Priority.NORMAL: 1,
    Priority.HIGH: 2,
    Priority.CRITICAL: 3,
}


class NotificationType(StrEnum):
    ORDER_CONFIRMATION = "order_confirmation"
    ORDER_SHIPPED = "order_shipped"
    ORDER_DELIVERED = "order_delivered"
    ORDER_CANCELLED = "order_cancelled"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUND = "payment_refund"
    WELCOME = "welcome"
    PASSWORD_RESET = "password_reset"
    SECURITY_ALERT = "security_alert"
    DIGEST = "digest"


class NotificationStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    DIGEST_PENDING = "digest_pending"
    DIGESTED = "digested"


class DeliveryStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    BOUNCED = "bounced"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_DELIVERY_STATUSES


TERMINAL_DELIVERY_STATUSES: frozenset[str] = frozenset({
    DeliveryStatus.SUCCESS,
    DeliveryStatus.FAILED,
    DeliveryStatus.BOUNCED,
    DeliveryStatus.CANCELLED,
})


class FailureClass(StrEnum):
    """Classification of a failed provider call.

    Providers assign the class; the retry policy only ever reads it.
    """

    TIMEOUT = "timeout"
    THROTTLED = "throttled"
    PROVIDER_ERROR = "provider_error"
    INVALID_RECIPIENT = "invalid_recipient"
    REJECTED = "rejected"

    @property
    def retryable(self) -> bool:
        return self in (
            FailureClass.TIMEOUT,
            FailureClass.THROTTLED,
            FailureClass.PROVIDER_ERROR,
        )


class DenyReason(StrEnum):
    OPTED_OUT = "opted_out"
    PRIORITY_TOO_LOW = "priority_too_low"
    QUIET_HOURS = "quiet_hours"
    FREQUENCY_EXCEEDED = "frequency_exceeded"
    DIGEST = "digest"


class DigestFrequency(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"


class LifecycleEventType(StrEnum):
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    BOUNCED = "bounced"
    CANCELLED = "cancelled"
