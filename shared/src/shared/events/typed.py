from typing import Any, Self

from pydantic import BaseModel, model_validator

from shared.enums import OrderEventType, PaymentEventType, UserEventType
from shared.events.base import EventMetadata
from shared.events.payloads import OrderPayload, PaymentPayload, UserPayload


class OrderEvent(BaseModel):
    metadata: EventMetadata
    payload: OrderPayload

    @model_validator(mode="after")
    def _check_event_type(self) -> Self:
        if not isinstance(self.metadata.event_type, OrderEventType):
            raise ValueError(
                f"Expected an order event, got {self.metadata.event_type!r}"
            )
        return self


class PaymentEvent(BaseModel):
    metadata: EventMetadata
    payload: PaymentPayload

    @model_validator(mode="after")
    def _check_event_type(self) -> Self:
        if not isinstance(self.metadata.event_type, PaymentEventType):
            raise ValueError(
                f"Expected a payment event, got {self.metadata.event_type!r}"
            )
        return self


class UserEvent(BaseModel):
    metadata: EventMetadata
    payload: UserPayload

    @model_validator(mode="after")
    def _check_event_type(self) -> Self:
        if not isinstance(self.metadata.event_type, UserEventType):
            raise ValueError(
                f"Expected a user event, got {self.metadata.event_type!r}"
            )
        return self


AnyTypedEvent = OrderEvent | PaymentEvent | UserEvent

_EVENT_REGISTRY: dict[str, type[BaseModel]] = {
    **{e.value: OrderEvent for e in OrderEventType},
    **{e.value: PaymentEvent for e in PaymentEventType},
    **{e.value: UserEvent for e in UserEventType},
}


def parse_event(raw: dict[str, Any]) -> AnyTypedEvent:
    """Deserialize a raw dict (e.g. an AMQP message body) into a typed event.

    Raises ValueError if event_type is missing or unknown; pydantic's
    ValidationError (itself a ValueError) if the payload is malformed.
    """
    try:
        event_type = raw["metadata"]["event_type"]
    except (KeyError, TypeError) as exc:
        raise ValueError("Missing metadata.event_type in raw event") from exc

    event_cls = _EVENT_REGISTRY.get(event_type)
    if event_cls is None:
        raise ValueError(f"Unknown event type: {event_type!r}")

    return event_cls.model_validate(raw)  # type: ignore[return-value]
