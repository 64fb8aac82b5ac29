import json
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from pydantic import ValidationError

from shared.enums import Channel, LifecycleEventType, OrderEventType, UserEventType
from shared.events import (
    EventMetadata,
    LifecycleEvent,
    OrderEvent,
    OrderPayload,
    PaymentEvent,
    UserEvent,
    UserPayload,
    parse_event,
)


def _order_raw(event_type: str = "order.placed") -> dict:
    return {
        "metadata": {"event_type": event_type, "correlation_id": "corr-1"},
        "payload": {
            "order_id": str(uuid4()),
            "user_id": str(uuid4()),
            "order_number": "ORD-1001",
            "total_amount": "49.90",
            "email": "buyer@example.com",
            "phone": "+15551234567",
        },
    }


class TestEventMetadata:
    def test_auto_generated_fields(self):
        meta = EventMetadata(event_type=UserEventType.REGISTERED)
        assert isinstance(meta.event_id, UUID)
        assert meta.occurred_at.tzinfo is not None
        assert meta.correlation_id is None
        assert meta.version == 1

    def test_invalid_event_type_rejected(self):
        with pytest.raises(ValidationError):
            EventMetadata(event_type="unknown.event")


class TestPayloads:
    def test_order_payload_decimal(self):
        p = OrderPayload(
            order_id=uuid4(),
            user_id=uuid4(),
            order_number="ORD-1",
            total_amount=Decimal("100.00"),
        )
        assert str(p.total_amount) == "100.00"
        assert p.email is None

    def test_invalid_email(self):
        with pytest.raises(ValidationError):
            UserPayload(user_id=uuid4(), email="not-an-email")


class TestParseEvent:
    def test_order_event(self):
        event = parse_event(_order_raw())
        assert isinstance(event, OrderEvent)
        assert event.metadata.event_type == OrderEventType.PLACED
        assert event.metadata.correlation_id == "corr-1"

    def test_payment_event(self):
        raw = {
            "metadata": {"event_type": "payment.failed"},
            "payload": {
                "payment_id": str(uuid4()),
                "user_id": str(uuid4()),
                "amount": "10.00",
                "reason": "card_declined",
            },
        }
        assert isinstance(parse_event(raw), PaymentEvent)

    def test_user_event(self):
        raw = {
            "metadata": {"event_type": "user.registered"},
            "payload": {"user_id": str(uuid4()), "email": "new@example.com"},
        }
        assert isinstance(parse_event(raw), UserEvent)

    def test_from_json_roundtrip_of_wire_body(self):
        body = json.dumps(_order_raw("order.shipped"))
        event = parse_event(json.loads(body))
        assert event.metadata.event_type == OrderEventType.SHIPPED

    def test_missing_metadata(self):
        with pytest.raises(ValueError, match="Missing metadata.event_type"):
            parse_event({"payload": {}})

    def test_not_a_dict(self):
        with pytest.raises(ValueError):
            parse_event(["nope"])  # type: ignore[arg-type]

    def test_unknown_event_type(self):
        with pytest.raises(ValueError, match="Unknown event type"):
            parse_event({"metadata": {"event_type": "order.exploded"}, "payload": {}})

    def test_invalid_payload(self):
        raw = _order_raw()
        del raw["payload"]["order_id"]
        with pytest.raises(ValidationError):
            parse_event(raw)


class TestLifecycleEvent:
    def _event(self, **overrides) -> LifecycleEvent:
        fields = {
            "event_type": LifecycleEventType.DELIVERED,
            "notification_id": uuid4(),
            "user_id": uuid4(),
            "notification_type": "order_confirmation",
            "channel": Channel.EMAIL,
            "status": "success",
        }
        fields.update(overrides)
        return LifecycleEvent(**fields)

    def test_routing_key(self):
        assert self._event().routing_key == "event.delivered.email"

    def test_publish_routing_key(self):
        event = self._event(event_type=LifecycleEventType.FAILED, channel=Channel.SMS)
        assert event.publish_routing_key() == "notification.event.failed.sms"

    def test_json_serialisable(self):
        data = json.loads(self._event(correlation_id="c-9").model_dump_json())
        assert data["event_type"] == "delivered"
        assert data["channel"] == "email"
        assert data["correlation_id"] == "c-9"
