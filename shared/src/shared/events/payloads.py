from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, EmailStr


class Contact(BaseModel):
    """Recipient addresses carried by upstream events."""

    email: EmailStr | None = None
    phone: str | None = None
    push_token: str | None = None


class OrderPayload(Contact):
    order_id: UUID
    user_id: UUID
    order_number: str
    total_amount: Decimal
    currency: str = "USD"
    tracking_number: str | None = None
    carrier: str | None = None
    reason: str | None = None


class PaymentPayload(Contact):
    payment_id: UUID
    order_id: UUID | None = None
    user_id: UUID
    amount: Decimal
    currency: str = "USD"
    reason: str | None = None


class UserPayload(Contact):
    user_id: UUID
    name: str | None = None
    reset_url: str | None = None
