from typing import Any, Dict, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict


class PaymentEntity(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    order_id: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None


class PaymentContainer(BaseModel):
    entity: PaymentEntity


class PaymentPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    payment: PaymentContainer


class ProviderEvent(BaseModel):
    """Common envelope fields of a provider webhook."""
    model_config = ConfigDict(extra="allow")

    id: str
    event: str
    created_at: Optional[int] = None


class PaymentEvent(ProviderEvent):
    payload: PaymentPayload

    @property
    def payment(self) -> PaymentEntity:
        return self.payload.payment.entity

    @property
    def order_id(self) -> str:
        return self.payment.order_id

    @property
    def payment_id(self) -> str:
        return self.payment.id


class PaymentCapturedEvent(PaymentEvent):
    event: Literal["payment.captured"]


class PaymentFailedEvent(PaymentEvent):
    event: Literal["payment.failed"]


class UnknownEvent(ProviderEvent):
    """
    Event types this service does not act on. Only id and event are required;
    the rest of the body is kept as sent.
    """
    created_at: Any = None
    payload: Any = None


WebhookPayload = Union[PaymentCapturedEvent, PaymentFailedEvent, UnknownEvent]

EVENT_TYPES = {
    "payment.captured": PaymentCapturedEvent,
    "payment.failed": PaymentFailedEvent,
}


def parse_event(data: Dict[str, Any]) -> WebhookPayload:
    """
    Pick the model by the `event` tag. Raises pydantic.ValidationError when a
    known event type does not match its schema.
    """
    tag = data.get("event")
    model = EVENT_TYPES.get(tag, UnknownEvent) if isinstance(tag, str) else UnknownEvent
    return model.model_validate(data)
