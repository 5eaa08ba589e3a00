# schemas/event_definitions.py
# ============================================================================
# OUTBOUND WEBHOOK EVENT SCHEMAS
# ============================================================================
# Typed event resources sent to webhook subscribers. Field names on the wire
# are camelCase (except ``value_total``); every resource is validated before
# it leaves the builder.
# ============================================================================

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


# ============================================================================
# SECTION 1: SHARED DEFINITIONS
# ============================================================================

def _check_uuid(value: str) -> str:
    uuid.UUID(value)
    return value


UUIDStr = Annotated[str, AfterValidator(_check_uuid)]


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CustomerResource(WireModel):
    id: UUIDStr
    name: str = Field(min_length=1)
    email: EmailStr
    phone: str = ""


class OrderTotals(WireModel):
    total_items: int = Field(ge=1)
    value_total: float = Field(ge=0, alias="value_total")


class OrderItemResource(WireModel):
    id: UUIDStr
    product_id: UUIDStr
    name: str
    quantity: int = Field(ge=1)
    price: float = Field(ge=0)
    is_order_bump: bool = False
    is_upsell: bool = False


class CartItemResource(WireModel):
    id: UUIDStr
    product_id: UUIDStr
    name: str
    quantity: int = Field(ge=1)
    price: float = Field(ge=0)


# ============================================================================
# SECTION 2: EVENT RESOURCES
# ============================================================================

class OrderCreatedEvent(WireModel):
    event: Literal["order.created"] = "order.created"
    id: UUIDStr
    checkout_id: UUIDStr
    customer: CustomerResource
    resource: OrderTotals
    items: List[OrderItemResource] = Field(min_length=1)
    status: str
    created_at: datetime
    updated_at: datetime


class OrderPaidEvent(OrderCreatedEvent):
    event: Literal["order.paid"] = "order.paid"
    payment_id: UUIDStr
    paid_at: datetime
    payment_method: str


class CartReminderEvent(WireModel):
    event: Literal["cart.reminder"] = "cart.reminder"
    order_id: UUIDStr
    customer: CustomerResource
    items: List[CartItemResource] = Field(min_length=1)
    created_at: datetime
    updated_at: datetime


EventResource = Annotated[
    Union[OrderCreatedEvent, OrderPaidEvent, CartReminderEvent],
    Field(discriminator="event"),
]


# ============================================================================
# SECTION 3: DELIVERY ENVELOPE
# ============================================================================

class WebhookEnvelope(BaseModel):
    """
    What subscribers receive: ``{"event", "data", "timestamp"}``.

    ``data`` is the resource without its ``event`` field.
    """
    event: str
    data: Dict[str, Any]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def wrap(cls, resource: Union[OrderCreatedEvent, OrderPaidEvent, CartReminderEvent]) -> "WebhookEnvelope":
        return cls(
            event=resource.event,
            data=resource.model_dump(mode="json", by_alias=True, exclude={"event"}),
        )
