"""
Event Resource Builder.

Pure mapping from an order and its relations to a validated event resource.
A validation failure here is a programming error: it raises
``EventSchemaError`` and is never retried.
"""

from typing import Callable, Union

import structlog
from pydantic import ValidationError

from pipeline.errors import EventSchemaError
from pipeline.models import Customer, OrderItem, OrderWithRelations, WebhookEvent, utcnow
from schemas.event_definitions import (
    CartReminderEvent,
    OrderCreatedEvent,
    OrderPaidEvent,
)

logger = structlog.get_logger(component="event_builder")

PRODUCT_NOT_FOUND = "Product not found"

Resource = Union[OrderCreatedEvent, OrderPaidEvent, CartReminderEvent]


def _customer(customer: Customer) -> dict:
    return {
        "id": customer.id,
        "name": customer.name,
        "email": customer.email,
        "phone": customer.phone or "",
    }


def _item(item: OrderItem) -> dict:
    return {
        "id": item.id,
        "product_id": item.product_id,
        "name": item.product_name or PRODUCT_NOT_FOUND,
        "quantity": item.quantity,
        "price": float(item.product_price) if item.product_price is not None else 0.0,
        "is_order_bump": bool(item.is_order_bump),
        "is_upsell": bool(item.is_upsell),
    }


def _order_fields(snapshot: OrderWithRelations) -> dict:
    order = snapshot.order
    items = [_item(i) for i in snapshot.items]
    return {
        "id": order.id,
        "checkout_id": order.checkout_id,
        "customer": _customer(snapshot.customer),
        "resource": {
            "total_items": sum(i["quantity"] for i in items),
            "value_total": round(sum(i["price"] * i["quantity"] for i in items), 2),
        },
        "items": items,
        "status": order.status.value,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
    }


def build_order_created(snapshot: OrderWithRelations) -> OrderCreatedEvent:
    return OrderCreatedEvent.model_validate(_order_fields(snapshot))


def build_order_paid(snapshot: OrderWithRelations) -> OrderPaidEvent:
    payment = snapshot.payment
    if payment is None:
        raise EventSchemaError(
            "order.paid requires a payment",
            context={"order_id": snapshot.order.id},
        )
    return OrderPaidEvent.model_validate({
        **_order_fields(snapshot),
        "payment_id": payment.id,
        "paid_at": payment.paid_at or utcnow(),
        "payment_method": payment.method or "",
    })


def build_cart_reminder(snapshot: OrderWithRelations) -> CartReminderEvent:
    items = [_item(i) for i in snapshot.items]
    return CartReminderEvent.model_validate({
        "order_id": snapshot.order.id,
        "customer": _customer(snapshot.customer),
        "items": [
            {k: i[k] for k in ("id", "product_id", "name", "quantity", "price")}
            for i in items
        ],
        "created_at": snapshot.order.created_at,
        "updated_at": snapshot.order.updated_at,
    })


BUILDERS: dict[str, Callable[[OrderWithRelations], Resource]] = {
    WebhookEvent.ORDER_CREATED.value: build_order_created,
    WebhookEvent.ORDER_PAID.value: build_order_paid,
    WebhookEvent.CART_REMINDER.value: build_cart_reminder,
}


def build_event(event_name: str, snapshot: OrderWithRelations) -> Resource:
    """Build and validate the resource for ``event_name``."""
    builder = BUILDERS.get(event_name)
    if builder is None:
        raise EventSchemaError(f"Unknown event: {event_name}", context={"event": event_name})

    try:
        return builder(snapshot)
    except ValidationError as e:
        logger.critical(
            "event_schema_invalid",
            event_name=event_name,
            order_id=snapshot.order.id,
            errors=e.errors(include_url=False),
        )
        raise EventSchemaError(
            f"Invalid {event_name} resource for order {snapshot.order.id}",
            context={"event": event_name, "order_id": snapshot.order.id},
        ) from e
