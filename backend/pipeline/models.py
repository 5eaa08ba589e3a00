"""
Domain Models
=============
Orders, payments, the audit trail and the webhook ledgers shared by the
settlement and dispatch components.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field

from pipeline.errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    ABANDONED_CART = "ABANDONED_CART"


class WebhookEvent(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_PAID = "order.paid"
    CART_REMINDER = "cart.reminder"


class WebhookJobStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.DRAFT: frozenset({OrderStatus.PENDING_PAYMENT, OrderStatus.ABANDONED_CART}),
    OrderStatus.PENDING_PAYMENT: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.ABANDONED_CART: frozenset(),
}

# Provider payment statuses that settle the order
APPROVED_STATUSES = frozenset({"approved"})
CANCELLING_STATUSES = frozenset({"rejected", "cancelled"})


def target_status_for(provider_status: str) -> Optional[OrderStatus]:
    """Order status implied by a provider payment status, if any"""
    if provider_status in APPROVED_STATUSES:
        return OrderStatus.PAID
    if provider_status in CANCELLING_STATUSES:
        return OrderStatus.CANCELLED
    return None


# =============================================================================
# ORDER AGGREGATE
# =============================================================================

class Customer(BaseModel):
    id: str
    name: str
    email: str
    phone: Optional[str] = None


class OrderItem(BaseModel):
    id: str = Field(default_factory=new_id)
    order_id: str
    product_id: str
    product_name: Optional[str] = None  # None when the product no longer exists
    product_price: Optional[Decimal] = None
    quantity: int = 1
    is_order_bump: bool = False
    is_upsell: bool = False


class Payment(BaseModel):
    id: str = Field(default_factory=new_id)
    order_id: str
    provider_payment_id: str
    status: str = "pending"
    method: Optional[str] = None
    amount: Decimal = Decimal("0")
    paid_at: Optional[datetime] = None
    raw_data: Optional[dict] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Order(BaseModel):
    """Core order entity"""
    id: str = Field(default_factory=new_id)
    checkout_id: str
    customer_id: str
    status: OrderStatus = OrderStatus.DRAFT
    paid_amount: Optional[Decimal] = None
    tracking_session_id: Optional[str] = None
    status_updated_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def can_transition_to(self, new_status: OrderStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[self.status]

    def transition_to(self, new_status: OrderStatus, **changes) -> "Order":
        """Immutable state transition along an allowed edge"""
        if not self.can_transition_to(new_status):
            raise InvalidTransitionError(self.status.value, new_status.value, order_id=self.id)
        now = utcnow()
        return self.model_copy(update={
            **changes,
            "status": new_status,
            "status_updated_at": now,
            "updated_at": now,
        })


class OrderWithRelations(BaseModel):
    """Read model handed to the event resource builder"""
    order: Order
    customer: Customer
    items: list[OrderItem] = Field(default_factory=list)
    payment: Optional[Payment] = None


class OrderStatusHistory(BaseModel):
    """Append-only audit row, one per transition"""
    id: str = Field(default_factory=new_id)
    order_id: str
    previous_status: Optional[OrderStatus] = None
    new_status: OrderStatus
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# WEBHOOK LEDGERS
# =============================================================================

class ExternalWebhookLog(BaseModel):
    """Inbound idempotency ledger row, unique per webhook_id"""
    id: str = Field(default_factory=new_id)
    webhook_id: str
    source: str = "mercadopago"
    payment_id: Optional[str] = None
    action: Optional[str] = None
    provider_status: Optional[str] = None
    payload: Optional[str] = None
    headers: dict = Field(default_factory=dict)
    success: bool = False
    error_msg: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Subscriber(BaseModel):
    """Outbound webhook registration, owned by administrators"""
    id: str = Field(default_factory=new_id)
    url: str
    events: list[str] = Field(default_factory=list)
    secret: Optional[str] = None
    description: Optional[str] = None
    active: bool = True
    deleted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def is_deliverable(self) -> bool:
        return self.active and self.deleted_at is None

    def listens_to(self, event: str) -> bool:
        return self.is_deliverable and event in self.events


class WebhookLog(BaseModel):
    """Outbound delivery ledger row, one per attempt"""
    id: str = Field(default_factory=new_id)
    webhook_id: str
    event: str
    payload: dict
    response: Optional[str] = None
    status_code: Optional[int] = None
    success: bool = False
    attempt: int = 1
    sent_at: datetime = Field(default_factory=utcnow)


class WebhookJob(BaseModel):
    """Cart reminder bookkeeping row"""
    id: str = Field(default_factory=new_id)
    order_id: str
    job_type: str = "cart_reminder"
    job_id: str
    status: WebhookJobStatus = WebhookJobStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
