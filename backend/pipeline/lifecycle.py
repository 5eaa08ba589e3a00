"""
Order Lifecycle hooks called by the checkout surface.

- order_drafted: publish order.created and schedule the cart reminder
- payment_started: DRAFT -> PENDING_PAYMENT and cancel the reminder
"""

from decimal import Decimal
from typing import Optional

import structlog

from pipeline.models import Customer, Order, OrderItem, Payment, WebhookEvent
from pipeline.order_events import OrderEventPublisher
from pipeline.repositories import IOrderRepository
from pipeline.settlement import OrderSettlement
from tasks.cart_reminder import CartReminderScheduler

logger = structlog.get_logger(component="order_lifecycle")


class OrderLifecycle:

    def __init__(
        self,
        orders: IOrderRepository,
        settlement: OrderSettlement,
        publisher: OrderEventPublisher,
        reminders: CartReminderScheduler,
    ):
        self.orders = orders
        self.settlement = settlement
        self.publisher = publisher
        self.reminders = reminders

    async def create_draft(self, order: Order, customer: Customer, items: list[OrderItem]) -> Order:
        await self.orders.create_order(order, customer, items)
        await self.order_drafted(order.id)
        return order

    async def order_drafted(self, order_id: str) -> None:
        await self.publisher.publish(WebhookEvent.ORDER_CREATED.value, order_id)
        await self.reminders.schedule_reminder(order_id)
        logger.info("order_drafted", order_id=order_id)

    async def payment_started(
        self,
        order_id: str,
        provider_payment_id: str,
        amount: Decimal,
        method: Optional[str] = None,
    ) -> Payment:
        payment = await self.settlement.start_payment(order_id, provider_payment_id, amount, method)
        cancelled = await self.reminders.cancel_for_order(order_id)
        logger.info("reminders_cancelled_on_payment", order_id=order_id, cancelled=cancelled)
        return payment
