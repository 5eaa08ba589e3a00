"""
Order Settlement Transaction
============================
Applies payment outcomes to Order, Payment and the status history in one
all-or-nothing unit of work. Also owns the two other order transitions the
pipeline performs: payment start and cart abandonment.
"""

from decimal import Decimal
from typing import Optional

import structlog
from pydantic import BaseModel

from pipeline.errors import OrderNotFoundError, PaymentNotFoundError
from pipeline.models import (
    ExternalWebhookLog,
    Order,
    OrderStatus,
    OrderStatusHistory,
    Payment,
    target_status_for,
    utcnow,
)
from pipeline.repositories import IOrderRepository, IOrderTransaction
from services.payment_provider import ProviderPayment


class SettlementOutcome(BaseModel):
    order_id: str
    payment_id: str
    previous_status: OrderStatus
    new_status: OrderStatus
    payment_status: str
    transitioned: bool


def _history_note(previous: OrderStatus, new: OrderStatus, method: Optional[str]) -> str:
    via = f" via {method}" if method else ""
    if new == OrderStatus.PAID:
        return f"Payment approved{via}"
    if new == OrderStatus.CANCELLED:
        return f"Payment rejected{via}"
    if new == OrderStatus.PENDING_PAYMENT:
        return f"Payment started{via}"
    if new == OrderStatus.ABANDONED_CART:
        return "Cart abandoned: reminder sent"
    return f"{previous.value} -> {new.value}"


class OrderSettlement:
    """Transactional order transitions driven by payment events"""

    def __init__(self, orders: IOrderRepository):
        self.orders = orders
        self._logger = structlog.get_logger().bind(component="settlement")

    async def _transition(
        self,
        tx: IOrderTransaction,
        order: Order,
        new_status: OrderStatus,
        method: Optional[str] = None,
        **changes,
    ) -> Order:
        updated = order.transition_to(new_status, **changes)
        await tx.update_order(updated)
        await tx.append_history(OrderStatusHistory(
            order_id=order.id,
            previous_status=order.status,
            new_status=new_status,
            notes=_history_note(order.status, new_status, method),
        ))
        return updated

    async def start_payment(
        self,
        order_id: str,
        provider_payment_id: str,
        amount: Decimal,
        method: Optional[str] = None,
    ) -> Payment:
        """Create the pending Payment and move the order DRAFT -> PENDING_PAYMENT."""
        async with self.orders.transaction() as tx:
            order = await tx.get_order_for_update(order_id)
            if not order:
                raise OrderNotFoundError(f"Order not found: {order_id}", context={"order_id": order_id})

            payment = await tx.insert_payment(Payment(
                order_id=order_id,
                provider_payment_id=provider_payment_id,
                method=method,
                amount=amount,
            ))
            await self._transition(tx, order, OrderStatus.PENDING_PAYMENT, method)

        self._logger.info("payment_started",
                          order_id=order_id,
                          payment_id=payment.id,
                          provider_payment_id=provider_payment_id,
                          method=method)
        return payment

    async def settle(
        self,
        payment_id: str,
        provider_payment: ProviderPayment,
        ledger_entry: Optional[ExternalWebhookLog] = None,
    ) -> SettlementOutcome:
        """
        Apply the authoritative provider status to a local payment and its order.

        Payment update, order transition, history row and the inbound ledger
        success row commit together or not at all. A provider status that maps
        to the order's current status only refreshes the payment.
        """
        async with self.orders.transaction() as tx:
            payment = await tx.get_payment_for_update(payment_id)
            if not payment:
                raise PaymentNotFoundError(f"Payment not found: {payment_id}", context={"payment_id": payment_id})

            order = await tx.get_order_for_update(payment.order_id)
            if not order:
                raise OrderNotFoundError(
                    f"Order not found: {payment.order_id}",
                    context={"order_id": payment.order_id},
                )

            approved = target_status_for(provider_payment.status) == OrderStatus.PAID
            method = provider_payment.method or payment.method
            await tx.update_payment(payment.model_copy(update={
                "status": provider_payment.status,
                "method": method,
                "paid_at": (provider_payment.paid_at or utcnow()) if approved else payment.paid_at,
                "raw_data": provider_payment.raw,
            }))

            previous_status = order.status
            target = target_status_for(provider_payment.status)
            transitioned = False
            if target is not None and order.status != target:
                changes = {"paid_amount": provider_payment.amount} if target == OrderStatus.PAID else {}
                order = await self._transition(tx, order, target, method, **changes)
                transitioned = True

            if ledger_entry is not None:
                await tx.record_webhook_log_entry(ledger_entry.model_copy(update={
                    "success": True,
                    "error_msg": None,
                }))

        outcome = SettlementOutcome(
            order_id=order.id,
            payment_id=payment.id,
            previous_status=previous_status,
            new_status=order.status,
            payment_status=provider_payment.status,
            transitioned=transitioned,
        )
        self._logger.info("settlement_committed", **outcome.model_dump(mode="json"))
        return outcome

    async def abandon_cart(self, order_id: str) -> bool:
        """DRAFT -> ABANDONED_CART if the order is still a draft. Returns whether it moved."""
        async with self.orders.transaction() as tx:
            order = await tx.get_order_for_update(order_id)
            if not order or order.status != OrderStatus.DRAFT:
                return False
            await self._transition(tx, order, OrderStatus.ABANDONED_CART)

        self._logger.info("cart_abandoned", order_id=order_id)
        return True
