"""
Repositories
============
Persistence interfaces for the settlement and dispatch pipeline plus the
in-memory implementations used by single-process deployments and tests.
The PostgreSQL implementations live in ``pipeline.postgres``.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from pipeline.models import (
    Customer,
    ExternalWebhookLog,
    Order,
    OrderItem,
    OrderStatusHistory,
    OrderWithRelations,
    Payment,
    Subscriber,
    WebhookJob,
    WebhookJobStatus,
    WebhookLog,
    utcnow,
)


# =============================================================================
# PERSISTENCE INTERFACES
# =============================================================================

class IOrderTransaction(ABC):
    """Writes staged inside one all-or-nothing unit of work"""

    @abstractmethod
    async def get_order_for_update(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_payment_for_update(self, payment_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def insert_payment(self, payment: Payment) -> Payment:
        pass

    @abstractmethod
    async def update_payment(self, payment: Payment) -> Payment:
        pass

    @abstractmethod
    async def update_order(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def append_history(self, entry: OrderStatusHistory) -> OrderStatusHistory:
        pass

    @abstractmethod
    async def record_webhook_log_entry(self, entry: ExternalWebhookLog) -> ExternalWebhookLog:
        pass


class IOrderRepository(ABC):
    """Orders, payments, status history and the inbound ledger"""

    @abstractmethod
    def transaction(self) -> "AsyncIterator[IOrderTransaction]":
        """Async context manager; commits on clean exit, rolls back on error."""
        pass

    @abstractmethod
    async def create_order(self, order: Order, customer: Customer, items: list[OrderItem]) -> Order:
        pass

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_order_with_relations(self, order_id: str) -> Optional[OrderWithRelations]:
        pass

    @abstractmethod
    async def get_payment_by_provider_id(self, provider_payment_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def get_history(self, order_id: str) -> list[OrderStatusHistory]:
        pass

    @abstractmethod
    async def get_webhook_log_entry(self, webhook_id: str) -> Optional[ExternalWebhookLog]:
        pass

    @abstractmethod
    async def record_webhook_log_entry(self, entry: ExternalWebhookLog) -> ExternalWebhookLog:
        """Upsert by webhook_id outside of any settlement transaction."""
        pass


class IWebhookRepository(ABC):
    """Subscriber registry (read-only here), delivery ledger and reminder jobs"""

    @abstractmethod
    async def list_active_subscribers(self, event: str) -> list[Subscriber]:
        pass

    @abstractmethod
    async def get_subscriber(self, subscriber_id: str) -> Optional[Subscriber]:
        pass

    @abstractmethod
    async def append_delivery_log(self, entry: WebhookLog) -> WebhookLog:
        pass

    @abstractmethod
    async def get_delivery_log(self, log_id: str) -> Optional[WebhookLog]:
        pass

    @abstractmethod
    async def list_delivery_logs(
        self,
        webhook_id: Optional[str] = None,
        event: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookLog]:
        pass

    @abstractmethod
    async def delivery_stats(self, webhook_id: Optional[str] = None) -> dict:
        pass

    @abstractmethod
    async def create_job(self, job: WebhookJob) -> WebhookJob:
        pass

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[WebhookJob]:
        """Look up by queue job id"""
        pass

    @abstractmethod
    async def list_active_jobs(self, order_id: str, job_type: str) -> list[WebhookJob]:
        pass

    @abstractmethod
    async def update_job_status(self, job_id: str, status: WebhookJobStatus) -> bool:
        """Move an active job to a final status. Returns False if it was not active."""
        pass


def build_stats(total: int, successful: int) -> dict:
    failed = total - successful
    return {
        "total": total,
        "successful": successful,
        "failed": failed,
        "success_rate": round(successful / total * 100, 2) if total else 0.0,
    }


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryOrderTransaction(IOrderTransaction):
    """Stages writes and applies them to the store only on commit"""

    def __init__(self, store: "InMemoryOrderRepository"):
        self._store = store
        self._orders: dict[str, Order] = {}
        self._payments: dict[str, Payment] = {}
        self._history: list[OrderStatusHistory] = []
        self._ledger: dict[str, ExternalWebhookLog] = {}

    async def get_order_for_update(self, order_id: str) -> Optional[Order]:
        return self._orders.get(order_id) or self._store._orders.get(order_id)

    async def get_payment_for_update(self, payment_id: str) -> Optional[Payment]:
        return self._payments.get(payment_id) or self._store._payments.get(payment_id)

    async def insert_payment(self, payment: Payment) -> Payment:
        self._payments[payment.id] = payment
        return payment

    async def update_payment(self, payment: Payment) -> Payment:
        self._payments[payment.id] = payment.model_copy(update={"updated_at": utcnow()})
        return self._payments[payment.id]

    async def update_order(self, order: Order) -> Order:
        self._orders[order.id] = order
        return order

    async def append_history(self, entry: OrderStatusHistory) -> OrderStatusHistory:
        self._history.append(entry)
        return entry

    async def record_webhook_log_entry(self, entry: ExternalWebhookLog) -> ExternalWebhookLog:
        self._ledger[entry.webhook_id] = entry
        return entry

    def commit(self) -> None:
        self._store._orders.update(self._orders)
        for payment in self._payments.values():
            self._store._payments[payment.id] = payment
            self._store._payments_by_provider_id[payment.provider_payment_id] = payment.id
        self._store._history.extend(self._history)
        for entry in self._ledger.values():
            self._store._upsert_ledger(entry)


class InMemoryOrderRepository(IOrderRepository):
    """Order store serialized by a single asyncio.Lock"""

    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._customers: dict[str, Customer] = {}
        self._items: dict[str, list[OrderItem]] = {}
        self._payments: dict[str, Payment] = {}
        self._payments_by_provider_id: dict[str, str] = {}
        self._history: list[OrderStatusHistory] = []
        self._ledger: dict[str, ExternalWebhookLog] = {}
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryOrderTransaction]:
        async with self._lock:
            tx = InMemoryOrderTransaction(self)
            yield tx
            tx.commit()

    async def create_order(self, order: Order, customer: Customer, items: list[OrderItem]) -> Order:
        async with self._lock:
            self._customers[customer.id] = customer
            self._orders[order.id] = order
            self._items[order.id] = list(items)
            return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._orders.get(order_id)

    async def get_order_with_relations(self, order_id: str) -> Optional[OrderWithRelations]:
        async with self._lock:
            order = self._orders.get(order_id)
            if not order:
                return None
            payments = [p for p in self._payments.values() if p.order_id == order_id]
            payments.sort(key=lambda p: p.created_at)
            return OrderWithRelations(
                order=order,
                customer=self._customers[order.customer_id],
                items=list(self._items.get(order_id, [])),
                payment=payments[-1] if payments else None,
            )

    async def get_payment_by_provider_id(self, provider_payment_id: str) -> Optional[Payment]:
        async with self._lock:
            payment_id = self._payments_by_provider_id.get(provider_payment_id)
            return self._payments.get(payment_id) if payment_id else None

    async def get_history(self, order_id: str) -> list[OrderStatusHistory]:
        async with self._lock:
            return [h for h in self._history if h.order_id == order_id]

    async def get_webhook_log_entry(self, webhook_id: str) -> Optional[ExternalWebhookLog]:
        async with self._lock:
            return self._ledger.get(webhook_id)

    async def record_webhook_log_entry(self, entry: ExternalWebhookLog) -> ExternalWebhookLog:
        async with self._lock:
            return self._upsert_ledger(entry)

    def _upsert_ledger(self, entry: ExternalWebhookLog) -> ExternalWebhookLog:
        existing = self._ledger.get(entry.webhook_id)
        if existing:
            entry = entry.model_copy(update={"id": existing.id, "created_at": existing.created_at})
        self._ledger[entry.webhook_id] = entry
        return entry


class InMemoryWebhookRepository(IWebhookRepository):
    """Subscriber registry and delivery ledgers kept in process memory"""

    def __init__(self, subscribers: Optional[list[Subscriber]] = None):
        self._subscribers: dict[str, Subscriber] = {s.id: s for s in subscribers or []}
        self._logs: list[WebhookLog] = []
        self._jobs: dict[str, WebhookJob] = {}
        self._lock = asyncio.Lock()

    async def add_subscriber(self, subscriber: Subscriber) -> Subscriber:
        async with self._lock:
            self._subscribers[subscriber.id] = subscriber
            return subscriber

    async def list_active_subscribers(self, event: str) -> list[Subscriber]:
        async with self._lock:
            return [s for s in self._subscribers.values() if s.listens_to(event)]

    async def get_subscriber(self, subscriber_id: str) -> Optional[Subscriber]:
        async with self._lock:
            return self._subscribers.get(subscriber_id)

    async def append_delivery_log(self, entry: WebhookLog) -> WebhookLog:
        async with self._lock:
            self._logs.append(entry)
            return entry

    async def get_delivery_log(self, log_id: str) -> Optional[WebhookLog]:
        async with self._lock:
            for entry in self._logs:
                if entry.id == log_id:
                    return entry
            return None

    async def list_delivery_logs(
        self,
        webhook_id: Optional[str] = None,
        event: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookLog]:
        async with self._lock:
            matches = [
                entry for entry in reversed(self._logs)
                if (webhook_id is None or entry.webhook_id == webhook_id)
                and (event is None or entry.event == event)
                and (success is None or entry.success == success)
            ]
            return matches[offset:offset + limit]

    async def delivery_stats(self, webhook_id: Optional[str] = None) -> dict:
        async with self._lock:
            logs = [e for e in self._logs if webhook_id is None or e.webhook_id == webhook_id]
            return build_stats(len(logs), sum(1 for e in logs if e.success))

    async def create_job(self, job: WebhookJob) -> WebhookJob:
        async with self._lock:
            self._jobs[job.job_id] = job
            return job

    async def get_job(self, job_id: str) -> Optional[WebhookJob]:
        async with self._lock:
            return self._jobs.get(job_id)

    async def list_active_jobs(self, order_id: str, job_type: str) -> list[WebhookJob]:
        async with self._lock:
            return [
                j for j in self._jobs.values()
                if j.order_id == order_id
                and j.job_type == job_type
                and j.status == WebhookJobStatus.ACTIVE
            ]

    async def update_job_status(self, job_id: str, status: WebhookJobStatus) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if not job or job.status != WebhookJobStatus.ACTIVE:
                return False
            self._jobs[job_id] = job.model_copy(update={
                "status": status,
                "completed_at": utcnow() if status == WebhookJobStatus.COMPLETED else None,
            })
            return True
