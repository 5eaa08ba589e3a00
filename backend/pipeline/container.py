"""
Pipeline service container.

Built once at process start and handed to the HTTP layer through
``app.state``. Owns the lifecycle of pools, HTTP clients and queue workers.
"""

from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from database import Database
from pipeline.background import BackgroundTasks
from pipeline.delivery_queue import IDeliveryQueue, InMemoryDeliveryQueue
from pipeline.dispatcher import WebhookDispatcher
from pipeline.inbound import InboundWebhookHandler, SignatureVerifier
from pipeline.lifecycle import OrderLifecycle
from pipeline.order_events import OrderEventPublisher
from pipeline.repositories import (
    InMemoryOrderRepository,
    InMemoryWebhookRepository,
    IOrderRepository,
    IWebhookRepository,
)
from pipeline.settings import PipelineSettings, settings as default_settings
from pipeline.settlement import OrderSettlement
from services.payment_provider import IPaymentProvider, MercadoPagoClient
from services.tracking import TrackingDispatcher
from tasks.cart_reminder import CartReminderScheduler

logger = structlog.get_logger(component="container")


@dataclass
class PipelineServices:
    orders: IOrderRepository
    webhooks: IWebhookRepository
    queue: IDeliveryQueue
    provider: IPaymentProvider
    dispatcher: WebhookDispatcher
    tracking: TrackingDispatcher
    settlement: OrderSettlement
    publisher: OrderEventPublisher
    reminders: CartReminderScheduler
    lifecycle: OrderLifecycle
    inbound: InboundWebhookHandler
    background: BackgroundTasks
    database: Optional[Database] = None

    @classmethod
    def assemble(
        cls,
        orders: IOrderRepository,
        webhooks: IWebhookRepository,
        queue: IDeliveryQueue,
        provider: IPaymentProvider,
        http_client: Optional[httpx.AsyncClient] = None,
        webhook_secret: Optional[str] = None,
        reminder_delay: Optional[float] = None,
        database: Optional[Database] = None,
    ) -> "PipelineServices":
        """Wire components together. ``http_client`` is shared by outbound calls when given."""
        dispatcher = WebhookDispatcher(webhooks, client=http_client)
        tracking = TrackingDispatcher(client=http_client)
        settlement = OrderSettlement(orders)
        publisher = OrderEventPublisher(orders, dispatcher, queue)

        reminder_kwargs = {} if reminder_delay is None else {"delay_seconds": reminder_delay}
        reminders = CartReminderScheduler(webhooks, queue, settlement, publisher, **reminder_kwargs)

        background = BackgroundTasks()
        verifier = SignatureVerifier(webhook_secret) if webhook_secret is not None else SignatureVerifier()
        inbound = InboundWebhookHandler(
            orders=orders,
            provider=provider,
            settlement=settlement,
            publisher=publisher,
            reminders=reminders,
            tracking=tracking,
            background=background,
            verifier=verifier,
        )

        return cls(
            orders=orders,
            webhooks=webhooks,
            queue=queue,
            provider=provider,
            dispatcher=dispatcher,
            tracking=tracking,
            settlement=settlement,
            publisher=publisher,
            reminders=reminders,
            lifecycle=OrderLifecycle(orders, settlement, publisher, reminders),
            inbound=inbound,
            background=background,
            database=database,
        )

    @classmethod
    def in_memory(cls, provider: IPaymentProvider, **kwargs) -> "PipelineServices":
        """Single-process wiring with in-memory stores and queue."""
        queue = kwargs.pop("queue", None) or InMemoryDeliveryQueue()
        return cls.assemble(
            orders=kwargs.pop("orders", None) or InMemoryOrderRepository(),
            webhooks=kwargs.pop("webhooks", None) or InMemoryWebhookRepository(),
            queue=queue,
            provider=provider,
            **kwargs,
        )

    @classmethod
    async def from_settings(cls, config: PipelineSettings = default_settings) -> "PipelineServices":
        """Production wiring: PostgreSQL repositories and the configured queue backend."""
        from pipeline.postgres import PostgresOrderRepository, PostgresWebhookRepository

        database = Database()
        await database.initialize()

        if config.QUEUE_BACKEND == "redis":
            from pipeline.redis_queue import RedisDeliveryQueue
            queue: IDeliveryQueue = RedisDeliveryQueue.from_url(config.REDIS_URL, queue_name=config.QUEUE_NAME)
        else:
            queue = InMemoryDeliveryQueue()

        return cls.assemble(
            orders=PostgresOrderRepository(database),
            webhooks=PostgresWebhookRepository(database),
            queue=queue,
            provider=MercadoPagoClient(),
            database=database,
        )

    async def start(self) -> None:
        await self.queue.start()
        logger.info("pipeline_started", queue=self.queue.name)

    async def shutdown(self) -> None:
        await self.background.drain()
        await self.queue.drain()
        await self.queue.close()
        await self.dispatcher.close()
        await self.tracking.close()
        await self.provider.close()
        if self.database:
            await self.database.close()
        logger.info("pipeline_stopped")
