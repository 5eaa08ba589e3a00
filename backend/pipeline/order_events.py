"""
Order Event Publisher.

Builds the event resource for an order and fans it out as one delivery job
per active subscriber, so each subscriber retries independently.
"""

import structlog

from pipeline.delivery_queue import IDeliveryQueue, QueueJob
from pipeline.dispatcher import WebhookDispatcher
from pipeline.errors import OrderNotFoundError
from pipeline.event_builder import build_event
from pipeline.repositories import IOrderRepository
from schemas.event_definitions import WebhookEnvelope

DELIVERY_JOB = "webhook.delivery"


class OrderEventPublisher:

    def __init__(
        self,
        orders: IOrderRepository,
        dispatcher: WebhookDispatcher,
        queue: IDeliveryQueue,
    ):
        self.orders = orders
        self.dispatcher = dispatcher
        self.queue = queue
        self.queue.register(DELIVERY_JOB, self._deliver_job)
        self._logger = structlog.get_logger().bind(component="order_events")

    async def build_envelope(self, event_name: str, order_id: str) -> WebhookEnvelope:
        snapshot = await self.orders.get_order_with_relations(order_id)
        if not snapshot:
            raise OrderNotFoundError(f"Order not found: {order_id}", context={"order_id": order_id})
        return WebhookEnvelope.wrap(build_event(event_name, snapshot))

    async def publish(self, event_name: str, order_id: str) -> list[QueueJob]:
        """Enqueue one delivery job per active subscriber of ``event_name``."""
        envelope = await self.build_envelope(event_name, order_id)
        subscribers = await self.dispatcher.subscribers_for(event_name)

        jobs = []
        for subscriber in subscribers:
            jobs.append(await self.queue.enqueue(DELIVERY_JOB, {
                "webhook_id": subscriber.id,
                "envelope": envelope.model_dump(mode="json"),
            }))

        self._logger.info("event_published",
                          event_name=event_name,
                          order_id=order_id,
                          subscribers=len(subscribers))
        return jobs

    async def _deliver_job(self, job: QueueJob) -> None:
        webhook_id: str = job.data["webhook_id"]
        subscriber = await self.dispatcher.webhooks.get_subscriber(webhook_id)
        if not subscriber or not subscriber.is_deliverable:
            self._logger.info("delivery_skipped_inactive", webhook_id=webhook_id, job_id=job.id)
            return

        envelope = WebhookEnvelope.model_validate(job.data["envelope"])
        await self.dispatcher.deliver(subscriber, envelope, attempt=job.attempts)
