"""
Cart Reminder Scheduler
=======================
Every freshly drafted order gets a delayed reminder job. Starting payment
cancels it. When the job fires, the processor re-reads the order: a
still-DRAFT order is marked ABANDONED_CART and a cart.reminder event goes
out; anything else is a no-op.

Features:
- Delayed jobs on the shared delivery queue, retried like deliveries
- WebhookJob bookkeeping (active -> cancelled | completed)
- Re-check under the settlement transaction so a late payment start wins
- A retry after a failed publish resumes from ABANDONED_CART; the
  WebhookJob only completes once the reminder is queued
"""

import os

import structlog

from pipeline.delivery_queue import IDeliveryQueue, QueueJob
from pipeline.models import OrderStatus, WebhookEvent, WebhookJob, WebhookJobStatus
from pipeline.order_events import OrderEventPublisher
from pipeline.repositories import IWebhookRepository
from pipeline.settlement import OrderSettlement

# Configure logger
logger = structlog.get_logger(component="cart_reminder")

REMINDER_JOB = "cart.reminder"
JOB_TYPE = "cart_reminder"


# =============================================================================
# CONFIGURATION
# =============================================================================

class CartReminderConfig:
    """Cart reminder configuration"""

    # How long a draft may sit before the reminder fires (seconds)
    DELAY_SECONDS = float(os.getenv("CART_REMINDER_DELAY_SECONDS", "100"))

    # Enable/disable scheduling of new reminders
    ENABLED = os.getenv("CART_REMINDER_ENABLED", "true").lower() == "true"


config = CartReminderConfig()


# =============================================================================
# SCHEDULER
# =============================================================================

class CartReminderScheduler:

    def __init__(
        self,
        webhooks: IWebhookRepository,
        queue: IDeliveryQueue,
        settlement: OrderSettlement,
        publisher: OrderEventPublisher,
        delay_seconds: float = config.DELAY_SECONDS,
        enabled: bool = config.ENABLED,
    ):
        self.webhooks = webhooks
        self.queue = queue
        self.settlement = settlement
        self.publisher = publisher
        self.delay_seconds = delay_seconds
        self.enabled = enabled
        self.queue.register(REMINDER_JOB, self.process)

    async def schedule_reminder(self, order_id: str) -> WebhookJob | None:
        """Queue the delayed reminder and record it as an active WebhookJob."""
        if not self.enabled:
            logger.info("cart_reminder_disabled", order_id=order_id)
            return None

        job = await self.queue.enqueue(
            REMINDER_JOB,
            {"order_id": order_id},
            delay=self.delay_seconds,
        )
        record = await self.webhooks.create_job(WebhookJob(
            order_id=order_id,
            job_type=JOB_TYPE,
            job_id=job.id,
        ))

        logger.info("cart_reminder_scheduled",
                    order_id=order_id,
                    job_id=job.id,
                    delay_seconds=self.delay_seconds)
        return record

    async def cancel_reminder(self, job_id: str) -> bool:
        """
        Cancel one reminder.

        The WebhookJob is marked cancelled even if the queue job already
        started; the processor then treats it as a no-op.
        """
        removed = await self.queue.cancel(job_id)
        marked = await self.webhooks.update_job_status(job_id, WebhookJobStatus.CANCELLED)

        logger.info("cart_reminder_cancelled",
                    job_id=job_id,
                    removed_from_queue=removed,
                    marked=marked)
        return removed or marked

    async def cancel_for_order(self, order_id: str) -> int:
        """Cancel every active reminder for an order. Returns how many were cancelled."""
        jobs = await self.webhooks.list_active_jobs(order_id, JOB_TYPE)
        cancelled = 0
        for job in jobs:
            if await self.cancel_reminder(job.job_id):
                cancelled += 1
        return cancelled

    # =========================================================================
    # PROCESSOR
    # =========================================================================

    async def process(self, job: QueueJob) -> None:
        order_id = job.data["order_id"]
        log = logger.bind(order_id=order_id, job_id=job.id, attempt=job.attempts)

        record = await self.webhooks.get_job(job.id)
        if record and record.status != WebhookJobStatus.ACTIVE:
            log.info("cart_reminder_skipped", reason=f"job {record.status.value}")
            return

        if not await self.settlement.abandon_cart(order_id):
            order = await self.settlement.orders.get_order(order_id)
            # Only a retry of this job may resume an abandonment it already committed
            resuming = order is not None and order.status == OrderStatus.ABANDONED_CART and job.attempts > 1
            if not resuming:
                await self.webhooks.update_job_status(job.id, WebhookJobStatus.COMPLETED)
                log.info("cart_reminder_skipped", reason="order left DRAFT")
                return
            log.info("cart_reminder_resumed")

        await self.publisher.publish(WebhookEvent.CART_REMINDER.value, order_id)
        await self.webhooks.update_job_status(job.id, WebhookJobStatus.COMPLETED)
        log.info("cart_reminder_sent")
