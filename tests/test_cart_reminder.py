import asyncio
from decimal import Decimal

from pipeline.delivery_queue import JobState
from pipeline.errors import QueueClosedError
from pipeline.models import OrderStatus, WebhookJobStatus
from tasks.cart_reminder import JOB_TYPE

from conftest import seed_order


async def test_drafted_order_publishes_created_and_schedules_reminder(services, endpoint, eventually):
    order = await seed_order(services.orders)

    await services.lifecycle.order_drafted(order.id)

    jobs = await services.webhooks.list_active_jobs(order.id, JOB_TYPE)
    assert len(jobs) == 1
    assert await services.queue.get_status(jobs[0].job_id) == JobState.DELAYED
    await eventually(lambda: "order.created" in endpoint.events())


async def test_unpaid_draft_becomes_abandoned_and_gets_reminder(services, endpoint, eventually):
    order = await seed_order(services.orders)
    await services.lifecycle.order_drafted(order.id)

    await eventually(lambda: endpoint.events() == ["order.created", "cart.reminder"])

    assert (await services.orders.get_order(order.id)).status == OrderStatus.ABANDONED_CART
    body = endpoint.bodies()[1]
    assert body["data"]["orderId"] == order.id
    assert body["data"]["customer"]["email"] == "ana.souza@example.com"

    history = await services.orders.get_history(order.id)
    assert [h.new_status for h in history] == [OrderStatus.ABANDONED_CART]
    assert history[0].previous_status == OrderStatus.DRAFT


async def test_reminder_retried_after_publish_failure(services, endpoint, eventually, monkeypatch):
    order = await seed_order(services.orders)
    await services.lifecycle.order_drafted(order.id)
    record = (await services.webhooks.list_active_jobs(order.id, JOB_TYPE))[0]
    publish = services.reminders.publisher.publish
    failed = []

    async def publish_failing_once(event_name, order_id):
        if not failed:
            failed.append(event_name)
            raise QueueClosedError("Delivery queue is draining")
        return await publish(event_name, order_id)

    monkeypatch.setattr(services.reminders.publisher, "publish", publish_failing_once)

    await eventually(lambda: endpoint.events() == ["order.created", "cart.reminder"])
    await asyncio.sleep(0.05)

    assert endpoint.events() == ["order.created", "cart.reminder"]
    assert failed == ["cart.reminder"]
    assert (await services.queue.get_job(record.job_id)).attempts == 2
    assert (await services.webhooks.get_job(record.job_id)).status == WebhookJobStatus.COMPLETED
    history = await services.orders.get_history(order.id)
    assert [h.new_status for h in history] == [OrderStatus.ABANDONED_CART]


async def test_duplicate_reminder_for_abandoned_order_sends_nothing(services, endpoint, eventually):
    order = await seed_order(services.orders)
    await services.settlement.abandon_cart(order.id)
    record = await services.reminders.schedule_reminder(order.id)

    await eventually(lambda: _completed(services, record.job_id))

    assert endpoint.events() == []
    assert (await services.webhooks.get_job(record.job_id)).status == WebhookJobStatus.COMPLETED


async def test_payment_start_cancels_reminder(services, endpoint, eventually):
    order = await seed_order(services.orders)
    await services.lifecycle.order_drafted(order.id)
    job = (await services.webhooks.list_active_jobs(order.id, JOB_TYPE))[0]

    await services.lifecycle.payment_started(order.id, "2002", Decimal("149.90"), "credit_card")

    record = await services.webhooks.get_job(job.job_id)
    assert record.status == WebhookJobStatus.CANCELLED
    assert await services.queue.get_status(job.job_id) == JobState.CANCELLED

    await eventually(lambda: endpoint.events() == ["order.created"])
    await asyncio.sleep(0.15)
    assert endpoint.events() == ["order.created"]
    assert (await services.orders.get_order(order.id)).status == OrderStatus.PENDING_PAYMENT


async def test_reminder_is_noop_once_order_left_draft(services, endpoint, eventually):
    order = await seed_order(services.orders)
    record = await services.reminders.schedule_reminder(order.id)
    # Payment starts without going through the lifecycle hook, so the job stays queued
    await services.settlement.start_payment(order.id, "2003", Decimal("10"))

    await eventually(lambda: _completed(services, record.job_id))

    assert endpoint.events() == []
    assert (await services.orders.get_order(order.id)).status == OrderStatus.PENDING_PAYMENT
    assert (await services.webhooks.get_job(record.job_id)).status == WebhookJobStatus.COMPLETED


async def _completed(services, job_id):
    return await services.queue.get_status(job_id) == JobState.COMPLETED


async def test_cancel_unknown_reminder(services):
    assert await services.reminders.cancel_reminder("missing-job") is False


async def test_cancel_for_order_counts_active_jobs(services):
    order = await seed_order(services.orders)
    await services.reminders.schedule_reminder(order.id)
    await services.reminders.schedule_reminder(order.id)

    assert await services.reminders.cancel_for_order(order.id) == 2
    assert await services.reminders.cancel_for_order(order.id) == 0


async def test_disabled_scheduler_schedules_nothing(services):
    order = await seed_order(services.orders)
    services.reminders.enabled = False

    assert await services.reminders.schedule_reminder(order.id) is None
    assert await services.webhooks.list_active_jobs(order.id, JOB_TYPE) == []
