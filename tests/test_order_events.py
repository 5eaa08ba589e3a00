import pytest

from pipeline.delivery_queue import JobState
from pipeline.errors import OrderNotFoundError
from pipeline.models import Subscriber

from conftest import seed_order


async def test_publish_enqueues_one_job_per_listener(services, endpoint, eventually):
    await services.webhooks.add_subscriber(Subscriber(url="https://paid-only.example.net", events=["order.paid"]))
    order = await seed_order(services.orders)

    jobs = await services.publisher.publish("order.created", order.id)

    assert len(jobs) == 1
    assert jobs[0].data["envelope"]["event"] == "order.created"
    await eventually(lambda: endpoint.events() == ["order.created"])


async def test_always_failing_subscriber_gets_bounded_attempts(services, subscriber, endpoint, eventually):
    endpoint.statuses = [500, 500, 500, 500]
    order = await seed_order(services.orders)

    [job] = await services.publisher.publish("order.created", order.id)

    await eventually(lambda: job.status == JobState.FAILED)
    attempts = [r.headers["X-Webhook-Attempt"] for r in endpoint.to(subscriber.url)]
    assert attempts == ["1", "2", "3"]

    logs = await services.dispatcher.logs(webhook_id=subscriber.id)
    assert sorted(entry.attempt for entry in logs) == [1, 2, 3]
    assert not any(entry.success for entry in logs)
    assert [j.id for j in await services.queue.dead_letters()] == [job.id]


async def test_subscriber_deactivated_before_delivery_is_skipped(services, subscriber, endpoint, eventually):
    order = await seed_order(services.orders)

    [job] = await services.publisher.publish("order.created", order.id)
    await services.webhooks.add_subscriber(subscriber.model_copy(update={"active": False}))

    await eventually(lambda: job.status == JobState.COMPLETED)
    assert endpoint.requests == []
    assert await services.dispatcher.logs() == []


async def test_publish_for_missing_order(services):
    with pytest.raises(OrderNotFoundError):
        await services.publisher.publish("order.created", "missing")
