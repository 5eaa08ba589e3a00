import uuid
from datetime import datetime, timezone

import httpx
import pytest

from pipeline.dispatcher import WebhookDispatcher, sign_payload, verify_payload_signature
from pipeline.errors import DeliveryFailedError, NotFoundError
from pipeline.models import Subscriber
from pipeline.repositories import InMemoryWebhookRepository
from schemas.event_definitions import WebhookEnvelope

from conftest import SUBSCRIBER_SECRET, SUBSCRIBER_URL

OTHER_URL = "https://crm.example.org/hooks"


def envelope(event="order.paid") -> WebhookEnvelope:
    return WebhookEnvelope(event=event, data={"id": str(uuid.uuid4())})


@pytest.fixture
def webhooks(subscriber):
    return InMemoryWebhookRepository([subscriber])


@pytest.fixture
def dispatcher(webhooks, http_client):
    return WebhookDispatcher(webhooks, client=http_client, response_limit=50)


async def test_headers_and_signature(dispatcher, subscriber, endpoint):
    entry = await dispatcher.attempt(subscriber, envelope(), attempt=2)

    assert entry.success
    assert entry.status_code == 200
    request = endpoint.requests[0]
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["User-Agent"] == "Checkout-Webhook/1.0"
    assert request.headers["X-Webhook-Event"] == "order.paid"
    assert request.headers["X-Webhook-Attempt"] == "2"
    uuid.UUID(request.headers["X-Webhook-Delivery"])
    assert verify_payload_signature(request.content, SUBSCRIBER_SECRET, request.headers["X-Webhook-Signature"])


def test_subscriber_side_verification_rejects_tampering():
    body = b'{"event":"order.paid","data":{}}'
    signature = sign_payload(body, SUBSCRIBER_SECRET)

    assert verify_payload_signature(body, SUBSCRIBER_SECRET, signature)
    assert not verify_payload_signature(body + b" ", SUBSCRIBER_SECRET, signature)
    assert not verify_payload_signature(body, "other-secret", signature)
    assert not verify_payload_signature(body, "", signature)


async def test_delivery_ids_are_unique_per_attempt(dispatcher, subscriber, endpoint):
    await dispatcher.attempt(subscriber, envelope())
    await dispatcher.attempt(subscriber, envelope())

    ids = {r.headers["X-Webhook-Delivery"] for r in endpoint.requests}
    assert len(ids) == 2


async def test_unsigned_when_subscriber_has_no_secret(webhooks, dispatcher, endpoint):
    plain = await webhooks.add_subscriber(Subscriber(url=OTHER_URL, events=["order.paid"]))

    await dispatcher.attempt(plain, envelope())

    assert "X-Webhook-Signature" not in endpoint.to(OTHER_URL)[0].headers


async def test_failed_attempt_is_logged_and_truncated(dispatcher, subscriber, endpoint, webhooks):
    endpoint.statuses = [500]

    with pytest.raises(DeliveryFailedError) as exc:
        await dispatcher.deliver(subscriber, envelope())

    assert exc.value.retryable
    assert exc.value.response_status == 500
    logs = await webhooks.list_delivery_logs()
    assert len(logs) == 1
    assert logs[0].success is False
    assert logs[0].status_code == 500
    assert logs[0].response == "nope"


async def test_network_error_is_logged_without_status(webhooks, subscriber):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
        dispatcher = WebhookDispatcher(webhooks, client=client)
        entry = await dispatcher.attempt(subscriber, envelope())

    assert entry.success is False
    assert entry.status_code is None
    assert entry.response.startswith("ConnectError")


async def test_dispatch_fans_out_to_listeners_only(webhooks, dispatcher, subscriber, endpoint):
    other = await webhooks.add_subscriber(Subscriber(url=OTHER_URL, events=["order.paid"]))
    await webhooks.add_subscriber(Subscriber(url="https://created.example.net", events=["order.created"]))
    await webhooks.add_subscriber(Subscriber(url="https://off.example.net", events=["order.paid"], active=False))
    await webhooks.add_subscriber(Subscriber(
        url="https://gone.example.net", events=["order.paid"], deleted_at=datetime.now(timezone.utc),
    ))

    attempted = await dispatcher.dispatch(envelope())

    assert sorted(attempted) == sorted([subscriber.id, other.id])
    assert sorted(str(r.url) for r in endpoint.requests) == sorted([SUBSCRIBER_URL, OTHER_URL])


async def test_dispatch_without_subscribers_attempts_nothing(http_client, endpoint):
    dispatcher = WebhookDispatcher(InMemoryWebhookRepository(), client=http_client)

    assert await dispatcher.dispatch(envelope()) == []
    assert endpoint.requests == []


async def test_one_failing_subscriber_does_not_block_others(webhooks, dispatcher, endpoint):
    await webhooks.add_subscriber(Subscriber(url=OTHER_URL, events=["order.paid"]))
    endpoint.statuses = [503]

    await dispatcher.dispatch(envelope())

    stats = await dispatcher.stats()
    assert stats == {"total": 2, "successful": 1, "failed": 1, "success_rate": 50.0}


async def test_replay_sends_logged_payload_as_next_attempt(dispatcher, subscriber, endpoint):
    endpoint.statuses = [500]
    original = envelope()
    failed = await dispatcher.attempt(subscriber, original)

    replayed = await dispatcher.replay(failed.id)

    assert replayed.success
    assert replayed.attempt == 2
    assert replayed.payload == failed.payload
    assert endpoint.requests[1].headers["X-Webhook-Attempt"] == "2"
    assert endpoint.requests[0].content == endpoint.requests[1].content


async def test_replay_unknown_log(dispatcher):
    with pytest.raises(NotFoundError):
        await dispatcher.replay(str(uuid.uuid4()))


async def test_replay_to_inactive_subscriber(webhooks, dispatcher):
    inactive = await webhooks.add_subscriber(Subscriber(url=OTHER_URL, events=["order.paid"]))
    entry = await dispatcher.attempt(inactive, envelope())
    await webhooks.add_subscriber(inactive.model_copy(update={"active": False}))

    with pytest.raises(NotFoundError):
        await dispatcher.replay(entry.id)


async def test_logs_filter_newest_first(dispatcher, subscriber, endpoint):
    endpoint.statuses = [200, 500, 200]
    for event in ("order.created", "order.paid", "order.paid"):
        await dispatcher.attempt(subscriber, envelope(event))

    paid = await dispatcher.logs(event="order.paid")
    failed = await dispatcher.logs(success=False)
    page = await dispatcher.logs(limit=1, offset=1)

    assert [e.success for e in paid] == [True, False]
    assert len(failed) == 1 and failed[0].event == "order.paid"
    assert page[0].event == "order.paid" and page[0].success is False
    assert await dispatcher.stats(webhook_id=str(uuid.uuid4())) == {
        "total": 0, "successful": 0, "failed": 0, "success_rate": 0.0,
    }
