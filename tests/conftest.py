import asyncio
import inspect
import json
import uuid
from decimal import Decimal
from typing import Optional

import httpx
import pytest

from pipeline.container import PipelineServices
from pipeline.delivery_queue import InMemoryDeliveryQueue
from pipeline.errors import PaymentNotFoundError, ProviderUnavailableError
from pipeline.inbound import build_manifest, compute_signature
from pipeline.models import Customer, Order, OrderItem, Subscriber, WebhookEvent
from pipeline.repositories import InMemoryOrderRepository, InMemoryWebhookRepository
from services.payment_provider import IPaymentProvider, ProviderPayment

WEBHOOK_SECRET = "test-webhook-secret"
SUBSCRIBER_URL = "https://hooks.example.com/orders"
SUBSCRIBER_SECRET = "subscriber-secret"


class FakeProvider(IPaymentProvider):
    """Provider double: answers from a dict, or fails when ``unavailable`` is set."""

    def __init__(self):
        self.payments: dict[str, ProviderPayment] = {}
        self.unavailable = False
        self.calls: list[str] = []

    def set_status(self, payment_id: str, status: str, amount: str = "149.90", method: str = "pix"):
        self.payments[payment_id] = ProviderPayment(
            id=payment_id,
            status=status,
            amount=Decimal(amount),
            method=method,
            raw={"id": payment_id, "status": status},
        )

    async def get_payment(self, payment_id: str) -> ProviderPayment:
        self.calls.append(payment_id)
        if self.unavailable:
            raise ProviderUnavailableError(f"provider down for {payment_id}")
        if payment_id not in self.payments:
            raise PaymentNotFoundError(f"no payment {payment_id}")
        return self.payments[payment_id]


class SubscriberEndpoint:
    """Records outbound requests; answers with queued status codes, then 200."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.statuses: list[int] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status, text="ok" if status < 400 else "nope")

    def to(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == url]

    def events(self, url: str = SUBSCRIBER_URL) -> list[str]:
        return [r.headers["X-Webhook-Event"] for r in self.to(url)]

    def bodies(self, url: str = SUBSCRIBER_URL) -> list[dict]:
        return [json.loads(r.content) for r in self.to(url)]


def signed_headers(payment_id: str, request_id: Optional[str] = None, secret: str = WEBHOOK_SECRET) -> dict:
    ts = "1718000000"
    v1 = compute_signature(secret, build_manifest(payment_id, request_id, ts))
    headers = {"x-signature": f"ts={ts},v1={v1}", "content-type": "application/json"}
    if request_id:
        headers["x-request-id"] = request_id
    return headers


def notification(payment_id: str, action: str = "payment.updated") -> bytes:
    return json.dumps({"action": action, "data": {"id": payment_id}}).encode()


async def seed_order(orders, *, tracking_session_id: Optional[str] = None, product_name: Optional[str] = "Curso Online") -> Order:
    customer = Customer(
        id=str(uuid.uuid4()),
        name="Ana Souza",
        email="ana.souza@example.com",
        phone="+5511999990000",
    )
    order = Order(
        checkout_id=str(uuid.uuid4()),
        customer_id=customer.id,
        tracking_session_id=tracking_session_id,
    )
    items = [
        OrderItem(
            order_id=order.id,
            product_id=str(uuid.uuid4()),
            product_name=product_name,
            product_price=Decimal("99.90"),
        ),
        OrderItem(
            order_id=order.id,
            product_id=str(uuid.uuid4()),
            product_name="Bonus Ebook",
            product_price=Decimal("25.00"),
            quantity=2,
            is_order_bump=True,
        ),
    ]
    await orders.create_order(order, customer, items)
    return order


@pytest.fixture
def eventually():
    async def _eventually(predicate, timeout: float = 3.0, interval: float = 0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = predicate()
            if inspect.isawaitable(result):
                result = await result
            if result:
                return result
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return _eventually


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def endpoint():
    return SubscriberEndpoint()


@pytest.fixture
def subscriber():
    return Subscriber(
        id=str(uuid.uuid4()),
        url=SUBSCRIBER_URL,
        events=[e.value for e in WebhookEvent],
        secret=SUBSCRIBER_SECRET,
    )


@pytest.fixture
async def http_client(endpoint):
    client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    yield client
    await client.aclose()


@pytest.fixture
async def services(provider, subscriber, http_client):
    queue = InMemoryDeliveryQueue(max_concurrent=2, retry_delays=(0.01, 0.02, 0.03))
    svc = PipelineServices.in_memory(
        provider,
        queue=queue,
        orders=InMemoryOrderRepository(),
        webhooks=InMemoryWebhookRepository([subscriber]),
        http_client=http_client,
        webhook_secret=WEBHOOK_SECRET,
        reminder_delay=0.05,
    )
    await svc.start()
    yield svc
    await svc.shutdown()
