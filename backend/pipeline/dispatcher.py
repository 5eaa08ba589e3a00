"""
Webhook Dispatcher
==================
Signs an event envelope per subscriber and POSTs it, recording one
WebhookLog row per attempt whatever the outcome.

Headers sent with every attempt:
- X-Webhook-Signature: sha256=<hex HMAC of the exact body bytes>
- X-Webhook-Event, X-Webhook-Delivery (fresh UUID), X-Webhook-Attempt
- User-Agent, Content-Type: application/json

Subscribers check a delivery with ``verify_payload_signature(body, secret,
headers["X-Webhook-Signature"])`` against the raw request body.
"""

import asyncio
import hashlib
import hmac
import uuid
from typing import Optional

import httpx
import structlog

from pipeline.errors import DeliveryFailedError, NotFoundError
from pipeline.models import Subscriber, WebhookLog
from pipeline.repositories import IWebhookRepository
from pipeline.settings import settings
from schemas.event_definitions import WebhookEnvelope


def sign_payload(body: bytes, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return None
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_payload_signature(body: bytes, secret: str, signature: str) -> bool:
    """Subscriber-side check, kept here so both ends share one definition."""
    expected = sign_payload(body, secret)
    return expected is not None and hmac.compare_digest(expected, signature)


class WebhookDispatcher:
    """Outbound delivery to registered subscribers"""

    def __init__(
        self,
        webhooks: IWebhookRepository,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = settings.HTTP_TIMEOUT_SECONDS,
        user_agent: str = settings.USER_AGENT,
        response_limit: int = settings.RESPONSE_BODY_LIMIT,
    ):
        self.webhooks = webhooks
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._user_agent = user_agent
        self._response_limit = response_limit
        self._logger = structlog.get_logger().bind(component="webhook_dispatcher")

    async def close(self) -> None:
        await self._client.aclose()

    async def subscribers_for(self, event: str) -> list[Subscriber]:
        return await self.webhooks.list_active_subscribers(event)

    def build_headers(self, subscriber: Subscriber, event: str, body: bytes, attempt: int) -> dict:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            "X-Webhook-Event": event,
            "X-Webhook-Delivery": str(uuid.uuid4()),
            "X-Webhook-Attempt": str(attempt),
        }
        signature = sign_payload(body, subscriber.secret)
        if signature:
            headers["X-Webhook-Signature"] = signature
        return headers

    async def attempt(self, subscriber: Subscriber, envelope: WebhookEnvelope, attempt: int = 1) -> WebhookLog:
        """One POST; never raises for HTTP or network failures."""
        body = envelope.model_dump_json().encode()
        headers = self.build_headers(subscriber, envelope.event, body, attempt)
        log = self._logger.bind(webhook_id=subscriber.id, event_name=envelope.event, attempt=attempt)

        status_code: Optional[int] = None
        try:
            response = await self._client.post(subscriber.url, content=body, headers=headers)
            status_code = response.status_code
            response_text = response.text[:self._response_limit]
            success = response.is_success
        except httpx.TimeoutException as e:
            response_text = f"Timeout: {e}"[:self._response_limit]
            success = False
        except httpx.HTTPError as e:
            response_text = f"{type(e).__name__}: {e}"[:self._response_limit]
            success = False

        entry = await self.webhooks.append_delivery_log(WebhookLog(
            webhook_id=subscriber.id,
            event=envelope.event,
            payload=envelope.model_dump(mode="json"),
            response=response_text,
            status_code=status_code,
            success=success,
            attempt=attempt,
        ))

        if success:
            log.info("delivery_succeeded", status_code=status_code)
        else:
            log.warning("delivery_failed", status_code=status_code, response=response_text[:200])
        return entry

    async def deliver(self, subscriber: Subscriber, envelope: WebhookEnvelope, attempt: int = 1) -> WebhookLog:
        """One attempt; raises DeliveryFailedError so the queue can retry."""
        entry = await self.attempt(subscriber, envelope, attempt)
        if not entry.success:
            raise DeliveryFailedError(
                f"Delivery to {subscriber.url} failed",
                status_code=entry.status_code,
                context={"webhook_id": subscriber.id, "event": envelope.event, "attempt": attempt},
            )
        return entry

    async def dispatch(self, envelope: WebhookEnvelope) -> list[str]:
        """
        Deliver once to every active subscriber of the event.

        Subscribers are attempted concurrently and independently; returns the
        ids that were attempted.
        """
        subscribers = await self.subscribers_for(envelope.event)
        if not subscribers:
            self._logger.info("no_subscribers", event_name=envelope.event)
            return []

        await asyncio.gather(*(self.attempt(s, envelope) for s in subscribers))
        return [s.id for s in subscribers]

    async def replay(self, log_id: str) -> WebhookLog:
        """Re-send a logged payload to its subscriber as a new attempt."""
        previous = await self.webhooks.get_delivery_log(log_id)
        if not previous:
            raise NotFoundError(f"Webhook log not found: {log_id}", context={"log_id": log_id})

        subscriber = await self.webhooks.get_subscriber(previous.webhook_id)
        if not subscriber or not subscriber.is_deliverable:
            raise NotFoundError(
                f"Webhook {previous.webhook_id} is not active",
                context={"webhook_id": previous.webhook_id},
            )

        self._logger.info("delivery_replayed", log_id=log_id, webhook_id=subscriber.id)
        envelope = WebhookEnvelope.model_validate(previous.payload)
        return await self.attempt(subscriber, envelope, attempt=previous.attempt + 1)

    async def logs(
        self,
        webhook_id: Optional[str] = None,
        event: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookLog]:
        return await self.webhooks.list_delivery_logs(webhook_id, event, success, limit, offset)

    async def stats(self, webhook_id: Optional[str] = None) -> dict:
        return await self.webhooks.delivery_stats(webhook_id)
