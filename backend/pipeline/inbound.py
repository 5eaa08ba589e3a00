"""
Inbound Webhook Handler
=======================
Entry point for payment-provider notifications. Each step is a hard gate:

1. Parse the notification body (action + data.id)
2. Verify the ``x-signature`` HMAC before anything touches state
3. Short-circuit notifications already recorded as successful
4. Fetch the authoritative payment from the provider
5. Settle the order in one transaction (ledger row included)
6. After commit: publish order.paid, cancel the cart reminder, track the purchase

Signature header: ``x-signature: ts=<unix>,v1=<hex>``. The signed manifest is
``id:<paymentId>;request-id:<x-request-id>;ts:<ts>;`` with absent parts
omitted.
"""

import hashlib
import hmac
import json
from typing import Mapping, Optional, Union

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator

from pipeline.background import BackgroundTasks
from pipeline.errors import (
    InvalidTransitionError,
    NotFoundError,
    PayloadValidationError,
    PaymentNotFoundError,
    ProviderUnavailableError,
    TransientError,
    WebhookAuthenticationError,
)
from pipeline.models import ExternalWebhookLog, OrderStatus, WebhookEvent
from pipeline.order_events import OrderEventPublisher
from pipeline.repositories import IOrderRepository
from pipeline.settings import settings
from pipeline.settlement import OrderSettlement, SettlementOutcome
from services.payment_provider import IPaymentProvider, ProviderPayment
from services.tracking import TrackingDispatcher
from tasks.cart_reminder import CartReminderScheduler

SOURCE = "mercadopago"
HANDLED_ACTIONS = frozenset({"payment.created", "payment.updated"})


# =============================================================================
# NOTIFICATION PAYLOAD
# =============================================================================

class NotificationData(BaseModel):
    id: str

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, v: Union[str, int]) -> str:
        if isinstance(v, bool) or not isinstance(v, (str, int)):
            raise ValueError("data.id must be a string or integer")
        value = str(v).strip()
        if not value:
            raise ValueError("data.id must not be empty")
        return value


class ProviderNotification(BaseModel):
    action: str
    data: NotificationData


class InboundResult(BaseModel):
    status_code: int = 200
    body: dict = Field(default_factory=dict)


def parse_notification(body: bytes) -> ProviderNotification:
    try:
        return ProviderNotification.model_validate(json.loads(body))
    except (ValueError, ValidationError) as e:
        raise PayloadValidationError(f"Malformed notification: {e}") from e


# =============================================================================
# SIGNATURE VERIFICATION
# =============================================================================

def parse_signature_header(header: str) -> dict[str, str]:
    parts = {}
    for chunk in header.split(","):
        key, sep, value = chunk.partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


def build_manifest(payment_id: Optional[str], request_id: Optional[str], ts: Optional[str]) -> str:
    manifest = ""
    if payment_id:
        manifest += f"id:{payment_id.lower() if payment_id.isalnum() else payment_id};"
    if request_id:
        manifest += f"request-id:{request_id};"
    if ts:
        manifest += f"ts:{ts};"
    return manifest


def compute_signature(secret: str, manifest: str) -> str:
    return hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()


class SignatureVerifier:

    def __init__(self, secret: str = settings.PROVIDER_WEBHOOK_SECRET):
        self._secret = secret

    def verify(self, header: Optional[str], request_id: Optional[str], payment_id: str) -> None:
        if not self._secret:
            raise WebhookAuthenticationError("Webhook secret not configured")
        if not header:
            raise WebhookAuthenticationError("Missing x-signature header")

        parts = parse_signature_header(header)
        ts, v1 = parts.get("ts"), parts.get("v1")
        if not ts or not v1:
            raise WebhookAuthenticationError("Malformed x-signature header")

        expected = compute_signature(self._secret, build_manifest(payment_id, request_id, ts))
        if not hmac.compare_digest(expected, v1):
            raise WebhookAuthenticationError("Invalid webhook signature")


def fallback_webhook_id(payment_id: str, action: str, provider_status: str) -> str:
    return f"mp-{payment_id}-{action}-{provider_status}"


# =============================================================================
# HANDLER
# =============================================================================

class InboundWebhookHandler:

    def __init__(
        self,
        orders: IOrderRepository,
        provider: IPaymentProvider,
        settlement: OrderSettlement,
        publisher: OrderEventPublisher,
        reminders: CartReminderScheduler,
        tracking: TrackingDispatcher,
        background: BackgroundTasks,
        verifier: Optional[SignatureVerifier] = None,
    ):
        self.orders = orders
        self.provider = provider
        self.settlement = settlement
        self.publisher = publisher
        self.reminders = reminders
        self.tracking = tracking
        self.background = background
        self.verifier = verifier or SignatureVerifier()
        self._base_logger = structlog.get_logger().bind(component="inbound_webhook")

    async def _already_processed(self, webhook_id: str) -> bool:
        entry = await self.orders.get_webhook_log_entry(webhook_id)
        return entry is not None and entry.success

    async def _record_failure(self, entry: ExternalWebhookLog, error: str, log) -> None:
        try:
            await self.orders.record_webhook_log_entry(entry.model_copy(update={
                "success": False,
                "error_msg": error,
            }))
        except Exception as e:
            log.error("ledger_write_failed", webhook_id=entry.webhook_id, error=str(e))

    async def handle(self, headers: Mapping[str, str], body: bytes) -> InboundResult:
        headers = {k.lower(): v for k, v in headers.items()}
        notification = parse_notification(body)
        payment_id = notification.data.id
        request_id = headers.get("x-request-id") or None

        self.verifier.verify(headers.get("x-signature"), request_id, payment_id)

        log = self._base_logger.bind(payment_id=payment_id, action=notification.action, request_id=request_id)
        log.info("webhook_received")

        if notification.action not in HANDLED_ACTIONS:
            log.info("webhook_ignored")
            return InboundResult(body={"success": True, "ignored": True})

        if request_id and await self._already_processed(request_id):
            log.info("webhook_duplicate", webhook_id=request_id)
            return InboundResult(body={"success": True, "duplicate": True})

        entry = ExternalWebhookLog(
            webhook_id=request_id or "",
            source=SOURCE,
            payment_id=payment_id,
            action=notification.action,
            payload=body.decode("utf-8", errors="replace"),
            headers={
                "user-agent": headers.get("user-agent"),
                "content-type": headers.get("content-type"),
            },
        )

        try:
            provider_payment = await self.provider.get_payment(payment_id)
        except PaymentNotFoundError as e:
            log.warning("provider_payment_not_found")
            if request_id:
                await self._record_failure(entry, e.message, log)
            return InboundResult(body={"success": False, "error": "payment not found"})
        except ProviderUnavailableError as e:
            if request_id:
                await self._record_failure(entry, e.message, log)
            log.warning("provider_unavailable", error=e.message)
            raise

        webhook_id = request_id or fallback_webhook_id(payment_id, notification.action, provider_payment.status)
        if not request_id and await self._already_processed(webhook_id):
            log.info("webhook_duplicate", webhook_id=webhook_id)
            return InboundResult(body={"success": True, "duplicate": True})

        entry = entry.model_copy(update={"webhook_id": webhook_id, "provider_status": provider_payment.status})
        log = log.bind(webhook_id=webhook_id, provider_status=provider_payment.status)

        payment = await self.orders.get_payment_by_provider_id(payment_id)
        if not payment:
            log.warning("payment_not_found")
            await self._record_failure(entry, "payment not found", log)
            return InboundResult(body={"success": False, "error": "payment not found"})

        try:
            outcome = await self.settlement.settle(payment.id, provider_payment, entry)
        except (InvalidTransitionError, NotFoundError) as e:
            log.warning("settlement_rejected", error=e.message, **e.context)
            await self._record_failure(entry, e.message, log)
            return InboundResult(body={"success": False, "error": e.message})
        except Exception as e:
            log.error("settlement_failed", error=f"{type(e).__name__}: {e}")
            await self._record_failure(entry, f"{type(e).__name__}: {e}", log)
            raise TransientError(f"Settlement failed for payment {payment_id}") from e

        if outcome.transitioned and outcome.new_status == OrderStatus.PAID:
            self._after_payment_approved(outcome, provider_payment)

        return InboundResult(body={
            "success": True,
            "order_id": outcome.order_id,
            "order_status": outcome.new_status.value,
            "transitioned": outcome.transitioned,
        })

    # =========================================================================
    # POST-COMMIT SIDE EFFECTS
    # =========================================================================

    def _after_payment_approved(self, outcome: SettlementOutcome, provider_payment: ProviderPayment) -> None:
        context = {"order_id": outcome.order_id, "payment_id": provider_payment.id}
        self.background.spawn(
            self.publisher.publish(WebhookEvent.ORDER_PAID.value, outcome.order_id),
            name="publish_order_paid",
            **context,
        )
        self.background.spawn(
            self.reminders.cancel_for_order(outcome.order_id),
            name="cancel_cart_reminder",
            **context,
        )
        self.background.spawn(
            self._track_purchase(outcome.order_id, provider_payment.id),
            name="track_purchase",
            **context,
        )

    async def _track_purchase(self, order_id: str, provider_payment_id: str) -> None:
        snapshot = await self.orders.get_order_with_relations(order_id)
        if snapshot:
            await self.tracking.send_purchase(snapshot, provider_payment_id)
