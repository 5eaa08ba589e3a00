# services/tracking.py
# ============================================================================
# PURCHASE TRACKING DISPATCH
# ============================================================================
# Hands an approved purchase to the tracking collaborator. Delivery is
# best-effort: failures are logged and never touch the settled order.
# ============================================================================

from typing import Any, Dict, Optional

import httpx
import structlog

from pipeline.models import OrderWithRelations
from pipeline.settings import settings

logger = structlog.get_logger(component="tracking")


def split_name(full_name: str) -> tuple[str, str]:
    parts = full_name.strip().split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def build_purchase_payload(snapshot: OrderWithRelations, provider_payment_id: str) -> Dict[str, Any]:
    order = snapshot.order
    customer = snapshot.customer
    first_name, last_name = split_name(customer.name)
    value = float(order.paid_amount or 0)

    return {
        "payload": {
            "trackingSessionId": order.tracking_session_id,
            "eventName": "Purchase",
            "eventId": f"purchase_{provider_payment_id}",
            "customData": {
                "value": value,
                "currency": "BRL",
                "content_ids": [i.product_id for i in snapshot.items],
                "contents": [
                    {
                        "id": i.product_id,
                        "quantity": i.quantity,
                        "item_price": float(i.product_price or 0),
                    }
                    for i in snapshot.items
                ],
                "content_type": "product",
                "order_id": order.id,
                "num_items": sum(i.quantity for i in snapshot.items),
            },
            "customer": {
                "email": customer.email,
                "phone": customer.phone,
                "firstName": first_name,
                "lastName": last_name,
            },
        }
    }


class TrackingDispatcher:
    """POSTs purchase events to the tracking endpoint"""

    def __init__(
        self,
        endpoint: str = settings.TRACKING_ENDPOINT,
        timeout: float = settings.HTTP_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._endpoint = endpoint
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def send_purchase(self, snapshot: OrderWithRelations, provider_payment_id: str) -> bool:
        """Returns False when skipped or rejected."""
        if not self._endpoint or not snapshot.order.tracking_session_id:
            logger.info("tracking_skipped", order_id=snapshot.order.id)
            return False

        try:
            response = await self._client.post(
                self._endpoint,
                json=build_purchase_payload(snapshot, provider_payment_id),
            )
        except httpx.HTTPError as e:
            logger.error("tracking_failed", order_id=snapshot.order.id, error=str(e))
            return False

        if response.is_success:
            logger.info("tracking_sent", order_id=snapshot.order.id, event_id=f"purchase_{provider_payment_id}")
            return True

        logger.error("tracking_rejected",
                     order_id=snapshot.order.id,
                     status_code=response.status_code,
                     body=response.text[:500])
        return False
