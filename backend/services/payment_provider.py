# services/payment_provider.py
# ============================================================================
# PAYMENT PROVIDER CLIENT
# ============================================================================
# Authoritative payment lookups. The inbound webhook never trusts the status
# carried in the notification body; it asks the provider through this client.
# ============================================================================

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from pipeline.errors import PaymentNotFoundError, ProviderUnavailableError
from pipeline.settings import settings

logger = structlog.get_logger(component="payment_provider")


class ProviderPayment(BaseModel):
    """Provider-side truth for one payment"""
    id: str
    status: str
    amount: Decimal = Decimal("0")
    paid_at: Optional[datetime] = None
    method: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class IPaymentProvider(ABC):

    @abstractmethod
    async def get_payment(self, payment_id: str) -> ProviderPayment:
        """
        Raises PaymentNotFoundError when the provider has no such payment and
        ProviderUnavailableError when the lookup cannot be completed.
        """
        pass

    async def close(self) -> None:
        pass


class MercadoPagoClient(IPaymentProvider):
    """Mercado Pago REST client: GET /v1/payments/{id}"""

    def __init__(
        self,
        access_token: str = settings.PROVIDER_ACCESS_TOKEN,
        base_url: str = settings.PROVIDER_API_URL,
        timeout: float = settings.HTTP_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def get_payment(self, payment_id: str) -> ProviderPayment:
        try:
            response = await self._client.get(f"/v1/payments/{payment_id}")
            if response.status_code == 404:
                logger.warning("provider_payment_not_found", payment_id=payment_id)
                raise PaymentNotFoundError(
                    f"Provider has no payment {payment_id}",
                    context={"payment_id": payment_id},
                )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.warning("provider_fetch_failed", payment_id=payment_id, error=str(e))
            raise ProviderUnavailableError(
                f"Could not fetch payment {payment_id}: {e}",
                context={"payment_id": payment_id},
            ) from e
        except ValueError as e:
            logger.warning("provider_response_invalid", payment_id=payment_id, error=str(e))
            raise ProviderUnavailableError(
                f"Invalid provider response for payment {payment_id}",
                context={"payment_id": payment_id},
            ) from e

        if not data.get("status"):
            logger.warning("provider_payment_without_status", payment_id=payment_id)
            raise ProviderUnavailableError(
                f"Provider returned payment {payment_id} without status",
                context={"payment_id": payment_id},
            )

        return ProviderPayment(
            id=str(data.get("id", payment_id)),
            status=data["status"],
            amount=Decimal(str(data.get("transaction_amount") or 0)),
            paid_at=data.get("date_approved"),
            method=data.get("payment_method_id"),
            raw=data,
        )
