# services/__init__.py
# ============================================================================
# SERVICES MODULE
# ============================================================================
# External collaborators: the payment provider and purchase tracking
# ============================================================================

from services.payment_provider import (
    IPaymentProvider,
    MercadoPagoClient,
    ProviderPayment,
)

from services.tracking import (
    TrackingDispatcher,
    build_purchase_payload,
)

__all__ = [
    # Payment provider
    "IPaymentProvider",
    "MercadoPagoClient",
    "ProviderPayment",
    # Tracking
    "TrackingDispatcher",
    "build_purchase_payload",
]
