from decimal import Decimal

import httpx
import pytest

from pipeline.errors import PaymentNotFoundError, ProviderUnavailableError
from services.payment_provider import MercadoPagoClient
from services.tracking import split_name


def client_for(handler) -> MercadoPagoClient:
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url="https://api.mercadopago.test",
        headers={"Authorization": "Bearer token-123"},
    )
    return MercadoPagoClient(client=http)


async def test_maps_payment_fields():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={
            "id": 1001,
            "status": "approved",
            "transaction_amount": 149.9,
            "date_approved": "2024-06-01T12:00:00.000-03:00",
            "payment_method_id": "pix",
        })

    provider = client_for(handler)
    payment = await provider.get_payment("1001")
    await provider.close()

    assert seen[0].url.path == "/v1/payments/1001"
    assert seen[0].headers["Authorization"] == "Bearer token-123"
    assert payment.id == "1001"
    assert payment.status == "approved"
    assert payment.amount == Decimal("149.9")
    assert payment.method == "pix"
    assert payment.paid_at.utcoffset().total_seconds() == -3 * 3600
    assert payment.raw["payment_method_id"] == "pix"


@pytest.mark.parametrize("response", [
    httpx.Response(500, text="boom"),
    httpx.Response(200, text="<html>"),
    httpx.Response(200, json={"id": 1}),
])
async def test_unusable_responses_are_provider_unavailable(response):
    provider = client_for(lambda request: response)

    with pytest.raises(ProviderUnavailableError) as exc:
        await provider.get_payment("1")
    assert exc.value.retryable


async def test_network_error_is_provider_unavailable():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ProviderUnavailableError):
        await client_for(handler).get_payment("1")


def test_split_name():
    assert split_name("Ana Maria Souza") == ("Ana", "Maria Souza")
    assert split_name("Cher") == ("Cher", "")
    assert split_name("   ") == ("", "")


async def test_missing_payment_is_not_found():
    provider = client_for(lambda request: httpx.Response(404, json={"message": "Payment not found"}))

    with pytest.raises(PaymentNotFoundError) as exc:
        await provider.get_payment("77")
    assert not exc.value.retryable
