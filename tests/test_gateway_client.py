"""MercadoPago adapter against a mocked HTTP transport."""

import json
import re
from decimal import Decimal

import httpx
import pytest

from studioflow.common.errors import GatewayError
from studioflow.services.gateway.client import MercadoPagoGateway
from studioflow.services.gateway.schemas import PayerInfo


def _gateway(handler) -> MercadoPagoGateway:
    return MercadoPagoGateway(
        access_token="APP_USR-secret",
        tenant_id="studio-1",
        base_url="https://mp.test",
        transport=httpx.MockTransport(handler),
    )


def test_create_charge_request_and_qr_mapping():
    """The charge body, auth and idempotency headers follow the provider contract."""

    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(
            201,
            json={
                "id": 123456789,
                "status": "pending",
                "point_of_interaction": {
                    "transaction_data": {"qr_code": "00020126pix", "qr_code_base64": "iVBORw0KGgo="}
                },
            },
        )

    result = _gateway(handler).create_charge(
        amount=Decimal("750.00"),
        external_reference="ref-1",
        payer=PayerInfo(name="Ana Maria Souza", email=None, phone="11988887777"),
        metadata={"client_phone": "11988887777"},
        description="Ensaio - Estúdio Luz",
        expiry_minutes=30,
    )

    request = seen["request"]
    body = json.loads(request.content)
    assert request.method == "POST"
    assert request.url.path == "/v1/payments"
    assert request.headers["Authorization"] == "Bearer APP_USR-secret"
    assert re.fullmatch(r"ref-1-\d{13}", request.headers["X-Idempotency-Key"])
    assert body["transaction_amount"] == 750.0
    assert body["payment_method_id"] == "pix"
    assert body["external_reference"] == "ref-1"
    assert body["notification_url"] == "https://studio.test/webhooks/mercadopago/studio-1"
    assert body["payer"] == {"email": "cliente@email.com", "first_name": "Ana", "last_name": "Maria Souza"}
    assert body["metadata"] == {"client_phone": "11988887777"}
    assert body["date_of_expiration"].endswith("+00:00")

    assert result.charge_id == "123456789"
    assert result.qr_code == "00020126pix"
    assert result.qr_code_image == "iVBORw0KGgo="


def test_get_charge_maps_snapshot():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/payments/42"
        return httpx.Response(
            200,
            json={
                "id": 42,
                "status": "approved",
                "external_reference": "ref-1",
                "transaction_amount": 750,
                "metadata": {"tenant_id": "studio-1"},
            },
        )

    snapshot = _gateway(handler).get_charge("42")
    assert snapshot.charge_id == "42"
    assert snapshot.status == "approved"
    assert snapshot.external_reference == "ref-1"
    assert snapshot.amount == Decimal("750")
    assert snapshot.metadata == {"tenant_id": "studio-1"}
    assert snapshot.raw_payload["id"] == 42


def test_client_error_is_not_retryable():
    """A 4xx carries the provider's message and is final."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"message": "invalid payer email"})

    with pytest.raises(GatewayError) as exc_info:
        _gateway(handler).get_charge("42")
    assert exc_info.value.status_code == 400
    assert exc_info.value.provider_message == "invalid payer email"
    assert not exc_info.value.retryable


def test_server_error_and_timeout_are_retryable():
    def server_error(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(GatewayError) as exc_info:
        _gateway(server_error).get_charge("42")
    assert exc_info.value.retryable

    with pytest.raises(GatewayError) as exc_info:
        _gateway(timeout).get_charge("42")
    assert exc_info.value.status_code is None
    assert exc_info.value.retryable


def test_payer_name_defaults():
    assert PayerInfo(name="").split_name() == ("Cliente", "Sobrenome")
    assert PayerInfo(name="Ana").split_name() == ("Ana", "Sobrenome")
