"""MercadoPago PIX adapter.

Every `create_charge` carries an `X-Idempotency-Key` derived from the external
reference and a millisecond timestamp. No call is retried here; callers decide
whether a `GatewayError` is worth another attempt.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from time import perf_counter
from typing import Any, Callable, Protocol

import httpx

from studioflow.common.clock import utcnow
from studioflow.common.config import settings
from studioflow.common.errors import GatewayError
from studioflow.common.logging import logger
from studioflow.common.metrics import gateway_latency_seconds, gateway_requests_total
from studioflow.common.tenancy import TenantConfig
from studioflow.services.gateway.schemas import ChargeResult, ChargeSnapshot, PayerInfo


class PaymentGateway(Protocol):
    def create_charge(
        self,
        amount: Decimal,
        external_reference: str,
        payer: PayerInfo,
        metadata: dict[str, Any],
        description: str,
        expiry_minutes: int = 30,
    ) -> ChargeResult: ...

    def get_charge(self, charge_id: str) -> ChargeSnapshot: ...


def idempotency_key(external_reference: str, now: datetime) -> str:
    return f"{external_reference}-{int(now.timestamp() * 1000)}"


class MercadoPagoGateway:
    """Thin synchronous client for `/v1/payments` with per-tenant bearer auth."""

    def __init__(
        self,
        access_token: str,
        tenant_id: str,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.access_token = access_token
        self.tenant_id = tenant_id
        self.base_url = (base_url or settings.mercadopago_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.gateway_timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            headers={"Authorization": f"Bearer {self.access_token}"},
        )

    def _request(self, operation: str, method: str, path: str, **kwargs) -> dict:
        start = perf_counter()
        try:
            with self._client() as client:
                resp = client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            gateway_requests_total.labels(
                service=settings.service_name, operation=operation, outcome="unreachable"
            ).inc()
            logger.warning("gateway_unreachable operation=%s error=%s", operation, exc)
            raise GatewayError(None, str(exc)) from exc
        finally:
            gateway_latency_seconds.labels(service=settings.service_name, operation=operation).observe(
                max(0.0, perf_counter() - start)
            )

        if resp.status_code >= 400:
            message = _provider_message(resp)
            gateway_requests_total.labels(
                service=settings.service_name, operation=operation, outcome=str(resp.status_code)
            ).inc()
            logger.warning(
                "gateway_rejected operation=%s status=%s message=%s", operation, resp.status_code, message
            )
            raise GatewayError(resp.status_code, message)

        gateway_requests_total.labels(service=settings.service_name, operation=operation, outcome="ok").inc()
        return resp.json()

    def create_charge(
        self,
        amount: Decimal,
        external_reference: str,
        payer: PayerInfo,
        metadata: dict[str, Any],
        description: str,
        expiry_minutes: int = 30,
    ) -> ChargeResult:
        """Create a PIX charge that expires `expiry_minutes` from now."""

        now = utcnow()
        expires_at = now + timedelta(minutes=expiry_minutes)
        first_name, last_name = payer.split_name()
        body = {
            "transaction_amount": float(amount),
            "date_of_expiration": expires_at.isoformat(timespec="milliseconds"),
            "payment_method_id": "pix",
            "external_reference": external_reference,
            "notification_url": f"{settings.public_base_url.rstrip('/')}/webhooks/mercadopago/{self.tenant_id}",
            "description": description,
            "payer": {
                "email": payer.email or "cliente@email.com",
                "first_name": first_name,
                "last_name": last_name,
            },
            "metadata": metadata,
        }
        data = self._request(
            "create_charge",
            "POST",
            "/v1/payments",
            json=body,
            headers={"X-Idempotency-Key": idempotency_key(external_reference, now)},
        )
        transaction = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
        logger.info(
            "charge_created charge_id=%s external_reference=%s amount=%s",
            data.get("id"),
            external_reference,
            amount,
        )
        return ChargeResult(
            charge_id=str(data["id"]),
            status=data.get("status", "pending"),
            external_reference=external_reference,
            qr_code=transaction.get("qr_code"),
            qr_code_image=transaction.get("qr_code_base64"),
            expires_at=expires_at,
        )

    def get_charge(self, charge_id: str) -> ChargeSnapshot:
        """Fetch the provider's current view of a charge."""

        data = self._request("get_charge", "GET", f"/v1/payments/{charge_id}")
        return ChargeSnapshot(
            charge_id=str(data.get("id", charge_id)),
            status=data.get("status", "pending"),
            external_reference=data.get("external_reference"),
            amount=Decimal(str(data.get("transaction_amount") or 0)),
            metadata=data.get("metadata") or {},
            raw_payload=data,
        )


def _provider_message(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text
    if isinstance(payload, dict):
        return str(payload.get("message") or payload.get("error") or payload)
    return str(payload)


def gateway_for(config: TenantConfig) -> PaymentGateway:
    """Build the tenant's gateway; raises NotConfiguredError without one."""

    gateway = config.require_gateway()
    return MercadoPagoGateway(access_token=gateway.access_token, tenant_id=config.tenant_id)


GatewayFactory = Callable[[TenantConfig], PaymentGateway]
