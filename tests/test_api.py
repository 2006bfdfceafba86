"""HTTP surface: status mapping, webhook responses, auth and rate limiting."""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from conftest import TENANT
from studioflow.common.errors import GatewayError
from studioflow.services.api import main
from studioflow.services.booking.service import BookingService
from studioflow.services.gallery.service import GalleryService
from studioflow.services.reconciler.service import ReconcilerService

BOOKING = {
    "client_name": "Ana Souza",
    "client_phone": "11988887777",
    "client_email": "ana@test.dev",
    "session_type": "Ensaio",
    "scheduled_date": "2030-01-07T09:00:00",
    "terms_accepted": True,
}


class FakeRedis:
    def __init__(self) -> None:
        self.data: dict[str, dict[str, str]] = {}

    def hmget(self, key, *fields):
        values = self.data.get(key, {})
        return [values.get(field) for field in fields]

    def hset(self, key, mapping):
        self.data.setdefault(key, {}).update({field: str(value) for field, value in mapping.items()})

    def expire(self, key, seconds):
        return True


@pytest.fixture
def client(monkeypatch, session_factory, fake_gateway):
    factory = lambda config: fake_gateway  # noqa: E731
    monkeypatch.setattr(main, "booking_service", BookingService(session_factory, gateway_factory=factory))
    monkeypatch.setattr(main, "reconciler_service", ReconcilerService(session_factory, gateway_factory=factory))
    monkeypatch.setattr(main, "gallery_service", GalleryService(session_factory, gateway_factory=factory))
    monkeypatch.setattr(main, "rdb", FakeRedis())
    return TestClient(main.app)


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"ok": True}
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "http_requests_total" in metrics.text


def test_manual_booking(client, seed_studio):
    seed_studio()
    resp = client.post(f"/tenants/{TENANT}/bookings", json=BOOKING)
    assert resp.status_code == 200
    body = resp.json()
    assert body["kind"] == "immediate"
    assert Decimal(str(body["amount"])) == Decimal("750")
    assert body["pix_key"] == "pix@studio.test"


def test_gateway_booking_then_webhook(client, seed_studio, fake_gateway):
    seed_studio(gateway=True)
    booking = client.post(f"/tenants/{TENANT}/bookings", json=BOOKING).json()
    assert booking["kind"] == "deferred"
    charge_id = booking["charge_id"]

    fake_gateway.set_status(charge_id, "approved")
    first = client.post(f"/webhooks/mercadopago/{TENANT}", json={"type": "payment", "data": {"id": charge_id}})
    second = client.post(f"/webhooks/mercadopago/{TENANT}?data.id={charge_id}&type=payment")
    assert first.status_code == 200
    assert first.json() == {"ok": True, "outcome": "processed"}
    assert second.json() == {"ok": True, "outcome": "duplicate"}

    status = client.get(f"/tenants/{TENANT}/payments/{charge_id}").json()
    assert status["status"] == "approved"
    assert status["gallery_token"]


def test_webhook_status_codes(client, seed_studio, fake_gateway):
    seed_studio(gateway=True)
    assert client.post(f"/webhooks/mercadopago/{TENANT}").status_code == 400
    assert client.post(f"/webhooks/mercadopago/{TENANT}", content=b"not json at all").status_code == 400
    # Unknown charges are acknowledged so the provider stops retrying.
    assert client.post(f"/webhooks/mercadopago/{TENANT}", json={"id": "1", "topic": "payment"}).status_code == 200

    fake_gateway.fetch_error = GatewayError(503, "unavailable")
    assert client.post(f"/webhooks/mercadopago/{TENANT}", json={"id": "1", "topic": "payment"}).status_code == 500


def test_gateway_rejection_is_bad_gateway(client, seed_studio, fake_gateway):
    seed_studio(gateway=True)
    fake_gateway.create_error = GatewayError(400, "invalid payer")
    resp = client.post(f"/tenants/{TENANT}/bookings", json=BOOKING)
    assert resp.status_code == 502
    assert resp.json() == {"detail": "invalid payer", "error": "GatewayError"}


def test_validation_and_not_found(client, seed_studio):
    seed_studio()
    unaccepted = client.post(f"/tenants/{TENANT}/bookings", json={**BOOKING, "terms_accepted": False})
    assert unaccepted.status_code == 422
    assert client.get("/tenants/nobody/slots").status_code == 404
    assert client.get("/galleries/does-not-exist").status_code == 404


def test_expired_gallery_is_gone(client, seed_studio, make_gallery):
    seed_studio()
    gallery = make_gallery(expires_in_days=-1)
    resp = client.get(f"/galleries/{gallery['token']}")
    assert resp.status_code == 410
    assert resp.json()["error"] == "GalleryExpiredError"


def test_gallery_selection_routes(client, seed_studio, make_gallery):
    seed_studio()
    gallery = make_gallery(photos=6, minimum=5)
    token = gallery["token"]
    ids = gallery["photo_ids"]

    toggled = client.post(f"/galleries/{token}/photos/{ids[0]}/toggle").json()
    assert toggled == {"photos_selected": [ids[0]]}
    commented = client.put(f"/galleries/{token}/photos/{ids[0]}/comment", json={"comment": "favorita"}).json()
    assert commented == {"photo_comments": {ids[0]: "favorita"}}
    assert client.post(f"/galleries/{token}/selection", json={"photo_ids": ids[:3]}).status_code == 422
    done = client.post(f"/galleries/{token}/selection", json={"photo_ids": ids[:5]})
    assert done.json()["status"] == "completed"


def test_staff_routes_require_api_key(client, seed_studio):
    seed_studio()
    booking = client.post(f"/tenants/{TENANT}/bookings", json=BOOKING).json()
    assert client.post(f"/payments/{booking['payment_id']}/confirm").status_code == 401

    confirmed = client.post(f"/payments/{booking['payment_id']}/confirm", headers={"x-api-key": "test-api-key"})
    assert confirmed.status_code == 200
    assert confirmed.json()["status"] == "approved"

    ready = client.post(
        f"/staff/galleries/{booking['gallery_id']}/ready", headers={"x-api-key": "test-api-key"}
    )
    assert ready.status_code == 200
    assert ready.json()["notification_id"]


def test_bookings_are_rate_limited_per_phone(client, seed_studio, monkeypatch):
    seed_studio()
    monkeypatch.setattr(main.settings, "rate_limit_per_minute", 1)
    assert client.post(f"/tenants/{TENANT}/bookings", json=BOOKING).status_code == 200
    second = client.post(
        f"/tenants/{TENANT}/bookings",
        json={**BOOKING, "client_phone": "(11) 98888-7777", "scheduled_date": "2030-01-07T11:00:00"},
    )
    assert second.status_code == 429
