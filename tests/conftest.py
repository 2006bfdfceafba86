"""Shared fixtures: in-memory database, tenant seeding and gateway/WhatsApp fakes."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("OTEL_EXPORTER_OTLP_ENDPOINT", "")
os.environ.setdefault("REDIS_URL", "redis://127.0.0.1:1/0")
os.environ.setdefault("PUBLIC_BASE_URL", "https://studio.test")

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from studioflow.common.db import Base
from studioflow.common.errors import GatewayError
from studioflow.services.gateway.schemas import ChargeResult, ChargeSnapshot
from studioflow.services.notification import models as notification_models  # noqa: F401
from studioflow.services.studio.models import (
    Appointment,
    Client,
    Gallery,
    GatewaySettings,
    Photo,
    StudioSettings,
    WhatsAppInstance,
)

TENANT = "studio-1"
# Sunday noon UTC; the following Monday is 2030-01-07.
NOW = datetime(2030, 1, 6, 12, 0, tzinfo=timezone.utc)
WEEKDAY_HOURS = {
    day: {"enabled": True, "start": "09:00", "end": "18:00"}
    for day in ("monday", "tuesday", "wednesday", "thursday", "friday")
}


class FakeGateway:
    """In-memory PaymentGateway: records charges and serves scripted snapshots."""

    def __init__(self) -> None:
        self.created: list[dict] = []
        self.charges: dict[str, ChargeSnapshot] = {}
        self.fetch_error: GatewayError | None = None
        self.create_error: GatewayError | None = None

    def create_charge(self, amount, external_reference, payer, metadata, description, expiry_minutes=30):
        if self.create_error is not None:
            raise self.create_error
        charge_id = str(9000 + len(self.created))
        self.created.append(
            {
                "charge_id": charge_id,
                "amount": amount,
                "external_reference": external_reference,
                "payer": payer,
                "metadata": metadata,
                "expiry_minutes": expiry_minutes,
            }
        )
        self.charges[charge_id] = ChargeSnapshot(
            charge_id=charge_id,
            status="pending",
            external_reference=external_reference,
            amount=amount,
            metadata=dict(metadata),
            raw_payload={"id": charge_id, "status": "pending"},
        )
        return ChargeResult(
            charge_id=charge_id,
            status="pending",
            external_reference=external_reference,
            qr_code=f"00020126-pix-{charge_id}",
            qr_code_image="aW1hZ2U=",
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=expiry_minutes),
        )

    def set_status(self, charge_id: str, status: str) -> None:
        snapshot = self.charges[charge_id]
        self.charges[charge_id] = snapshot.model_copy(
            update={"status": status, "raw_payload": {"id": charge_id, "status": status}}
        )

    def get_charge(self, charge_id):
        if self.fetch_error is not None:
            raise self.fetch_error
        if charge_id not in self.charges:
            raise GatewayError(404, "Payment not found")
        return self.charges[charge_id]


class FakeSender:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[str, str]] = []

    def send_text(self, phone: str, text: str) -> None:
        if self.fail:
            raise GatewayError(503, "instance disconnected")
        self.sent.append((phone, text))


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def fake_sender():
    return FakeSender()


@pytest.fixture
def seed_studio(session_factory):
    """Create a tenant's studio settings, optionally with gateway/WhatsApp."""

    def _seed(tenant_id: str = TENANT, gateway: bool = False, whatsapp: bool = False, **overrides):
        values = {
            "tenant_id": tenant_id,
            "studio_name": "Estúdio Luz",
            "studio_address": "Rua das Flores, 10",
            "studio_maps_url": "https://maps.test/luz",
            "timezone": "America/Sao_Paulo",
            "commercial_hours": WEEKDAY_HOURS,
            "price_commercial_hour": Decimal("150"),
            "price_after_hours": Decimal("200"),
            "price_per_extra_photo": Decimal("25"),
            "minimum_photos": 5,
            "link_validity_days": 30,
            "delivery_days": 7,
            "session_minutes": 60,
            "buffer_minutes": 60,
            "pix_key": "pix@studio.test",
        }
        values.update(overrides)
        with session_factory() as db:
            db.add(StudioSettings(**values))
            if gateway:
                db.add(GatewaySettings(tenant_id=tenant_id, access_token="TEST-token", is_active=True))
            if whatsapp:
                db.add(
                    WhatsAppInstance(
                        tenant_id=tenant_id,
                        instance_name="luz",
                        server_url="https://evolution.test",
                        api_key="evo-key",
                    )
                )
            db.commit()
        return tenant_id

    return _seed


@pytest.fixture
def make_gallery(session_factory):
    """Create a client, a confirmed appointment and a gallery with photos."""

    def _make(
        tenant_id: str = TENANT,
        photos: int = 8,
        minimum: int = 5,
        is_public: bool = False,
        expires_in_days: int = 30,
        price_per_photo: Decimal | None = None,
    ) -> dict:
        now = datetime.now(timezone.utc)
        with session_factory() as db:
            client = db.execute(
                select(Client).where(Client.tenant_id == tenant_id, Client.phone == "5511988887777")
            ).scalar_one_or_none()
            if client is None:
                client = Client(tenant_id=tenant_id, name="Ana Souza", phone="5511988887777", email="ana@test.dev")
                db.add(client)
                db.flush()
            appointment_id = None
            if not is_public:
                appointment = Appointment(
                    tenant_id=tenant_id,
                    client_id=client.id,
                    session_type="Ensaio",
                    session_details={},
                    scheduled_date=now - timedelta(days=3),
                    total_amount=Decimal("750"),
                    minimum_photos=minimum,
                    status="confirmed",
                    payment_status="approved",
                    terms_accepted=True,
                )
                db.add(appointment)
                db.flush()
                appointment_id = appointment.id
            gallery = Gallery(
                tenant_id=tenant_id,
                appointment_id=appointment_id,
                client_id=None if is_public else client.id,
                name="Formatura 2030" if is_public else "Ensaio - Ana Souza",
                gallery_token=f"token-{os.urandom(6).hex()}",
                link_expires_at=now + timedelta(days=expires_in_days),
                is_public=is_public,
                price_per_photo=price_per_photo,
                status="pending",
                photos_selected=[],
                photo_comments={},
                extra_photos_selected=[],
                selection_completed=False,
            )
            db.add(gallery)
            db.flush()
            photo_ids = []
            for index in range(photos):
                photo = Photo(
                    gallery_id=gallery.id,
                    filename=f"IMG_{index:04d}.jpg",
                    url=f"https://cdn.test/{gallery.id}/{index}.jpg",
                    size=1024,
                    photo_metadata={},
                )
                db.add(photo)
                db.flush()
                photo_ids.append(photo.id)
            db.commit()
            return {
                "token": gallery.gallery_token,
                "gallery_id": gallery.id,
                "photo_ids": photo_ids,
                "client_id": client.id,
                "appointment_id": appointment_id,
            }

    return _make


@pytest.fixture
def count(session_factory):
    """Row count for a model, optionally filtered."""

    def _count(model, *criteria) -> int:
        with session_factory() as db:
            return db.execute(select(func.count()).select_from(model).where(*criteria)).scalar_one()

    return _count
