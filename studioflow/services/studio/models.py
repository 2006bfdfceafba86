"""Studio database models.

One schema per deployment, partitioned by `tenant_id`. Payments are the
source of truth for "has this money arrived"; the timeline table is the audit
trail of every payment status transition.
"""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from studioflow.common.db import Base, JSONType


def _uuid() -> str:
    return str(uuid4())


class StudioSettings(Base):
    """Per-tenant studio configuration: hours, rates, PIX key and link validity."""

    __tablename__ = "studio_settings"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    studio_name: Mapped[str] = mapped_column(String, default="Estúdio")
    studio_address: Mapped[str] = mapped_column(String, default="")
    studio_maps_url: Mapped[str] = mapped_column(String, default="")
    timezone: Mapped[str] = mapped_column(String, default="America/Sao_Paulo")
    commercial_hours: Mapped[dict] = mapped_column(JSONType, default=dict)
    price_commercial_hour: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    price_after_hours: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    price_per_extra_photo: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    minimum_photos: Mapped[int] = mapped_column(Integer, default=5)
    link_validity_days: Mapped[int] = mapped_column(Integer, default=30)
    delivery_days: Mapped[int] = mapped_column(Integer, default=7)
    session_minutes: Mapped[int] = mapped_column(Integer, default=60)
    buffer_minutes: Mapped[int] = mapped_column(Integer, default=60)
    pix_key: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class GatewaySettings(Base):
    """MercadoPago credentials; only `is_active` rows enable the gateway path."""

    __tablename__ = "gateway_settings"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    access_token: Mapped[str] = mapped_column(String)
    environment: Mapped[str] = mapped_column(String, default="production")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class WhatsAppInstance(Base):
    """Messaging gateway instance used to deliver a tenant's notifications."""

    __tablename__ = "whatsapp_instances"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    instance_name: Mapped[str] = mapped_column(String)
    server_url: Mapped[str] = mapped_column(String)
    api_key: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="created")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Client(Base):
    """Studio client, deduplicated by phone number within a tenant."""

    __tablename__ = "clients"
    __table_args__ = (UniqueConstraint("tenant_id", "phone", name="uq_clients_tenant_phone"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    phone: Mapped[str] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    total_spent: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Appointment(Base):
    """A booked photo session.

    On the gateway path the primary key is the charge's external reference,
    chosen before the row exists, so the webhook can materialize it later.
    """

    __tablename__ = "appointments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    client_id: Mapped[str] = mapped_column(ForeignKey("clients.id"), index=True)
    session_type: Mapped[str] = mapped_column(String)
    session_details: Mapped[dict] = mapped_column(JSONType, default=dict)
    scheduled_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    minimum_photos: Mapped[int] = mapped_column(Integer, default=5)
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    payment_status: Mapped[str] = mapped_column(String, default="pending")
    terms_accepted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Gallery(Base):
    """Client-facing photo gallery, reachable only through `gallery_token`."""

    __tablename__ = "galleries"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    appointment_id: Mapped[str | None] = mapped_column(ForeignKey("appointments.id"), nullable=True, index=True)
    parent_gallery_id: Mapped[str | None] = mapped_column(ForeignKey("galleries.id"), nullable=True)
    client_id: Mapped[str | None] = mapped_column(ForeignKey("clients.id"), nullable=True)
    name: Mapped[str] = mapped_column(String, default="")
    gallery_token: Mapped[str] = mapped_column(String, unique=True, index=True)
    link_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    is_public: Mapped[bool] = mapped_column(Boolean, default=False)
    price_per_photo: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    status: Mapped[str] = mapped_column(String, default="pending")
    photos_selected: Mapped[list] = mapped_column(JSONType, default=list)
    photo_comments: Mapped[dict] = mapped_column(JSONType, default=dict)
    selection_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    selection_submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cover_photo_id: Mapped[str | None] = mapped_column(String, nullable=True)
    extra_photos_payment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    extra_photos_selected: Mapped[list] = mapped_column(JSONType, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Photo(Base):
    """Uploaded photo; storage is external, only URLs and sizes are kept."""

    __tablename__ = "photos"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    gallery_id: Mapped[str] = mapped_column(ForeignKey("galleries.id"), index=True)
    filename: Mapped[str] = mapped_column(String)
    url: Mapped[str] = mapped_column(String)
    thumbnail_url: Mapped[str | None] = mapped_column(String, nullable=True)
    size: Mapped[int] = mapped_column(Integer, default=0)
    # `metadata` is reserved on declarative classes.
    photo_metadata: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Payment(Base):
    """One row per external charge (or per manual PIX payment owed).

    `credited_at` is set exactly once, by a conditional update, when the
    approved amount has been added to the client's `total_spent`.
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    appointment_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    gallery_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    client_id: Mapped[str | None] = mapped_column(String, nullable=True)
    mercadopago_id: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    external_reference: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    payment_type: Mapped[str] = mapped_column(String, default="initial")
    webhook_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    credited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class PaymentTimeline(Base):
    """Immutable audit trail of every payment status transition."""

    __tablename__ = "payment_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    payment_id: Mapped[str] = mapped_column(ForeignKey("payments.id"), index=True)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OutboxEvent(Base):
    """Collaborator events waiting to be published to Kafka."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
