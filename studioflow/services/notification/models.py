"""Notification templates and the delivery queue."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from studioflow.common.db import Base


class NotificationTemplate(Base):
    """Tenant-authored message template with `{{name}}` placeholders."""

    __tablename__ = "notification_templates"
    __table_args__ = (UniqueConstraint("tenant_id", "template_type", name="uq_templates_tenant_type"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    template_type: Mapped[str] = mapped_column(String)
    message_template: Mapped[str] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class NotificationQueue(Base):
    """Rendered message waiting for (or done with) WhatsApp delivery.

    Status moves pending -> sent | failed | skipped; `attempts` counts sends.
    """

    __tablename__ = "notification_queue"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    appointment_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    gallery_id: Mapped[str | None] = mapped_column(String, nullable=True)
    template_type: Mapped[str] = mapped_column(String, index=True)
    recipient_phone: Mapped[str] = mapped_column(String)
    recipient_name: Mapped[str] = mapped_column(String, default="")
    message: Mapped[str] = mapped_column(Text)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(String, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
