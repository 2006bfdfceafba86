"""Notification queue: render into the caller's transaction, deliver later.

Rows are written with the domain change that caused them, so a message is
queued if and only if that change commits. The delivery worker drains due
rows through the tenant's WhatsApp instance.
"""

import asyncio
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import select

from studioflow.common.clock import as_utc, utcnow
from studioflow.common.config import settings
from studioflow.common.errors import GatewayError, NotConfiguredError, NotFoundError
from studioflow.common.logging import logger, tenant_id_ctx
from studioflow.common.metrics import notifications_total
from studioflow.common.tenancy import load_tenant_config
from studioflow.services.notification.models import NotificationQueue, NotificationTemplate
from studioflow.services.notification.templates import (
    DEFAULT_TEMPLATES,
    TEMPLATE_TYPES,
    format_brl,
    format_date,
    format_time,
    render,
)
from studioflow.services.notification.whatsapp import sender_for


def template_for(db, tenant_id: str, template_type: str) -> str:
    """Tenant's active template, or the built-in default."""

    row = db.execute(
        select(NotificationTemplate).where(
            NotificationTemplate.tenant_id == tenant_id,
            NotificationTemplate.template_type == template_type,
            NotificationTemplate.is_active.is_(True),
        )
    ).scalar_one_or_none()
    if row is not None:
        return row.message_template
    return DEFAULT_TEMPLATES[template_type]


def enqueue(
    db,
    tenant_id: str,
    template_type: str,
    recipient_phone: str,
    variables: dict,
    scheduled_for: datetime | None = None,
    appointment_id: str | None = None,
    gallery_id: str | None = None,
) -> NotificationQueue:
    """Render `template_type` and stage a queue row; the caller commits."""

    if template_type not in TEMPLATE_TYPES:
        raise ValueError(f"unknown template type {template_type}")
    message = render(template_for(db, tenant_id, template_type), variables)
    row = NotificationQueue(
        tenant_id=tenant_id,
        appointment_id=appointment_id,
        gallery_id=gallery_id,
        template_type=template_type,
        recipient_phone=recipient_phone,
        recipient_name=str(variables.get("client_name") or ""),
        message=message,
        scheduled_for=scheduled_for or utcnow(),
        status="pending",
        attempts=0,
    )
    db.add(row)
    logger.info(
        "notification_enqueued template_type=%s appointment_id=%s gallery_id=%s",
        template_type,
        appointment_id,
        gallery_id,
    )
    return row


def appointment_variables(config, appointment, client) -> dict:
    """Template variables describing one appointment in studio-local time."""

    local = as_utc(appointment.scheduled_date).astimezone(ZoneInfo(config.timezone))
    return {
        "client_name": client.name,
        "studio_name": config.studio_name,
        "studio_address": config.studio_address,
        "maps_url": config.studio_maps_url,
        "session_type": appointment.session_type,
        "appointment_date": format_date(local),
        "appointment_time": format_time(local),
        "amount": format_brl(appointment.total_amount),
        "pix_key": config.pix_key or "",
        "delivery_days": config.delivery_days,
    }


def schedule_reminders(db, config, appointment, client, now: datetime | None = None) -> int:
    """Queue the day-before and day-of reminders that are still in the future."""

    now = now or utcnow()
    starts_at = as_utc(appointment.scheduled_date)
    variables = appointment_variables(config, appointment, client)
    queued = 0
    for template_type, lead in (
        ("reminder_1_day_before", timedelta(hours=24)),
        ("reminder_day_of_session", timedelta(hours=2)),
    ):
        send_at = starts_at - lead
        if send_at <= now:
            continue
        enqueue(
            db,
            appointment.tenant_id,
            template_type,
            client.phone,
            variables,
            scheduled_for=send_at,
            appointment_id=appointment.id,
        )
        queued += 1
    return queued


class NotificationDispatcher:
    """Delivers due queue rows, retrying failures up to `max_attempts`."""

    def __init__(
        self,
        session_factory,
        sender_factory=sender_for,
        service_name: str = "notification",
        max_attempts: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.sender_factory = sender_factory
        self.service_name = service_name
        self.max_attempts = max_attempts or settings.notification_max_attempts

    def _finish(self, row: NotificationQueue, status: str) -> None:
        row.status = status
        notifications_total.labels(
            service=self.service_name, template_type=row.template_type, status=status
        ).inc()

    def deliver_due(self, now: datetime | None = None, limit: int = 50) -> int:
        """Attempt every pending row scheduled at or before `now`; returns rows attempted."""

        now = now or utcnow()
        with self.session_factory() as db:
            rows = (
                db.execute(
                    select(NotificationQueue)
                    .where(NotificationQueue.status == "pending", NotificationQueue.scheduled_for <= now)
                    .order_by(NotificationQueue.scheduled_for)
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                )
                .scalars()
                .all()
            )
            senders: dict[str, object] = {}
            for row in rows:
                tenant_id_ctx.set(row.tenant_id)
                if row.tenant_id not in senders:
                    try:
                        whatsapp = load_tenant_config(db, row.tenant_id).require_whatsapp()
                        senders[row.tenant_id] = self.sender_factory(whatsapp)
                    except (NotConfiguredError, NotFoundError) as exc:
                        logger.info("notification_skipped id=%s reason=%s", row.id, exc)
                        senders[row.tenant_id] = None
                sender = senders[row.tenant_id]
                if sender is None:
                    self._finish(row, "skipped")
                    continue

                row.attempts = (row.attempts or 0) + 1
                try:
                    sender.send_text(row.recipient_phone, row.message)
                except GatewayError as exc:
                    row.last_error = str(exc)[:500]
                    if row.attempts >= self.max_attempts:
                        self._finish(row, "failed")
                        logger.error("notification_failed id=%s attempts=%s error=%s", row.id, row.attempts, exc)
                    else:
                        logger.warning("notification_retry id=%s attempts=%s error=%s", row.id, row.attempts, exc)
                    continue
                row.sent_at = utcnow()
                self._finish(row, "sent")
                logger.info("notification_sent id=%s template_type=%s", row.id, row.template_type)
            db.commit()
            return len(rows)

    async def run_forever(self) -> None:
        """Poll the queue every `NOTIFICATION_POLL_SECONDS`."""

        while True:
            try:
                await asyncio.to_thread(self.deliver_due)
            except Exception as exc:
                logger.exception("notification_delivery_loop_failed error=%s", exc)
            await asyncio.sleep(settings.notification_poll_seconds)
