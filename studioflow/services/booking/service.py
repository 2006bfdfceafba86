"""Booking state machine.

Two variants, chosen per tenant:

* no gateway: appointment, gallery and payment rows are written immediately
  and PIX instructions are queued (`ImmediateBooking`);
* gateway: only a PIX charge is created, carrying the whole form as metadata,
  and the appointment is materialized by the reconciler on approval
  (`DeferredBooking`).
"""

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, Iterator
from uuid import uuid4
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from studioflow.common.clock import as_utc, utcnow
from studioflow.common.config import settings
from studioflow.common.errors import ValidationError
from studioflow.common.logging import logger, tenant_id_ctx
from studioflow.common.metrics import bookings_total
from studioflow.common.tenancy import TenantConfig, load_tenant_config
from studioflow.services.booking.schemas import (
    BookingForm,
    BookingIntent,
    DeferredBooking,
    ImmediateBooking,
    Slot,
    SlotListing,
)
from studioflow.services.gallery.service import provision_gallery
from studioflow.services.gateway.client import gateway_for
from studioflow.services.gateway.schemas import PayerInfo
from studioflow.services.notification.service import appointment_variables, enqueue
from studioflow.services.pricing.engine import session_total, window_for
from studioflow.services.studio.clients import upsert_client
from studioflow.services.studio.models import Appointment, Payment, PaymentTimeline

# Appointments in these statuses occupy their slot.
BLOCKING_STATUSES = ("pending", "confirmed")


def candidate_starts(config: TenantConfig, day: date) -> Iterator[datetime]:
    """Session starts for one local day: every session+buffer from the window start.

    A start is offered while its hour is before the closing hour, or equals it
    with a minute no later than the closing minute. The session may run past close.
    """

    tz = ZoneInfo(config.timezone)
    window = window_for(datetime.combine(day, datetime.min.time()), config.commercial_hours)
    if window is None:
        return
    cadence = timedelta(minutes=config.session_minutes + config.buffer_minutes)
    closing = (window.end.hour, window.end.minute)
    candidate = datetime.combine(day, window.start, tzinfo=tz)
    while candidate.date() == day and (candidate.hour, candidate.minute) <= closing:
        yield candidate
        candidate += cadence


def conflicts(candidate: datetime, existing: list[datetime], separation: timedelta) -> bool:
    # Strictly closer than `separation` to a booked start.
    return any(abs(candidate - booked) < separation for booked in existing)


def available_slots(
    config: TenantConfig,
    existing: Iterable[datetime],
    horizon_days: int = 30,
    now: datetime | None = None,
) -> Iterator[Slot]:
    """Lazily yield free future slots with their session price.

    Pure over its inputs; calling it again restarts the sequence.
    """

    tz = ZoneInfo(config.timezone)
    now = as_utc(now or utcnow())
    booked = [as_utc(item) for item in existing]
    separation = timedelta(minutes=config.session_minutes + config.buffer_minutes)
    today = now.astimezone(tz).date()
    for offset in range(horizon_days):
        for start in candidate_starts(config, today + timedelta(days=offset)):
            if start <= now or conflicts(start, booked, separation):
                continue
            yield Slot(
                starts_at=start,
                price=session_total(
                    start,
                    config.commercial_hours,
                    config.price_commercial_hour,
                    config.price_after_hours,
                    config.minimum_photos,
                ),
            )


def booked_starts(db, tenant_id: str, since: datetime) -> list[datetime]:
    """Start times of pending/confirmed appointments from `since` onward."""

    rows = db.execute(
        select(Appointment.scheduled_date).where(
            Appointment.tenant_id == tenant_id,
            Appointment.status.in_(BLOCKING_STATUSES),
            Appointment.scheduled_date >= as_utc(since),
        )
    ).scalars()
    return [as_utc(value) for value in rows]


class BookingService:
    """Slot listing and booking submission for one request at a time."""

    def __init__(self, session_factory, gateway_factory=gateway_for, service_name: str = "api") -> None:
        self.session_factory = session_factory
        self.gateway_factory = gateway_factory
        self.service_name = service_name

    def list_available_slots(self, tenant_id: str, horizon_days: int = 30, now: datetime | None = None) -> SlotListing:
        """Free slots for the next `horizon_days`; an unreadable schedule yields none."""

        now = as_utc(now or utcnow())
        tenant_id_ctx.set(tenant_id)
        try:
            with self.session_factory() as db:
                config = load_tenant_config(db, tenant_id)
                existing = booked_starts(db, tenant_id, now - timedelta(days=1))
        except SQLAlchemyError as exc:
            logger.error("slot_listing_failed tenant_id=%s error=%s", tenant_id, exc)
            return SlotListing(slots=[], reason="schedule_unavailable")
        slots = list(available_slots(config, existing, horizon_days=horizon_days, now=now))
        return SlotListing(slots=slots, reason=None if slots else "no_slots")

    def submit_booking(self, tenant_id: str, form: BookingForm, now: datetime | None = None) -> BookingIntent:
        """Book a slot, re-checking price and availability before writing."""

        now = as_utc(now or utcnow())
        tenant_id_ctx.set(tenant_id)
        if not form.terms_accepted:
            raise ValidationError("terms must be accepted")

        with self.session_factory() as db:
            config = load_tenant_config(db, tenant_id)
            tz = ZoneInfo(config.timezone)
            starts_at = form.scheduled_date
            if starts_at.tzinfo is None:
                starts_at = starts_at.replace(tzinfo=tz)
            starts_at = starts_at.astimezone(tz)

            if starts_at not in set(candidate_starts(config, starts_at.date())):
                raise ValidationError("requested time is not a bookable slot")
            if starts_at <= now:
                raise ValidationError("requested time is in the past")
            separation = timedelta(minutes=config.session_minutes + config.buffer_minutes)
            if conflicts(starts_at, booked_starts(db, tenant_id, starts_at - separation), separation):
                raise ValidationError("requested slot is no longer available")

            amount = session_total(
                starts_at,
                config.commercial_hours,
                config.price_commercial_hour,
                config.price_after_hours,
                config.minimum_photos,
            )
            if form.expected_price is not None and Decimal(form.expected_price) != amount:
                raise ValidationError(f"price changed: expected {form.expected_price}, current {amount}")

            if config.gateway is None:
                return self._book_manual(db, config, form, starts_at, amount, now)

        return self._book_with_gateway(config, form, starts_at, amount)

    def _book_manual(
        self, db, config: TenantConfig, form: BookingForm, starts_at: datetime, amount: Decimal, now: datetime
    ) -> ImmediateBooking:
        client = upsert_client(db, config.tenant_id, form.client_name, form.client_phone, form.client_email)
        appointment = Appointment(
            tenant_id=config.tenant_id,
            client_id=client.id,
            session_type=form.session_type,
            session_details=form.session_details,
            scheduled_date=as_utc(starts_at),
            total_amount=amount,
            minimum_photos=config.minimum_photos,
            status="pending",
            payment_status="pending",
            terms_accepted=form.terms_accepted,
        )
        db.add(appointment)
        db.flush()
        gallery = provision_gallery(db, config, appointment, client, now)
        payment = Payment(
            tenant_id=config.tenant_id,
            appointment_id=appointment.id,
            client_id=client.id,
            external_reference=appointment.id,
            amount=amount,
            status="pending",
            payment_type="initial",
        )
        db.add(payment)
        db.flush()
        db.add(
            PaymentTimeline(payment_id=payment.id, from_state=None, to_state="pending", reason="manual_booking_created")
        )
        enqueue(
            db,
            config.tenant_id,
            "manual_pix_instructions",
            client.phone,
            appointment_variables(config, appointment, client),
            appointment_id=appointment.id,
        )
        db.commit()
        bookings_total.labels(service=self.service_name, path="manual_pix").inc()
        logger.info("booking_created path=manual_pix appointment_id=%s amount=%s", appointment.id, amount)
        return ImmediateBooking(
            appointment_id=appointment.id,
            gallery_id=gallery.id,
            gallery_token=gallery.gallery_token,
            payment_id=payment.id,
            amount=amount,
            pix_key=config.pix_key,
        )

    def _book_with_gateway(
        self, config: TenantConfig, form: BookingForm, starts_at: datetime, amount: Decimal
    ) -> DeferredBooking:
        # The reference becomes the appointment id once the charge is approved.
        reference = str(uuid4())
        metadata = {
            "tenant_id": config.tenant_id,
            "client_name": form.client_name,
            "client_phone": form.client_phone,
            "client_email": form.client_email,
            "session_type": form.session_type,
            "session_details": form.session_details,
            "scheduled_date": starts_at.isoformat(),
            "total_amount": str(amount),
            "minimum_photos": config.minimum_photos,
            "terms_accepted": form.terms_accepted,
        }
        charge = self.gateway_factory(config).create_charge(
            amount=amount,
            external_reference=reference,
            payer=PayerInfo(name=form.client_name, email=form.client_email, phone=form.client_phone),
            metadata=metadata,
            description=f"{form.session_type} - {config.studio_name}",
            expiry_minutes=settings.charge_expiry_minutes,
        )
        bookings_total.labels(service=self.service_name, path="gateway").inc()

        payment_id = None
        try:
            with self.session_factory() as db:
                payment = Payment(
                    tenant_id=config.tenant_id,
                    appointment_id=reference,
                    mercadopago_id=charge.charge_id,
                    external_reference=reference,
                    amount=amount,
                    status="pending",
                    payment_type="initial",
                )
                db.add(payment)
                db.flush()
                db.add(
                    PaymentTimeline(payment_id=payment.id, from_state=None, to_state="pending", reason="charge_created")
                )
                db.commit()
                payment_id = payment.id
        except SQLAlchemyError as exc:
            # The webhook recreates the row from the charge.
            logger.error("charge_payment_row_failed charge_id=%s error=%s", charge.charge_id, exc)

        logger.info("booking_created path=gateway external_reference=%s charge_id=%s", reference, charge.charge_id)
        return DeferredBooking(
            external_reference=reference,
            charge_id=charge.charge_id,
            payment_id=payment_id,
            amount=amount,
            qr_code=charge.qr_code,
            qr_code_image=charge.qr_code_image,
            expires_at=charge.expires_at,
        )
