"""Webhook reconciler.

Provider events are notifications to fetch, never statements of truth: the
charge is always re-read from the gateway before anything changes.

Processing happens in two transactions:

1. the payment status write (conditional on the previous status) plus its
   timeline row, committed on its own so received money is always traceable;
2. the approval side effects, gated by an atomic claim on
   `payments.credited_at`. Whoever flips it from NULL credits the client,
   confirms the appointment, provisions galleries and queues messages;
   every other delivery for the same charge is a no-op.

A failure in step 2 rolls back the claim, is logged, and is retried by the
next delivery, poll or sweep. It never changes the response to the provider.
"""

import json
from datetime import datetime, timedelta
from decimal import Decimal
from zoneinfo import ZoneInfo

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from studioflow.common.clock import as_utc, utcnow
from studioflow.common.errors import (
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    ReconciliationError,
    TransientError,
    ValidationError,
)
from studioflow.common.logging import charge_id_ctx, logger, tenant_id_ctx
from studioflow.common.metrics import (
    duplicate_webhooks_skipped_total,
    payments_approved_total,
    reconciliation_failures_total,
    webhook_events_total,
)
from studioflow.common.outbox import add_outbox_event
from studioflow.common.state_machine import (
    APPOINTMENT_TRANSITIONS,
    normalize_provider_status,
    validate_transition,
)
from studioflow.common.tenancy import TenantConfig, load_tenant_config
from studioflow.services.gallery.service import complete_selection, gallery_link, provision_gallery
from studioflow.services.gallery.tokens import new_gallery_token
from studioflow.services.gateway.client import gateway_for
from studioflow.services.gateway.schemas import ChargeSnapshot
from studioflow.services.notification.service import appointment_variables, enqueue, schedule_reminders
from studioflow.services.notification.templates import format_date
from studioflow.services.reconciler.envelopes import parse_envelope
from studioflow.services.studio.clients import credit_client, upsert_client
from studioflow.services.studio.models import (
    Appointment,
    Client,
    Gallery,
    OutboxEvent,
    Payment,
    PaymentTimeline,
)

CALENDAR_TOPIC = "calendar.event.requested"

FLOW_BY_TYPE = {"initial": "initial", "extra_photos": "extra", "public_gallery": "public"}
TYPE_BY_FLOW = {flow: payment_type for payment_type, flow in FLOW_BY_TYPE.items()}


def classify_reference(external_reference: str) -> str:
    """`public-...` -> public, `...-extra-...` -> extra, anything else -> initial."""

    if external_reference.startswith("public-"):
        return "public"
    if "-extra-" in external_reference:
        return "extra"
    return "initial"


def _json_list(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = json.loads(value) if value else []
    return [str(item) for item in value]


class ReconcileResult(BaseModel):
    """What happened to one event: `processed`, `duplicate` or `ignored`."""

    outcome: str
    charge_id: str | None = None
    payment_id: str | None = None
    status: str | None = None
    flow: str | None = None
    reason: str | None = None


class PaymentStatusView(BaseModel):
    charge_id: str
    payment_id: str
    status: str
    payment_type: str
    appointment_id: str | None = None
    gallery_token: str | None = None


class ReconcilerService:
    """Applies authoritative charge state to payments and their side effects."""

    def __init__(self, session_factory, gateway_factory=gateway_for, service_name: str = "api") -> None:
        self.session_factory = session_factory
        self.gateway_factory = gateway_factory
        self.service_name = service_name

    def _ignored(self, reason: str, charge_id: str | None = None) -> ReconcileResult:
        logger.info("webhook_ignored reason=%s charge_id=%s", reason, charge_id)
        return ReconcileResult(outcome="ignored", charge_id=charge_id, reason=reason)

    def _tenant_config(self, tenant_id: str) -> TenantConfig | None:
        try:
            with self.session_factory() as db:
                return load_tenant_config(db, tenant_id)
        except NotFoundError:
            return None
        except SQLAlchemyError as exc:
            raise TransientError(f"tenant config unavailable: {exc}") from exc

    def handle_event(self, tenant_id: str, body, query: dict[str, str] | None = None) -> ReconcileResult:
        """Process one provider delivery; raises only for 400 and retryable cases."""

        tenant_id_ctx.set(tenant_id)
        try:
            result = self._handle_event(tenant_id, body, query)
        except TransientError:
            webhook_events_total.labels(service=self.service_name, outcome="retry").inc()
            raise
        except Exception:
            webhook_events_total.labels(service=self.service_name, outcome="error").inc()
            raise
        webhook_events_total.labels(service=self.service_name, outcome=result.outcome).inc()
        return result

    def _handle_event(self, tenant_id: str, body, query: dict[str, str] | None) -> ReconcileResult:
        notification = parse_envelope(body, query)
        if notification is None:
            return self._ignored("not_a_payment_event")
        charge_id = notification.charge_id
        charge_id_ctx.set(charge_id)

        config = self._tenant_config(tenant_id)
        if config is None:
            return self._ignored("unknown_tenant", charge_id)
        if config.gateway is None:
            return self._ignored("gateway_not_configured", charge_id)

        try:
            snapshot = self.gateway_factory(config).get_charge(charge_id)
        except GatewayError as exc:
            if exc.status_code == 404:
                return self._ignored("charge_not_found", charge_id)
            if exc.retryable:
                raise TransientError(f"charge fetch failed: {exc}") from exc
            logger.error("charge_fetch_rejected charge_id=%s error=%s", charge_id, exc)
            return self._ignored("charge_fetch_rejected", charge_id)
        return self.apply_charge(config, snapshot, source="webhook")

    def apply_charge(self, config: TenantConfig, snapshot: ChargeSnapshot, source: str) -> ReconcileResult:
        """Write the fetched status, then run approval effects at most once."""

        charge_id_ctx.set(snapshot.charge_id)
        status = normalize_provider_status(snapshot.status)
        if status is None:
            return self._ignored(f"unknown_status:{snapshot.status}", snapshot.charge_id)
        owner = snapshot.metadata.get("tenant_id")
        if owner and owner != config.tenant_id:
            logger.warning("charge_tenant_mismatch charge_id=%s owner=%s", snapshot.charge_id, owner)
            return self._ignored("tenant_mismatch", snapshot.charge_id)

        flow = classify_reference(snapshot.external_reference or "")
        try:
            recorded = self._record_status(config, snapshot, status, flow, source)
        except SQLAlchemyError as exc:
            raise TransientError(f"payment status write failed: {exc}") from exc
        if recorded is None:
            return self._ignored("tenant_mismatch", snapshot.charge_id)
        payment_id, current_status, changed = recorded

        credited = False
        if current_status == "approved":
            credited = self._settle(config, payment_id, flow, snapshot.metadata, snapshot.external_reference)
        return ReconcileResult(
            outcome="processed" if (changed or credited) else "duplicate",
            charge_id=snapshot.charge_id,
            payment_id=payment_id,
            status=current_status,
            flow=flow,
        )

    def _find_payment(self, db, snapshot: ChargeSnapshot, flow: str) -> Payment | None:
        payment = db.execute(
            select(Payment).where(Payment.mercadopago_id == snapshot.charge_id)
        ).scalar_one_or_none()
        if payment is not None or not snapshot.external_reference or flow == "public":
            return payment
        return db.execute(
            select(Payment)
            .where(
                Payment.external_reference == snapshot.external_reference,
                Payment.mercadopago_id.is_(None),
            )
            .limit(1)
        ).scalar_one_or_none()

    def _new_payment(self, config: TenantConfig, snapshot: ChargeSnapshot, flow: str) -> Payment:
        reference = snapshot.external_reference or None
        appointment_id = None
        gallery_id = None
        if flow == "initial":
            appointment_id = reference
        elif flow == "extra":
            appointment_id = snapshot.metadata.get("appointment_id") or None
            gallery_id = snapshot.metadata.get("gallery_id") or None
        return Payment(
            tenant_id=config.tenant_id,
            appointment_id=appointment_id,
            gallery_id=gallery_id,
            mercadopago_id=snapshot.charge_id,
            external_reference=reference,
            amount=snapshot.amount,
            status="pending",
            payment_type=TYPE_BY_FLOW[flow],
            webhook_data=snapshot.raw_payload,
        )

    def _transition(self, db, payment: Payment, new_status: str, reason: str) -> bool:
        """Apply one forward transition; False when already there or not allowed."""

        if payment.status == new_status:
            return False
        try:
            validate_transition(payment.status, new_status)
        except InvalidTransitionError as exc:
            logger.warning("payment_transition_ignored payment_id=%s error=%s", payment.id, exc)
            return False

        from_status = payment.status
        result = db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == from_status)
            .values(status=new_status, updated_at=utcnow())
        )
        if result.rowcount != 1:
            # Another delivery moved it first.
            db.refresh(payment)
            return False
        payment.status = new_status
        db.add(
            PaymentTimeline(payment_id=payment.id, from_state=from_status, to_state=new_status, reason=reason)
        )
        logger.info("payment_transition payment_id=%s from=%s to=%s reason=%s", payment.id, from_status, new_status, reason)
        return True

    def _record_status(
        self, config: TenantConfig, snapshot: ChargeSnapshot, status: str, flow: str, source: str
    ) -> tuple[str, str, bool] | None:
        with self.session_factory() as db:
            payment = self._find_payment(db, snapshot, flow)
            if payment is None:
                payment = self._new_payment(config, snapshot, flow)
                db.add(payment)
                try:
                    db.flush()
                except IntegrityError:
                    # Concurrent delivery inserted the same charge.
                    db.rollback()
                    payment = db.execute(
                        select(Payment).where(Payment.mercadopago_id == snapshot.charge_id)
                    ).scalar_one()
                else:
                    db.add(
                        PaymentTimeline(
                            payment_id=payment.id, from_state=None, to_state="pending", reason=f"{source}_recorded"
                        )
                    )

            if payment.tenant_id != config.tenant_id:
                logger.warning("payment_tenant_mismatch payment_id=%s", payment.id)
                return None
            if payment.mercadopago_id is None:
                payment.mercadopago_id = snapshot.charge_id

            changed = self._transition(db, payment, status, reason=f"{source}_{status}")
            if changed or payment.status == status:
                payment.webhook_data = snapshot.raw_payload
            if changed and flow == "initial" and payment.appointment_id:
                appointment = db.get(Appointment, payment.appointment_id)
                if appointment is not None:
                    appointment.payment_status = payment.status
            db.commit()
            return payment.id, payment.status, changed

    def _settle(
        self,
        config: TenantConfig,
        payment_id: str,
        flow: str,
        metadata: dict,
        external_reference: str | None = None,
    ) -> bool:
        """Claim the credit for an approved payment and run its side effects."""

        try:
            with self.session_factory() as db:
                now = utcnow()
                claim = db.execute(
                    update(Payment)
                    .where(
                        Payment.id == payment_id,
                        Payment.status == "approved",
                        Payment.credited_at.is_(None),
                    )
                    .values(credited_at=now)
                )
                if claim.rowcount != 1:
                    duplicate_webhooks_skipped_total.labels(service=self.service_name, flow=flow).inc()
                    logger.info("duplicate_webhook_skipped payment_id=%s flow=%s", payment_id, flow)
                    return False
                payment = db.get(Payment, payment_id)
                if flow == "initial":
                    self._finalize_booking(db, config, payment, metadata, now)
                elif flow == "extra":
                    self._finalize_extra(db, config, payment, metadata, now)
                else:
                    self._finalize_public(db, config, payment, metadata, external_reference, now)
                db.commit()
        except Exception as exc:
            reconciliation_failures_total.labels(service=self.service_name, flow=flow).inc()
            logger.exception("reconciliation_downstream_failed payment_id=%s flow=%s error=%s", payment_id, flow, exc)
            return False

        payments_approved_total.labels(service=self.service_name, payment_type=TYPE_BY_FLOW[flow]).inc()
        logger.info("payment_credited payment_id=%s flow=%s", payment_id, flow)
        return True

    def _materialize_appointment(self, db, config: TenantConfig, payment: Payment, metadata: dict) -> Appointment:
        """Rebuild the deferred appointment from the approved charge's metadata."""

        missing = [key for key in ("client_name", "client_phone", "session_type", "scheduled_date") if not metadata.get(key)]
        if missing:
            raise ReconciliationError(f"charge metadata missing {missing}")
        client = upsert_client(
            db, config.tenant_id, metadata["client_name"], metadata["client_phone"], metadata.get("client_email")
        )
        details = metadata.get("session_details") or {}
        if isinstance(details, str):
            details = json.loads(details)
        scheduled = datetime.fromisoformat(str(metadata["scheduled_date"]))
        if scheduled.tzinfo is None:
            scheduled = scheduled.replace(tzinfo=ZoneInfo(config.timezone))
        appointment = Appointment(
            id=payment.appointment_id or payment.external_reference,
            tenant_id=config.tenant_id,
            client_id=client.id,
            session_type=metadata["session_type"],
            session_details=details,
            scheduled_date=as_utc(scheduled),
            total_amount=Decimal(str(metadata.get("total_amount") or payment.amount)),
            minimum_photos=int(metadata.get("minimum_photos") or config.minimum_photos),
            status="pending",
            payment_status="pending",
            terms_accepted=bool(metadata.get("terms_accepted", True)),
        )
        db.add(appointment)
        db.flush()
        payment.appointment_id = appointment.id
        logger.info("appointment_materialized appointment_id=%s", appointment.id)
        return appointment

    def _finalize_booking(self, db, config: TenantConfig, payment: Payment, metadata: dict, now: datetime) -> None:
        appointment = db.get(Appointment, payment.appointment_id) if payment.appointment_id else None
        if appointment is None:
            appointment = self._materialize_appointment(db, config, payment, metadata)
        client = db.get(Client, appointment.client_id)
        payment.client_id = client.id
        appointment.payment_status = "approved"
        if appointment.status == "pending":
            validate_transition(appointment.status, "confirmed", APPOINTMENT_TRANSITIONS)
            appointment.status = "confirmed"
        else:
            logger.warning("appointment_not_pending appointment_id=%s status=%s", appointment.id, appointment.status)

        credit_client(db, client.id, payment.amount)
        gallery = provision_gallery(db, config, appointment, client, now)
        if appointment.status != "confirmed":
            return

        variables = appointment_variables(config, appointment, client)
        variables["gallery_link"] = gallery_link(gallery)
        enqueue(
            db,
            config.tenant_id,
            "payment_confirmation",
            client.phone,
            variables,
            appointment_id=appointment.id,
        )
        schedule_reminders(db, config, appointment, client, now)

        starts_at = as_utc(appointment.scheduled_date)
        add_outbox_event(
            db,
            OutboxEvent,
            CALENDAR_TOPIC,
            config.tenant_id,
            appointment.id,
            {
                "appointment_id": appointment.id,
                "client_name": client.name,
                "client_phone": client.phone,
                "session_type": appointment.session_type,
                "starts_at": starts_at.isoformat(),
                "ends_at": (starts_at + timedelta(minutes=config.session_minutes)).isoformat(),
                "location": config.studio_address,
            },
        )
        logger.info("appointment_confirmed appointment_id=%s gallery_id=%s", appointment.id, gallery.id)

    def _finalize_extra(self, db, config: TenantConfig, payment: Payment, metadata: dict, now: datetime) -> None:
        gallery = None
        for gallery_id in (payment.gallery_id, metadata.get("gallery_id")):
            if gallery_id:
                gallery = db.get(Gallery, gallery_id)
                if gallery is not None:
                    break
        if gallery is None:
            keys = [key for key in (payment.mercadopago_id, payment.id) if key]
            gallery = db.execute(
                select(Gallery).where(Gallery.extra_photos_payment_id.in_(keys)).limit(1)
            ).scalar_one_or_none()
        if gallery is None:
            raise ReconciliationError(f"no gallery for extra-photos payment {payment.id}")

        payment.gallery_id = gallery.id
        if not gallery.selection_completed:
            selected = gallery.extra_photos_selected or _json_list(metadata.get("selected_photos"))
            complete_selection(gallery, selected or list(gallery.photos_selected or []), now)
        gallery.updated_at = now

        client_id = gallery.client_id or payment.client_id
        payment.client_id = client_id
        credit_client(db, client_id, payment.amount)
        client = db.get(Client, client_id) if client_id else None
        if client is not None:
            enqueue(
                db,
                config.tenant_id,
                "selection_received",
                client.phone,
                {
                    "client_name": client.name,
                    "studio_name": config.studio_name,
                    "photos_count": len(gallery.photos_selected or []),
                    "delivery_days": config.delivery_days,
                },
                appointment_id=gallery.appointment_id,
                gallery_id=gallery.id,
            )
        logger.info("extra_photos_settled gallery_id=%s", gallery.id)

    def _finalize_public(
        self,
        db,
        config: TenantConfig,
        payment: Payment,
        metadata: dict,
        external_reference: str | None,
        now: datetime,
    ) -> None:
        reference = external_reference or payment.external_reference or ""
        parent_id = metadata.get("parent_gallery_id")
        if not parent_id and reference.startswith("public-"):
            parent_id = reference[len("public-"):].rsplit("-", 1)[0]
        parent = db.get(Gallery, parent_id) if parent_id else None
        if parent is None:
            raise ReconciliationError(f"no parent gallery for public payment {payment.id}")
        if not metadata.get("client_phone"):
            raise ReconciliationError("public purchase metadata has no client phone")

        client = upsert_client(
            db,
            config.tenant_id,
            metadata.get("client_name") or "Cliente",
            metadata["client_phone"],
            metadata.get("client_email"),
        )
        selected = _json_list(metadata.get("selected_photos"))
        child = Gallery(
            tenant_id=config.tenant_id,
            parent_gallery_id=parent.id,
            client_id=client.id,
            name=f"{parent.name} - {client.name}",
            gallery_token=new_gallery_token(),
            link_expires_at=now + timedelta(days=config.link_validity_days),
            is_public=False,
            status="completed",
            photos_selected=selected,
            photo_comments={},
            extra_photos_selected=[],
            selection_completed=True,
            selection_submitted_at=now,
        )
        db.add(child)
        db.flush()
        payment.gallery_id = child.id
        payment.client_id = client.id
        credit_client(db, client.id, payment.amount)
        enqueue(
            db,
            config.tenant_id,
            "gallery_ready",
            client.phone,
            {
                "client_name": client.name,
                "studio_name": config.studio_name,
                "gallery_link": gallery_link(child),
                "minimum_photos": len(selected),
                "link_expires_date": format_date(as_utc(child.link_expires_at)),
            },
            gallery_id=child.id,
        )
        logger.info("public_gallery_created gallery_id=%s parent_gallery_id=%s", child.id, parent.id)

    def confirm_manual_payment(self, payment_id: str) -> ReconcileResult:
        """Staff confirmation of a manual PIX payment, through the same settle path."""

        with self.session_factory() as db:
            payment = db.get(Payment, payment_id)
            if payment is None:
                raise NotFoundError(f"payment {payment_id} not found")
            if payment.mercadopago_id is not None:
                raise ValidationError("gateway payments are confirmed by the provider")
            tenant_id_ctx.set(payment.tenant_id)
            config = load_tenant_config(db, payment.tenant_id)
            flow = FLOW_BY_TYPE.get(payment.payment_type, "initial")
            changed = self._transition(db, payment, "approved", reason="manual_confirmation")
            if changed and flow == "initial" and payment.appointment_id:
                appointment = db.get(Appointment, payment.appointment_id)
                if appointment is not None:
                    appointment.payment_status = "approved"
            db.commit()
            status = payment.status
        if status != "approved":
            raise ValidationError(f"payment is {status} and cannot be confirmed")

        credited = self._settle(config, payment_id, flow, {}, payment.external_reference)
        return ReconcileResult(
            outcome="processed" if (changed or credited) else "duplicate",
            payment_id=payment_id,
            status=status,
            flow=flow,
        )

    def check_payment_status(self, tenant_id: str, charge_id: str) -> PaymentStatusView:
        """Poll target: refresh from the gateway when possible, then report the stored status."""

        tenant_id_ctx.set(tenant_id)
        charge_id_ctx.set(charge_id)
        with self.session_factory() as db:
            config = load_tenant_config(db, tenant_id)
        if config.gateway is not None:
            try:
                self.apply_charge(config, self.gateway_factory(config).get_charge(charge_id), source="poll")
            except (GatewayError, TransientError) as exc:
                logger.warning("payment_poll_failed charge_id=%s error=%s", charge_id, exc)

        with self.session_factory() as db:
            payment = db.execute(
                select(Payment).where(Payment.mercadopago_id == charge_id, Payment.tenant_id == tenant_id)
            ).scalar_one_or_none()
            if payment is None:
                raise NotFoundError(f"charge {charge_id} not found")
            gallery_token = None
            if payment.status == "approved":
                gallery = None
                if payment.gallery_id:
                    gallery = db.get(Gallery, payment.gallery_id)
                elif payment.appointment_id:
                    gallery = db.execute(
                        select(Gallery).where(Gallery.appointment_id == payment.appointment_id).limit(1)
                    ).scalar_one_or_none()
                gallery_token = gallery.gallery_token if gallery is not None else None
            return PaymentStatusView(
                charge_id=charge_id,
                payment_id=payment.id,
                status=payment.status,
                payment_type=payment.payment_type,
                appointment_id=payment.appointment_id,
                gallery_token=gallery_token,
            )

    def resync_payments(self, older_than: timedelta = timedelta(minutes=2), limit: int = 100) -> int:
        """Re-apply payments whose webhook may have been lost; returns rows touched.

        Covers gateway payments still `pending` and approved payments whose
        side effects never committed.
        """

        cutoff = utcnow() - older_than
        with self.session_factory() as db:
            rows = db.execute(
                select(Payment.id, Payment.tenant_id, Payment.mercadopago_id, Payment.status, Payment.payment_type,
                       Payment.external_reference)
                .where(
                    ((Payment.status == "pending") & Payment.mercadopago_id.is_not(None) & (Payment.created_at < cutoff))
                    | ((Payment.status == "approved") & Payment.credited_at.is_(None))
                )
                .order_by(Payment.created_at)
                .limit(limit)
            ).all()

        touched = 0
        configs: dict[str, TenantConfig | None] = {}
        for row in rows:
            tenant_id_ctx.set(row.tenant_id)
            if row.tenant_id not in configs:
                configs[row.tenant_id] = self._tenant_config(row.tenant_id)
            config = configs[row.tenant_id]
            if config is None:
                continue
            flow = FLOW_BY_TYPE.get(row.payment_type, "initial")
            if row.status == "approved":
                metadata = {}
                if config.gateway is not None and row.mercadopago_id:
                    try:
                        metadata = self.gateway_factory(config).get_charge(row.mercadopago_id).metadata
                    except GatewayError as exc:
                        logger.warning("resync_fetch_failed payment_id=%s error=%s", row.id, exc)
                        continue
                if self._settle(config, row.id, flow, metadata, row.external_reference):
                    touched += 1
                continue
            if config.gateway is None:
                continue
            try:
                snapshot = self.gateway_factory(config).get_charge(row.mercadopago_id)
            except GatewayError as exc:
                logger.warning("resync_fetch_failed payment_id=%s error=%s", row.id, exc)
                continue
            if self.apply_charge(config, snapshot, source="sweep").outcome == "processed":
                touched += 1
        return touched
