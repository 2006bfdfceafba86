"""Gallery selection engine.

Selection state lives on the gallery row (`photos_selected`, `photo_comments`)
and becomes immutable once `selection_completed` is set. A selection larger
than the included minimum parks the gallery in `awaiting_payment` until the
extra-photos charge is approved by the reconciler.
"""

import json
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select

from studioflow.common.clock import as_utc, utcnow
from studioflow.common.config import settings
from studioflow.common.errors import (
    GalleryExpiredError,
    NotFoundError,
    SelectionLockedError,
    ValidationError,
)
from studioflow.common.logging import logger, tenant_id_ctx
from studioflow.common.state_machine import GALLERY_TRANSITIONS, validate_transition
from studioflow.common.tenancy import TenantConfig, load_tenant_config
from studioflow.services.gallery.schemas import (
    GalleryView,
    PhotoView,
    PurchaseRequest,
    PurchaseResult,
    SelectionResult,
)
from studioflow.services.gallery.tokens import new_gallery_token, selection_code
from studioflow.services.gateway.client import gateway_for
from studioflow.services.gateway.schemas import PayerInfo
from studioflow.services.notification.service import enqueue
from studioflow.services.notification.templates import format_brl, format_date
from studioflow.services.studio.models import Appointment, Client, Gallery, Payment, PaymentTimeline, Photo


def provision_gallery(db, config: TenantConfig, appointment: Appointment, client: Client, now=None) -> Gallery:
    """Return the appointment's gallery, creating it on first call."""

    existing = db.execute(
        select(Gallery).where(Gallery.appointment_id == appointment.id).order_by(Gallery.created_at).limit(1)
    ).scalar_one_or_none()
    if existing is not None:
        return existing
    now = now or utcnow()
    gallery = Gallery(
        tenant_id=appointment.tenant_id,
        appointment_id=appointment.id,
        client_id=client.id,
        name=f"{appointment.session_type} - {client.name}",
        gallery_token=new_gallery_token(),
        link_expires_at=now + timedelta(days=config.link_validity_days),
        status="pending",
        photos_selected=[],
        photo_comments={},
        extra_photos_selected=[],
        selection_completed=False,
    )
    db.add(gallery)
    db.flush()
    logger.info("gallery_provisioned gallery_id=%s appointment_id=%s", gallery.id, appointment.id)
    return gallery


def set_gallery_status(gallery: Gallery, new_status: str) -> None:
    if gallery.status == new_status:
        return
    validate_transition(gallery.status, new_status, GALLERY_TRANSITIONS)
    gallery.status = new_status


def complete_selection(gallery: Gallery, photo_ids: list[str], now: datetime | None = None) -> None:
    """Finalize the selection; from here on it is read-only."""

    set_gallery_status(gallery, "completed")
    gallery.photos_selected = list(photo_ids)
    gallery.selection_completed = True
    gallery.selection_submitted_at = now or utcnow()


def gallery_link(gallery: Gallery) -> str:
    return f"{settings.public_base_url.rstrip('/')}/galleries/{gallery.gallery_token}"


def _millis(now: datetime) -> int:
    return int(now.timestamp() * 1000)


class GalleryService:
    """Token-scoped gallery operations for clients and public visitors."""

    def __init__(self, session_factory, gateway_factory=gateway_for, service_name: str = "api") -> None:
        self.session_factory = session_factory
        self.gateway_factory = gateway_factory
        self.service_name = service_name

    def _load(self, db, token: str, now: datetime | None = None) -> Gallery:
        gallery = db.execute(select(Gallery).where(Gallery.gallery_token == token)).scalar_one_or_none()
        if gallery is None:
            raise NotFoundError("gallery not found")
        if as_utc(gallery.link_expires_at) < (now or utcnow()):
            raise GalleryExpiredError(f"gallery {gallery.id} link expired")
        tenant_id_ctx.set(gallery.tenant_id)
        return gallery

    def _photos(self, db, gallery: Gallery) -> list[Photo]:
        photos = (
            db.execute(
                select(Photo).where(Photo.gallery_id == gallery.id).order_by(Photo.filename)
            )
            .scalars()
            .all()
        )
        if photos or gallery.parent_gallery_id is None:
            return list(photos)
        # Public purchases reuse the parent gallery's photos.
        return list(
            db.execute(
                select(Photo)
                .where(
                    Photo.gallery_id == gallery.parent_gallery_id,
                    Photo.id.in_(gallery.photos_selected or []),
                )
                .order_by(Photo.filename)
            )
            .scalars()
            .all()
        )

    def _photo_ids(self, db, gallery: Gallery) -> set[str]:
        return {photo.id for photo in self._photos(db, gallery)}

    def _minimum(self, db, config: TenantConfig, gallery: Gallery) -> int:
        if gallery.appointment_id:
            appointment = db.get(Appointment, gallery.appointment_id)
            if appointment is not None:
                return appointment.minimum_photos
        return config.minimum_photos

    @staticmethod
    def _rate(config: TenantConfig, gallery: Gallery) -> Decimal:
        if gallery.price_per_photo is not None:
            return Decimal(gallery.price_per_photo)
        return config.price_per_extra_photo

    def get_gallery(self, token: str) -> GalleryView:
        """Gallery contents as seen by the token holder."""

        with self.session_factory() as db:
            gallery = self._load(db, token)
            config = load_tenant_config(db, gallery.tenant_id)
            photos = self._photos(db, gallery)
            selected = set(gallery.photos_selected or [])
            comments = gallery.photo_comments or {}
            code = None
            if gallery.selection_completed:
                code = selection_code([p.filename for p in photos if p.id in selected])
            return GalleryView(
                id=gallery.id,
                name=gallery.name,
                status=gallery.status,
                is_public=gallery.is_public,
                link_expires_at=as_utc(gallery.link_expires_at),
                minimum_photos=self._minimum(db, config, gallery),
                price_per_photo=self._rate(config, gallery),
                selection_completed=gallery.selection_completed,
                awaiting_extra_payment=gallery.status == "awaiting_payment",
                photos_selected=list(gallery.photos_selected or []),
                extra_photos_selected=list(gallery.extra_photos_selected or []),
                selection_code=code,
                photos=[
                    PhotoView(
                        id=p.id,
                        filename=p.filename,
                        url=p.url,
                        thumbnail_url=p.thumbnail_url,
                        comment=comments.get(p.id),
                        selected=p.id in selected,
                    )
                    for p in photos
                ],
            )

    def toggle_selection(self, token: str, photo_id: str) -> list[str]:
        """Flip one photo's membership in the selection."""

        with self.session_factory() as db:
            gallery = self._load(db, token)
            if gallery.selection_completed:
                raise SelectionLockedError("selection already submitted")
            if photo_id not in self._photo_ids(db, gallery):
                raise NotFoundError(f"photo {photo_id} not in gallery")
            selected = list(gallery.photos_selected or [])
            if photo_id in selected:
                selected.remove(photo_id)
            else:
                selected.append(photo_id)
            gallery.photos_selected = selected
            set_gallery_status(gallery, "started" if selected else "pending")
            db.commit()
            return selected

    def comment_photo(self, token: str, photo_id: str, comment: str) -> dict[str, str]:
        """Set (or clear, when blank) the client's comment on a photo."""

        with self.session_factory() as db:
            gallery = self._load(db, token)
            if gallery.selection_completed:
                raise SelectionLockedError("selection already submitted")
            if photo_id not in self._photo_ids(db, gallery):
                raise NotFoundError(f"photo {photo_id} not in gallery")
            comments = dict(gallery.photo_comments or {})
            if comment.strip():
                comments[photo_id] = comment.strip()
            else:
                comments.pop(photo_id, None)
            gallery.photo_comments = comments
            db.commit()
            return comments

    def submit_selection(self, token: str, photo_ids: list[str], now: datetime | None = None) -> SelectionResult:
        """Finalize a selection, or open an extra-photos charge for the excess.

        A `GatewayError` from the extra charge propagates before anything is
        written.
        """

        now = now or utcnow()
        with self.session_factory() as db:
            gallery = self._load(db, token, now)
            if gallery.selection_completed:
                raise SelectionLockedError("selection already submitted")
            if gallery.is_public:
                raise ValidationError("public galleries are purchased, not selected")

            selected = list(dict.fromkeys(photo_ids))
            unknown = set(selected) - self._photo_ids(db, gallery)
            if unknown:
                raise ValidationError(f"photos not in gallery: {sorted(unknown)}")

            config = load_tenant_config(db, gallery.tenant_id)
            minimum = self._minimum(db, config, gallery)
            if len(selected) < minimum:
                raise ValidationError(f"select at least {minimum} photos (got {len(selected)})")

            client = db.get(Client, gallery.client_id) if gallery.client_id else None

            if len(selected) == minimum:
                complete_selection(gallery, selected, now)
                if client is not None:
                    enqueue(
                        db,
                        gallery.tenant_id,
                        "selection_received",
                        client.phone,
                        {
                            "client_name": client.name,
                            "studio_name": config.studio_name,
                            "photos_count": len(selected),
                            "delivery_days": config.delivery_days,
                        },
                        appointment_id=gallery.appointment_id,
                        gallery_id=gallery.id,
                    )
                db.commit()
                logger.info("selection_completed gallery_id=%s photos=%s", gallery.id, len(selected))
                return SelectionResult(status="completed", photos_count=len(selected))

            extra_count = len(selected) - minimum
            extra_amount = (extra_count * self._rate(config, gallery)).quantize(Decimal("0.01"))
            payment = Payment(
                tenant_id=gallery.tenant_id,
                appointment_id=gallery.appointment_id,
                gallery_id=gallery.id,
                client_id=gallery.client_id,
                amount=extra_amount,
                status="pending",
                payment_type="extra_photos",
            )
            result = SelectionResult(
                status="awaiting_payment",
                photos_count=len(selected),
                extra_count=extra_count,
                extra_amount=extra_amount,
            )

            if config.gateway is not None:
                reference = f"{gallery.appointment_id or gallery.id}-extra-{_millis(now)}"
                charge = self.gateway_factory(config).create_charge(
                    amount=extra_amount,
                    external_reference=reference,
                    payer=PayerInfo(
                        name=client.name if client else "",
                        email=client.email if client else None,
                        phone=client.phone if client else None,
                    ),
                    metadata={
                        "tenant_id": gallery.tenant_id,
                        "gallery_id": gallery.id,
                        "appointment_id": gallery.appointment_id,
                        "extra_count": extra_count,
                        "selected_photos": json.dumps(selected),
                    },
                    description=f"{extra_count} fotos extras - {config.studio_name}",
                    expiry_minutes=settings.charge_expiry_minutes,
                )
                payment.mercadopago_id = charge.charge_id
                payment.external_reference = reference
                result.charge_id = charge.charge_id
                result.qr_code = charge.qr_code
                result.qr_code_image = charge.qr_code_image
                result.expires_at = charge.expires_at

            db.add(payment)
            db.flush()
            db.add(
                PaymentTimeline(
                    payment_id=payment.id, from_state=None, to_state="pending", reason="extra_photos_requested"
                )
            )
            set_gallery_status(gallery, "awaiting_payment")
            gallery.photos_selected = selected
            gallery.extra_photos_selected = selected
            gallery.extra_photos_payment_id = payment.mercadopago_id or payment.id

            if config.gateway is None:
                result.pix_key = config.pix_key
                if client is not None:
                    enqueue(
                        db,
                        gallery.tenant_id,
                        "extra_photos_payment",
                        client.phone,
                        {
                            "client_name": client.name,
                            "studio_name": config.studio_name,
                            "extra_count": extra_count,
                            "amount": format_brl(extra_amount),
                            "pix_key": config.pix_key or "",
                        },
                        appointment_id=gallery.appointment_id,
                        gallery_id=gallery.id,
                    )
            db.commit()
            result.payment_id = payment.id
            logger.info(
                "selection_awaiting_payment gallery_id=%s extra_count=%s amount=%s",
                gallery.id,
                extra_count,
                extra_amount,
            )
            return result

    def purchase_public_photos(self, token: str, req: PurchaseRequest, now: datetime | None = None) -> PurchaseResult:
        """Charge a visitor for photos from a public gallery.

        Without a gateway only PIX instructions are queued; the studio confirms
        out-of-band.
        """

        now = now or utcnow()
        with self.session_factory() as db:
            gallery = self._load(db, token, now)
            if not gallery.is_public:
                raise ValidationError("gallery is not public")
            selected = list(dict.fromkeys(req.photo_ids))
            unknown = set(selected) - self._photo_ids(db, gallery)
            if unknown:
                raise ValidationError(f"photos not in gallery: {sorted(unknown)}")

            config = load_tenant_config(db, gallery.tenant_id)
            amount = (len(selected) * self._rate(config, gallery)).quantize(Decimal("0.01"))

            if config.gateway is None:
                enqueue(
                    db,
                    gallery.tenant_id,
                    "public_gallery_pix_instructions",
                    req.client_phone,
                    {
                        "client_name": req.client_name,
                        "studio_name": config.studio_name,
                        "photos_count": len(selected),
                        "event_name": gallery.name,
                        "amount": format_brl(amount),
                        "pix_key": config.pix_key or "",
                    },
                    gallery_id=gallery.id,
                )
                db.commit()
                return PurchaseResult(
                    kind="manual", amount=amount, photos_count=len(selected), pix_key=config.pix_key
                )

            reference = f"public-{gallery.id}-{_millis(now)}"
            charge = self.gateway_factory(config).create_charge(
                amount=amount,
                external_reference=reference,
                payer=PayerInfo(name=req.client_name, email=req.client_email, phone=req.client_phone),
                metadata={
                    "tenant_id": gallery.tenant_id,
                    "parent_gallery_id": gallery.id,
                    "client_name": req.client_name,
                    "client_phone": req.client_phone,
                    "client_email": req.client_email,
                    "selected_photos": json.dumps(selected),
                    "photos_count": len(selected),
                    "event_name": gallery.name,
                },
                description=f"{len(selected)} fotos - {gallery.name}",
                expiry_minutes=settings.charge_expiry_minutes,
            )
            payment = Payment(
                tenant_id=gallery.tenant_id,
                mercadopago_id=charge.charge_id,
                external_reference=reference,
                amount=amount,
                status="pending",
                payment_type="public_gallery",
            )
            db.add(payment)
            db.flush()
            db.add(
                PaymentTimeline(
                    payment_id=payment.id, from_state=None, to_state="pending", reason="public_purchase_requested"
                )
            )
            db.commit()
            return PurchaseResult(
                kind="gateway",
                amount=amount,
                photos_count=len(selected),
                external_reference=reference,
                charge_id=charge.charge_id,
                qr_code=charge.qr_code,
                qr_code_image=charge.qr_code_image,
                expires_at=charge.expires_at,
            )

    def notify_gallery_ready(self, gallery_id: str) -> str:
        """Queue the "your photos are ready" message; returns the queue row id."""

        with self.session_factory() as db:
            gallery = db.get(Gallery, gallery_id)
            if gallery is None:
                raise NotFoundError(f"gallery {gallery_id} not found")
            client = db.get(Client, gallery.client_id) if gallery.client_id else None
            if client is None:
                raise ValidationError("gallery has no client to notify")
            config = load_tenant_config(db, gallery.tenant_id)
            row = enqueue(
                db,
                gallery.tenant_id,
                "gallery_ready",
                client.phone,
                {
                    "client_name": client.name,
                    "studio_name": config.studio_name,
                    "gallery_link": gallery_link(gallery),
                    "minimum_photos": self._minimum(db, config, gallery),
                    "link_expires_date": format_date(as_utc(gallery.link_expires_at)),
                },
                appointment_id=gallery.appointment_id,
                gallery_id=gallery.id,
            )
            db.commit()
            return row.id
