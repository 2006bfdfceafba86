"""Gallery selection: minimum enforcement, locking, comments and extras."""

from decimal import Decimal

import pytest
from sqlalchemy import select

from studioflow.common.errors import (
    GalleryExpiredError,
    NotFoundError,
    SelectionLockedError,
    ValidationError,
)
from studioflow.services.gallery.service import GalleryService
from studioflow.services.gallery.tokens import new_gallery_token, selection_code
from studioflow.services.notification.models import NotificationQueue
from studioflow.services.reconciler.service import ReconcilerService
from studioflow.services.studio.models import Gallery, Payment


@pytest.fixture
def gallery_service(session_factory):
    def _no_gateway(config):
        raise AssertionError("gateway must not be called")

    return GalleryService(session_factory, gateway_factory=_no_gateway)


def test_exact_minimum_completes_selection(gallery_service, seed_studio, make_gallery, count):
    seed_studio()
    gallery = make_gallery(photos=8, minimum=5)
    result = gallery_service.submit_selection(gallery["token"], gallery["photo_ids"][:5])

    assert result.status == "completed"
    assert result.photos_count == 5
    view = gallery_service.get_gallery(gallery["token"])
    assert view.status == "completed"
    assert view.selection_completed
    assert view.selection_code == " OR ".join(f"IMG_{i:04d}.jpg" for i in range(5))
    assert count(NotificationQueue, NotificationQueue.template_type == "selection_received") == 1
    assert count(Payment) == 0


def test_below_minimum_is_rejected(gallery_service, seed_studio, make_gallery):
    seed_studio()
    gallery = make_gallery(photos=8, minimum=5)
    with pytest.raises(ValidationError):
        gallery_service.submit_selection(gallery["token"], gallery["photo_ids"][:4])
    # Duplicates do not count twice.
    with pytest.raises(ValidationError):
        gallery_service.submit_selection(gallery["token"], gallery["photo_ids"][:4] * 2)
    assert gallery_service.get_gallery(gallery["token"]).status == "pending"


def test_completed_selection_is_locked(gallery_service, seed_studio, make_gallery):
    seed_studio()
    gallery = make_gallery(photos=8, minimum=5)
    ids = gallery["photo_ids"]
    gallery_service.submit_selection(gallery["token"], ids[:5])

    with pytest.raises(SelectionLockedError):
        gallery_service.toggle_selection(gallery["token"], ids[6])
    with pytest.raises(SelectionLockedError):
        gallery_service.submit_selection(gallery["token"], ids[:6])
    with pytest.raises(SelectionLockedError):
        gallery_service.comment_photo(gallery["token"], ids[0], "mais claro")


def test_toggle_moves_between_pending_and_started(gallery_service, seed_studio, make_gallery):
    seed_studio()
    gallery = make_gallery()
    photo_id = gallery["photo_ids"][0]

    assert gallery_service.toggle_selection(gallery["token"], photo_id) == [photo_id]
    assert gallery_service.get_gallery(gallery["token"]).status == "started"
    assert gallery_service.toggle_selection(gallery["token"], photo_id) == []
    assert gallery_service.get_gallery(gallery["token"]).status == "pending"


def test_comments_set_and_clear(gallery_service, seed_studio, make_gallery):
    seed_studio()
    gallery = make_gallery()
    photo_id = gallery["photo_ids"][1]

    assert gallery_service.comment_photo(gallery["token"], photo_id, "  tirar o fundo ") == {photo_id: "tirar o fundo"}
    view = gallery_service.get_gallery(gallery["token"])
    assert next(p.comment for p in view.photos if p.id == photo_id) == "tirar o fundo"
    assert gallery_service.comment_photo(gallery["token"], photo_id, "   ") == {}


def test_photos_from_another_gallery_are_rejected(gallery_service, seed_studio, make_gallery):
    seed_studio()
    mine = make_gallery()
    other = make_gallery()
    with pytest.raises(NotFoundError):
        gallery_service.toggle_selection(mine["token"], other["photo_ids"][0])
    with pytest.raises(ValidationError):
        gallery_service.submit_selection(mine["token"], mine["photo_ids"][:4] + other["photo_ids"][:1])


def test_expired_and_unknown_links(gallery_service, seed_studio, make_gallery):
    seed_studio()
    expired = make_gallery(expires_in_days=-1)
    with pytest.raises(GalleryExpiredError):
        gallery_service.get_gallery(expired["token"])
    with pytest.raises(NotFoundError):
        gallery_service.get_gallery(new_gallery_token())


def test_public_gallery_cannot_be_selected(gallery_service, seed_studio, make_gallery):
    seed_studio()
    gallery = make_gallery(is_public=True)
    with pytest.raises(ValidationError):
        gallery_service.submit_selection(gallery["token"], gallery["photo_ids"][:5])


def test_extra_photos_without_gateway_wait_for_staff(
    gallery_service, seed_studio, make_gallery, session_factory, count
):
    """Without a gateway the extras are owed by PIX and confirmed manually."""

    seed_studio()
    gallery = make_gallery(photos=8, minimum=5)
    selected = gallery["photo_ids"][:6]
    result = gallery_service.submit_selection(gallery["token"], selected)

    assert result.status == "awaiting_payment"
    assert result.extra_count == 1
    assert result.extra_amount == Decimal("25.00")
    assert result.pix_key == "pix@studio.test"
    assert result.charge_id is None
    view = gallery_service.get_gallery(gallery["token"])
    assert view.awaiting_extra_payment
    assert view.extra_photos_selected == selected
    with session_factory() as db:
        message = db.execute(
            select(NotificationQueue).where(NotificationQueue.template_type == "extra_photos_payment")
        ).scalar_one()
    assert "R$ 25,00" in message.message

    ReconcilerService(session_factory).confirm_manual_payment(result.payment_id)
    with session_factory() as db:
        row = db.get(Gallery, gallery["gallery_id"])
    assert row.status == "completed"
    assert row.photos_selected == selected
    assert count(Payment, Payment.status == "approved", Payment.credited_at.is_not(None)) == 1


def test_changing_selection_while_awaiting_payment(gallery_service, seed_studio, make_gallery):
    """Dropping back to the included minimum finalizes without the extra charge."""

    seed_studio()
    gallery = make_gallery(photos=8, minimum=5)
    ids = gallery["photo_ids"]
    gallery_service.submit_selection(gallery["token"], ids[:7])

    result = gallery_service.submit_selection(gallery["token"], ids[:5])
    assert result.status == "completed"
    assert gallery_service.get_gallery(gallery["token"]).photos_selected == ids[:5]


def test_gallery_price_override(gallery_service, seed_studio, make_gallery):
    seed_studio()
    gallery = make_gallery(photos=8, minimum=5, price_per_photo=Decimal("40"))
    result = gallery_service.submit_selection(gallery["token"], gallery["photo_ids"][:7])
    assert result.extra_amount == Decimal("80.00")


def test_notify_gallery_ready(gallery_service, seed_studio, make_gallery, session_factory):
    seed_studio()
    gallery = make_gallery()
    row_id = gallery_service.notify_gallery_ready(gallery["gallery_id"])
    with session_factory() as db:
        row = db.get(NotificationQueue, row_id)
    assert row.template_type == "gallery_ready"
    assert f"https://studio.test/galleries/{gallery['token']}" in row.message


def test_token_and_selection_code():
    token = new_gallery_token()
    assert len(token) == 43
    assert token != new_gallery_token()
    assert selection_code(["A.jpg", "", "B.jpg"]) == "A.jpg OR B.jpg"
