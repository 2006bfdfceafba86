"""Client-facing gallery views and selection payloads."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class PhotoView(BaseModel):
    id: str
    filename: str
    url: str
    thumbnail_url: str | None = None
    comment: str | None = None
    selected: bool = False


class GalleryView(BaseModel):
    """What the token holder sees; `selection_code` only once finalized."""

    id: str
    name: str
    status: str
    is_public: bool
    link_expires_at: datetime
    minimum_photos: int
    price_per_photo: Decimal
    selection_completed: bool
    awaiting_extra_payment: bool
    photos_selected: list[str]
    extra_photos_selected: list[str]
    selection_code: str | None = None
    photos: list[PhotoView]


class SelectionRequest(BaseModel):
    photo_ids: list[str]


class CommentRequest(BaseModel):
    comment: str = Field(max_length=2000)


class SelectionResult(BaseModel):
    """Outcome of a submit: `completed`, or `awaiting_payment` with a charge."""

    status: str
    photos_count: int
    extra_count: int = 0
    extra_amount: Decimal = Decimal("0")
    payment_id: str | None = None
    charge_id: str | None = None
    qr_code: str | None = None
    qr_code_image: str | None = None
    expires_at: datetime | None = None
    pix_key: str | None = None


class PurchaseRequest(BaseModel):
    """A visitor buying photos from a public gallery."""

    client_name: str = Field(min_length=1)
    client_phone: str = Field(min_length=8)
    client_email: str | None = None
    photo_ids: list[str] = Field(min_length=1)


class PurchaseResult(BaseModel):
    kind: str
    amount: Decimal
    photos_count: int
    external_reference: str | None = None
    charge_id: str | None = None
    qr_code: str | None = None
    qr_code_image: str | None = None
    expires_at: datetime | None = None
    pix_key: str | None = None
