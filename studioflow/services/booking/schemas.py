"""Request/response contracts for slot listing and booking submission."""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


class BookingForm(BaseModel):
    """Payload accepted by `POST /tenants/{tenant_id}/bookings`.

    A naive `scheduled_date` is read in the studio's timezone. `expected_price`
    is the total the client was shown; it is re-checked before anything is
    written.
    """

    client_name: str = Field(min_length=1)
    client_phone: str = Field(min_length=8)
    client_email: str | None = None
    session_type: str = Field(min_length=1)
    session_details: dict[str, Any] = Field(default_factory=dict)
    scheduled_date: datetime
    terms_accepted: bool = False
    expected_price: Decimal | None = None


class Slot(BaseModel):
    starts_at: datetime
    price: Decimal


class SlotListing(BaseModel):
    """Available slots; `reason` explains an empty listing."""

    slots: list[Slot]
    reason: str | None = None


class ImmediateBooking(BaseModel):
    """Manual-PIX booking: every row exists, payment is owed out-of-band."""

    kind: Literal["immediate"] = "immediate"
    appointment_id: str
    gallery_id: str
    gallery_token: str
    payment_id: str
    amount: Decimal
    pix_key: str | None = None


class DeferredBooking(BaseModel):
    """Gateway booking: only a charge exists until its approval webhook."""

    kind: Literal["deferred"] = "deferred"
    external_reference: str
    charge_id: str
    payment_id: str | None = None
    amount: Decimal
    qr_code: str | None = None
    qr_code_image: str | None = None
    expires_at: datetime


BookingIntent = Annotated[Union[ImmediateBooking, DeferredBooking], Field(discriminator="kind")]
