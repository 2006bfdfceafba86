"""Request/response contracts for the payment gateway adapter."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field


class PayerInfo(BaseModel):
    """Who is paying; MercadoPago requires a first/last name and an email."""

    name: str = ""
    email: str | None = None
    phone: str | None = None

    def split_name(self) -> tuple[str, str]:
        parts = self.name.split()
        first = parts[0] if parts else "Cliente"
        last = " ".join(parts[1:]) if len(parts) > 1 else "Sobrenome"
        return first, last


class ChargeResult(BaseModel):
    """A freshly created PIX charge, ready to display to the payer."""

    charge_id: str
    status: str
    external_reference: str
    qr_code: str | None = None
    qr_code_image: str | None = None
    expires_at: datetime


class ChargeSnapshot(BaseModel):
    """Authoritative charge state fetched from the provider."""

    charge_id: str
    status: str
    external_reference: str | None = None
    amount: Decimal = Decimal("0")
    metadata: dict[str, Any] = Field(default_factory=dict)
    raw_payload: dict[str, Any] = Field(default_factory=dict)
