"""Per-request tenant configuration.

Studio, gateway and WhatsApp settings are read once per request into an
immutable `TenantConfig` and passed explicitly into every operation.
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select

from studioflow.common.errors import NotConfiguredError, NotFoundError
from studioflow.services.pricing.engine import CommercialHours, parse_commercial_hours
from studioflow.services.studio.models import GatewaySettings, StudioSettings, WhatsAppInstance


class GatewayConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    environment: str = "production"


class WhatsAppConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    instance_name: str
    server_url: str
    api_key: str


class TenantConfig(BaseModel):
    """Snapshot of one studio's settings for the duration of a request."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    studio_name: str = "Estúdio"
    studio_address: str = ""
    studio_maps_url: str = ""
    timezone: str = "America/Sao_Paulo"
    commercial_hours: CommercialHours = {}
    price_commercial_hour: Decimal
    price_after_hours: Decimal
    price_per_extra_photo: Decimal
    minimum_photos: int = 5
    link_validity_days: int = 30
    delivery_days: int = 7
    session_minutes: int = 60
    buffer_minutes: int = 60
    pix_key: str | None = None
    gateway: GatewayConfig | None = None
    whatsapp: WhatsAppConfig | None = None

    def require_gateway(self) -> GatewayConfig:
        if self.gateway is None:
            raise NotConfiguredError(self.tenant_id, "gateway")
        return self.gateway

    def require_whatsapp(self) -> WhatsAppConfig:
        if self.whatsapp is None:
            raise NotConfiguredError(self.tenant_id, "whatsapp")
        return self.whatsapp


def load_tenant_config(db, tenant_id: str) -> TenantConfig:
    """Read studio settings plus active integrations for `tenant_id`."""

    studio = db.get(StudioSettings, tenant_id)
    if studio is None:
        raise NotFoundError(f"studio settings not found for tenant {tenant_id}")

    gateway_row = db.execute(
        select(GatewaySettings).where(
            GatewaySettings.tenant_id == tenant_id,
            GatewaySettings.is_active.is_(True),
        )
    ).scalar_one_or_none()
    whatsapp_row = db.execute(
        select(WhatsAppInstance).where(WhatsAppInstance.tenant_id == tenant_id)
    ).scalar_one_or_none()

    # The extra-photo rate falls back to the commercial rate when unset.
    extra_rate = studio.price_per_extra_photo
    if extra_rate is None:
        extra_rate = studio.price_commercial_hour

    return TenantConfig(
        tenant_id=tenant_id,
        studio_name=studio.studio_name or "Estúdio",
        studio_address=studio.studio_address or "",
        studio_maps_url=studio.studio_maps_url or "",
        timezone=studio.timezone or "America/Sao_Paulo",
        commercial_hours=parse_commercial_hours(studio.commercial_hours),
        price_commercial_hour=studio.price_commercial_hour,
        price_after_hours=studio.price_after_hours,
        price_per_extra_photo=extra_rate,
        minimum_photos=studio.minimum_photos or 5,
        link_validity_days=studio.link_validity_days or 30,
        delivery_days=studio.delivery_days or 7,
        session_minutes=studio.session_minutes or 60,
        buffer_minutes=studio.buffer_minutes or 60,
        pix_key=studio.pix_key,
        gateway=(
            GatewayConfig(access_token=gateway_row.access_token, environment=gateway_row.environment)
            if gateway_row is not None and gateway_row.access_token
            else None
        ),
        whatsapp=(
            WhatsAppConfig(
                instance_name=whatsapp_row.instance_name,
                server_url=whatsapp_row.server_url,
                api_key=whatsapp_row.api_key,
            )
            if whatsapp_row is not None
            else None
        ),
    )
