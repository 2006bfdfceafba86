"""Evolution-API compatible WhatsApp sender."""

import re
from typing import Protocol

import httpx

from studioflow.common.config import settings
from studioflow.common.errors import GatewayError
from studioflow.common.tenancy import WhatsAppConfig


class MessageSender(Protocol):
    def send_text(self, phone: str, text: str) -> None: ...


def normalize_phone(phone: str) -> str:
    """Digits only, with the Brazilian country code prepended to local numbers."""

    digits = re.sub(r"\D", "", phone or "")
    if len(digits) in (10, 11):
        digits = "55" + digits
    return digits


class EvolutionWhatsAppClient:
    """`POST {server}/message/sendText/{instance}` with the instance `apikey`."""

    def __init__(
        self,
        server_url: str,
        api_key: str,
        instance_name: str,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.api_key = api_key
        self.instance_name = instance_name
        self.timeout = timeout if timeout is not None else settings.whatsapp_timeout_seconds
        self.transport = transport

    def send_text(self, phone: str, text: str) -> None:
        number = normalize_phone(phone)
        if not number:
            raise GatewayError(None, "recipient phone is empty")
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                resp = client.post(
                    f"{self.server_url}/message/sendText/{self.instance_name}",
                    headers={"apikey": self.api_key},
                    json={"number": number, "text": text},
                )
        except httpx.HTTPError as exc:
            raise GatewayError(None, str(exc)) from exc
        if resp.status_code >= 400:
            raise GatewayError(resp.status_code, resp.text[:500])


def sender_for(config: WhatsAppConfig) -> MessageSender:
    return EvolutionWhatsAppClient(
        server_url=config.server_url,
        api_key=config.api_key,
        instance_name=config.instance_name,
    )
