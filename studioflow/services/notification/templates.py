"""Built-in message templates and `{{name}}` substitution."""

import re
from datetime import datetime
from decimal import Decimal

PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")

TEMPLATE_TYPES = (
    "manual_pix_instructions",
    "payment_confirmation",
    "reminder_1_day_before",
    "reminder_day_of_session",
    "selection_received",
    "extra_photos_payment",
    "public_gallery_pix_instructions",
    "gallery_ready",
)

DEFAULT_TEMPLATES: dict[str, str] = {
    "manual_pix_instructions": (
        "Olá {{client_name}}! Recebemos seu agendamento de {{session_type}} para "
        "{{appointment_date}} às {{appointment_time}}.\n\n"
        "Para confirmar, faça um PIX de {{amount}} para a chave: {{pix_key}}\n"
        "Depois é só enviar o comprovante por aqui. {{studio_name}}"
    ),
    "payment_confirmation": (
        "Olá {{client_name}}! Pagamento de {{amount}} confirmado. Sua sessão de "
        "{{session_type}} está marcada para {{appointment_date}} às {{appointment_time}}.\n"
        "Endereço: {{studio_address}} {{maps_url}}\n{{studio_name}}"
    ),
    "reminder_1_day_before": (
        "Olá {{client_name}}! Lembrete: sua sessão de {{session_type}} é amanhã, "
        "{{appointment_date}} às {{appointment_time}}. {{studio_name}}"
    ),
    "reminder_day_of_session": (
        "Olá {{client_name}}! Sua sessão de {{session_type}} é hoje às "
        "{{appointment_time}}. Endereço: {{studio_address}} {{maps_url}}"
    ),
    "selection_received": (
        "Olá {{client_name}}! Recebemos sua seleção de {{photos_count}} fotos. "
        "Entrega em até {{delivery_days}} dias. {{studio_name}}"
    ),
    "extra_photos_payment": (
        "Olá {{client_name}}! Você selecionou {{extra_count}} fotos extras. "
        "Faça um PIX de {{amount}} para a chave: {{pix_key}} para finalizar sua seleção."
    ),
    "public_gallery_pix_instructions": (
        "Olá {{client_name}}! Para receber {{photos_count}} fotos de {{event_name}}, "
        "faça um PIX de {{amount}} para a chave: {{pix_key}}. {{studio_name}}"
    ),
    "gallery_ready": (
        "Olá {{client_name}}! Suas fotos estão prontas: {{gallery_link}}\n"
        "Escolha pelo menos {{minimum_photos}} fotos até {{link_expires_date}}."
    ),
}


def render(template: str, variables: dict) -> str:
    """Substitute `{{name}}` placeholders; unknown names are left as written."""

    def replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in variables or variables[name] is None:
            return match.group(0)
        return str(variables[name])

    return PLACEHOLDER.sub(replace, template)


def format_brl(amount: Decimal | float | int) -> str:
    """`1234.5` -> `R$ 1.234,50`."""

    text = f"{Decimal(str(amount)):,.2f}"
    return "R$ " + text.replace(",", "_").replace(".", ",").replace("_", ".")


def format_date(value: datetime) -> str:
    return value.strftime("%d/%m/%Y")


def format_time(value: datetime) -> str:
    return value.strftime("%H:%M")
