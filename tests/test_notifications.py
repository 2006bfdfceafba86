"""Template rendering, the delivery queue and the WhatsApp sender."""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from conftest import TENANT, FakeSender
from studioflow.common.errors import GatewayError
from studioflow.services.notification.models import NotificationQueue, NotificationTemplate
from studioflow.services.notification.service import NotificationDispatcher, enqueue
from studioflow.services.notification.templates import format_brl, format_date, format_time, render
from studioflow.services.notification.whatsapp import EvolutionWhatsAppClient, normalize_phone


def test_render_substitutes_known_placeholders():
    text = render("Olá {{client_name}}, {{ amount }} até {{missing}} {{empty}}", {
        "client_name": "Ana",
        "amount": "R$ 25,00",
        "empty": None,
    })
    assert text == "Olá Ana, R$ 25,00 até {{missing}} {{empty}}"


def test_brazilian_formats():
    assert format_brl(Decimal("1234.5")) == "R$ 1.234,50"
    assert format_brl(750) == "R$ 750,00"
    moment = datetime(2030, 1, 7, 9, 5)
    assert format_date(moment) == "07/01/2030"
    assert format_time(moment) == "09:05"


def test_normalize_phone():
    assert normalize_phone("(11) 98888-7777") == "5511988887777"
    assert normalize_phone("+55 11 98888-7777") == "5511988887777"
    assert normalize_phone("1133334444") == "551133334444"
    assert normalize_phone("") == ""


def _queue(session_factory, template_type="selection_received", scheduled_for=None, **variables) -> str:
    with session_factory() as db:
        row = enqueue(
            db,
            TENANT,
            template_type,
            "5511988887777",
            {"client_name": "Ana", "studio_name": "Estúdio Luz", **variables},
            scheduled_for=scheduled_for,
        )
        db.commit()
        return row.id


def test_tenant_template_overrides_default(session_factory, seed_studio):
    seed_studio()
    with session_factory() as db:
        db.add(
            NotificationTemplate(
                tenant_id=TENANT,
                template_type="selection_received",
                message_template="{{client_name}}: {{photos_count}} fotos recebidas!",
            )
        )
        db.commit()
    row_id = _queue(session_factory, photos_count=12)
    with session_factory() as db:
        assert db.get(NotificationQueue, row_id).message == "Ana: 12 fotos recebidas!"


def test_unknown_template_type_is_rejected(session_factory):
    with session_factory() as db, pytest.raises(ValueError):
        enqueue(db, TENANT, "birthday", "5511988887777", {})


def test_due_rows_are_sent(session_factory, seed_studio, fake_sender):
    seed_studio(whatsapp=True)
    row_id = _queue(session_factory, photos_count=5)
    future_id = _queue(session_factory, scheduled_for=datetime.now(timezone.utc) + timedelta(hours=3))
    dispatcher = NotificationDispatcher(session_factory, sender_factory=lambda config: fake_sender)

    assert dispatcher.deliver_due() == 1
    assert fake_sender.sent[0][0] == "5511988887777"
    assert "5 fotos" in fake_sender.sent[0][1]
    with session_factory() as db:
        sent = db.get(NotificationQueue, row_id)
        future = db.get(NotificationQueue, future_id)
    assert sent.status == "sent"
    assert sent.attempts == 1
    assert sent.sent_at is not None
    assert future.status == "pending"


def test_failed_sends_retry_until_max_attempts(session_factory, seed_studio):
    seed_studio(whatsapp=True)
    row_id = _queue(session_factory)
    dispatcher = NotificationDispatcher(
        session_factory, sender_factory=lambda config: FakeSender(fail=True), max_attempts=2
    )

    dispatcher.deliver_due()
    with session_factory() as db:
        row = db.get(NotificationQueue, row_id)
    assert row.status == "pending"
    assert "instance disconnected" in row.last_error

    dispatcher.deliver_due()
    with session_factory() as db:
        row = db.get(NotificationQueue, row_id)
    assert row.status == "failed"
    assert row.attempts == 2


def test_rows_without_whatsapp_are_skipped(session_factory, seed_studio, fake_sender):
    seed_studio()
    row_id = _queue(session_factory)
    NotificationDispatcher(session_factory, sender_factory=lambda config: fake_sender).deliver_due()
    with session_factory() as db:
        assert db.get(NotificationQueue, row_id).status == "skipped"
    assert fake_sender.sent == []


def test_evolution_client_request():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(201, json={"key": {"id": "msg-1"}})

    client = EvolutionWhatsAppClient(
        server_url="https://evolution.test/",
        api_key="evo-key",
        instance_name="luz",
        transport=httpx.MockTransport(handler),
    )
    client.send_text("(11) 98888-7777", "Olá!")

    request = seen["request"]
    assert str(request.url) == "https://evolution.test/message/sendText/luz"
    assert request.headers["apikey"] == "evo-key"
    assert json.loads(request.content) == {"number": "5511988887777", "text": "Olá!"}


def test_evolution_client_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="instance offline")

    client = EvolutionWhatsAppClient(
        server_url="https://evolution.test",
        api_key="evo-key",
        instance_name="luz",
        transport=httpx.MockTransport(handler),
    )
    with pytest.raises(GatewayError) as exc_info:
        client.send_text("11988887777", "Olá!")
    assert exc_info.value.status_code == 500
    with pytest.raises(GatewayError):
        client.send_text("", "Olá!")
