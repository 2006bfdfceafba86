"""Webhook envelope normalization."""

import pytest

from studioflow.common.errors import InvalidWebhookError
from studioflow.services.reconciler.envelopes import parse_envelope


@pytest.mark.parametrize(
    "body, shape",
    [
        ({"type": "payment", "data": {"id": "123"}}, "typed"),
        ({"action": "payment.updated", "data": {"id": 123}}, "action"),
        ({"id": "123", "topic": "payment"}, "topic"),
        ("123", "bare"),
        (123, "bare"),
    ],
)
def test_known_shapes_yield_the_same_charge_id(body, shape):
    notification = parse_envelope(body)
    assert notification.charge_id == "123"
    assert notification.shape == shape


def test_query_parameters_stand_in_for_an_empty_body():
    assert parse_envelope(None, {"data.id": "555", "type": "payment"}).charge_id == "555"
    assert parse_envelope({}, {"id": "556", "topic": "payment"}).charge_id == "556"


def test_other_topics_are_ignored():
    assert parse_envelope({"type": "merchant_order", "data": {"id": "1"}}) is None
    assert parse_envelope({"id": "1", "topic": "merchant_order"}) is None


@pytest.mark.parametrize(
    "body",
    [
        None,
        "",
        {},
        {"data": {}},
        {"type": "payment"},
        [1, 2],
        "not a charge id!",
        {"type": "payment", "data": {"id": "x" * 65}},
    ],
)
def test_unusable_bodies_are_rejected(body):
    with pytest.raises(InvalidWebhookError):
        parse_envelope(body)
