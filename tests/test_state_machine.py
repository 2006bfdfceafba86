"""Unit tests for payment, appointment and gallery transition guardrails."""

import pytest

from studioflow.common.errors import InvalidTransitionError
from studioflow.common.state_machine import (
    APPOINTMENT_TRANSITIONS,
    GALLERY_TRANSITIONS,
    normalize_provider_status,
    validate_transition,
)


def test_valid_transition():
    """Sanity check: a pending payment may be approved."""

    validate_transition("pending", "approved")


@pytest.mark.parametrize("terminal", ["approved", "rejected", "cancelled", "expired"])
def test_terminal_payment_never_reopens(terminal):
    """Terminal payment statuses accept no further transitions."""

    for target in ("pending", "approved", "rejected", "cancelled", "expired"):
        with pytest.raises(InvalidTransitionError):
            validate_transition(terminal, target)


def test_expired_payment_cannot_be_approved():
    """An expired charge must never be confirmed afterward."""

    with pytest.raises(ValueError):
        validate_transition("expired", "approved")


def test_appointment_transitions():
    """Appointments confirm from pending and complete only once confirmed."""

    validate_transition("pending", "confirmed", APPOINTMENT_TRANSITIONS)
    validate_transition("confirmed", "cancelled", APPOINTMENT_TRANSITIONS)
    with pytest.raises(InvalidTransitionError):
        validate_transition("pending", "completed", APPOINTMENT_TRANSITIONS)
    with pytest.raises(InvalidTransitionError):
        validate_transition("cancelled", "confirmed", APPOINTMENT_TRANSITIONS)


def test_completed_gallery_is_final():
    """Finalized selections cannot be reopened."""

    validate_transition("awaiting_payment", "completed", GALLERY_TRANSITIONS)
    with pytest.raises(InvalidTransitionError):
        validate_transition("completed", "started", GALLERY_TRANSITIONS)


def test_provider_status_normalization():
    """Intermediate provider statuses keep the payment pending; unknown ones are dropped."""

    assert normalize_provider_status("in_process") == "pending"
    assert normalize_provider_status("APPROVED") == "approved"
    assert normalize_provider_status("charged_back") is None
    assert normalize_provider_status(None) is None
