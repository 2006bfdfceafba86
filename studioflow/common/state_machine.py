"""Status transition tables for payments, appointments and galleries.

Payment statuses only move forward out of `pending`; every other payment
status is terminal. Appointments follow pending -> confirmed -> completed with
cancellation reachable from the two non-terminal states.
"""

from studioflow.common.errors import InvalidTransitionError

PAYMENT_TERMINAL = frozenset({"approved", "rejected", "cancelled", "expired"})

PAYMENT_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"approved", "rejected", "cancelled", "expired"},
    "approved": set(),
    "rejected": set(),
    "cancelled": set(),
    "expired": set(),
}

APPOINTMENT_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}

# Leaving `awaiting_payment` for `pending`/`started` happens when the client
# changes the selection while an extra-photos charge is outstanding.
GALLERY_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"started", "awaiting_payment", "completed"},
    "started": {"pending", "awaiting_payment", "completed"},
    "awaiting_payment": {"pending", "started", "awaiting_payment", "completed"},
    "completed": set(),
}

# MercadoPago reports intermediate statuses that do not move a payment.
PROVIDER_STATUS_MAP: dict[str, str] = {
    "pending": "pending",
    "in_process": "pending",
    "authorized": "pending",
    "in_mediation": "pending",
    "approved": "approved",
    "rejected": "rejected",
    "cancelled": "cancelled",
    "expired": "expired",
}


def validate_transition(
    current: str, new: str, transitions: dict[str, set[str]] = PAYMENT_TRANSITIONS
) -> None:
    """Raise when a transition is not allowed by the given table."""

    if new not in transitions.get(current, set()):
        raise InvalidTransitionError(f"Invalid transition: {current} -> {new}")


def normalize_provider_status(raw_status: str | None) -> str | None:
    """Map a provider status onto the payment state machine, or None if unknown."""

    if raw_status is None:
        return None
    return PROVIDER_STATUS_MAP.get(raw_status.lower())
