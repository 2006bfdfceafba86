"""Webhook envelope shapes, normalized to one charge id before any business logic.

MercadoPago has delivered all of these over time:

    {"type": "payment", "data": {"id": "123"}}
    {"action": "payment.updated", "data": {"id": "123"}}
    {"id": "123", "topic": "payment"}
    "123"

plus the IPN form with the same keys as query parameters and an empty body.
"""

import re
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, RootModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from studioflow.common.errors import InvalidWebhookError

CHARGE_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | int


class TypedEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    shape: Literal["typed"] = "typed"
    type: str
    data: EventData

    @property
    def topic(self) -> str:
        return self.type


class ActionEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    shape: Literal["action"] = "action"
    action: str
    data: EventData

    @property
    def topic(self) -> str:
        return self.action.split(".", 1)[0]


class TopicEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    shape: Literal["topic"] = "topic"
    id: str | int
    topic: str


class BareId(RootModel[Union[int, str]]):
    @property
    def topic(self) -> str:
        return "payment"


WebhookEnvelope = Union[TypedEvent, ActionEvent, TopicEvent, BareId]
_envelope = TypeAdapter(WebhookEnvelope)


class ChargeNotification(BaseModel):
    """The canonical result of parsing: which charge to go and fetch."""

    charge_id: str
    shape: str


def _charge_id(envelope: Any) -> str:
    if isinstance(envelope, BareId):
        raw = envelope.root
    elif isinstance(envelope, TopicEvent):
        raw = envelope.id
    else:
        raw = envelope.data.id
    value = str(raw).strip()
    if not CHARGE_ID.match(value):
        raise InvalidWebhookError(f"unusable charge id {value!r}")
    return value


def _from_query(query: dict[str, str]) -> Any:
    if "data.id" in query:
        return {"type": query.get("type", "payment"), "data": {"id": query["data.id"]}}
    if "id" in query:
        return {"id": query["id"], "topic": query.get("topic", "payment")}
    return None


def parse_envelope(body: Any, query: dict[str, str] | None = None) -> ChargeNotification | None:
    """Extract the charge id; None for well-formed events about other topics.

    Raises InvalidWebhookError when no charge id can be extracted.
    """

    candidate = body
    if candidate in (None, "", {}) and query:
        candidate = _from_query(query)
    if candidate is None:
        raise InvalidWebhookError("empty webhook body")
    try:
        envelope = _envelope.validate_python(candidate)
    except PydanticValidationError as exc:
        raise InvalidWebhookError(f"unrecognized webhook envelope: {exc.error_count()} errors") from exc
    if envelope.topic != "payment":
        return None
    shape = "bare" if isinstance(envelope, BareId) else envelope.shape
    return ChargeNotification(charge_id=_charge_id(envelope), shape=shape)
