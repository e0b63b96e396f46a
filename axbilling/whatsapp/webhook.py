# axbilling/whatsapp/webhook.py
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..errors import ValidationFailed

KNOWN_TYPES = {"message", "message-event"}


# -------------------
# Payloads
# -------------------
class InboundMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    mobile: str
    text: str = ""
    name: Optional[str] = None
    timestamp: Optional[Union[int, str]] = None
    type: str = "text"

    def sent_at(self) -> Optional[datetime]:
        """Gupshup sends epoch milliseconds, sometimes as a string."""
        if self.timestamp in (None, ""):
            return None
        try:
            ms = int(self.timestamp)
        except (TypeError, ValueError):
            return None
        try:
            return datetime.fromtimestamp(ms / 1000, timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None


class DeliveryStatus(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = None
    gs_id: Optional[str] = Field(default=None, alias="gsId")
    message_id: Optional[str] = Field(default=None, alias="messageId")
    type: Optional[str] = None
    status: Optional[str] = None

    @property
    def provider_message_id(self) -> Optional[str]:
        return self.gs_id or self.message_id or self.id

    @property
    def delivery_status(self) -> Optional[str]:
        return self.type or self.status


class MessageWebhook(BaseModel):
    type: Literal["message"]
    payload: InboundMessage


class MessageEventWebhook(BaseModel):
    type: Literal["message-event"]
    payload: DeliveryStatus


Webhook = Annotated[Union[MessageWebhook, MessageEventWebhook], Field(discriminator="type")]

_adapter = TypeAdapter(Webhook)


# -------------------
# Parsing
# -------------------
def parse_webhook(raw_body: bytes) -> Optional[Union[MessageWebhook, MessageEventWebhook]]:
    """
    Parse a verified webhook body.

    Returns None for event types this service does not handle; malformed
    bodies raise ValidationFailed.
    """
    try:
        data: Dict[str, Any] = json.loads(raw_body or b"{}")
    except ValueError as e:
        raise ValidationFailed(f"Webhook body is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ValidationFailed("Webhook body must be a JSON object")
    kind = data.get("type")
    if kind is not None and not isinstance(kind, str):
        raise ValidationFailed("Webhook type must be a string")
    if kind not in KNOWN_TYPES:
        return None

    try:
        return _adapter.validate_python(data)
    except ValidationError as e:
        raise ValidationFailed(f"Invalid webhook payload: {e.errors()[0].get('msg')}") from e


def webhook_type(raw_body: bytes) -> Optional[str]:
    try:
        data = json.loads(raw_body or b"{}")
    except ValueError:
        return None
    return data.get("type") if isinstance(data, dict) else None
