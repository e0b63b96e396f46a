# axbilling/whatsapp/messages.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..errors import AxBillingError
from ..logger import get_logger
from ..models import Order, WhatsAppMessage
from .gateway import GupshupGateway

log = get_logger("whatsapp.messages")


def log_message(
    db: Session,
    *,
    whatsapp_number: str,
    direction: str,
    content: str,
    status: str,
    message_id: str | None = None,
    user_id: int | None = None,
    order_pk: int | None = None,
    timestamp: datetime | None = None,
    error_message: str | None = None,
) -> WhatsAppMessage:
    msg = WhatsAppMessage(
        user_id=user_id,
        order_pk=order_pk,
        whatsapp_number=whatsapp_number,
        message_id=message_id,
        direction=direction,
        message_type="text",
        content=content,
        status=status,
        timestamp=timestamp or datetime.utcnow(),
        error_message=error_message,
    )
    db.add(msg)
    return msg


def send_and_log(
    db: Session,
    gateway: GupshupGateway,
    to: str,
    text: str,
    *,
    order: Optional[Order] = None,
    user_id: int | None = None,
) -> bool:
    """
    Best-effort outbound text. A gateway failure is logged and stored on the
    message row with status 'failed'; it is never raised to the caller.
    """
    order_pk = order.id if order is not None else None
    if user_id is None and order is not None:
        user_id = order.customer_id

    try:
        message_id = gateway.send_message(to, text)
    except AxBillingError as e:
        log.warning(f"WhatsApp send to {to} failed: {e.message}")
        log_message(
            db,
            whatsapp_number=to,
            direction="outbound",
            content=text,
            status="failed",
            user_id=user_id,
            order_pk=order_pk,
            error_message=e.message,
        )
        return False

    log_message(
        db,
        whatsapp_number=to,
        direction="outbound",
        content=text,
        status="sent",
        message_id=message_id or None,
        user_id=user_id,
        order_pk=order_pk,
    )
    return True


def update_delivery_status(db: Session, message_id: str, status: str) -> int:
    """Apply a Gupshup message-event to the stored outbound rows. Returns rows touched."""
    rows = db.query(WhatsAppMessage).filter(WhatsAppMessage.message_id == message_id).all()
    for row in rows:
        row.status = status
    return len(rows)
