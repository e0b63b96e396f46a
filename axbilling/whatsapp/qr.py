# axbilling/whatsapp/qr.py
from __future__ import annotations

import io
from datetime import datetime
from typing import Any, Dict

import qrcode
import qrcode.image.svg
from sqlalchemy.orm import Session

from ..errors import Conflict
from ..logger import get_logger
from ..models import Order
from .gateway import GupshupGateway

log = get_logger("whatsapp.qr")


def render_qr_svg(data: str) -> bytes:
    img = qrcode.make(data, image_factory=qrcode.image.svg.SvgPathImage)
    buf = io.BytesIO()
    img.save(buf)
    return buf.getvalue()


def qr_status(order: Order, gateway: GupshupGateway) -> Dict[str, Any]:
    return {
        "orderID": order.order_id,
        "qrCodeGenerated": bool(order.qr_code_generated),
        "qrCodeScannedAt": order.qr_code_scanned_at.isoformat() if order.qr_code_scanned_at else None,
        "whatsappLinked": bool(order.whatsapp_linked),
        "whatsappLink": gateway.whatsapp_link(order.order_id),
        "orderStage": order.order_stage,
    }


def generate_order_qr(db: Session, order: Order, gateway: GupshupGateway) -> Dict[str, Any]:
    """Mark the order's QR as issued and return the wa.me deep link it encodes."""
    if order.order_stage != "empty" or order.whatsapp_linked:
        raise Conflict(f"Order {order.order_id} is already linked, no new QR code needed")

    order.qr_code_generated = True
    order.updated_at = datetime.utcnow()
    db.commit()
    log.info(f"QR code generated for order {order.order_id}")
    return qr_status(order, gateway)
