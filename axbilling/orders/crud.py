# axbilling/orders/crud.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..errors import Conflict, NotFound, ValidationFailed
from ..logger import get_logger
from ..models import Order, OrderLine, OrderSyncEvent, Service, User
from .codes import generate_order_code
from .queries import find_delivery, find_intake, find_order
from .sync_events import publish_order_events, record_order_event

log = get_logger("orders.crud")

PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded", "cash")
OVERALL_STATUSES = ("pending", "in_progress", "completed", "ready", "picked_up", "cancelled")
QUEUES = ("regular", "vip", "remnant")

# Attempts at drawing a fresh code before giving up
MAX_CODE_ATTEMPTS = 20


def _unique_code(db: Session) -> str:
    for _ in range(MAX_CODE_ATTEMPTS):
        code = generate_order_code()
        if find_order(db, code) is None:
            return code
        log.info(f"Order code collision on {code}, retrying")
    raise Conflict("Could not allocate a unique order code")


def create_empty_order(db: Session, created_by: Optional[User] = None, notes: str = "") -> Order:
    now = datetime.utcnow()
    order = Order(
        order_id=_unique_code(db),
        order_stage="empty",
        whatsapp_linked=False,
        qr_code_generated=False,
        total_amount=0.0,
        discount_amount=0.0,
        payment_status="pending",
        overall_status="pending",
        queue="regular",
        staff_notes=notes or "",
        created_by_id=created_by.id if created_by is not None else None,
        estimated_completion_time=now + timedelta(hours=2),
        created_at=now,
        updated_at=now,
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    log.info(f"Created empty order {order.order_id}")
    return order


def recompute_total(order: Order) -> float:
    subtotal = sum((line.service_price or 0) + (line.options_price or 0) for line in order.lines)
    order.total_amount = max(round(subtotal - (order.discount_amount or 0), 2), 0.0)
    return order.total_amount


# field on Order -> (sync event type, event field name, allowed values)
_TRACKED_FIELDS: Dict[str, Tuple[str, str, Tuple[str, ...]]] = {
    "payment_status": ("payment_update", "paymentStatus", PAYMENT_STATUSES),
    "overall_status": ("status_update", "overallStatus", OVERALL_STATUSES),
    "queue": ("queue_update", "queue", QUEUES),
}


def update_order_fields(
    db: Session,
    order: Order,
    changes: Dict[str, Any],
    *,
    triggered_by: Optional[User] = None,
) -> List[OrderSyncEvent]:
    """
    Apply a partial update. Status-like fields are validated and each real
    change appends its sync event; events are broadcast after commit.
    """
    events: List[OrderSyncEvent] = []

    for field, (event_type, event_field, allowed) in _TRACKED_FIELDS.items():
        value = changes.get(field)
        if value is None:
            continue
        if value not in allowed:
            raise ValidationFailed(f"Invalid {event_field} '{value}'")
        previous = getattr(order, field)
        if previous == value:
            continue
        setattr(order, field, value)
        events.append(
            record_order_event(
                db, order, event_type,
                field_name=event_field, previous=previous, new=value, triggered_by=triggered_by,
            )
        )

    for field in ("customer_notes", "staff_notes"):
        if changes.get(field) is not None:
            setattr(order, field, changes[field])

    if changes.get("discount_amount") is not None:
        discount = float(changes["discount_amount"])
        if discount < 0:
            raise ValidationFailed("Discount cannot be negative")
        order.discount_amount = discount
        recompute_total(order)

    order.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(order)
    publish_order_events(events)
    return events


def set_order_services(
    db: Session,
    order: Order,
    items: List[Dict[str, Any]],
    *,
    triggered_by: Optional[User] = None,
) -> Order:
    """Replace the order's service lines. A missing price falls back to the service base price."""
    lines: List[OrderLine] = []
    for item in items:
        service = db.get(Service, item.get("service_id"))
        if service is None:
            raise NotFound(f"Service {item.get('service_id')} not found")
        price = item.get("service_price")
        lines.append(
            OrderLine(
                service_id=service.id,
                service_price=float(service.base_price if price is None else price),
                options_price=float(item.get("options_price") or 0),
            )
        )

    previous_total = order.total_amount
    order.lines = lines
    recompute_total(order)
    order.updated_at = datetime.utcnow()

    event = record_order_event(
        db, order, "job_progress_update",
        previous={"totalAmount": previous_total},
        new={"totalAmount": order.total_amount, "services": len(lines)},
        triggered_by=triggered_by,
        metadata={"action": "services_updated"},
    )
    db.commit()
    db.refresh(order)
    publish_order_events([event])
    return order


def delete_order(db: Session, order: Order) -> None:
    if order.order_stage != "empty":
        raise Conflict(f"Only empty orders can be deleted (order is '{order.order_stage}')")
    db.query(OrderSyncEvent).filter(OrderSyncEvent.order_pk == order.id).delete()
    db.delete(order)
    db.commit()
    log.info(f"Deleted order {order.order_id}")


def order_progress(db: Session, order: Order) -> Dict[str, Any]:
    has_intake = find_intake(db, order) is not None
    has_delivery = find_delivery(db, order) is not None

    percentage, stage = 0, "created"
    if order.qr_code_generated or order.whatsapp_linked:
        percentage, stage = 20, "initiated"
    if has_intake:
        percentage, stage = 50, "intake_completed"
    if order.payment_status == "paid":
        percentage, stage = 80, "paid"
    if has_delivery:
        percentage, stage = 100, "completed"

    return {
        "percentage": percentage,
        "stage": stage,
        "hasIntake": has_intake,
        "hasDelivery": has_delivery,
    }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_order(order: Order, *, detail: bool = False) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": order.id,
        "orderID": order.order_id,
        "orderStage": order.order_stage,
        "whatsappLinked": bool(order.whatsapp_linked),
        "whatsappNumber": order.whatsapp_number,
        "qrCodeGenerated": bool(order.qr_code_generated),
        "qrCodeScannedAt": _iso(order.qr_code_scanned_at),
        "totalAmount": order.total_amount or 0.0,
        "discountAmount": order.discount_amount or 0.0,
        "paymentStatus": order.payment_status,
        "overallStatus": order.overall_status,
        "queue": order.queue,
        "customerId": order.customer_id,
        "vehicleId": order.vehicle_id,
        "createdAt": _iso(order.created_at),
        "updatedAt": _iso(order.updated_at),
    }
    if not detail:
        return data

    customer = order.customer
    vehicle = order.vehicle
    data.update(
        {
            "customerNotes": order.customer_notes or "",
            "staffNotes": order.staff_notes or "",
            "vehicleCapturedAt": _iso(order.vehicle_captured_at),
            "aiProcessedAt": _iso(order.ai_processed_at),
            "estimatedCompletionTime": _iso(order.estimated_completion_time),
            "customer": None if customer is None else {
                "id": customer.id,
                "name": f"{customer.first_name} {customer.last_name}".strip(),
                "email": customer.email,
                "whatsappNumber": customer.whatsapp_number,
            },
            "vehicle": None if vehicle is None else {
                "id": vehicle.id,
                "licensePlate": vehicle.license_plate,
                "vehicleType": vehicle.vehicle_type,
                "make": vehicle.make,
                "model": vehicle.model,
                "color": vehicle.color,
            },
            "services": [
                {
                    "serviceId": line.service_id,
                    "name": line.service.name if line.service else None,
                    "servicePrice": line.service_price,
                    "optionsPrice": line.options_price,
                }
                for line in order.lines
            ],
        }
    )
    return data
