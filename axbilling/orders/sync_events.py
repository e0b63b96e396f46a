# axbilling/orders/sync_events.py
from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from ..errors import Forbidden, ValidationFailed
from ..logger import get_logger
from ..models import Order, OrderSyncEvent, User
from ..sync.sse import SSEManager, sse_manager

log = get_logger("orders.sync_events")

EVENT_TYPES = (
    "stage_change",
    "status_update",
    "payment_update",
    "queue_update",
    "job_progress_update",
)

# Every event type except job progress names the field that changed
_NEEDS_FIELD = {"stage_change", "status_update", "payment_update", "queue_update"}


def _loads(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except Exception:
        return default


def record_order_event(
    db: Session,
    order: Order,
    event_type: str,
    *,
    field_name: str | None = None,
    previous: Any = None,
    new: Any = None,
    triggered_by: Optional[User] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> OrderSyncEvent:
    if event_type not in EVENT_TYPES:
        raise ValidationFailed(f"Unknown sync event type: {event_type}")
    if event_type in _NEEDS_FIELD and not field_name:
        raise ValidationFailed("Field name is required for this event type")

    event = OrderSyncEvent(
        order_pk=order.id,
        event_type=event_type,
        field_name=field_name,
        previous_value_json=json.dumps(previous, default=str),
        new_value_json=json.dumps(new, default=str),
        metadata_json=json.dumps(metadata or {}, default=str),
        triggered_by_id=triggered_by.id if triggered_by is not None else None,
    )
    # Keep the code around for broadcasting after commit
    event.order_code = order.order_id
    db.add(event)
    return event


def serialize_event(event: OrderSyncEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "orderID": getattr(event, "order_code", None) or (event.order.order_id if event.order else None),
        "eventType": event.event_type,
        "fieldName": event.field_name,
        "previousValue": _loads(event.previous_value_json, None),
        "newValue": _loads(event.new_value_json, None),
        "metadata": _loads(event.metadata_json, {}),
        "triggeredBy": event.triggered_by_id,
        "createdAt": event.created_at.isoformat() if event.created_at else None,
    }


def publish_order_events(events: Iterable[OrderSyncEvent], manager: Optional[SSEManager] = None) -> int:
    """Broadcast already-committed events to connected dashboards."""
    manager = manager or sse_manager
    sent = 0
    for event in events:
        data = serialize_event(event)
        sent += manager.broadcast(event.event_type, data, order_id=data["orderID"])
    return sent


def list_order_events(db: Session, order: Order, user: User, limit: int = 100) -> List[OrderSyncEvent]:
    """Staff see every order's history; customers only their own orders."""
    if not user.is_staff and order.customer_id != user.id:
        raise Forbidden("Not allowed to read events for this order")

    return (
        db.query(OrderSyncEvent)
        .filter(OrderSyncEvent.order_pk == order.id)
        .order_by(OrderSyncEvent.created_at.desc(), OrderSyncEvent.id.desc())
        .limit(limit)
        .all()
    )
