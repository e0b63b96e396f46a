# axbilling/orders/stages.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ..errors import InvalidTransition, ValidationFailed
from ..logger import get_logger
from ..models import Order, OrderSyncEvent, User
from ..whatsapp import templates
from ..whatsapp.gateway import GupshupGateway
from ..whatsapp.messages import send_and_log
from .queries import STAGES, get_order
from .sync_events import publish_order_events, record_order_event

log = get_logger("orders.stages")

# Stages that notify the customer on entry
NOTIFY_STAGES = {"open", "billed", "paid"}


@dataclass
class StageChange:
    order: Order
    previous_stage: str
    notification: Optional[str] = None
    message_sent: bool = False
    events: Optional[List[OrderSyncEvent]] = None

    @property
    def stage(self) -> str:
        return self.order.order_stage


def validate_stage(stage: str) -> str:
    if stage not in STAGES:
        raise ValidationFailed(f"Invalid stage '{stage}'. Expected one of: {', '.join(STAGES)}")
    return stage


def can_transition(current: str, target: str) -> bool:
    """Stages only move forward; skipping ahead is allowed."""
    if current not in STAGES or target not in STAGES:
        return False
    return STAGES.index(target) > STAGES.index(current)


def apply_stage(
    db: Session,
    order: Order,
    stage: str,
    *,
    triggered_by: Optional[User] = None,
    reason: str | None = None,
) -> OrderSyncEvent:
    """Guarded field update plus its sync event. Does not commit."""
    validate_stage(stage)
    previous = order.order_stage
    if not can_transition(previous, stage):
        raise InvalidTransition(previous, stage)

    order.order_stage = stage
    order.updated_at = datetime.utcnow()
    log.info(f"Order {order.order_id}: {previous} -> {stage}")
    return record_order_event(
        db,
        order,
        "stage_change",
        field_name="orderStage",
        previous=previous,
        new=stage,
        triggered_by=triggered_by,
        metadata={"reason": reason} if reason else None,
    )


def transition_order(
    db: Session,
    order_code: str,
    stage: str,
    gateway: GupshupGateway,
    *,
    triggered_by: Optional[User] = None,
    notify: bool = True,
    reason: str | None = None,
) -> StageChange:
    # Reject bad input before loading anything
    validate_stage(stage)
    order = get_order(db, order_code, for_update=True)
    previous = order.order_stage

    event = apply_stage(db, order, stage, triggered_by=triggered_by, reason=reason)
    change = StageChange(order=order, previous_stage=previous, events=[event])

    if notify and stage in NOTIFY_STAGES:
        change.notification = templates.stage_update(stage, order.order_id, order.total_amount)
        if order.whatsapp_number and order.customer_id:
            change.message_sent = send_and_log(
                db, gateway, order.whatsapp_number, change.notification, order=order
            )
        else:
            log.info(f"Order {order.order_id} has no linked customer, skipping {stage} notification")

    db.commit()
    publish_order_events(change.events)
    return change
