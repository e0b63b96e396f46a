# axbilling/orders/queries.py
from __future__ import annotations

from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..errors import NotFound
from ..models import Delivery, Intake, Order

STAGES = ("empty", "initiated", "open", "billed", "paid")


def find_order(db: Session, order_code: str, *, for_update: bool = False) -> Optional[Order]:
    q = db.query(Order).filter(Order.order_id == (order_code or "").strip().upper())
    if for_update:
        q = q.with_for_update()
    return q.first()


def get_order(db: Session, order_code: str, *, for_update: bool = False) -> Order:
    order = find_order(db, order_code, for_update=for_update)
    if not order:
        raise NotFound("Order not found")
    return order


def orders_by_stage(db: Session, stage: str | None = None, limit: int = 50) -> List[Order]:
    q = db.query(Order)
    if stage:
        q = q.filter(Order.order_stage == stage)
    return q.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).all()


def find_intake(db: Session, order: Order) -> Optional[Intake]:
    return db.query(Intake).filter(Intake.order_pk == order.id).first()


def find_delivery(db: Session, order: Order) -> Optional[Delivery]:
    return db.query(Delivery).filter(Delivery.order_pk == order.id).first()


def stage_counts(db: Session) -> Dict[str, int]:
    rows = db.query(Order.order_stage, func.count(Order.id)).group_by(Order.order_stage).all()
    counts = {s: 0 for s in STAGES}
    for stage, n in rows:
        counts[stage] = n
    return counts
