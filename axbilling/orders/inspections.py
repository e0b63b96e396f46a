# axbilling/orders/inspections.py
from __future__ import annotations

import json
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..errors import Conflict, NotFound, ValidationFailed
from ..logger import get_logger
from ..models import Delivery, Intake, Order, User
from ..whatsapp import templates
from ..whatsapp.gateway import GupshupGateway
from ..whatsapp.messages import send_and_log
from .queries import find_delivery, find_intake

log = get_logger("orders.inspections")

SEVERITY_WEIGHTS = {"minor": 1, "moderate": 3, "major": 7, "severe": 10}
MAX_SEVERITY_SCORE = 100


# -------------------
# Helpers
# -------------------
def _safe_json_dict(raw: str | None) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        v = json.loads(raw)
        return v if isinstance(v, dict) else {}
    except Exception:
        return {}


def _safe_json_list(raw: str | None) -> List[Any]:
    if not raw:
        return []
    try:
        v = json.loads(raw)
        return v if isinstance(v, list) else []
    except Exception:
        return []


def _damage_key(item: Dict[str, Any]) -> Tuple[str, str]:
    return (
        str(item.get("type") or "").strip().lower(),
        str(item.get("location") or "").strip().lower(),
    )


# -------------------
# Damage comparison
# -------------------
def compare_damage(intake_damage: List[Dict[str, Any]], delivery_damage: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Damage items present at delivery but not at intake.

    Items are matched on (type, location) as a multiset, so a second scratch
    on the same panel counts as new even if one was recorded at drop-off.
    """
    remaining = Counter(_damage_key(d) for d in intake_damage)
    new_items: List[Dict[str, Any]] = []
    for item in delivery_damage:
        key = _damage_key(item)
        if remaining[key] > 0:
            remaining[key] -= 1
        else:
            new_items.append(item)
    return new_items


def damage_severity_score(items: List[Dict[str, Any]]) -> int:
    total = sum(SEVERITY_WEIGHTS.get(str(i.get("severity") or "").lower(), 1) for i in items)
    return min(total, MAX_SEVERITY_SCORE)


def risk_level(new_items: List[Dict[str, Any]]) -> str:
    if not new_items:
        return "low"
    if any(str(i.get("severity") or "").lower() in {"major", "severe"} for i in new_items):
        return "high"
    if len(new_items) > 2:
        return "medium"
    return "low"


def build_damage_report(intake_damage: List[Dict[str, Any]], new_items: List[Dict[str, Any]]) -> Dict[str, Any]:
    level = risk_level(new_items)
    recommendations: List[str] = []
    if new_items:
        recommendations += [
            "Contact customer immediately to discuss new damage",
            "Document all new damage with detailed photos",
            "Review service procedures to prevent future damage",
        ]
    if level == "high":
        recommendations += [
            "Consider offering compensation or repair services",
            "Escalate to management for review",
        ]

    return {
        "summary": (
            f"Vehicle inspection completed. {len(intake_damage)} pre-existing damage items documented. "
            f"{len(new_items)} new damage items detected during service."
        ),
        "riskLevel": level,
        "severityScore": damage_severity_score(new_items),
        "recommendations": recommendations,
        "requiresCustomerNotification": bool(new_items),
    }


# -------------------
# Serialization
# -------------------
def serialize_intake(intake: Intake) -> Dict[str, Any]:
    return {
        "id": intake.id,
        "vehicleImages": _safe_json_list(intake.vehicle_images_json),
        "existingDamage": _safe_json_list(intake.damage_json),
        "overallCondition": intake.overall_condition or "",
        "notes": intake.notes or "",
        "staffMember": intake.staff_member_id,
        "completedAt": intake.completed_at.isoformat() if intake.completed_at else None,
    }


def serialize_delivery(delivery: Delivery) -> Dict[str, Any]:
    return {
        "id": delivery.id,
        "intakeId": delivery.intake_id,
        "deliveryImages": _safe_json_list(delivery.delivery_images_json),
        "vehicleInspection": _safe_json_dict(delivery.inspection_json),
        "damageComparison": _safe_json_dict(delivery.comparison_json),
        "newDamageDetected": bool(delivery.new_damage_detected),
        "customerNotified": bool(delivery.customer_notified),
        "staffMember": delivery.staff_member_id,
        "completedAt": delivery.completed_at.isoformat() if delivery.completed_at else None,
    }


# -------------------
# Intake
# -------------------
def get_intake(db: Session, order: Order) -> Intake:
    intake = find_intake(db, order)
    if not intake:
        raise NotFound("Intake not found for this order")
    return intake


def _apply_intake(intake: Intake, data: Dict[str, Any]) -> None:
    if data.get("vehicle_images") is not None:
        intake.vehicle_images_json = json.dumps(data["vehicle_images"])
    if data.get("existing_damage") is not None:
        intake.damage_json = json.dumps(data["existing_damage"])
    if data.get("overall_condition") is not None:
        intake.overall_condition = data["overall_condition"]
    if data.get("notes") is not None:
        intake.notes = data["notes"]


def create_intake(db: Session, order: Order, data: Dict[str, Any], staff: Optional[User] = None) -> Intake:
    if find_intake(db, order) is not None:
        raise Conflict("Intake already exists for this order")

    intake = Intake(order_pk=order.id, staff_member_id=staff.id if staff else None, completed_at=datetime.utcnow())
    _apply_intake(intake, data)
    db.add(intake)

    order.vehicle_captured_at = order.vehicle_captured_at or datetime.utcnow()
    order.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(intake)
    log.info(f"Intake completed for order {order.order_id}")
    return intake


def update_intake(db: Session, order: Order, data: Dict[str, Any]) -> Intake:
    intake = get_intake(db, order)
    _apply_intake(intake, data)
    intake.completed_at = datetime.utcnow()
    db.commit()
    db.refresh(intake)
    return intake


# -------------------
# Delivery
# -------------------
def get_delivery(db: Session, order: Order) -> Delivery:
    delivery = find_delivery(db, order)
    if not delivery:
        raise NotFound("Delivery not found for this order")
    return delivery


def _inspect(db: Session, delivery: Delivery, intake: Intake, data: Dict[str, Any]) -> Dict[str, Any]:
    if data.get("delivery_images") is not None:
        delivery.delivery_images_json = json.dumps(data["delivery_images"])
    if data.get("vehicle_inspection") is not None:
        delivery.inspection_json = json.dumps(data["vehicle_inspection"])

    delivery_damage = data.get("damage")
    if delivery_damage is None:
        # Keep the damage recorded on the previous inspection
        delivery_damage = _safe_json_dict(delivery.comparison_json).get("deliveryDamage", [])

    intake_damage = _safe_json_list(intake.damage_json)
    new_items = compare_damage(intake_damage, delivery_damage)
    report = build_damage_report(intake_damage, new_items)

    delivery.comparison_json = json.dumps(
        {
            "newDamageDetected": bool(new_items),
            "newDamage": new_items,
            "deliveryDamage": delivery_damage,
            "report": report,
        }
    )
    delivery.new_damage_detected = bool(new_items)
    delivery.completed_at = datetime.utcnow()
    return report


def _notify_damage(
    db: Session,
    order: Order,
    delivery: Delivery,
    report: Dict[str, Any],
    gateway: Optional[GupshupGateway],
) -> None:
    if not delivery.new_damage_detected or delivery.customer_notified:
        return
    if gateway is None or not order.whatsapp_number:
        log.info(f"New damage on {order.order_id} but no WhatsApp contact to notify")
        return

    new_items = _safe_json_dict(delivery.comparison_json).get("newDamage", [])
    delivery.customer_notified = send_and_log(
        db,
        gateway,
        order.whatsapp_number,
        templates.damage_notice(order.order_id, new_items, report["riskLevel"]),
        order=order,
    )


def create_delivery(
    db: Session,
    order: Order,
    data: Dict[str, Any],
    gateway: Optional[GupshupGateway] = None,
    staff: Optional[User] = None,
) -> Tuple[Delivery, Dict[str, Any]]:
    if find_delivery(db, order) is not None:
        raise Conflict("Delivery already exists for this order")

    intake = find_intake(db, order)
    if intake is None:
        raise ValidationFailed("Intake must be completed before delivery")

    delivery = Delivery(order_pk=order.id, intake_id=intake.id, staff_member_id=staff.id if staff else None)
    report = _inspect(db, delivery, intake, data)
    db.add(delivery)

    order.overall_status = "ready"
    order.updated_at = datetime.utcnow()

    if delivery.new_damage_detected:
        log.warning(f"New damage detected for order {order.order_id} ({report['riskLevel']} risk)")
    _notify_damage(db, order, delivery, report, gateway)

    db.commit()
    db.refresh(delivery)
    return delivery, report


def update_delivery(
    db: Session,
    order: Order,
    data: Dict[str, Any],
    gateway: Optional[GupshupGateway] = None,
) -> Tuple[Delivery, Dict[str, Any]]:
    delivery = get_delivery(db, order)
    intake = db.get(Intake, delivery.intake_id)
    if intake is None:
        raise ValidationFailed("Intake must be completed before delivery")

    report = _inspect(db, delivery, intake, data)
    _notify_damage(db, order, delivery, report, gateway)

    db.commit()
    db.refresh(delivery)
    return delivery, report
