# axbilling/orders/vehicles.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from ..errors import AnalysisFailed, NotFound, ValidationFailed
from ..logger import get_logger
from ..models import Order, User, Vehicle, VehicleImage
from ..vision.analysis import VehicleAnalysis, map_vehicle_type
from ..vision.providers import ProviderResult, analyze_vehicle_image
from ..whatsapp import templates
from ..whatsapp.gateway import GupshupGateway
from ..whatsapp.messages import send_and_log
from .queries import get_order
from .stages import apply_stage, can_transition
from .sync_events import publish_order_events

log = get_logger("orders.vehicles")


@dataclass
class CaptureResult:
    order: Order
    vehicle: Vehicle
    image: Optional[VehicleImage]
    provider: str
    message_sent: bool = False


def _normalize_plate(plate: str) -> str:
    return " ".join((plate or "").upper().split())


def upsert_vehicle(
    db: Session,
    license_plate: str,
    vehicle_type: str,
    owner: User,
    analysis: Optional[VehicleAnalysis] = None,
) -> Vehicle:
    plate = _normalize_plate(license_plate)
    vehicle = db.query(Vehicle).filter(Vehicle.license_plate == plate).first()
    if vehicle is None:
        vehicle = Vehicle(license_plate=plate)
        db.add(vehicle)
        log.info(f"Registering new vehicle {plate}")

    vehicle.vehicle_type = map_vehicle_type(vehicle_type)
    vehicle.owner_id = owner.id
    if analysis is not None:
        vehicle.make = analysis.make or vehicle.make
        vehicle.model = analysis.model or vehicle.model
        vehicle.year = analysis.year or vehicle.year
        vehicle.color = analysis.color or vehicle.color
        vehicle.ai_classification_confidence = analysis.confidence_score
    vehicle.updated_at = datetime.utcnow()
    db.flush()
    return vehicle


def _store_image(db: Session, vehicle: Vehicle, image_url: str, image_type: str,
                 analysis: Optional[VehicleAnalysis]) -> VehicleImage:
    image = VehicleImage(vehicle_id=vehicle.id, image_url=image_url, image_type=image_type or "general")
    if analysis is not None:
        _apply_analysis(image, analysis)
    db.add(image)
    return image


def _apply_analysis(image: VehicleImage, analysis: VehicleAnalysis) -> None:
    image.ai_processed = True
    image.damage_detected = bool(analysis.damages)
    image.damage_description = "; ".join(d.description or d.type for d in analysis.damages)
    image.analysis_json = analysis.model_dump_json()


def capture_vehicle(
    db: Session,
    order_code: str,
    gateway: GupshupGateway,
    *,
    image_url: str | None = None,
    image_type: str = "general",
    license_plate: str | None = None,
    vehicle_type: str | None = None,
    use_manual_data: bool = False,
    providers: Optional[Sequence[Any]] = None,
    triggered_by: Optional[User] = None,
) -> CaptureResult:
    """
    Identify the vehicle for an order (from staff input or an image) and move
    the order on to 'open'. The customer gets the vehicle-captured message in
    place of the usual stage notice.
    """
    order = get_order(db, order_code, for_update=True)
    customer = db.get(User, order.customer_id) if order.customer_id else None
    if customer is None:
        raise ValidationFailed("Order has no associated customer")

    analysis: Optional[VehicleAnalysis] = None
    provider = "manual"
    if use_manual_data:
        if not (license_plate and vehicle_type):
            raise ValidationFailed("License plate and vehicle type are required for manual capture")
    elif image_url:
        result: ProviderResult = analyze_vehicle_image(image_url, providers)
        if not result.ok:
            raise AnalysisFailed(result.error or "Vehicle analysis failed", attempts=result.attempts)
        analysis = result.analysis
        provider = result.provider
        license_plate = license_plate or analysis.license_plate
        vehicle_type = vehicle_type or analysis.vehicle_type
        if not license_plate:
            raise AnalysisFailed("No license plate could be read, manual input required", attempts=result.attempts)
    else:
        raise ValidationFailed("Either an image URL or manual data is required")

    vehicle = upsert_vehicle(db, license_plate, vehicle_type or "sedan", customer, analysis)
    image = _store_image(db, vehicle, image_url, image_type, analysis) if image_url else None

    order.vehicle_id = vehicle.id
    order.vehicle_captured_at = datetime.utcnow()
    if analysis is not None:
        order.ai_processed_at = datetime.utcnow()

    events = []
    if can_transition(order.order_stage, "open"):
        events.append(apply_stage(db, order, "open", triggered_by=triggered_by, reason="vehicle_captured"))

    sent = False
    if order.whatsapp_number:
        sent = send_and_log(
            db,
            gateway,
            order.whatsapp_number,
            templates.vehicle_captured(order.order_id, vehicle.vehicle_type, vehicle.license_plate),
            order=order,
        )

    db.commit()
    publish_order_events(events)
    log.info(f"Vehicle {vehicle.license_plate} captured for order {order.order_id} via {provider}")
    return CaptureResult(order=order, vehicle=vehicle, image=image, provider=provider, message_sent=sent)


def reanalyze_vehicle(
    db: Session,
    vehicle_id: int,
    image_ids: Optional[List[int]] = None,
    providers: Optional[Sequence[Any]] = None,
) -> Dict[str, Any]:
    """Manual retry of image analysis. Without ids, every image not yet processed is retried."""
    vehicle = db.get(Vehicle, vehicle_id)
    if vehicle is None:
        raise NotFound("Vehicle not found")

    q = db.query(VehicleImage).filter(VehicleImage.vehicle_id == vehicle.id)
    if image_ids:
        q = q.filter(VehicleImage.id.in_(image_ids))
    else:
        q = q.filter(VehicleImage.ai_processed.is_(False))
    images = q.order_by(VehicleImage.id).all()

    results: List[Dict[str, Any]] = []
    for image in images:
        outcome = analyze_vehicle_image(image.image_url, providers)
        if outcome.ok:
            _apply_analysis(image, outcome.analysis)
            results.append({
                "imageId": image.id,
                "imageType": image.image_type,
                "success": True,
                "provider": outcome.provider,
                "condition": outcome.analysis.overall_condition,
                "damagesFound": len(outcome.analysis.damages),
            })
        else:
            image.damage_detected = False
            image.damage_description = f"Analysis failed: {outcome.error}"
            results.append({"imageId": image.id, "imageType": image.image_type, "success": False,
                            "error": outcome.error})

    db.commit()
    ok = sum(1 for r in results if r["success"])
    return {
        "reanalyzedImages": len(images),
        "successCount": ok,
        "failureCount": len(images) - ok,
        "results": results,
    }

