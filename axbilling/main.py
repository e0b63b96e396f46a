# axbilling/main.py
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from .auth import create_token, hash_password, require_admin, require_staff, require_user, verify_password
from .config import settings
from .db import Base, engine, get_db
from .errors import AnalysisFailed, AxBillingError, Forbidden, SignatureInvalid
from .logger import get_logger
from .models import Order, Service, User
from .orders.crud import (
    create_empty_order,
    delete_order,
    order_progress,
    serialize_order,
    set_order_services,
    update_order_fields,
)
from .orders.inspections import (
    create_delivery,
    create_intake,
    get_delivery,
    get_intake,
    serialize_delivery,
    serialize_intake,
    update_delivery,
    update_intake,
)
from .orders.queries import get_order, orders_by_stage, stage_counts
from .orders.stages import transition_order, validate_stage
from .orders.sync_events import list_order_events, serialize_event
from .orders.vehicles import capture_vehicle, reanalyze_vehicle
from .sync.sse import sse_manager
from .vision.analysis import estimate_service_costs, generate_service_recommendations
from .vision.providers import analyze_vehicle_image, default_providers
from .whatsapp import templates
from .whatsapp.gateway import GupshupGateway
from .whatsapp.linking import OrderLinkingService
from .whatsapp.messages import update_delivery_status
from .whatsapp.qr import generate_order_qr, qr_status, render_qr_svg
from .whatsapp.webhook import MessageWebhook, parse_webhook, webhook_type

log = get_logger("api")


async def _sweep_stale_clients() -> None:
    while True:
        await asyncio.sleep(settings.sse_cleanup_seconds)
        removed = sse_manager.cleanup_stale(settings.sse_stale_seconds)
        if removed:
            log.info(f"Swept {removed} stale SSE clients")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    task = asyncio.create_task(_sweep_stale_clients())
    try:
        yield
    finally:
        task.cancel()


app = FastAPI(title="AX Billing API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Base.metadata.create_all(bind=engine)


@app.exception_handler(AxBillingError)
async def handle_app_error(_request: Request, exc: AxBillingError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})


# -------------------
# Dependencies
# -------------------
def get_gateway() -> GupshupGateway:
    return GupshupGateway.from_settings()


def get_vision_providers() -> List[Any]:
    return default_providers()


# -------------------
# Schemas
# -------------------
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LoginIn(BaseModel):
    email: EmailStr
    password: str


class SignupIn(CamelModel):
    email: EmailStr
    password: str
    first_name: str = ""
    last_name: str = ""
    role: str = "staff"
    whatsapp_number: Optional[str] = None


class ServiceIn(CamelModel):
    name: str
    category: str = ""
    base_price: float = Field(default=0.0, ge=0)


class CreateOrderIn(CamelModel):
    notes: str = ""


class OrderPatchIn(CamelModel):
    payment_status: Optional[str] = None
    overall_status: Optional[str] = None
    queue: Optional[str] = None
    discount_amount: Optional[float] = None
    customer_notes: Optional[str] = None
    staff_notes: Optional[str] = None


class OrderServiceIn(CamelModel):
    service_id: int
    service_price: Optional[float] = Field(default=None, ge=0)
    options_price: float = Field(default=0.0, ge=0)


class OrderServicesIn(CamelModel):
    services: List[OrderServiceIn]


class StageIn(CamelModel):
    stage: str
    notify: bool = True


class IntakeIn(CamelModel):
    vehicle_images: Optional[List[Dict[str, Any]]] = None
    existing_damage: Optional[List[Dict[str, Any]]] = None
    overall_condition: Optional[str] = None
    notes: Optional[str] = None


class DeliveryIn(CamelModel):
    delivery_images: Optional[List[Dict[str, Any]]] = None
    vehicle_inspection: Optional[Dict[str, Any]] = None
    damage: Optional[List[Dict[str, Any]]] = None


class CaptureIn(CamelModel):
    order_id: str
    image_url: Optional[str] = None
    image_type: str = "general"
    license_plate: Optional[str] = None
    vehicle_type: Optional[str] = None
    use_manual_data: bool = False


class AnalyzeIn(CamelModel):
    image_url: str
    customer_tier: str = "standard"
    include_recommendations: bool = False
    include_cost_estimate: bool = False


class ReanalyzeIn(CamelModel):
    vehicle_id: int
    image_ids: Optional[List[int]] = None


class QRCodeIn(CamelModel):
    order_id: str


# -------------------
# Helpers
# -------------------
def _ensure_can_view(order: Order, user: User) -> None:
    if not user.is_staff and order.customer_id != user.id:
        raise Forbidden("Not allowed to view this order")


def _csv(raw: str | None) -> List[str]:
    return [p.strip() for p in (raw or "").split(",") if p.strip()]


def _process_webhook(raw: bytes, db: Session, gateway: GupshupGateway):
    hook = parse_webhook(raw)
    if hook is None:
        log.info(f"Unknown webhook type: {webhook_type(raw)!r}")
        return {"success": True, "ignored": True}

    if isinstance(hook, MessageWebhook):
        msg = hook.payload
        log.info(f"Processing message from {msg.mobile}")
        try:
            result = OrderLinkingService(db, gateway).handle_inbound(
                msg.text, msg.mobile, msg.name, msg.id, msg.sent_at()
            )
        except Exception:
            db.rollback()
            log.exception(f"Failed to process message from {msg.mobile}")
            try:
                gateway.send_message(gateway.format_number(msg.mobile), templates.PROCESSING_ERROR)
            except AxBillingError as e:
                log.error(f"Failed to send error message: {e.message}")
            return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})
        return {"success": True, "status": result.status, "orderID": result.order_code}

    event = hook.payload
    message_id = event.provider_message_id
    status = event.delivery_status
    if not message_id or not status:
        log.info("Message event without id or status, ignoring")
        return {"success": True, "updated": 0}

    updated = update_delivery_status(db, message_id, status)
    db.commit()
    log.info(f"Updated message {message_id} status to {status} ({updated} rows)")
    return {"success": True, "updated": updated}


# -------------------
# Health
# -------------------
@app.get("/")
def root():
    return {"ok": True, "service": "ax-billing-api"}


# -------------------
# Auth
# -------------------
@app.post("/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    u = db.query(User).filter(User.email == payload.email).first()
    if not u or not verify_password(payload.password, u.password_hash):
        raise HTTPException(status_code=401, detail="Bad credentials")
    return {"token": create_token(u.id), "role": u.role}


@app.post("/auth/signup")
def signup(payload: SignupIn, _admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    if payload.role not in {"admin", "staff"}:
        raise HTTPException(status_code=400, detail="Role must be admin or staff")
    if db.query(User).filter(User.email == payload.email).first():
        raise HTTPException(status_code=400, detail="Email already exists")

    u = User(
        email=payload.email,
        password_hash=hash_password(payload.password),
        role=payload.role,
        first_name=payload.first_name,
        last_name=payload.last_name,
        whatsapp_number=payload.whatsapp_number,
    )
    db.add(u)
    db.commit()
    db.refresh(u)
    return {"ok": True, "id": u.id}


# -------------------
# Services
# -------------------
@app.get("/api/v1/services")
def list_services(_user: User = Depends(require_user), db: Session = Depends(get_db)):
    services = db.query(Service).filter(Service.is_active.is_(True)).order_by(Service.name).all()
    return {
        "success": True,
        "services": [
            {"id": s.id, "name": s.name, "category": s.category, "basePrice": s.base_price} for s in services
        ],
    }


@app.post("/api/v1/services")
def create_service(payload: ServiceIn, _staff: User = Depends(require_staff), db: Session = Depends(get_db)):
    s = Service(name=payload.name, category=payload.category, base_price=payload.base_price)
    db.add(s)
    db.commit()
    db.refresh(s)
    return {"success": True, "id": s.id}


# -------------------
# Orders
# -------------------
@app.post("/api/v1/orders/create-empty")
def create_empty(
    payload: Optional[CreateOrderIn] = None,
    staff: User = Depends(require_staff),
    db: Session = Depends(get_db),
):
    order = create_empty_order(db, created_by=staff, notes=payload.notes if payload else "")
    return {
        "success": True,
        "orderID": order.order_id,
        "id": order.id,
        "message": "Empty order created successfully",
    }


@app.get("/api/v1/orders")
def list_orders(
    stage: Optional[str] = None,
    limit: int = 50,
    _staff: User = Depends(require_staff),
    db: Session = Depends(get_db),
):
    if stage:
        validate_stage(stage)
    orders = orders_by_stage(db, stage, limit=max(1, min(limit, 200)))
    return {"success": True, "orders": [serialize_order(o) for o in orders]}


@app.get("/api/v1/orders/{code}")
def read_order(code: str, user: User = Depends(require_user), db: Session = Depends(get_db)):
    order = get_order(db, code)
    _ensure_can_view(order, user)
    return {"success": True, "order": serialize_order(order, detail=True)}


@app.patch("/api/v1/orders/{code}")
def patch_order(
    code: str,
    payload: OrderPatchIn,
    staff: User = Depends(require_staff),
    db: Session = Depends(get_db),
):
    order = get_order(db, code)
    events = update_order_fields(db, order, payload.model_dump(exclude_unset=True), triggered_by=staff)
    return {"success": True, "order": serialize_order(order, detail=True), "events": len(events)}


@app.delete("/api/v1/orders/{code}")
def remove_order(code: str, _staff: User = Depends(require_staff), db: Session = Depends(get_db)):
    order = get_order(db, code)
    delete_order(db, order)
    return {"success": True, "message": f"Order {code} deleted"}


@app.put("/api/v1/orders/{code}/services")
def put_order_services(
    code: str,
    payload: OrderServicesIn,
    staff: User = Depends(require_staff),
    db: Session = Depends(get_db),
):
    order = get_order(db, code)
    items = [s.model_dump() for s in payload.services]
    order = set_order_services(db, order, items, triggered_by=staff)
    return {"success": True, "order": serialize_order(order, detail=True)}


@app.post("/api/v1/orders/{code}/update-stage")
def update_stage(
    code: str,
    payload: StageIn,
    staff: User = Depends(require_staff),
    db: Session = Depends(get_db),
    gateway: GupshupGateway = Depends(get_gateway),
):
    change = transition_order(db, code, payload.stage, gateway, triggered_by=staff, notify=payload.notify)
    return {
        "success": True,
        "orderID": change.order.order_id,
        "previousStage": change.previous_stage,
        "orderStage": change.stage,
        "messageSent": change.message_sent,
    }


@app.get("/api/v1/orders/{code}/status")
def order_status(code: str, user: User = Depends(require_user), db: Session = Depends(get_db)):
    order = get_order(db, code)
    _ensure_can_view(order, user)
    return {
        "success": True,
        "order": serialize_order(order),
        "progress": order_progress(db, order),
    }


@app.get("/api/v1/orders/{code}/events")
def order_events(
    code: str,
    limit: int = 100,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    order = get_order(db, code)
    events = list_order_events(db, order, user, limit=max(1, min(limit, 500)))
    return {"success": True, "events": [serialize_event(e) for e in events]}


# -------------------
# Intake / delivery
# -------------------
@app.get("/api/v1/orders/{code}/intake")
def read_intake(code: str, _staff: User = Depends(require_staff), db: Session = Depends(get_db)):
    order = get_order(db, code)
    return {"success": True, "intake": serialize_intake(get_intake(db, order))}


@app.post("/api/v1/orders/{code}/intake")
def post_intake(
    code: str,
    payload: IntakeIn,
    staff: User = Depends(require_staff),
    db: Session = Depends(get_db),
):
    order = get_order(db, code)
    intake = create_intake(db, order, payload.model_dump(), staff=staff)
    return {"success": True, "intake": serialize_intake(intake), "message": "Intake completed successfully"}


@app.put("/api/v1/orders/{code}/intake")
def put_intake(code: str, payload: IntakeIn, _staff: User = Depends(require_staff), db: Session = Depends(get_db)):
    order = get_order(db, code)
    intake = update_intake(db, order, payload.model_dump(exclude_unset=True))
    return {"success": True, "intake": serialize_intake(intake), "message": "Intake updated successfully"}


@app.get("/api/v1/orders/{code}/delivery")
def read_delivery(code: str, _staff: User = Depends(require_staff), db: Session = Depends(get_db)):
    order = get_order(db, code)
    return {"success": True, "delivery": serialize_delivery(get_delivery(db, order))}


@app.post("/api/v1/orders/{code}/delivery")
def post_delivery(
    code: str,
    payload: DeliveryIn,
    staff: User = Depends(require_staff),
    db: Session = Depends(get_db),
    gateway: GupshupGateway = Depends(get_gateway),
):
    order = get_order(db, code)
    delivery, report = create_delivery(db, order, payload.model_dump(), gateway=gateway, staff=staff)
    return {
        "success": True,
        "delivery": serialize_delivery(delivery),
        "damageReport": report,
        "message": "Delivery completed successfully",
    }


@app.put("/api/v1/orders/{code}/delivery")
def put_delivery(
    code: str,
    payload: DeliveryIn,
    _staff: User = Depends(require_staff),
    db: Session = Depends(get_db),
    gateway: GupshupGateway = Depends(get_gateway),
):
    order = get_order(db, code)
    delivery, report = update_delivery(db, order, payload.model_dump(exclude_unset=True), gateway=gateway)
    return {"success": True, "delivery": serialize_delivery(delivery), "damageReport": report}


# -------------------
# Staff
# -------------------
@app.get("/api/v1/staff/initiated-orders")
def initiated_orders(_staff: User = Depends(require_staff), db: Session = Depends(get_db)):
    orders = orders_by_stage(db, "initiated")
    return {"success": True, "orders": [serialize_order(o, detail=True) for o in orders]}


@app.get("/api/v1/dashboard/data")
def dashboard_data(_staff: User = Depends(require_staff), db: Session = Depends(get_db)):
    return {
        "success": True,
        "stageCounts": stage_counts(db),
        "recentOrders": [serialize_order(o) for o in orders_by_stage(db, limit=20)],
        "activeConnections": sse_manager.active_connections(),
    }


@app.post("/api/v1/staff/capture-vehicle")
def staff_capture_vehicle(
    payload: CaptureIn,
    staff: User = Depends(require_staff),
    db: Session = Depends(get_db),
    gateway: GupshupGateway = Depends(get_gateway),
    providers: List[Any] = Depends(get_vision_providers),
):
    result = capture_vehicle(
        db,
        payload.order_id,
        gateway,
        image_url=payload.image_url,
        image_type=payload.image_type,
        license_plate=payload.license_plate,
        vehicle_type=payload.vehicle_type,
        use_manual_data=payload.use_manual_data,
        providers=providers,
        triggered_by=staff,
    )
    return {
        "success": True,
        "vehicle": {
            "id": result.vehicle.id,
            "licensePlate": result.vehicle.license_plate,
            "vehicleType": result.vehicle.vehicle_type,
        },
        "order": {
            "id": result.order.id,
            "orderID": result.order.order_id,
            "orderStage": result.order.order_stage,
        },
        "provider": result.provider,
        "imageUrl": payload.image_url or "",
        "messageSent": result.message_sent,
        "message": "Vehicle information captured successfully",
    }


# -------------------
# AI
# -------------------
@app.post("/api/v1/ai/analyze-vehicle")
def analyze_vehicle(
    payload: AnalyzeIn,
    _staff: User = Depends(require_staff),
    providers: List[Any] = Depends(get_vision_providers),
):
    result = analyze_vehicle_image(payload.image_url, providers)
    if not result.ok:
        raise AnalysisFailed(result.error or "Vehicle analysis failed", attempts=result.attempts)

    analysis = result.analysis
    recommendations: List[str] = []
    cost_estimate = None
    if payload.include_recommendations:
        recommendations = generate_service_recommendations(analysis, payload.customer_tier)
        if payload.include_cost_estimate and analysis.damages:
            cost_estimate = estimate_service_costs(analysis.damages, recommendations)

    return {
        "success": True,
        "analysis": analysis.model_dump(),
        "serviceRecommendations": recommendations,
        "costEstimate": cost_estimate,
        "metadata": {
            "customerTier": payload.customer_tier,
            "aiProvider": result.provider,
            "attempts": result.attempts,
            "hasLicensePlate": bool(analysis.license_plate),
            "damagesDetected": len(analysis.damages),
        },
    }


@app.post("/api/v1/ai/reanalyze-vehicle")
def reanalyze(
    payload: ReanalyzeIn,
    _staff: User = Depends(require_staff),
    db: Session = Depends(get_db),
    providers: List[Any] = Depends(get_vision_providers),
):
    summary = reanalyze_vehicle(db, payload.vehicle_id, payload.image_ids, providers)
    return {"success": True, "message": f"Reanalyzed {summary['reanalyzedImages']} images", **summary}


# -------------------
# WhatsApp QR
# -------------------
@app.post("/api/v1/whatsapp/qr-code")
def create_qr_code(
    payload: QRCodeIn,
    _staff: User = Depends(require_staff),
    db: Session = Depends(get_db),
    gateway: GupshupGateway = Depends(get_gateway),
):
    order = get_order(db, payload.order_id)
    return {"success": True, **generate_order_qr(db, order, gateway)}


@app.get("/api/v1/whatsapp/qr-code")
def read_qr_code(
    orderId: str,
    _staff: User = Depends(require_staff),
    db: Session = Depends(get_db),
    gateway: GupshupGateway = Depends(get_gateway),
):
    order = get_order(db, orderId)
    return {"success": True, **qr_status(order, gateway)}


@app.get("/api/v1/whatsapp/qr-code/{code}.svg")
def qr_code_svg(
    code: str,
    _staff: User = Depends(require_staff),
    db: Session = Depends(get_db),
    gateway: GupshupGateway = Depends(get_gateway),
):
    order = get_order(db, code)
    return Response(content=render_qr_svg(gateway.whatsapp_link(order.order_id)), media_type="image/svg+xml")


# -------------------
# WhatsApp webhook
# -------------------
@app.post("/api/v1/webhooks/whatsapp")
async def whatsapp_webhook(
    request: Request,
    x_gupshup_signature: str | None = Header(default=None),
    db: Session = Depends(get_db),
    gateway: GupshupGateway = Depends(get_gateway),
):
    raw = await request.body()
    if not gateway.verify_signature(raw, x_gupshup_signature):
        log.warning("Rejected webhook with invalid signature")
        raise SignatureInvalid("Invalid signature")
    return await run_in_threadpool(_process_webhook, raw, db, gateway)


# -------------------
# Realtime sync
# -------------------
@app.get("/api/v1/sync/events")
async def sync_events(request: Request, orderID: Optional[str] = None, eventTypes: Optional[str] = None):
    client = sse_manager.add_client(order_id=orderID, event_types=_csv(eventTypes))
    return StreamingResponse(
        sse_manager.event_stream(client, settings.sse_heartbeat_seconds, request.is_disconnected),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
