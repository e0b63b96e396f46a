# axbilling/models.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from .db import Base


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    email = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    role = Column(String, default="customer")  # admin | staff | customer
    first_name = Column(String, default="")
    last_name = Column(String, default="")
    whatsapp_number = Column(String, index=True, nullable=True)
    whatsapp_verified = Column(Boolean, default=False)
    whatsapp_opt_in = Column(Boolean, default=False)
    last_whatsapp_contact = Column(DateTime, nullable=True)
    customer_tier = Column(String, default="standard")
    created_at = Column(DateTime, default=datetime.utcnow)

    @property
    def is_staff(self) -> bool:
        return self.role in {"admin", "staff"}


class Service(Base):
    __tablename__ = "services"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    category = Column(String, default="")
    base_price = Column(Float, default=0.0)
    is_active = Column(Boolean, default=True)


class Vehicle(Base):
    __tablename__ = "vehicles"
    id = Column(Integer, primary_key=True)
    license_plate = Column(String, index=True, nullable=False)
    vehicle_type = Column(String, default="sedan")
    make = Column(String, nullable=True)
    model = Column(String, nullable=True)
    year = Column(Integer, nullable=True)
    color = Column(String, nullable=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    ai_classification_confidence = Column(Float, nullable=True)
    notes = Column(Text, default="")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    images = relationship("VehicleImage", back_populates="vehicle", order_by="VehicleImage.id")


class VehicleImage(Base):
    __tablename__ = "vehicle_images"
    id = Column(Integer, primary_key=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False, index=True)
    image_url = Column(String, nullable=False)
    image_type = Column(String, default="general")  # front | rear | left | right | general
    ai_processed = Column(Boolean, default=False)
    damage_detected = Column(Boolean, default=False)
    damage_description = Column(Text, default="")
    analysis_json = Column(Text, default="{}")
    created_at = Column(DateTime, default=datetime.utcnow)

    vehicle = relationship("Vehicle", back_populates="images")


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True)
    order_id = Column(String, unique=True, index=True, nullable=False)  # AX-YYYYMMDD-NNNN
    order_stage = Column(String, default="empty")  # empty | initiated | open | billed | paid

    whatsapp_linked = Column(Boolean, default=False)
    whatsapp_number = Column(String, nullable=True)
    qr_code_generated = Column(Boolean, default=False)
    qr_code_scanned_at = Column(DateTime, nullable=True)
    vehicle_captured_at = Column(DateTime, nullable=True)
    ai_processed_at = Column(DateTime, nullable=True)

    customer_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=True)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    total_amount = Column(Float, default=0.0)
    discount_amount = Column(Float, default=0.0)
    payment_status = Column(String, default="pending")  # pending | paid | failed | refunded | cash
    queue = Column(String, default="regular")  # regular | vip | remnant
    overall_status = Column(String, default="pending")

    customer_notes = Column(Text, default="")
    staff_notes = Column(Text, default="")
    estimated_completion_time = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    customer = relationship("User", foreign_keys=[customer_id])
    vehicle = relationship("Vehicle")
    lines = relationship(
        "OrderLine",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderLine.id",
    )


class OrderLine(Base):
    __tablename__ = "order_lines"
    id = Column(Integer, primary_key=True)
    order_pk = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False)
    service_price = Column(Float, default=0.0)
    options_price = Column(Float, default=0.0)

    order = relationship("Order", back_populates="lines")
    service = relationship("Service")


class Intake(Base):
    __tablename__ = "intakes"
    id = Column(Integer, primary_key=True)
    order_pk = Column(Integer, ForeignKey("orders.id"), unique=True, nullable=False)
    vehicle_images_json = Column(Text, default="[]")
    damage_json = Column(Text, default="[]")  # existing damage at drop-off
    overall_condition = Column(String, default="")
    notes = Column(Text, default="")
    staff_member_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    completed_at = Column(DateTime, default=datetime.utcnow)


class Delivery(Base):
    __tablename__ = "deliveries"
    id = Column(Integer, primary_key=True)
    order_pk = Column(Integer, ForeignKey("orders.id"), unique=True, nullable=False)
    intake_id = Column(Integer, ForeignKey("intakes.id"), nullable=False)
    delivery_images_json = Column(Text, default="[]")
    inspection_json = Column(Text, default="{}")
    comparison_json = Column(Text, default="{}")
    new_damage_detected = Column(Boolean, default=False)
    customer_notified = Column(Boolean, default=False)
    staff_member_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    completed_at = Column(DateTime, default=datetime.utcnow)


class WhatsAppMessage(Base):
    __tablename__ = "whatsapp_messages"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    order_pk = Column(Integer, ForeignKey("orders.id"), nullable=True)
    whatsapp_number = Column(String, nullable=False)
    message_id = Column(String, index=True, nullable=True)
    direction = Column(String, nullable=False)  # inbound | outbound
    message_type = Column(String, default="text")
    content = Column(Text, default="")
    status = Column(String, default="sent")
    timestamp = Column(DateTime, default=datetime.utcnow)
    error_message = Column(Text, nullable=True)


class OrderSyncEvent(Base):
    __tablename__ = "order_sync_events"
    id = Column(Integer, primary_key=True)
    order_pk = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    field_name = Column(String, nullable=True)
    previous_value_json = Column(Text, default="null")
    new_value_json = Column(Text, default="null")
    metadata_json = Column(Text, default="{}")
    triggered_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    order = relationship("Order")
