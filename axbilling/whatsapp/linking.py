# axbilling/whatsapp/linking.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..auth import hash_password
from ..config import settings
from ..logger import get_logger
from ..models import Order, OrderSyncEvent, User
from ..orders.codes import extract_order_code
from ..orders.queries import find_order
from ..orders.stages import apply_stage
from ..orders.sync_events import publish_order_events
from . import templates
from .gateway import GupshupGateway
from .messages import log_message, send_and_log

log = get_logger("whatsapp.linking")


@dataclass
class LinkResult:
    status: str  # linked | already_linked | rejected | no_code | invalid_number
    whatsapp_number: str
    order_code: Optional[str] = None
    order: Optional[Order] = None
    user: Optional[User] = None
    user_created: bool = False
    reply_sent: bool = False

    @property
    def linked(self) -> bool:
        return self.status in {"linked", "already_linked"}


def _split_name(name: str | None) -> tuple[str, str]:
    parts = (name or "").split()
    first = parts[0] if parts else "Customer"
    return first, " ".join(parts[1:])


class OrderLinkingService:
    """Binds an inbound WhatsApp conversation to a staff-created empty order."""

    def __init__(self, db: Session, gateway: GupshupGateway):
        self.db = db
        self.gateway = gateway

    # -------------------
    # Users
    # -------------------
    def customer_email(self, number: str) -> str:
        return f"{number}@{settings.customer_email_domain}"

    def find_user_by_whatsapp(self, number: str) -> Optional[User]:
        formatted = self.gateway.format_number(number)
        return (
            self.db.query(User)
            .filter(or_(User.whatsapp_number == formatted, User.email == self.customer_email(formatted)))
            .order_by(User.id)
            .first()
        )

    def create_customer_from_whatsapp(self, number: str, name: str | None = None) -> User:
        formatted = self.gateway.format_number(number)
        first, last = _split_name(name)
        user = User(
            email=self.customer_email(formatted),
            password_hash=hash_password(settings.default_customer_password),
            role="customer",
            first_name=first,
            last_name=last,
            whatsapp_number=formatted,
            whatsapp_verified=True,
            whatsapp_opt_in=True,
            last_whatsapp_contact=datetime.utcnow(),
        )
        self.db.add(user)
        self.db.flush()
        log.info(f"Created customer {user.id} for {formatted}")
        return user

    # -------------------
    # Orders
    # -------------------
    @staticmethod
    def is_linkable(order: Order) -> bool:
        return order.order_stage == "empty" and not order.whatsapp_linked

    def link_order(self, order: Order, number: str, user: User) -> OrderSyncEvent:
        """Attach number and customer to the order and move it to 'initiated'. Does not commit."""
        event = apply_stage(self.db, order, "initiated", reason="whatsapp_link")
        order.whatsapp_linked = True
        order.whatsapp_number = number
        order.qr_code_scanned_at = datetime.utcnow()
        order.customer_id = user.id
        return event

    # -------------------
    # Entry point
    # -------------------
    def handle_inbound(
        self,
        text: str,
        mobile: str,
        name: str | None = None,
        message_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> LinkResult:
        number = self.gateway.format_number(mobile)
        result = LinkResult(status="invalid_number", whatsapp_number=number)

        if not self.gateway.is_valid(number):
            log.warning(f"Ignoring message from invalid number {mobile!r}")
            return result

        order_code = extract_order_code(text)
        result.order_code = order_code

        if not order_code:
            log.info(f"No order code in message from {number}")
            result.status = "no_code"
            result.reply_sent = send_and_log(self.db, self.gateway, number, templates.INVALID_QR)
            self._log_inbound(number, text, message_id, timestamp)
            self.db.commit()
            return result

        order = find_order(self.db, order_code, for_update=True)

        if order is not None and order.whatsapp_linked and order.whatsapp_number == number:
            return self._already_linked(result, order, text, message_id, timestamp)

        if order is None or not self.is_linkable(order):
            log.info(f"Order {order_code} is not available for linking ({number})")
            result.status = "rejected"
            result.reply_sent = send_and_log(
                self.db, self.gateway, number, templates.order_unavailable(order_code)
            )
            self._log_inbound(number, text, message_id, timestamp)
            self.db.commit()
            return result

        user = self.find_user_by_whatsapp(number)
        if user is None:
            user = self.create_customer_from_whatsapp(number, name)
            result.user_created = True
        else:
            log.info(f"Linking existing user {user.id} to order {order_code}")
            user.last_whatsapp_contact = datetime.utcnow()
            user.whatsapp_verified = True
            if not user.whatsapp_number:
                user.whatsapp_number = number

        events: List[OrderSyncEvent] = [self.link_order(order, number, user)]

        self._log_inbound(number, text, message_id, timestamp, user_id=user.id, order_pk=order.id)
        result.reply_sent = send_and_log(
            self.db, self.gateway, number, templates.welcome(order_code), order=order, user_id=user.id
        )

        self.db.commit()
        publish_order_events(events)

        log.info(f"Successfully linked order {order_code} to {number}")
        result.status = "linked"
        result.order = order
        result.user = user
        return result

    def _already_linked(
        self,
        result: LinkResult,
        order: Order,
        text: str,
        message_id: str | None,
        timestamp: datetime | None,
    ) -> LinkResult:
        user = self.db.get(User, order.customer_id) if order.customer_id else None
        if user is not None:
            user.last_whatsapp_contact = datetime.utcnow()

        self._log_inbound(
            result.whatsapp_number, text, message_id, timestamp,
            user_id=user.id if user else None, order_pk=order.id,
        )
        result.reply_sent = send_and_log(
            self.db,
            self.gateway,
            result.whatsapp_number,
            templates.already_linked(order.order_id, order.order_stage),
            order=order,
        )
        self.db.commit()

        log.info(f"Duplicate scan of {order.order_id} from {result.whatsapp_number}")
        result.status = "already_linked"
        result.order = order
        result.user = user
        return result

    def _log_inbound(
        self,
        number: str,
        text: str,
        message_id: str | None,
        timestamp: datetime | None,
        *,
        user_id: int | None = None,
        order_pk: int | None = None,
    ) -> None:
        log_message(
            self.db,
            whatsapp_number=number,
            direction="inbound",
            content=text or "",
            status="received",
            message_id=message_id,
            user_id=user_id,
            order_pk=order_pk,
            timestamp=timestamp,
        )
