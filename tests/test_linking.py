from axbilling.models import Order, OrderSyncEvent, User, WhatsAppMessage
from axbilling.auth import verify_password
from axbilling.whatsapp import templates
from axbilling.whatsapp.linking import OrderLinkingService

from conftest import CUSTOMER_NUMBER, ORDER_CODE, make_linked_order, make_order, make_user


def test_new_customer_links_empty_order(db, gateway):
    make_order(db)

    result = OrderLinkingService(db, gateway).handle_inbound(ORDER_CODE, "0123456789", "Ali Bin Abu", "wamid-1")

    assert result.status == "linked"
    assert result.user_created

    db.expire_all()
    order = db.query(Order).one()
    assert order.order_stage == "initiated"
    assert order.whatsapp_linked
    assert order.whatsapp_number == CUSTOMER_NUMBER
    assert order.qr_code_scanned_at is not None

    user = db.query(User).one()
    assert order.customer_id == user.id
    assert user.email == f"{CUSTOMER_NUMBER}@ft.tc"
    assert user.role == "customer"
    assert (user.first_name, user.last_name) == ("Ali", "Bin Abu")
    assert user.whatsapp_verified and user.whatsapp_opt_in
    assert verify_password("Ax#123456", user.password_hash)

    # exactly one welcome message
    assert gateway.destinations == [CUSTOMER_NUMBER]
    assert "Welcome to AX Billing" in gateway.texts[0]

    directions = sorted(m.direction for m in db.query(WhatsAppMessage).all())
    assert directions == ["inbound", "outbound"]

    event = db.query(OrderSyncEvent).one()
    assert event.event_type == "stage_change"


def test_prefilled_qr_message_is_understood(db, gateway):
    make_order(db)
    text = f"Hi-Welcome-To-AX:OrderId-[{ORDER_CODE}]"

    result = OrderLinkingService(db, gateway).handle_inbound(text, CUSTOMER_NUMBER, "Siti")

    assert result.status == "linked"
    assert result.order_code == ORDER_CODE


def test_existing_user_is_reused(db, gateway):
    existing = make_user(db, "customer", email="ali@ax.my", whatsapp_number=CUSTOMER_NUMBER)
    make_order(db)

    result = OrderLinkingService(db, gateway).handle_inbound(ORDER_CODE, CUSTOMER_NUMBER, "Ali")

    assert result.status == "linked"
    assert not result.user_created
    assert db.query(User).count() == 1
    db.expire_all()
    assert db.query(Order).one().customer_id == existing.id
    assert db.get(User, existing.id).last_whatsapp_contact is not None


def test_duplicate_scan_from_same_number_is_idempotent(db, gateway):
    make_order(db)
    service = OrderLinkingService(db, gateway)
    service.handle_inbound(ORDER_CODE, CUSTOMER_NUMBER, "Ali")

    result = service.handle_inbound(ORDER_CODE, CUSTOMER_NUMBER, "Ali")

    assert result.status == "already_linked"
    assert result.linked
    assert db.query(User).count() == 1
    assert db.query(OrderSyncEvent).count() == 1
    db.expire_all()
    assert db.query(Order).one().order_stage == "initiated"
    assert len(gateway.requests) == 2
    assert "already linked" in gateway.texts[1]


def test_message_without_code(db, gateway):
    make_order(db)

    result = OrderLinkingService(db, gateway).handle_inbound("hello there", CUSTOMER_NUMBER, "Ali", "wamid-9")

    assert result.status == "no_code"
    assert gateway.texts == [templates.INVALID_QR]
    assert db.query(User).count() == 0
    db.expire_all()
    assert db.query(Order).one().order_stage == "empty"

    inbound = db.query(WhatsAppMessage).filter(WhatsAppMessage.direction == "inbound").one()
    assert inbound.content == "hello there"
    assert inbound.message_id == "wamid-9"
    assert inbound.status == "received"


def test_unknown_code_is_rejected(db, gateway):
    result = OrderLinkingService(db, gateway).handle_inbound("AX-20990101-0042", CUSTOMER_NUMBER)

    assert result.status == "rejected"
    assert "AX-20990101-0042 is not available" in gateway.texts[0]
    assert db.query(User).count() == 0


def test_order_past_empty_is_rejected(db, gateway):
    make_order(db, stage="open")

    result = OrderLinkingService(db, gateway).handle_inbound(ORDER_CODE, CUSTOMER_NUMBER)

    assert result.status == "rejected"
    db.expire_all()
    assert db.query(Order).one().order_stage == "open"


def test_order_linked_to_another_number_is_rejected(db, gateway):
    make_linked_order(db, number="60199999999")

    result = OrderLinkingService(db, gateway).handle_inbound(ORDER_CODE, CUSTOMER_NUMBER)

    assert result.status == "rejected"
    db.expire_all()
    assert db.query(Order).one().whatsapp_number == "60199999999"
    assert db.query(User).count() == 1


def test_invalid_sender_is_ignored(db, gateway):
    make_order(db)

    result = OrderLinkingService(db, gateway).handle_inbound(ORDER_CODE, "123")

    assert result.status == "invalid_number"
    assert gateway.requests == []
    assert db.query(WhatsAppMessage).count() == 0


def test_failed_welcome_still_links(db, failing_gateway):
    make_order(db)

    result = OrderLinkingService(db, failing_gateway).handle_inbound(ORDER_CODE, CUSTOMER_NUMBER)

    assert result.status == "linked"
    assert not result.reply_sent
    db.expire_all()
    assert db.query(Order).one().order_stage == "initiated"
    failed = db.query(WhatsAppMessage).filter(WhatsAppMessage.direction == "outbound").one()
    assert failed.status == "failed"
