import re

from jose import jwt

from axbilling.models import Order, OrderSyncEvent

from conftest import ORDER_CODE, auth, make_linked_order, make_order, make_user


def test_login_returns_token(client, db):
    make_user(db, "staff", email="kim@ax.my")
    r = client.post("/auth/login", json={"email": "kim@ax.my", "password": "pw-123456"})
    assert r.status_code == 200
    assert r.json()["role"] == "staff"
    assert r.json()["token"]

    bad = client.post("/auth/login", json={"email": "kim@ax.my", "password": "nope"})
    assert bad.status_code == 401


def test_signup_requires_admin(client, staff_headers, admin_headers):
    body = {"email": "new@ax.my", "password": "pw", "firstName": "New"}
    assert client.post("/auth/signup", json=body, headers=staff_headers).status_code == 403
    r = client.post("/auth/signup", json=body, headers=admin_headers)
    assert r.status_code == 200
    assert client.post("/auth/signup", json=body, headers=admin_headers).status_code == 400


def test_create_empty_order_requires_staff(client, db, staff_headers):
    assert client.post("/api/v1/orders/create-empty").status_code == 401
    customer = make_user(db, "customer", email="c@ax.my")
    assert client.post("/api/v1/orders/create-empty", headers=auth(customer)).status_code == 403

    r = client.post("/api/v1/orders/create-empty", json={"notes": "bay 2"}, headers=staff_headers)

    assert r.status_code == 200
    code = r.json()["orderID"]
    assert re.fullmatch(r"AX-\d{8}-\d{4}", code)
    db.expire_all()
    order = db.query(Order).one()
    assert order.order_stage == "empty"
    assert order.payment_status == "pending"
    assert order.queue == "regular"
    assert order.total_amount == 0
    assert order.estimated_completion_time > order.created_at


def test_list_orders_by_stage(client, db, staff_headers):
    make_order(db, "AX-20250101-0001", "empty")
    make_order(db, "AX-20250101-0002", "open")

    r = client.get("/api/v1/orders?stage=open", headers=staff_headers)
    assert [o["orderID"] for o in r.json()["orders"]] == ["AX-20250101-0002"]

    bad = client.get("/api/v1/orders?stage=shipped", headers=staff_headers)
    assert bad.status_code == 400
    assert bad.json()["success"] is False


def test_update_stage_endpoint(client, gateway, db, staff_headers):
    make_linked_order(db)

    r = client.post(f"/api/v1/orders/{ORDER_CODE}/update-stage", json={"stage": "open"}, headers=staff_headers)

    assert r.status_code == 200
    assert r.json()["previousStage"] == "initiated"
    assert r.json()["orderStage"] == "open"
    assert r.json()["messageSent"] is True
    assert len(gateway.requests) == 1


def test_update_stage_rejects_bad_input(client, db, staff_headers):
    make_order(db, stage="open")
    url = f"/api/v1/orders/{ORDER_CODE}/update-stage"

    assert client.post(url, json={"stage": "shipped"}, headers=staff_headers).status_code == 400
    assert client.post(url, json={"stage": "initiated"}, headers=staff_headers).status_code == 409
    assert client.post("/api/v1/orders/AX-20990101-0000/update-stage", json={"stage": "paid"},
                       headers=staff_headers).status_code == 404
    db.expire_all()
    assert db.query(Order).one().order_stage == "open"


def test_patch_emits_events_and_access_control(client, db, staff_headers):
    order, owner = make_linked_order(db)
    stranger = make_user(db, "customer", email="other@ax.my")

    r = client.patch(
        f"/api/v1/orders/{ORDER_CODE}",
        json={"paymentStatus": "paid", "queue": "vip", "staffNotes": "regular customer"},
        headers=staff_headers,
    )
    assert r.status_code == 200
    assert r.json()["events"] == 2

    events = client.get(f"/api/v1/orders/{ORDER_CODE}/events", headers=auth(owner))
    assert events.status_code == 200
    types = {e["eventType"] for e in events.json()["events"]}
    assert types == {"payment_update", "queue_update"}
    payment = next(e for e in events.json()["events"] if e["eventType"] == "payment_update")
    assert payment["previousValue"] == "pending"
    assert payment["newValue"] == "paid"
    assert payment["orderID"] == ORDER_CODE

    assert client.get(f"/api/v1/orders/{ORDER_CODE}/events", headers=auth(stranger)).status_code == 403
    assert client.get(f"/api/v1/orders/{ORDER_CODE}", headers=auth(stranger)).status_code == 403
    assert client.get(f"/api/v1/orders/{ORDER_CODE}", headers=auth(owner)).status_code == 200


def test_patch_rejects_unknown_status(client, db, staff_headers):
    make_order(db)
    r = client.patch(f"/api/v1/orders/{ORDER_CODE}", json={"paymentStatus": "maybe"}, headers=staff_headers)
    assert r.status_code == 400
    assert db.query(OrderSyncEvent).count() == 0


def test_services_and_totals(client, db, staff_headers):
    make_order(db, stage="open")
    wash = client.post("/api/v1/services", json={"name": "Wash", "basePrice": 30}, headers=staff_headers).json()
    wax = client.post("/api/v1/services", json={"name": "Wax", "basePrice": 50}, headers=staff_headers).json()

    listed = client.get("/api/v1/services", headers=staff_headers).json()["services"]
    assert {s["name"] for s in listed} == {"Wash", "Wax"}

    r = client.put(
        f"/api/v1/orders/{ORDER_CODE}/services",
        json={"services": [
            {"serviceId": wash["id"]},
            {"serviceId": wax["id"], "servicePrice": 45, "optionsPrice": 10},
        ]},
        headers=staff_headers,
    )
    assert r.status_code == 200
    assert r.json()["order"]["totalAmount"] == 85.0
    assert len(r.json()["order"]["services"]) == 2

    r = client.patch(f"/api/v1/orders/{ORDER_CODE}", json={"discountAmount": 15}, headers=staff_headers)
    assert r.json()["order"]["totalAmount"] == 70.0

    r = client.patch(f"/api/v1/orders/{ORDER_CODE}", json={"discountAmount": 500}, headers=staff_headers)
    assert r.json()["order"]["totalAmount"] == 0.0

    missing = client.put(f"/api/v1/orders/{ORDER_CODE}/services",
                         json={"services": [{"serviceId": 999}]}, headers=staff_headers)
    assert missing.status_code == 404


def test_delete_only_while_empty(client, db, staff_headers):
    make_order(db, "AX-20250101-0001", "empty")
    make_order(db, "AX-20250101-0002", "open")

    assert client.delete("/api/v1/orders/AX-20250101-0002", headers=staff_headers).status_code == 409
    assert client.delete("/api/v1/orders/AX-20250101-0001", headers=staff_headers).status_code == 200
    assert [o.order_id for o in db.query(Order).all()] == ["AX-20250101-0002"]


def test_status_progress(client, db, staff_headers):
    make_order(db)
    url = f"/api/v1/orders/{ORDER_CODE}/status"

    assert client.get(url, headers=staff_headers).json()["progress"]["stage"] == "created"

    client.post("/api/v1/whatsapp/qr-code", json={"orderId": ORDER_CODE}, headers=staff_headers)
    assert client.get(url, headers=staff_headers).json()["progress"]["percentage"] == 20

    client.post(f"/api/v1/orders/{ORDER_CODE}/intake", json={"existingDamage": []}, headers=staff_headers)
    progress = client.get(url, headers=staff_headers).json()["progress"]
    assert (progress["stage"], progress["percentage"]) == ("intake_completed", 50)

    client.post(f"/api/v1/orders/{ORDER_CODE}/delivery", json={"damage": []}, headers=staff_headers)
    progress = client.get(url, headers=staff_headers).json()["progress"]
    assert (progress["stage"], progress["percentage"]) == ("completed", 100)


def test_qr_code_endpoints(client, db, staff_headers):
    make_order(db)

    r = client.post("/api/v1/whatsapp/qr-code", json={"orderId": ORDER_CODE}, headers=staff_headers)
    assert r.status_code == 200
    assert r.json()["qrCodeGenerated"] is True
    assert ORDER_CODE in r.json()["whatsappLink"]

    status = client.get(f"/api/v1/whatsapp/qr-code?orderId={ORDER_CODE}", headers=staff_headers)
    assert status.json()["qrCodeGenerated"] is True

    svg = client.get(f"/api/v1/whatsapp/qr-code/{ORDER_CODE}.svg", headers=staff_headers)
    assert svg.status_code == 200
    assert svg.headers["content-type"].startswith("image/svg+xml")
    assert b"<svg" in svg.content


def test_qr_code_refused_for_linked_order(client, db, staff_headers):
    make_linked_order(db)
    r = client.post("/api/v1/whatsapp/qr-code", json={"orderId": ORDER_CODE}, headers=staff_headers)
    assert r.status_code == 409


def test_dashboard_and_initiated_orders(client, db, staff_headers):
    make_linked_order(db)
    make_order(db, "AX-20250101-0002", "empty")

    initiated = client.get("/api/v1/staff/initiated-orders", headers=staff_headers).json()["orders"]
    assert [o["orderID"] for o in initiated] == [ORDER_CODE]
    assert initiated[0]["customer"]["whatsappNumber"] == "60123456789"

    data = client.get("/api/v1/dashboard/data", headers=staff_headers).json()
    assert data["stageCounts"]["initiated"] == 1
    assert data["stageCounts"]["empty"] == 1
    assert data["stageCounts"]["paid"] == 0


def test_role_is_read_from_the_database(client, db):
    user = make_user(db, "customer", email="promoted@ax.my")
    headers = auth(user)
    assert "role" not in jwt.get_unverified_claims(headers["Authorization"].split()[1])
    assert client.get("/api/v1/orders", headers=headers).status_code == 403

    user.role = "staff"
    db.commit()

    assert client.get("/api/v1/orders", headers=headers).status_code == 200
