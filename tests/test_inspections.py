from axbilling.models import Delivery, Order
from axbilling.orders.inspections import build_damage_report, compare_damage, damage_severity_score

from conftest import ORDER_CODE, make_linked_order, make_order


def _d(type_, location, severity="minor"):
    return {"type": type_, "location": location, "severity": severity, "description": ""}


def test_compare_damage_uses_multiset():
    intake = [_d("scratch", "door")]
    delivery = [_d("scratch", "door"), _d("Scratch", "Door"), _d("dent", "hood")]

    new = compare_damage(intake, delivery)

    assert [(d["type"], d["location"]) for d in new] == [("Scratch", "Door"), ("dent", "hood")]


def test_no_new_damage_when_delivery_matches_intake():
    items = [_d("scratch", "door"), _d("dent", "hood")]
    assert compare_damage(items, list(reversed(items))) == []


def test_severity_score_weights_and_cap():
    assert damage_severity_score([]) == 0
    assert damage_severity_score([_d("scratch", "door", "minor"), _d("dent", "hood", "major")]) == 8
    assert damage_severity_score([_d("x", "y", "unknown")]) == 1
    assert damage_severity_score([_d("x", str(i), "severe") for i in range(11)]) == 100


def test_damage_report_risk_levels():
    none = build_damage_report([], [])
    assert none["riskLevel"] == "low"
    assert none["recommendations"] == []
    assert not none["requiresCustomerNotification"]

    few = build_damage_report([], [_d("scratch", "door")])
    assert few["riskLevel"] == "low"
    assert few["requiresCustomerNotification"]

    many = build_damage_report([], [_d("scratch", str(i)) for i in range(3)])
    assert many["riskLevel"] == "medium"

    severe = build_damage_report([_d("dent", "hood")], [_d("crack", "windscreen", "severe")])
    assert severe["riskLevel"] == "high"
    assert "Escalate to management for review" in severe["recommendations"]
    assert "1 pre-existing damage items" in severe["summary"]


def test_delivery_requires_intake(client, db, staff_headers):
    make_order(db)
    r = client.post(f"/api/v1/orders/{ORDER_CODE}/delivery", json={}, headers=staff_headers)
    assert r.status_code == 400
    assert r.json()["error"] == "Intake must be completed before delivery"


def test_duplicate_intake_and_delivery_conflict(client, db, staff_headers):
    make_order(db)
    intake_url = f"/api/v1/orders/{ORDER_CODE}/intake"
    delivery_url = f"/api/v1/orders/{ORDER_CODE}/delivery"

    assert client.post(intake_url, json={}, headers=staff_headers).status_code == 200
    assert client.post(intake_url, json={}, headers=staff_headers).status_code == 409
    assert client.post(delivery_url, json={}, headers=staff_headers).status_code == 200
    assert client.post(delivery_url, json={}, headers=staff_headers).status_code == 409


def test_intake_get_and_update(client, db, staff_headers):
    make_order(db)
    url = f"/api/v1/orders/{ORDER_CODE}/intake"
    assert client.get(url, headers=staff_headers).status_code == 404

    client.post(url, json={"existingDamage": [_d("dent", "hood")], "overallCondition": "fair"},
                headers=staff_headers)
    r = client.put(url, json={"notes": "customer pointed out the dent"}, headers=staff_headers)

    intake = r.json()["intake"]
    assert intake["notes"] == "customer pointed out the dent"
    assert intake["overallCondition"] == "fair"
    assert intake["existingDamage"][0]["type"] == "dent"


def test_new_damage_notifies_customer_once(client, gateway, db, staff_headers):
    make_linked_order(db, stage="billed")
    base = f"/api/v1/orders/{ORDER_CODE}"
    client.post(f"{base}/intake", json={"existingDamage": [_d("scratch", "door")]}, headers=staff_headers)

    r = client.post(
        f"{base}/delivery",
        json={"damage": [_d("scratch", "door"), _d("dent", "rear_bumper", "major")]},
        headers=staff_headers,
    )

    assert r.status_code == 200
    body = r.json()
    assert body["delivery"]["newDamageDetected"] is True
    assert body["delivery"]["customerNotified"] is True
    assert body["damageReport"]["riskLevel"] == "high"
    assert body["delivery"]["damageComparison"]["newDamage"][0]["location"] == "rear_bumper"

    assert len(gateway.requests) == 1
    assert "dent on rear bumper (major)" in gateway.texts[0]

    # already notified, an update does not message again
    client.put(f"{base}/delivery", json={"vehicleInspection": {"checked": True}}, headers=staff_headers)
    assert len(gateway.requests) == 1

    db.expire_all()
    assert db.query(Order).one().overall_status == "ready"
    assert db.query(Delivery).one().new_damage_detected


def test_clean_delivery_sends_nothing(client, gateway, db, staff_headers):
    make_linked_order(db, stage="billed")
    base = f"/api/v1/orders/{ORDER_CODE}"
    client.post(f"{base}/intake", json={"existingDamage": [_d("scratch", "door")]}, headers=staff_headers)

    r = client.post(f"{base}/delivery", json={"damage": [_d("scratch", "door")]}, headers=staff_headers)

    assert r.json()["delivery"]["newDamageDetected"] is False
    assert gateway.requests == []
