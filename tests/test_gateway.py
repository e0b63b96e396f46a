import json
from datetime import datetime, timedelta

import pytest

from axbilling.errors import GatewayError, InvalidPhoneNumber
from axbilling.whatsapp.gateway import GupshupGateway, is_valid_whatsapp_number, normalize_phone

from conftest import RecordingGateway


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("0123456789", "60123456789"),
        ("+60 12-345 6789", "60123456789"),
        ("60123456789", "60123456789"),
        ("(012) 345-6789", "60123456789"),
        ("601112345678", "601112345678"),
    ],
)
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw, "60") == expected


def test_normalize_phone_is_idempotent():
    for raw in ["0123456789", "+60 12 345 6789", "0198765432", "12345"]:
        once = normalize_phone(raw, "60")
        assert normalize_phone(once, "60") == once


def test_whatsapp_number_validation():
    assert is_valid_whatsapp_number("60123456789", "60")
    assert is_valid_whatsapp_number("0123456789", "60")
    assert not is_valid_whatsapp_number("12345", "60")
    assert not is_valid_whatsapp_number("", "60")
    assert not is_valid_whatsapp_number("601234", "60")


def test_send_message_posts_form_and_returns_message_id():
    gw = RecordingGateway()
    message_id = gw.send_message("012-345 6789", "hello")

    assert message_id == "gs-1"
    req = gw.requests[0]
    assert req["path"] == "/msg"
    assert req["destination"] == "60123456789"
    assert req["source"] == "60100000000"
    assert req["src.name"] == "axbilling-test"
    assert json.loads(req["message"]) == {"type": "text", "text": "hello"}


def test_invalid_number_is_rejected_before_any_request():
    gw = RecordingGateway()
    with pytest.raises(InvalidPhoneNumber) as exc:
        gw.send_message("12345", "hello")
    assert exc.value.status_code == 400
    assert gw.requests == []


def test_provider_failure_raises_gateway_error_with_details():
    gw = RecordingGateway(fail=True)
    with pytest.raises(GatewayError) as exc:
        gw.send_message("60123456789", "hello")
    assert exc.value.api_status == 500
    assert "upstream down" in exc.value.raw_response_text
    assert len(gw.requests) == 1


def test_unconfigured_gateway_fails_without_network():
    gw = GupshupGateway("", "", "")
    assert not gw.configured
    with pytest.raises(GatewayError):
        gw.send_message("60123456789", "hello")


def test_send_template_and_media():
    gw = RecordingGateway()
    gw.send_template("60123456789", "tmpl-1", ["AX-20250101-0001"])
    gw.send_media("60123456789", "https://cdn.ax.my/car.jpg", "your car")

    assert gw.requests[0]["path"] == "/template/msg"
    assert json.loads(gw.requests[0]["template"]) == {"id": "tmpl-1", "params": ["AX-20250101-0001"]}
    media = json.loads(gw.requests[1]["message"])
    assert media["type"] == "image"
    assert media["originalUrl"] == "https://cdn.ax.my/car.jpg"


def test_signature_verification():
    gw = RecordingGateway()
    body = b'{"type":"message"}'
    sig = gw.sign(body)

    assert gw.verify_signature(body, sig)
    assert gw.verify_signature(body, sig.upper())
    assert not gw.verify_signature(body + b" ", sig)
    assert not gw.verify_signature(body, None)
    assert not gw.verify_signature(body, "")


def test_signature_fails_without_configured_secret():
    gw = GupshupGateway("k", "app", "60100000000", webhook_secret="")
    assert not gw.verify_signature(b"{}", "anything")


def test_whatsapp_links():
    gw = RecordingGateway()
    link = gw.whatsapp_link("AX-20250101-0001")
    assert link.startswith("https://wa.me/60100000000?text=")
    assert "AX-20250101-0001" in link
    assert "Hi-Welcome-To-AX%3AOrderId-%5BAX-20250101-0001%5D" in link
    assert gw.basic_whatsapp_link().startswith("https://wa.me/60100000000?text=")


def test_24h_window():
    now = datetime(2025, 1, 2, 12, 0)
    assert GupshupGateway.is_within_24h_window(now - timedelta(hours=23), now)
    assert not GupshupGateway.is_within_24h_window(now - timedelta(hours=25), now)
