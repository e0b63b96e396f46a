# axbilling/whatsapp/gateway.py
from __future__ import annotations

import hashlib
import hmac
import json
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from ..config import settings
from ..errors import GatewayError, InvalidPhoneNumber
from ..logger import get_logger

log = get_logger("whatsapp.gateway")

_NON_DIGIT_RE = re.compile(r"\D+")


def normalize_phone(raw: str, country_code: str | None = None) -> str:
    """
    Digits only, with the country code enforced.

    A local 10-digit number ("0123456789") has its trunk prefix swapped for the
    country code ("60123456789"). Numbers that already carry the country code
    come back unchanged, so normalizing twice is the same as normalizing once.
    """
    cc = country_code if country_code is not None else settings.phone_country_code
    cleaned = _NON_DIGIT_RE.sub("", raw or "")

    if cc and not cleaned.startswith(cc) and len(cleaned) == 10:
        cleaned = cc + cleaned[1:]

    return cleaned


def is_valid_whatsapp_number(raw: str, country_code: str | None = None) -> bool:
    cc = country_code if country_code is not None else settings.phone_country_code
    return bool(re.fullmatch(rf"{re.escape(cc)}\d{{9,10}}", normalize_phone(raw, cc)))


class GupshupGateway:
    """Thin client over the Gupshup WhatsApp Business API."""

    def __init__(
        self,
        api_key: str,
        app_name: str,
        source_number: str,
        *,
        webhook_secret: str = "",
        base_url: str = "https://api.gupshup.io/sm/api/v1",
        country_code: str = "60",
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.app_name = app_name
        self.source_number = source_number
        self.webhook_secret = webhook_secret
        self.base_url = base_url.rstrip("/")
        self.country_code = country_code
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls) -> "GupshupGateway":
        return cls(
            settings.gupshup_api_key,
            settings.gupshup_app_name,
            settings.gupshup_source_number,
            webhook_secret=settings.gupshup_webhook_secret,
            base_url=settings.gupshup_base_url,
            country_code=settings.phone_country_code,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.app_name and self.source_number)

    # -------------------
    # Phone numbers
    # -------------------
    def format_number(self, raw: str) -> str:
        return normalize_phone(raw, self.country_code)

    def is_valid(self, raw: str) -> bool:
        return is_valid_whatsapp_number(raw, self.country_code)

    def _destination(self, raw: str) -> str:
        if not is_valid_whatsapp_number(raw, self.country_code):
            raise InvalidPhoneNumber(raw)
        return self.format_number(raw)

    # -------------------
    # Outbound
    # -------------------
    def send_message(self, to: str, text: str) -> str:
        """Send a plain text message. Returns the Gupshup message id."""
        destination = self._destination(to)
        return self._submit(destination, {"type": "text", "text": text})

    def send_media(self, to: str, media_url: str, caption: str = "") -> str:
        destination = self._destination(to)
        return self._submit(
            destination,
            {"type": "image", "originalUrl": media_url, "previewUrl": media_url, "caption": caption},
        )

    def send_template(self, to: str, template_id: str, params: List[str] | None = None) -> str:
        destination = self._destination(to)
        data = {
            "channel": "whatsapp",
            "source": self.source_number,
            "destination": destination,
            "src.name": self.app_name,
            "template": json.dumps({"id": template_id, "params": list(params or [])}),
        }
        return self._handle(self._post("/template/msg", data))

    def _submit(self, destination: str, message: Dict[str, Any]) -> str:
        data = {
            "channel": "whatsapp",
            "source": self.source_number,
            "destination": destination,
            "src.name": self.app_name,
            "message": json.dumps(message, ensure_ascii=False),
        }
        return self._handle(self._post("/msg", data))

    def _post(self, path: str, data: Dict[str, Any]) -> requests.Response:
        if not self.configured:
            raise GatewayError("Gupshup is not configured (api key, app name, source number)")

        headers = {
            "apikey": self.api_key,
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        try:
            resp = self.session.post(f"{self.base_url}{path}", data=data, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise GatewayError(f"Gupshup request failed: {e}") from e

        log.debug(f"Gupshup response: {resp.status_code} {resp.text}")
        return resp

    def _handle(self, resp: requests.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code >= 400 or body.get("status") != "submitted":
            raise GatewayError(
                f"Gupshup rejected message (HTTP {resp.status_code})",
                api_status=resp.status_code,
                raw_response_text=resp.text,
            )
        return str(body.get("messageId") or "")

    # -------------------
    # Inbound
    # -------------------
    def verify_signature(self, raw_body: bytes, signature: str | None) -> bool:
        """HMAC-SHA256 of the raw request body, hex encoded."""
        if not signature or not self.webhook_secret:
            return False

        expected = hmac.new(self.webhook_secret.encode(), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    def sign(self, raw_body: bytes) -> str:
        return hmac.new(self.webhook_secret.encode(), raw_body, hashlib.sha256).hexdigest()

    # -------------------
    # Links
    # -------------------
    def whatsapp_link(self, order_code: str, custom_message: str | None = None) -> str:
        message = custom_message or f"Hi-Welcome-To-AX:OrderId-[{order_code}]"
        return f"https://wa.me/{self.source_number}?text={quote(message)}"

    def basic_whatsapp_link(self) -> str:
        return f"https://wa.me/{self.source_number}?text={quote('Hi AX Billing, I need car wash service')}"

    @staticmethod
    def is_within_24h_window(last_contact: datetime, now: datetime | None = None) -> bool:
        now = now or datetime.utcnow()
        return now - last_contact <= timedelta(hours=24)
