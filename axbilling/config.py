# axbilling/config.py
from __future__ import annotations

import os
from typing import List

from pydantic import BaseModel

# Load .env locally (safe in prod too)
try:
    from dotenv import load_dotenv

    load_dotenv()
except Exception:
    pass


def _csv(raw: str) -> List[str]:
    return [p.strip() for p in (raw or "").split(",") if p.strip()]


def _int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except Exception:
        return default


class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./axbilling.db")
    cors_origins: List[str] = _csv(os.getenv("CORS_ORIGINS", "*"))

    # Gupshup (WhatsApp Business API)
    gupshup_api_key: str = os.getenv("GUPSHUP_API_KEY", "").strip()
    gupshup_app_name: str = os.getenv("GUPSHUP_APP_NAME", "").strip()
    gupshup_source_number: str = os.getenv("GUPSHUP_SOURCE_NUMBER", "").strip()
    gupshup_webhook_secret: str = os.getenv("GUPSHUP_WEBHOOK_SECRET", "").strip()
    gupshup_base_url: str = os.getenv("GUPSHUP_BASE_URL", "https://api.gupshup.io/sm/api/v1")
    phone_country_code: str = os.getenv("PHONE_COUNTRY_CODE", "60").strip()

    # Vision providers, tried in this order
    openrouter_api_key: str = os.getenv("OPENROUTER_API_KEY", "").strip()
    openrouter_model: str = os.getenv("OPENROUTER_MODEL", "openai/gpt-4o-mini")
    openrouter_base_url: str = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
    fal_key: str = os.getenv("FAL_KEY", "").strip()
    fal_vision_model: str = os.getenv("FAL_VISION_MODEL", "fal-ai/moondream2/visual-query")
    ai_timeout_seconds: int = _int("AI_TIMEOUT_SECONDS", 60)

    # Customers created from a WhatsApp scan
    default_customer_password: str = os.getenv("DEFAULT_CUSTOMER_PASSWORD", "Ax#123456")
    customer_email_domain: str = os.getenv("CUSTOMER_EMAIL_DOMAIN", "ft.tc")

    # Realtime sync
    sse_heartbeat_seconds: int = _int("SSE_HEARTBEAT_SECONDS", 30)
    sse_stale_seconds: int = _int("SSE_STALE_SECONDS", 300)
    sse_cleanup_seconds: int = _int("SSE_CLEANUP_SECONDS", 120)

    currency: str = os.getenv("CURRENCY", "RM")

    # Logging
    log_dir: str = os.getenv("LOG_DIR", os.path.join(os.getcwd(), "logs"))
    log_file: str = os.getenv("LOG_FILE", "axbilling.log")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
