# axbilling/orders/codes.py
from __future__ import annotations

import random
import re
from datetime import datetime
from typing import Optional

# AX-YYYYMMDD-NNNN
ORDER_CODE_RE = re.compile(r"AX-\d{8}-\d{4}")


def generate_order_code(now: datetime | None = None) -> str:
    now = now or datetime.utcnow()
    return f"AX-{now:%Y%m%d}-{random.randint(0, 9999):04d}"


def extract_order_code(text: str) -> Optional[str]:
    """
    Find an order code anywhere in a message.

    Matches both a bare code and the text pre-filled by the order QR code,
    e.g. "Hi-Welcome-To-AX:OrderId-[AX-20250101-0001]".
    """
    m = ORDER_CODE_RE.search((text or "").upper())
    return m.group(0) if m else None
