from __future__ import annotations

import argparse
from pathlib import Path

from axbilling.db import SessionLocal
from axbilling.orders.queries import orders_by_stage
from axbilling.whatsapp.gateway import GupshupGateway
from axbilling.whatsapp.qr import render_qr_svg

OUT_DIR = Path(__file__).resolve().parents[1] / "qrcodes"


def main() -> None:
    parser = argparse.ArgumentParser(description="Print WhatsApp QR codes for orders waiting to be scanned")
    parser.add_argument("--limit", type=int, default=50)
    args = parser.parse_args()

    OUT_DIR.mkdir(parents=True, exist_ok=True)
    gateway = GupshupGateway.from_settings()

    made = 0
    with SessionLocal() as db:
        for order in orders_by_stage(db, "empty", limit=args.limit):
            if order.whatsapp_linked:
                print(f"SKIP (already linked): {order.order_id}")
                continue

            url = gateway.whatsapp_link(order.order_id)
            out_path = OUT_DIR / f"{order.order_id}.svg"
            out_path.write_bytes(render_qr_svg(url))

            print(f"OK  {order.order_id}  ->  {out_path}  ({url})")
            made += 1

    print(f"\nDone. Generated {made} QR codes in: {OUT_DIR}")


if __name__ == "__main__":
    main()
