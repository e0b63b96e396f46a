# axbilling/whatsapp/templates.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..config import settings

INVALID_QR = (
    "❌ Invalid QR code. Please scan the QR code provided by our staff to start your service."
)

PROCESSING_ERROR = (
    "❌ Sorry, there was an error processing your request. "
    "Please try again or contact our staff for assistance."
)


def order_unavailable(order_code: str) -> str:
    return (
        f"❌ Order {order_code} is not available for linking. "
        "Please contact our staff for assistance."
    )


def already_linked(order_code: str, stage: str) -> str:
    return (
        f"👋 Welcome back! Order *{order_code}* is already linked to this number.\n"
        f"Current stage: {stage}"
    )


def welcome(order_code: str) -> str:
    return (
        "🎉 *Welcome to AX Billing!*\n\n"
        "Your order has been created:\n"
        f"Order ID: *{order_code}*\n\n"
        "Our staff will now capture your vehicle information and add the services you need. "
        "We'll keep you updated throughout the process!\n\n"
        "Thank you for choosing AX Billing! 🚗✨"
    )


def vehicle_captured(order_code: str, vehicle_type: str, license_plate: str) -> str:
    return (
        "📸 *Vehicle Information Captured*\n\n"
        f"Order ID: *{order_code}*\n"
        f"Vehicle: {vehicle_type}\n"
        f"License Plate: *{license_plate}*\n\n"
        "Our team is now selecting the appropriate services for your vehicle. "
        "You'll receive an update shortly!"
    )


def stage_update(stage: str, order_code: str, total: float | None = None) -> Optional[str]:
    """Customer notification for a stage, or None when the stage has none."""
    if stage == "open":
        return (
            "🔧 *Order Update*\n\n"
            f"Order ID: *{order_code}*\n"
            "Status: Ready for service selection\n\n"
            "Our team can now add services to your order. "
            "We'll notify you once services are selected and pricing is confirmed."
        )

    if stage == "billed":
        return (
            "💳 *Payment Required*\n\n"
            f"Order ID: *{order_code}*\n"
            "Status: Services completed, payment due\n\n"
            "Your vehicle service is complete! We'll send you the payment link shortly.\n\n"
            f"Total: {settings.currency} {float(total or 0):.2f}"
        )

    if stage == "paid":
        return (
            "✅ *Payment Confirmed*\n\n"
            f"Order ID: *{order_code}*\n"
            "Status: Paid\n\n"
            "Thank you for your payment! Your vehicle is ready for pickup.\n\n"
            "Thank you for choosing AX Billing! 🚗✨"
        )

    return None


def damage_notice(order_code: str, new_damage: List[Dict[str, Any]], risk_level: str) -> str:
    count = len(new_damage)
    lines = "\n".join(
        f"• {d.get('type', 'damage')} on {str(d.get('location', 'unknown')).replace('_', ' ')} "
        f"({d.get('severity', 'minor')})"
        for d in new_damage
    )
    closing = (
        "This damage requires immediate attention. Please contact us urgently to discuss next steps."
        if risk_level == "high"
        else "We take full responsibility for any damage that occurred during service. "
        "Please contact us to discuss resolution options."
    )
    return (
        "Dear Customer,\n\n"
        f"We have completed the service for your vehicle (Order: {order_code}).\n\n"
        f"During our post-service inspection, we detected {count} new damage item"
        f"{'s' if count != 1 else ''} that were not present during intake:\n\n"
        f"{lines}\n\n"
        f"{closing}\n\n"
        "Best regards,\nAX Car Wash Team"
    )
