"""Builders for gateway webhook deliveries."""

import json
from typing import Any, Dict, Optional, Tuple

from consultbook.core.signatures import compute_signature

from .constants import WEBHOOK_SECRET


def payment_webhook(
    event: str,
    order_id: str,
    payment_id: str,
    amount_minor: int,
    **entity: Any,
) -> Dict[str, Any]:
    return {
        "event": event,
        "payload": {
            "payment": {
                "entity": {
                    "id": payment_id,
                    "order_id": order_id,
                    "amount": amount_minor,
                    "currency": "INR",
                    **entity,
                }
            }
        },
    }


def signed_body(payload: Dict[str, Any], secret: Optional[str] = None) -> Tuple[bytes, str]:
    """Raw body plus the ``X-Razorpay-Signature`` value for it."""
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return raw, compute_signature(secret or WEBHOOK_SECRET, raw)
