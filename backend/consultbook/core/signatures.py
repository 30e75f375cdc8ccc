# backend/consultbook/core/signatures.py
"""HMAC-SHA256 signature helpers for the payment gateway."""

import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def compute_signature(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def payment_signature_message(order_id: str, payment_id: str) -> bytes:
    """Checkout signatures cover ``"{order_id}|{payment_id}"``."""
    return f"{order_id}|{payment_id}".encode("utf-8")


def signatures_match(secret: str, message: bytes, provided: Optional[str]) -> bool:
    """Constant-time comparison; an unset secret or empty signature never matches."""
    if not secret or not provided:
        return False
    normalized = provided.strip()
    if normalized.lower().startswith("sha256="):
        normalized = normalized.split("=", 1)[1].strip()
    return hmac.compare_digest(normalized, compute_signature(secret, message))
