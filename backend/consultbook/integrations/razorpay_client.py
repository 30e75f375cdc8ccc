"""Minimal Razorpay REST client for orders, payments and refunds."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, cast
from uuid import uuid4

import httpx
from pydantic import SecretStr

from ..core.signatures import compute_signature, payment_signature_message, signatures_match

logger = logging.getLogger(__name__)


class GatewayError(RuntimeError):
    """The gateway answered with an error status or could not be reached."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        *,
        error_body: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_body = error_body


class RazorpayClient:
    """
    Thin client for the Razorpay REST API.

    One pooled ``httpx.Client`` lives for the lifetime of the instance; call
    :meth:`close` at shutdown. Every method takes the per-call ``timeout``
    produced by ``core.remote_call.Deadline`` and lets
    ``httpx.TimeoutException`` propagate untouched so the caller can report
    it as a timeout rather than a rejection.
    """

    def __init__(
        self,
        *,
        key_id: str,
        key_secret: str | SecretStr,
        base_url: str = "https://api.razorpay.com/v1",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        secret_value = key_secret.get_secret_value() if isinstance(key_secret, SecretStr) else key_secret
        if not key_id or not secret_value:
            raise ValueError("Razorpay key id and secret must be provided")
        self.key_id = key_id
        self._key_secret = secret_value
        self._base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self._base_url,
            auth=httpx.BasicAuth(key_id, secret_value),
            headers={"Accept": "application/json"},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def payment_signature_valid(self, order_id: str, payment_id: str, signature: Optional[str]) -> bool:
        """Check the checkout handler signature with the key secret."""
        return signatures_match(
            self._key_secret, payment_signature_message(order_id, payment_id), signature
        )

    def fetch_checkout_config(self, *, timeout: httpx.Timeout) -> Dict[str, Any]:
        """Checkout preferences for the public key (methods, display options)."""
        return self.request("GET", "/preferences", params={"key_id": self.key_id}, timeout=timeout)

    def create_order(
        self,
        *,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: Dict[str, str],
        timeout: httpx.Timeout,
    ) -> Dict[str, Any]:
        body = {
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt[:40],
            "notes": notes,
        }
        return self.request("POST", "/orders", json_body=body, timeout=timeout)

    def fetch_payment(self, payment_id: str, *, timeout: httpx.Timeout) -> Dict[str, Any]:
        if not payment_id:
            raise ValueError("payment_id must be provided")
        return self.request("GET", f"/payments/{payment_id}", timeout=timeout)

    def fetch_order_payments(self, order_id: str, *, timeout: httpx.Timeout) -> List[Dict[str, Any]]:
        payload = self.request("GET", f"/orders/{order_id}/payments", timeout=timeout)
        return cast(List[Dict[str, Any]], payload.get("items") or [])

    def refund_payment(
        self,
        payment_id: str,
        *,
        amount_minor: int,
        notes: Dict[str, str],
        idempotency_key: str,
        timeout: httpx.Timeout,
    ) -> Dict[str, Any]:
        body = {"amount": amount_minor, "speed": "normal", "notes": notes, "receipt": idempotency_key[:40]}
        return self.request(
            "POST",
            f"/payments/{payment_id}/refund",
            json_body=body,
            headers={"X-Idempotency-Key": idempotency_key},
            timeout=timeout,
        )

    def request(
        self,
        method: str,
        path: str,
        *,
        timeout: httpx.Timeout,
        json_body: Dict[str, Any] | None = None,
        params: Dict[str, Any] | None = None,
        headers: Dict[str, str] | None = None,
    ) -> Dict[str, Any]:
        """Perform a raw API request and return the parsed JSON payload."""
        try:
            response = self._client.request(
                method,
                path,
                json=json_body,
                params=params,
                headers=headers,
                timeout=timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException:
            raise
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            error_payload: Any | None
            try:
                error_payload = exc.response.json()
            except json.JSONDecodeError:
                error_payload = exc.response.text
            logger.error(
                "Razorpay API error %s for %s %s: %s",
                status,
                method,
                path,
                exc.response.text[:500],
            )
            raise GatewayError(
                f"Razorpay responded with status {status}",
                status_code=status,
                error_body=error_payload,
            ) from exc
        except httpx.RequestError as exc:
            logger.error("Razorpay request failure for %s %s: %s", method, path, str(exc))
            raise GatewayError("Failed to reach Razorpay") from exc

        try:
            return cast(Dict[str, Any], response.json())
        except json.JSONDecodeError as exc:
            logger.error("Invalid JSON from Razorpay for %s %s", method, path)
            raise GatewayError("Received malformed JSON from Razorpay") from exc


class FakeRazorpayClient(RazorpayClient):
    """
    In-memory gateway for local development and tests.

    ``simulate_timeout``/``simulate_error`` make the named operation raise the
    same exceptions the real client would.
    """

    def __init__(self, *, key_id: str = "rzp_test_fake", key_secret: str = "fake_key_secret") -> None:
        super().__init__(key_id=key_id, key_secret=key_secret, base_url="https://api.razorpay.com/v1")
        self._logger = logging.getLogger(self.__class__.__name__)
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.refunds: Dict[str, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self.timeout_operations: set[str] = set()
        self.error_operations: set[str] = set()

    def simulate_timeout(self, operation: str) -> None:
        self.timeout_operations.add(operation)

    def simulate_error(self, operation: str) -> None:
        self.error_operations.add(operation)

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.timeout_operations:
            raise httpx.ReadTimeout(f"simulated timeout in {operation}")
        if operation in self.error_operations:
            raise GatewayError(f"simulated failure in {operation}", status_code=400)

    # helpers that mimic what happens in the customer's browser

    def capture(self, order_id: str, *, amount_minor: Optional[int] = None) -> str:
        order = self.orders[order_id]
        payment_id = f"pay_fake_{uuid4().hex[:14]}"
        self.payments[payment_id] = {
            "id": payment_id,
            "entity": "payment",
            "order_id": order_id,
            "amount": amount_minor if amount_minor is not None else order["amount"],
            "currency": order["currency"],
            "status": "captured",
        }
        order["status"] = "paid"
        return payment_id

    def fail(self, order_id: str, *, error_code: str = "BAD_REQUEST_ERROR", description: str = "Payment failed") -> str:
        order = self.orders[order_id]
        payment_id = f"pay_fake_{uuid4().hex[:14]}"
        self.payments[payment_id] = {
            "id": payment_id,
            "entity": "payment",
            "order_id": order_id,
            "amount": order["amount"],
            "currency": order["currency"],
            "status": "failed",
            "error_code": error_code,
            "error_description": description,
        }
        order["status"] = "attempted"
        return payment_id

    def sign(self, order_id: str, payment_id: str) -> str:
        return compute_signature(self._key_secret, payment_signature_message(order_id, payment_id))

    # API surface

    def fetch_checkout_config(self, *, timeout: httpx.Timeout) -> Dict[str, Any]:
        self._enter("fetch_config")
        return {"key_id": self.key_id, "methods": {"upi": True, "card": True, "netbanking": True}}

    def create_order(
        self,
        *,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: Dict[str, str],
        timeout: httpx.Timeout,
    ) -> Dict[str, Any]:
        self._enter("create_order")
        order_id = f"order_fake_{uuid4().hex[:14]}"
        order = {
            "id": order_id,
            "entity": "order",
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "notes": notes,
            "status": "created",
        }
        self.orders[order_id] = order
        self._logger.debug("Fake order created", extra={"order_id": order_id})
        return dict(order)

    def fetch_payment(self, payment_id: str, *, timeout: httpx.Timeout) -> Dict[str, Any]:
        self._enter("fetch_payment")
        payment = self.payments.get(payment_id)
        if payment is None:
            raise GatewayError("The id provided does not exist", status_code=400)
        return dict(payment)

    def fetch_order_payments(self, order_id: str, *, timeout: httpx.Timeout) -> List[Dict[str, Any]]:
        self._enter("fetch_order_payments")
        return [dict(p) for p in self.payments.values() if p["order_id"] == order_id]

    def refund_payment(
        self,
        payment_id: str,
        *,
        amount_minor: int,
        notes: Dict[str, str],
        idempotency_key: str,
        timeout: httpx.Timeout,
    ) -> Dict[str, Any]:
        self._enter("refund")
        refund_id = f"rfnd_fake_{uuid4().hex[:14]}"
        refund = {
            "id": refund_id,
            "entity": "refund",
            "payment_id": payment_id,
            "amount": amount_minor,
            "status": "processed",
            "notes": notes,
        }
        self.refunds[refund_id] = refund
        return dict(refund)


def build_gateway_client(config: Any) -> RazorpayClient:
    """Real client when keys are configured; the in-memory fake otherwise (never in production)."""
    if config.razorpay_key_id and config.razorpay_key_secret.get_secret_value():
        return RazorpayClient(
            key_id=config.razorpay_key_id,
            key_secret=config.razorpay_key_secret,
            base_url=config.razorpay_base_url,
        )
    if config.is_production:
        raise ValueError("RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET are required in production")
    logger.warning("Razorpay keys not configured; using the in-memory gateway")
    return FakeRazorpayClient()
